"""
Remote search of a peer's file tree.

search_tree(root, search_type, query) → list of root-relative paths

  path       query names one path under root; a directory answers with a
             trailing "/"
  filename   every file or directory under root named exactly *query*
  substring  every file or directory under root whose name contains *query*

Name queries are matched against single entry names, never resolved as
paths, so ".." in one is ordinary text.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Iterable, Iterator

from .correlator import Correlator, Pending
from .filespace import resolve_request, root_relative
from .outcome import Outcome
from .protocol import (
    Family,
    Message,
    MsgKind,
    SearchRequestPayload,
    SearchResultPayload,
)

log = logging.getLogger("ftb.search")


def path_search(root: Path, query: str) -> list[str]:
    p = resolve_request(root, query)
    if p is None or not p.exists():
        return []
    if p.is_dir():
        rel = root_relative(root, p)
        return [rel if rel.endswith("/") else rel + "/"]
    if p.is_file():
        return [root_relative(root, p)]
    return []


def _walk(root: Path) -> Iterator[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        base = Path(dirpath)
        for name in dirnames:
            yield base / name
        for name in sorted(filenames):
            yield base / name


def walk_search(root: Path, query: str, substring: bool) -> list[str]:
    if not query:
        return []
    matches = []
    for p in _walk(root):
        name = p.name
        if (query in name) if substring else (name == query):
            matches.append(root_relative(root, p))
    return matches


def search_tree(root: Path, search_type: str, query: str) -> list[str]:
    kind = search_type.lower()
    if kind == "path":
        return path_search(root, query)
    if kind == "filename":
        return walk_search(root, query, substring=False)
    if kind == "substring":
        return walk_search(root, query, substring=True)
    log.debug("Unknown search type %r", search_type)
    return []


class SearchCorrelator(Correlator):
    family = Family.SEARCH
    consume_on_match = False

    def enabled(self, msg: Message) -> bool:
        assert isinstance(msg.payload, SearchRequestPayload)
        return self.config.services.allows_search(msg.payload.search_type)

    def serve(self, request: Message) -> Iterable[Message]:
        assert isinstance(request.payload, SearchRequestPayload)
        results = search_tree(self.root, request.payload.search_type,
                              request.payload.search_string)
        log.info("Search %s %r from %s: %d result(s)",
                 request.payload.search_type, request.payload.search_string,
                 request.identity, len(results))
        if not results:
            return [self._factory.error(request)]
        return [self._factory.search_result(request, path) for path in results]

    def complete(self, pending: Pending, response: Message, sender_host: str) -> None:
        req = pending.request.payload
        assert isinstance(req, SearchRequestPayload)
        lines = [f"Search Request: Search Type: '{req.search_type}', "
                 f"Search String: '{req.search_string}'."]
        if response.kind is MsgKind.SEARCH_RESULT:
            assert isinstance(response.payload, SearchResultPayload)
            lines.append(f"Search Result: '{response.payload.matched_path}' "
                         f"At {response.identity}")
            success = True
        else:
            lines.append(f"Search Result: No Result At {response.identity}")
            success = False
        self.emit(Outcome(Family.SEARCH, success, pending.request.key, tuple(lines)))
