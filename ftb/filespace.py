"""
Root-relative path rules for requests from other peers.

Request paths are written from the peer's root ("/notes.txt"); a missing
leading "/" is added.  Any path containing ".." is refused outright, and the
resolved path must also stay inside the root (symlinks included).
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

log = logging.getLogger("ftb.filespace")


def has_traversal(path: str) -> bool:
    return ".." in path


def under_root(root: Path, path: str) -> Path:
    """Join a request *path* onto *root* without resolving it."""
    if not path.startswith("/"):
        path = "/" + path
    return root / path.lstrip("/")


def is_confined(root: Path, candidate: Path) -> bool:
    try:
        candidate.resolve().relative_to(root.resolve())
    except (ValueError, OSError):
        return False
    return True


def resolve_request(root: Path, path: str) -> Optional[Path]:
    """Absolute-ish path for *path* under *root*, or None if it escapes."""
    if not path or has_traversal(path):
        return None
    candidate = under_root(root, path)
    if not is_confined(root, candidate):
        log.warning("Refused path outside root: %r", path)
        return None
    return candidate


def root_relative(root: Path, p: Path) -> str:
    """'/'-separated path of *p* from *root*, always starting with '/'."""
    rel = os.path.relpath(p, root)
    if rel == ".":
        return "/"
    return "/" + rel.replace(os.sep, "/")


def is_new_filename(name: str) -> bool:
    """A creatable upload name has the form stem.ext (one dot, both non-empty)."""
    parts = name.split(".")
    return len(parts) == 2 and all(parts)


# ---------------------------------------------------------------------------
# Per-operation eligibility
# ---------------------------------------------------------------------------

def download_source(root: Path, path: str) -> Optional[Path]:
    """The file to send for a download request, or None to refuse."""
    p = resolve_request(root, path)
    if p is None or not p.is_file():
        return None
    return p


def upload_target(root: Path, path: str) -> Optional[Path]:
    """
    The file to write for an upload request, or None to refuse.

    An existing regular file must be writable.  A new file needs an existing
    parent directory and a stem.ext name; it is created empty here.
    """
    if path.endswith("/"):
        return None
    p = resolve_request(root, path)
    if p is None:
        return None
    if p.exists():
        if p.is_file() and os.access(p, os.W_OK):
            return p
        return None
    if not p.parent.is_dir() or not is_new_filename(p.name):
        return None
    try:
        p.touch(exist_ok=False)
    except OSError as e:
        log.warning("Cannot create upload target %s: %s", p, e)
        return None
    return p


def delete_file(root: Path, path: str) -> bool:
    """Delete the regular file at *path*.  False if refused or it failed."""
    p = resolve_request(root, path)
    if p is None or not p.is_file():
        return False
    try:
        p.unlink()
    except OSError as e:
        log.warning("Delete of %s failed: %s", p, e)
        return False
    return True
