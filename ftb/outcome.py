"""
Rendered correlation results for the operator.

Every matched request/response pair produces exactly one ``Outcome``; a
sink decides where it goes (console, a queue for a waiting command, a list
in tests).
"""

from __future__ import annotations

import logging
import queue
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from rich.console import Console

from .protocol import Family

log = logging.getLogger("ftb.outcome")


@dataclass(frozen=True)
class Outcome:
    family: Family
    success: bool
    request_key: str
    lines: tuple[str, ...] = field(default_factory=tuple)

    def render(self) -> str:
        return "\n".join(self.lines)


OutcomeSink = Callable[[Outcome], None]


class ConsoleSink:
    """
    Prints each outcome between rules, green on success and red otherwise.

    Lines carry paths and identities sent by other peers; they are printed
    literally (no rich markup).
    """

    def __init__(self, console: Optional[Console] = None) -> None:
        self._console = console or Console()
        self._lock = threading.Lock()

    def __call__(self, outcome: Outcome) -> None:
        style = "green" if outcome.success else "red"
        with self._lock:
            self._console.rule(style="dim")
            head, *rest = outcome.lines or ("",)
            self._console.print(head, markup=False, highlight=False)
            for line in rest:
                self._console.print(line, style=style, markup=False, highlight=False)


class QueueSink:
    """Collects outcomes so a caller can block for the next one."""

    def __init__(self) -> None:
        self._queue: "queue.Queue[Outcome]" = queue.Queue()

    def __call__(self, outcome: Outcome) -> None:
        self._queue.put(outcome)

    def get(self, timeout: Optional[float] = None) -> Optional[Outcome]:
        try:
            return self._queue.get(timeout=timeout)
        except queue.Empty:
            return None

    def drain(self) -> list[Outcome]:
        items = []
        while True:
            try:
                items.append(self._queue.get_nowait())
            except queue.Empty:
                return items


def log_sink(outcome: Outcome) -> None:
    """Fallback sink: write the outcome to the log."""
    for line in outcome.lines:
        log.info("%s", line)
