"""
Background loop units.

Every looping role of a peer (beacon sender, expiry sweep, correlators)
is a ``Ticker``: a daemon thread that calls *tick* every *interval*
seconds until ``stop()``.  ``Event.wait`` is the sleep, so stopping never
waits out a full interval.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable

log = logging.getLogger("ftb.worker")


class Ticker:
    def __init__(
        self,
        name: str,
        interval: float,
        tick: Callable[[], object],
        immediate: bool = False,
    ) -> None:
        self.name = name
        self.interval = interval
        self._tick = tick
        self._immediate = immediate
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, daemon=True, name=self.name)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread:
            self._thread.join(timeout=timeout)

    def _run(self) -> None:
        if self._immediate:
            self._safe_tick()
        while not self._stop_event.wait(self.interval):
            self._safe_tick()

    def _safe_tick(self) -> None:
        try:
            self._tick()
        except Exception:
            log.exception("%s: unhandled error in loop", self.name)
