"""
Progress rendering — rich live progress bars for data-plane transfers.

Usage::

    tracker = TransferProgress(peer_name="alice@lab-01", direction="↓ DOWNLOAD")
    tracker.start()

    with tracker.file("/notes.txt", size=None) as fp:
        for block in ...:
            fp.advance(len(block))

    tracker.stop()

Downloads do not know their size up front (the stream carries no header), so
*size* may be None and the bar is shown as indeterminate.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Generator, Optional

from rich.console import Console
from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TransferSpeedColumn,
)


class FileProgress:
    """Context returned by TransferProgress.file(); advance bytes as you go."""

    def __init__(self, progress: Progress, task_id: TaskID, size: Optional[int]) -> None:
        self._progress = progress
        self._task_id = task_id
        self._size = size
        self._done = 0

    def advance(self, n: int) -> None:
        self._done += n
        self._progress.advance(self._task_id, n)

    def finish(self) -> None:
        self._progress.update(self._task_id, total=self._done, completed=self._done)


class TransferProgress:
    """Live single-transfer progress display using Rich."""

    def __init__(self, peer_name: str, direction: str = "→") -> None:
        self.peer_name = peer_name
        self.direction = direction
        self._progress = Progress(
            SpinnerColumn(),
            TextColumn(f"[bold cyan]{direction}[/] [bold]{peer_name}[/]"),
            BarColumn(bar_width=None),
            DownloadColumn(),
            TransferSpeedColumn(),
            TextColumn("[dim]{task.fields[filename]}"),
            console=Console(stderr=True),
            expand=True,
        )

    def start(self) -> None:
        self._progress.start()

    def stop(self) -> None:
        self._progress.stop()

    @contextmanager
    def file(self, filename: str, size: Optional[int]) -> Generator[FileProgress, None, None]:
        task_id = self._progress.add_task("transfer", total=size, filename=filename)
        fp = FileProgress(self._progress, task_id, size)
        try:
            yield fp
        finally:
            fp.finish()


class NullProgress:
    """Drop-in no-op replacement when no terminal display is wanted."""

    def start(self) -> None: ...
    def stop(self) -> None: ...

    @contextmanager
    def file(self, filename: str, size: Optional[int]) -> Generator[FileProgress, None, None]:
        class _NopFP:
            def advance(self, n: int) -> None: ...
            def finish(self) -> None: ...
        yield _NopFP()  # type: ignore[misc]
