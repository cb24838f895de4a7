"""
FTB data plane: one whole file over one TCP connection.

FileServer
----------
    Single-use listener on an ephemeral port.  Accepts exactly one
    connection, then either streams a file to it (download) or writes
    everything it sends into a file (upload), and closes.

fetch_file / push_file
----------------------
    Client side of the same exchange, run by the requesting peer once the
    owner has answered with the listener's port.

The stream has no framing: end of file is the sender closing its side.
A broken stream leaves whatever was written on disk.
"""

from __future__ import annotations

import logging
import socket
import threading
import time
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from .integrity import StreamDigest
from .progress import NullProgress, TransferProgress

log = logging.getLogger("ftb.handoff")

BLOCK_SIZE: int = 64 * 1024
ACCEPT_POLL: float = 1.0
CONNECT_TIMEOUT: float = 15.0


class Direction(str, Enum):
    SEND = "send"           # bytes flow from this side's file to the socket
    RECEIVE = "receive"     # bytes flow from the socket into this side's file


@dataclass
class TransferReport:
    path: Path
    direction: Direction
    nbytes: int
    digest: str
    complete: bool
    error: str = ""

    def __str__(self) -> str:
        state = "complete" if self.complete else f"TRUNCATED ({self.error})"
        return (f"{self.direction.value} {self.path}: {self.nbytes} bytes, "
                f"blake3 {self.digest[:16]}…, {state}")


# ---------------------------------------------------------------------------
# Stream copy
# ---------------------------------------------------------------------------

def _copy(
    read: Callable[[int], bytes],
    write: Callable[[bytes], object],
    digest: StreamDigest,
    advance: Callable[[int], None],
) -> None:
    while True:
        block = read(BLOCK_SIZE)
        if not block:
            break
        write(block)
        digest.update(block)
        advance(len(block))


def stream(
    sock: socket.socket,
    path: Path,
    direction: Direction,
    progress: TransferProgress | NullProgress | None = None,
    label: str = "",
) -> TransferReport:
    """Run one transfer over a connected *sock*.  Never raises OSError."""
    digest = StreamDigest()
    progress = progress or NullProgress()
    error = ""
    try:
        if direction is Direction.SEND:
            size = path.stat().st_size
            with open(path, "rb") as fh, progress.file(label or path.name, size) as fp:
                _copy(fh.read, sock.sendall, digest, fp.advance)
            sock.shutdown(socket.SHUT_WR)
        else:
            with open(path, "wb") as fh, progress.file(label or path.name, None) as fp:
                _copy(sock.recv, fh.write, digest, fp.advance)
    except OSError as e:
        error = str(e) or type(e).__name__
    report = TransferReport(path=path, direction=direction, nbytes=digest.nbytes,
                            digest=digest.hexdigest(), complete=not error, error=error)
    if report.complete:
        log.info("Transfer %s", report)
    else:
        log.error("Transfer %s", report)
    return report


# ---------------------------------------------------------------------------
# Listener side
# ---------------------------------------------------------------------------

class FileServer:
    """
    Ephemeral single-use TCP listener for one negotiated transfer.

    ``open()`` binds and returns the port to advertise; ``start()`` runs the
    accept + copy in a daemon thread.
    """

    def __init__(
        self,
        path: Path,
        direction: Direction,
        accept_timeout: Optional[float] = None,
        on_done: Optional[Callable[["FileServer"], None]] = None,
    ) -> None:
        self.path = path
        self.direction = direction
        self._accept_timeout = accept_timeout
        self._on_done = on_done
        self._server_sock: socket.socket | None = None
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self.done = threading.Event()
        self.report: Optional[TransferReport] = None

    @property
    def port(self) -> int:
        assert self._server_sock is not None
        return self._server_sock.getsockname()[1]

    def open(self) -> int:
        self._server_sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            self._server_sock.bind(("", 0))
            self._server_sock.listen(1)
            self._server_sock.settimeout(ACCEPT_POLL)
        except OSError:
            self._server_sock.close()
            self._server_sock = None
            raise
        return self.port

    def start(self) -> None:
        if self._server_sock is None:
            self.open()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name=f"ftb-handoff-{self.port}"
        )
        self._thread.start()
        log.info("Handoff listening on port %d (%s %s)",
                 self.port, self.direction.value, self.path)

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread:
            self._thread.join(timeout=timeout)

    def _run(self) -> None:
        assert self._server_sock is not None
        try:
            conn = self._accept()
            if conn is None:
                return
            with conn:
                conn.settimeout(None)
                self.report = stream(conn, self.path, self.direction)
        finally:
            try:
                self._server_sock.close()
            except OSError:
                pass
            if self._on_done:
                self._on_done(self)
            self.done.set()

    def _accept(self) -> socket.socket | None:
        assert self._server_sock is not None
        deadline = (time.monotonic() + self._accept_timeout
                    if self._accept_timeout else None)
        while not self._stop_event.is_set():
            if deadline is not None and time.monotonic() > deadline:
                log.warning("Handoff on port %d: nobody connected, giving up", self.port)
                return None
            try:
                conn, addr = self._server_sock.accept()
            except (TimeoutError, socket.timeout):
                continue
            except OSError:
                return None
            log.info("Handoff connection from %s:%d", *addr)
            return conn
        return None


# ---------------------------------------------------------------------------
# Client side
# ---------------------------------------------------------------------------

def _connect_and_stream(
    host: str,
    port: int,
    path: Path,
    direction: Direction,
    progress: TransferProgress | NullProgress | None,
    label: str,
) -> TransferReport:
    try:
        sock = socket.create_connection((host, port), timeout=CONNECT_TIMEOUT)
    except OSError as e:
        log.error("Cannot connect to %s:%d: %s", host, port, e)
        return TransferReport(path=path, direction=direction, nbytes=0,
                              digest="", complete=False, error=str(e))
    with sock:
        sock.settimeout(None)
        return stream(sock, path, direction, progress, label)


def fetch_file(
    host: str,
    port: int,
    dest: Path,
    progress: TransferProgress | NullProgress | None = None,
    label: str = "",
) -> TransferReport:
    """Download: read from *host*:*port* until EOF into *dest*."""
    return _connect_and_stream(host, port, dest, Direction.RECEIVE, progress, label)


def push_file(
    host: str,
    port: int,
    src: Path,
    progress: TransferProgress | NullProgress | None = None,
    label: str = "",
) -> TransferReport:
    """Upload: stream *src* to *host*:*port*, then close."""
    return _connect_and_stream(host, port, src, Direction.SEND, progress, label)
