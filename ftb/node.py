"""
FTB peer: owns and wires every control-plane unit.

    Multiplexer ──► BeaconDirectory
         │      ──► Search / Download / Upload / Delete correlators
         ▲
    BeaconSender, correlator replies

Operator-facing operations (search, download, upload, delete, peers) build a
request, record it as pending and send it; answers arrive as Outcomes on
the sink given at construction.
"""

from __future__ import annotations

import logging
import time
from pathlib import Path
from typing import Callable, Optional

from .beacon import BeaconDirectory, BeaconEntry, BeaconSender
from .config import Config
from .correlator import Correlator
from .files import (
    DeleteCorrelator,
    DownloadCorrelator,
    ProgressFactory,
    UploadCorrelator,
    no_progress,
)
from .outcome import OutcomeSink, log_sink
from .protocol import SEARCH_TYPES, Family, Message, MessageFactory
from .search import SearchCorrelator
from .transport import DatagramSocket, Multiplexer

log = logging.getLogger("ftb.node")


class Peer:
    """
    A complete FTB peer.

    Nothing runs until ``start()``; ``stop()`` signals every unit and
    ``join()`` waits for them.  *sock* replaces the multicast socket and
    *clock* the monotonic clock (tests).

    With ``serve=False`` the peer is request-only: it sends no beacons and
    answers no requests, so a one-shot command may share the identity of a
    serving peer on the same host.
    """

    def __init__(
        self,
        config: Config,
        sink: Optional[OutcomeSink] = None,
        sock: Optional[DatagramSocket] = None,
        clock: Callable[[], float] = time.monotonic,
        progress: ProgressFactory = no_progress,
        serve: bool = True,
    ) -> None:
        self.config = config
        self.serving = serve
        self.identity = config.identity
        self.factory = MessageFactory(self.identity)
        self.transport = Multiplexer(config, sock=sock)
        send = self.transport.send
        sink = sink or log_sink

        self.directory = BeaconDirectory(config, clock=clock)
        self.beacons = BeaconSender(config, self.factory, send)
        common = dict(clock=clock, serving=serve)
        self.searches = SearchCorrelator(config, self.factory, send, sink, **common)
        self.downloads = DownloadCorrelator(config, self.factory, send, sink,
                                            progress=progress, **common)
        self.uploads = UploadCorrelator(config, self.factory, send, sink,
                                        progress=progress, **common)
        self.deletes = DeleteCorrelator(config, self.factory, send, sink, **common)

        self.transport.register(Family.BEACON, self.directory.receive)
        for c in self.correlators:
            self.transport.register(c.family, c.receive)

        self._running = False

    @property
    def correlators(self) -> list[Correlator]:
        return [self.searches, self.downloads, self.uploads, self.deletes]

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Join the group and start every unit.  Raises StartupError."""
        if self._running:
            return
        for line in self.config.describe():
            log.info("%s", line)
        self.transport.open()
        for c in self.correlators:
            c.start()
        self.directory.start()
        self.transport.start()
        if self.serving:
            self.beacons.start()
        self._running = True
        log.info("Peer %s started (%s)", self.identity,
                 "serving" if self.serving else "request-only")

    def stop(self) -> None:
        self.beacons.stop()
        self.transport.stop()
        self.directory.stop()
        for c in self.correlators:
            c.stop()
        self._running = False

    def join(self, timeout: float | None = None) -> None:
        self.beacons.join(timeout)
        self.transport.join(timeout)
        self.directory.join(timeout)
        for c in self.correlators:
            c.join(timeout)
        log.info("Peer %s stopped", self.identity)

    def close(self) -> None:
        self.stop()
        self.join(timeout=5)

    def __enter__(self) -> "Peer":
        self.start()
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def peers(self) -> list[BeaconEntry]:
        return self.directory.entries()

    def search(self, search_type: str, query: str) -> Optional[Message]:
        if search_type.lower() not in SEARCH_TYPES:
            raise ValueError(f"search type must be one of {SEARCH_TYPES}")
        request = self.factory.search_request(search_type.lower(), query)
        return request if self.searches.submit(request) else None

    def download(self, target: str, remote_path: str,
                 local_path: Optional[Path] = None) -> Optional[Message]:
        """Ask *target* for *remote_path*; save it at *local_path*."""
        dest = Path(local_path) if local_path else (
            Path(self.config.root_dir) / Path(remote_path).name)
        request = self.factory.target_request(Family.DOWNLOAD, target, remote_path)
        return request if self.downloads.submit(request, dest) else None

    def upload(self, target: str, local_path: Path,
               remote_path: str) -> Optional[Message]:
        """Offer *local_path* to *target* to be stored at *remote_path*."""
        src = Path(local_path)
        if not src.is_file():
            raise FileNotFoundError(f"Not a file: {src}")
        request = self.factory.target_request(Family.UPLOAD, target, remote_path)
        return request if self.uploads.submit(request, src) else None

    def delete(self, target: str, remote_path: str) -> Optional[Message]:
        request = self.factory.target_request(Family.DELETE, target, remote_path)
        return request if self.deletes.submit(request) else None
