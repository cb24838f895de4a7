"""
Download, upload and delete correlators.

Download (at the owner)   → FileServer streaming the file, port in the result
Upload   (at the target)  → FileServer receiving into the checked target
Delete   (at the target)  → unlink, result or error

On the requesting side a download/upload result starts the matching client
transfer in its own thread; the outcome is emitted when it finishes.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Callable, Iterable, Optional

from .correlator import Correlator, Pending
from .filespace import delete_file, download_source, upload_target
from .handoff import Direction, FileServer, TransferReport, fetch_file, push_file
from .outcome import Outcome
from .progress import NullProgress, TransferProgress
from .protocol import Family, Message, MsgKind, PortPayload, TargetPayload

log = logging.getLogger("ftb.files")

ProgressFactory = Callable[[str, str], "TransferProgress | NullProgress"]


def no_progress(peer: str, direction: str) -> NullProgress:
    return NullProgress()


def _target(msg: Message) -> TargetPayload:
    assert isinstance(msg.payload, TargetPayload)
    return msg.payload


class TransferCorrelator(Correlator):
    """Shared handoff bookkeeping for download and upload."""

    direction: Direction            # what the listener does with the file
    label: str

    def __init__(self, *args, progress: ProgressFactory = no_progress, **kwargs) -> None:
        super().__init__(*args, **kwargs)
        self._progress = progress
        self._servers: set[FileServer] = set()
        self._clients: set[threading.Thread] = set()
        self._handoff_lock = threading.Lock()

    # -- owner side -------------------------------------------------------

    def resolve(self, path: str) -> Optional[Path]:
        raise NotImplementedError

    def serve(self, request: Message) -> Iterable[Message]:
        target = _target(request)
        path = self.resolve(target.target_path)
        if path is None:
            log.info("%s of %r refused", self.family.value, target.target_path)
            return [self._factory.error(request)]

        server = FileServer(path, self.direction,
                            accept_timeout=self.config.seconds("transfer_timeout"),
                            on_done=self._forget_server)
        try:
            port = server.open()
        except OSError as e:
            log.error("Cannot open handoff listener: %s", e)
            return [self._factory.error(request)]
        with self._handoff_lock:
            self._servers.add(server)
        server.start()
        return [self._factory.port_result(request, port)]

    def _forget_server(self, server: FileServer) -> None:
        with self._handoff_lock:
            self._servers.discard(server)

    # -- requester side ---------------------------------------------------

    def complete(self, pending: Pending, response: Message, sender_host: str) -> None:
        if not response.kind.is_result:
            self.emit(self.render(pending, response, None))
            return
        assert isinstance(response.payload, PortPayload)
        t = threading.Thread(
            target=self._run_client,
            args=(pending, response, sender_host),
            daemon=True,
            name=f"ftb-{self.family.value}-client",
        )
        with self._handoff_lock:
            self._clients.add(t)
        t.start()

    def _run_client(self, pending: Pending, response: Message, host: str) -> None:
        assert isinstance(response.payload, PortPayload)
        assert pending.local_path is not None
        remote = _target(pending.request).target_path
        progress = self._progress(response.identity, self.label)
        progress.start()
        try:
            report = self.transfer(host, response.payload.port,
                                   pending.local_path, progress, remote)
        finally:
            progress.stop()
            with self._handoff_lock:
                self._clients.discard(threading.current_thread())
        self.emit(self.render(pending, response, report))

    def transfer(self, host: str, port: int, local: Path,
                 progress: "TransferProgress | NullProgress",
                 label: str) -> TransferReport:
        raise NotImplementedError

    def render(self, pending: Pending, response: Message,
               report: Optional[TransferReport]) -> Outcome:
        raise NotImplementedError

    # -- lifecycle --------------------------------------------------------

    def stop(self) -> None:
        super().stop()
        with self._handoff_lock:
            servers = list(self._servers)
        for server in servers:
            server.stop()

    def join(self, timeout: float | None = None) -> None:
        super().join(timeout)
        with self._handoff_lock:
            servers = list(self._servers)
            clients = list(self._clients)
        for server in servers:
            server.join(timeout)
        for t in clients:
            t.join(timeout)

    def active_handoffs(self) -> int:
        with self._handoff_lock:
            return len(self._servers) + len(self._clients)


class DownloadCorrelator(TransferCorrelator):
    family = Family.DOWNLOAD
    direction = Direction.SEND
    label = "↓ DOWNLOAD"

    def enabled(self, msg: Message) -> bool:
        return self.config.download

    def resolve(self, path: str) -> Optional[Path]:
        return download_source(self.root, path)

    def transfer(self, host, port, local, progress, label):
        return fetch_file(host, port, local, progress, label)

    def render(self, pending, response, report):
        req = _target(pending.request)
        lines = [f"Download Request: Download From: {req.target_identity}, "
                 f"File To Download: {req.target_path}"]
        success = report is not None and report.complete
        if success:
            lines.append(f"Download Result: Successfully downloaded {req.target_path} "
                         f"From {req.target_identity}")
            lines.append(f"File Saved To: {pending.local_path}.")
        else:
            lines.append("Download Result: Could not download the file.")
            if report is not None:
                lines.append(f"Transfer stopped after {report.nbytes} bytes: {report.error}")
        return Outcome(Family.DOWNLOAD, success, pending.request.key, tuple(lines))


class UploadCorrelator(TransferCorrelator):
    family = Family.UPLOAD
    direction = Direction.RECEIVE
    label = "↑ UPLOAD"

    def enabled(self, msg: Message) -> bool:
        return self.config.upload

    def resolve(self, path: str) -> Optional[Path]:
        return upload_target(self.root, path)

    def transfer(self, host, port, local, progress, label):
        return push_file(host, port, local, progress, label)

    def render(self, pending, response, report):
        req = _target(pending.request)
        lines = [f"Upload Request: Upload To: {req.target_identity}, "
                 f"Location To Upload: {req.target_path}"]
        success = report is not None and report.complete
        if success:
            lines.append(f"Upload Result: Successfully Uploaded To {req.target_path} "
                         f"At {req.target_identity}")
            lines.append(f"File Uploaded: {pending.local_path}.")
        else:
            lines.append("Upload Result: Could not upload the file.")
            if report is not None:
                lines.append(f"Transfer stopped after {report.nbytes} bytes: {report.error}")
        return Outcome(Family.UPLOAD, success, pending.request.key, tuple(lines))


class DeleteCorrelator(Correlator):
    family = Family.DELETE

    def enabled(self, msg: Message) -> bool:
        return self.config.delete

    def serve(self, request: Message) -> Iterable[Message]:
        target = _target(request)
        if delete_file(self.root, target.target_path):
            log.info("Deleted %s for %s", target.target_path, request.identity)
            return [self._factory.reply(request, MsgKind.DELETE_RESULT)]
        log.info("Delete of %r refused", target.target_path)
        return [self._factory.error(request)]

    def complete(self, pending: Pending, response: Message, sender_host: str) -> None:
        req = _target(pending.request)
        lines = [f"Delete Request: Delete At: {req.target_identity}, "
                 f"File To Delete: {req.target_path}"]
        success = response.kind is MsgKind.DELETE_RESULT
        if success:
            lines.append(f"Delete Result: Successfully deleted {req.target_path} "
                         f"At {req.target_identity}")
        else:
            lines.append(f"Delete Result: Failed To Delete {req.target_path} "
                         f"At {req.target_identity}")
        self.emit(Outcome(Family.DELETE, success, pending.request.key, tuple(lines)))
