"""
Multicast transport shared by every control-plane component.

- Owns the one multicast socket of a peer
- Receive loop: bounded recvfrom → decode → route by message family
- send(): encode and transmit one datagram to the group

Handlers are registered per family and receive ``(message, sender_host)``.
The transport keeps no message state.

Usage::

    mux = Multiplexer(config)
    mux.register(Family.BEACON, directory.receive)
    mux.open()
    mux.start()
    mux.send(msg)
    mux.stop(); mux.join()
"""

from __future__ import annotations

import logging
import socket
import struct
import threading
from typing import Callable, Protocol

from .config import Config
from .protocol import MAX_DATAGRAM, Family, Message, decode_bytes, encode_bytes

log = logging.getLogger("ftb.transport")

Handler = Callable[[Message, str], None]


class StartupError(RuntimeError):
    """The multicast socket could not be bound or the group joined."""


class DatagramSocket(Protocol):
    def sendto(self, data: bytes, address: tuple[str, int]) -> int: ...
    def recvfrom(self, bufsize: int) -> tuple[bytes, tuple[str, int]]: ...
    def close(self) -> None: ...


def open_multicast_socket(config: Config) -> socket.socket:
    """Create, configure and join the multicast socket.  Raises StartupError."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        if config.reuse_addr:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
            except (AttributeError, OSError):
                pass  # Windows doesn't have SO_REUSEPORT
        sock.bind(("", config.mcast_port))
        mreq = struct.pack("4s4s",
                           socket.inet_aton(config.mcast_addr),
                           socket.inet_aton(config.mcast_interface))
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, config.mcast_ttl)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP,
                        0 if config.loopback_off else 1)
        sock.settimeout(config.seconds("so_timeout"))
    except OSError as exc:
        sock.close()
        raise StartupError(
            f"Cannot join {config.mcast_addr}:{config.mcast_port}: {exc}"
        ) from exc
    log.info("Joined multicast group %s:%d (ttl=%d)",
             config.mcast_addr, config.mcast_port, config.mcast_ttl)
    return sock


class Multiplexer:
    """Receives, decodes and routes control-plane datagrams; sends replies."""

    def __init__(self, config: Config, sock: DatagramSocket | None = None) -> None:
        self.config = config
        self._group = (config.mcast_addr, config.mcast_port)
        self._sock = sock
        self._handlers: dict[Family, Handler] = {}
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def register(self, family: Family, handler: Handler) -> None:
        self._handlers[family] = handler

    def open(self) -> None:
        """Create the multicast socket unless one was injected."""
        if self._sock is None:
            self._sock = open_multicast_socket(self.config)

    def start(self) -> None:
        self.open()
        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run, daemon=True, name="ftb-mux"
        )
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()

    def join(self, timeout: float | None = None) -> None:
        if self._thread:
            self._thread.join(timeout=timeout)
        if self._sock:
            try:
                self._sock.close()
            except OSError:
                pass

    def send(self, msg: Message) -> bool:
        """Transmit *msg* to the group.  Never raises; no retry."""
        data = encode_bytes(msg)
        if len(data) > self.config.maximum_discovery_message_size:
            log.warning("Message of %d bytes exceeds maximumDiscoveryMessageSize=%d",
                        len(data), self.config.maximum_discovery_message_size)
        if self._sock is None:
            log.warning("Send before open: %s", msg.kind.value)
            return False
        try:
            self._sock.sendto(data, self._group)
        except OSError as e:
            log.warning("Multicast send error: %s", e)
            return False
        log.debug("Message Sent: %s", data.decode("ascii", errors="replace"))
        return True

    def receive_once(self) -> bool:
        """One bounded receive.  Returns True if a datagram was routed."""
        assert self._sock is not None
        try:
            data, addr = self._sock.recvfrom(MAX_DATAGRAM)
        except (TimeoutError, socket.timeout):
            return False
        return self.dispatch(data, addr[0])

    def dispatch(self, data: bytes, sender_host: str) -> bool:
        msg = decode_bytes(data)
        if msg is None:
            log.debug("Dropped unrecognized datagram from %s", sender_host)
            return False
        handler = self._handlers.get(msg.family)
        if handler is None:
            log.debug("No handler for %s from %s", msg.kind.value, sender_host)
            return False
        log.debug("Message Read: %s", msg)
        try:
            handler(msg, sender_host)
        except Exception:
            log.exception("Handler for %s failed", msg.kind.value)
            return False
        return True

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.receive_once()
            except OSError:
                if self._stop_event.is_set():
                    break
                log.exception("Multicast receive error")
                self._stop_event.wait(self.config.seconds("so_timeout"))
