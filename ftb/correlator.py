"""
Request/response correlation for one operation family.

A Correlator owns two tables, both keyed ``identity:serial``:

  outgoing   requests this peer sent that still await an answer
  incoming   received messages of this family not yet handled

The transport drops every search/download/upload/delete message into the
matching correlator's inbox.  The correlator loop drains the inbox:

  *-request            addressed to us → local action → response(s)
                       addressed elsewhere → dropped
  *-result / *-error   response key in outgoing → one Outcome
                       unknown key (foreign, late, duplicate) → dropped

Entries leave the inbox under the lock before they are handled, so each is
handled at most once.  Outgoing entries expire after requestTimeout.

A correlator built with ``serving=False`` only correlates answers to its own
requests and drops every request it receives.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, ClassVar, Iterable, Optional

from .config import Config
from .outcome import Outcome, OutcomeSink, log_sink
from .protocol import Family, Message, MessageFactory, TargetPayload
from .worker import Ticker

log = logging.getLogger("ftb.correlator")


@dataclass
class Pending:
    request: Message
    sent_at: float
    local_path: Optional[Path] = None


@dataclass(frozen=True)
class Inbound:
    message: Message
    sender_host: str


class Correlator:
    family: ClassVar[Family]
    # search answers fan out (one result per match, from every peer)
    consume_on_match: ClassVar[bool] = True

    def __init__(
        self,
        config: Config,
        factory: MessageFactory,
        send: Callable[[Message], bool],
        sink: OutcomeSink | None = None,
        clock: Callable[[], float] = time.monotonic,
        serving: bool = True,
    ) -> None:
        self.config = config
        self.serving = serving
        self.identity = factory.identity
        self.root = Path(config.root_dir)
        self._factory = factory
        self._send = send
        self._sink = sink or log_sink
        self._clock = clock
        self._outgoing: dict[str, Pending] = {}
        self._incoming: dict[str, Inbound] = {}
        self._lock = threading.Lock()
        self._ticker = Ticker(f"ftb-{self.family.value}",
                              config.seconds("poll_interval"), self.poll)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        self._ticker.start()

    def stop(self) -> None:
        self._ticker.stop()

    def join(self, timeout: float | None = None) -> None:
        self._ticker.join(timeout)

    # ------------------------------------------------------------------
    # Table access
    # ------------------------------------------------------------------

    def submit(self, request: Message, local_path: Optional[Path] = None) -> bool:
        """Record *request* as pending and send it.  False if the send failed."""
        pending = Pending(request=request, sent_at=self._clock(), local_path=local_path)
        with self._lock:
            self._outgoing[request.key] = pending
        if self._send(request):
            return True
        with self._lock:
            self._outgoing.pop(request.key, None)
        return False

    def receive(self, msg: Message, sender_host: str) -> None:
        """Transport handler: queue *msg* for the correlator loop."""
        with self._lock:
            self._incoming[msg.key] = Inbound(msg, sender_host)

    def take_incoming(self) -> list[Inbound]:
        with self._lock:
            items = list(self._incoming.values())
            self._incoming.clear()
        return items

    def pending(self) -> list[Pending]:
        with self._lock:
            return list(self._outgoing.values())

    def inbox_size(self) -> int:
        with self._lock:
            return len(self._incoming)

    def evict_stale(self) -> int:
        """Drop pending requests older than requestTimeout."""
        limit = self.config.seconds("request_timeout")
        now = self._clock()
        with self._lock:
            stale = [k for k, p in self._outgoing.items() if now - p.sent_at > limit]
            for k in stale:
                del self._outgoing[k]
        for k in stale:
            log.debug("%s request %s expired unanswered", self.family.value, k)
        return len(stale)

    # ------------------------------------------------------------------
    # Processing
    # ------------------------------------------------------------------

    def poll(self) -> None:
        self.process_incoming()
        self.evict_stale()

    def process_incoming(self) -> int:
        """Handle everything currently in the inbox.  Returns the count."""
        items = self.take_incoming()
        for inbound in items:
            try:
                self.handle(inbound)
            except Exception:
                log.exception("Error handling %s", inbound.message.kind.value)
        return len(items)

    def handle(self, inbound: Inbound) -> None:
        msg = inbound.message
        if msg.family is not self.family:
            log.debug("%s correlator ignoring %s", self.family.value, msg.kind.value)
            return
        if msg.kind.is_request:
            self._on_request(msg)
        else:
            self._on_response(msg, inbound.sender_host)

    def _on_request(self, msg: Message) -> None:
        if not self.serving:
            log.debug("Request-only peer: ignoring %s", msg.kind.value)
            return
        if not self.in_scope(msg):
            return
        if not self.enabled(msg):
            log.info("%s refused: service disabled", msg.kind.value)
            self._send(self._factory.error(msg))
            return
        for reply in self.serve(msg):
            self._send(reply)

    def _on_response(self, msg: Message, sender_host: str) -> None:
        key = msg.response_key
        with self._lock:
            pending = self._outgoing.get(key) if key else None
            if pending is not None and self.consume_on_match:
                del self._outgoing[key]
        if pending is None:
            log.debug("No pending request for %s (%s)", key, msg.kind.value)
            return
        self.complete(pending, msg, sender_host)

    def emit(self, outcome: Outcome) -> None:
        self._sink(outcome)

    # ------------------------------------------------------------------
    # Per-family behaviour
    # ------------------------------------------------------------------

    def in_scope(self, msg: Message) -> bool:
        """Targeted requests are only served by the peer they name."""
        if isinstance(msg.payload, TargetPayload):
            return msg.payload.target_identity == self.identity
        return True

    def enabled(self, msg: Message) -> bool:
        raise NotImplementedError

    def serve(self, request: Message) -> Iterable[Message]:
        """Perform the local action for *request*; return the replies."""
        raise NotImplementedError

    def complete(self, pending: Pending, response: Message, sender_host: str) -> None:
        """Turn a matched response into exactly one Outcome."""
        raise NotImplementedError
