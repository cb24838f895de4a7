"""
Beacon-based peer discovery for FTB.

- BeaconSender sends a beacon every maximumBeaconPeriod ms
- BeaconDirectory keeps the latest beacon per identity:serverPort
- The expiry sweep runs every sleepTime ms and drops entries not
  refreshed within maximumBeaconPeriod

Usage::

    directory = BeaconDirectory(config)
    mux.register(Family.BEACON, directory.receive)
    directory.start()

    for entry in directory.entries():
        print(entry)
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable, Optional

from .config import Config
from .protocol import BeaconPayload, Message, MessageFactory, Services
from .worker import Ticker

log = logging.getLogger("ftb.beacon")


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------

@dataclass
class BeaconEntry:
    beacon: Message
    host: str               # address the beacon came from
    last_seen: float

    @property
    def identity(self) -> str:
        return self.beacon.identity

    @property
    def server_port(self) -> int:
        assert isinstance(self.beacon.payload, BeaconPayload)
        return self.beacon.payload.server_port

    @property
    def services(self) -> Services:
        assert isinstance(self.beacon.payload, BeaconPayload)
        return self.beacon.payload.services

    @property
    def key(self) -> str:
        return beacon_key(self.identity, self.server_port)

    def __str__(self) -> str:
        return (f"Identifier: {self.identity}, Port: {self.server_port}, "
                f"Services: {self.services}.")


def beacon_key(identity: str, server_port: int) -> str:
    return f"{identity}:{server_port}"


# ---------------------------------------------------------------------------
# Directory
# ---------------------------------------------------------------------------

class BeaconDirectory:
    """TTL-expiring table of observed peers."""

    def __init__(
        self,
        config: Config,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self._clock = clock
        self._entries: dict[str, BeaconEntry] = {}
        self._lock = threading.Lock()
        self._sweeper = Ticker("ftb-beacon-expiry", config.seconds("sleep_time"),
                               self.expire)

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        self._sweeper.start()

    def stop(self) -> None:
        self._sweeper.stop()

    def join(self, timeout: float | None = None) -> None:
        self._sweeper.join(timeout)

    # -- mutation ---------------------------------------------------------

    def receive(self, msg: Message, sender_host: str) -> None:
        """Transport handler: insert or refresh the beacon's entry."""
        if not isinstance(msg.payload, BeaconPayload):
            return
        entry = BeaconEntry(beacon=msg, host=sender_host, last_seen=self._clock())
        with self._lock:
            is_new = entry.key not in self._entries
            self._entries[entry.key] = entry
        if is_new:
            log.info("Peer seen: %s (%s)", entry.key, sender_host)

    def expire(self) -> int:
        """Remove entries older than maximumBeaconPeriod.  Returns count removed."""
        limit = self.config.seconds("maximum_beacon_period")
        now = self._clock()
        with self._lock:
            stale = [k for k, e in self._entries.items() if now - e.last_seen > limit]
            for k in stale:
                del self._entries[k]
        for k in stale:
            log.debug("Beacon expired: %s", k)
        return len(stale)

    # -- queries ----------------------------------------------------------

    def entries(self) -> list[BeaconEntry]:
        with self._lock:
            return list(self._entries.values())

    def lookup(self, identity: str, server_port: int) -> Optional[BeaconEntry]:
        with self._lock:
            return self._entries.get(beacon_key(identity, server_port))

    def find(self, identity: str) -> Optional[BeaconEntry]:
        """First entry announced by *identity*, whatever its port."""
        return next((e for e in self.entries() if e.identity == identity), None)

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)


# ---------------------------------------------------------------------------
# Sender
# ---------------------------------------------------------------------------

class BeaconSender:
    """Announces this peer every maximumBeaconPeriod ms."""

    def __init__(
        self,
        config: Config,
        factory: MessageFactory,
        send: Callable[[Message], bool],
    ) -> None:
        self.config = config
        self._factory = factory
        self._send = send
        self._ticker = Ticker("ftb-beacon-tx", config.seconds("maximum_beacon_period"),
                              self.announce, immediate=True)

    def announce(self) -> bool:
        beacon = self._factory.beacon(self.config.advertised_port, self.config.services)
        return self._send(beacon)

    def start(self) -> None:
        self._ticker.start()

    def stop(self) -> None:
        self._ticker.stop()

    def join(self, timeout: float | None = None) -> None:
        self._ticker.join(timeout)
