"""
Configuration for an FTB peer.

Priority (highest to lowest):
  1. Command-line flags (applied by the CLI via ``Config.override``)
  2. Environment variables (FTB_ROOT_DIR, FTB_MCAST_PORT, ...)
  3. Properties file (``key=value`` lines, e.g. ``rootDir=../root_dir``)
  4. Defaults below

Times are milliseconds, as in the properties file.
"""

from __future__ import annotations

import getpass
import logging
import os
import socket
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Optional

from dotenv import dotenv_values

from .protocol import (
    MULTICAST_GROUP,
    MULTICAST_PORT,
    MULTICAST_TTL,
    SEARCH_MATCH_OPTIONS,
    Services,
)

log = logging.getLogger("ftb.config")

DEFAULT_PROPERTIES: str = "filetreebrowser.properties"

# properties-file key → Config attribute
PROPERTY_KEYS: dict[str, str] = {
    "id": "id",
    "rootDir": "root_dir",
    "logFile": "log_file",
    "mAddr": "mcast_addr",
    "mPort": "mcast_port",
    "mTTL": "mcast_ttl",
    "loopbackOff": "loopback_off",
    "reuseAddr": "reuse_addr",
    "soTimeout": "so_timeout",
    "sleepTime": "sleep_time",
    "maximumDiscoveryMessageSize": "maximum_discovery_message_size",
    "maximumBeaconPeriod": "maximum_beacon_period",
    "serverPort": "server_port",
    "requestTimeout": "request_timeout",
    "transferTimeout": "transfer_timeout",
    "pollInterval": "poll_interval",
    "remoteBrowse": "remote_browse",
    "search": "search",
    "searchMatch": "search_match",
    "download": "download",
    "upload": "upload",
    "delete": "delete",
}


@dataclass
class Config:
    """Everything a peer's components read; passed to each at construction."""

    # Identity (username part; hostname is always the local FQDN)
    id: Optional[str] = None
    hostname: str = field(default_factory=socket.getfqdn)

    # File space
    root_dir: Path = field(default_factory=lambda: Path("../root_dir"))
    log_file: Optional[Path] = None

    # Multicast
    mcast_addr: str = MULTICAST_GROUP
    mcast_port: int = MULTICAST_PORT
    mcast_ttl: int = MULTICAST_TTL
    mcast_interface: str = "0.0.0.0"
    loopback_off: bool = False
    reuse_addr: bool = True
    so_timeout: int = 100

    # Timing (ms)
    sleep_time: int = 5000
    maximum_beacon_period: int = 1000
    request_timeout: int = 60000
    transfer_timeout: int = 60000
    poll_interval: int = 50

    maximum_discovery_message_size: int = 500
    server_port: Optional[int] = None   # advertised in beacons; mcast_port if unset

    # Services offered to other peers
    remote_browse: bool = False
    search: bool = True
    search_match: str = "path-filename-substring"
    download: bool = True
    upload: bool = False
    delete: bool = False

    # ------------------------------------------------------------------

    @property
    def identity(self) -> str:
        return f"{self.id or getpass.getuser()}@{self.hostname}"

    @property
    def advertised_port(self) -> int:
        return self.server_port if self.server_port is not None else self.mcast_port

    @property
    def services(self) -> Services:
        return Services(
            remote_browse=self.remote_browse,
            search=self.search,
            search_match=self.search_match if self.search else "none",
            download=self.download,
            upload=self.upload,
            delete=self.delete,
        )

    def seconds(self, name: str) -> float:
        """Return the millisecond setting *name* in seconds."""
        return getattr(self, name) / 1000.0

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def override(self, **values: Any) -> "Config":
        """Return a copy with every non-None value in *values* applied."""
        changes = {}
        for name, raw in values.items():
            if raw is None:
                continue
            value = _coerce(name, raw)
            if value is not None:
                changes[name] = value
        return replace(self, **changes)

    @classmethod
    def from_properties(cls, path: Path, base: "Config | None" = None) -> "Config":
        """Load a ``key=value`` properties file on top of *base*."""
        config = base or cls()
        if not path.exists():
            log.debug("No properties file at %s", path)
            return config

        raw = dotenv_values(path)
        values: dict[str, Any] = {}
        for key, value in raw.items():
            attr = PROPERTY_KEYS.get(key)
            if attr is None:
                log.warning("%s: unknown key %r ignored", path, key)
                continue
            if value is None:
                continue
            log.info("%s %s: %s -> %s", path, key, getattr(config, attr), value)
            values[attr] = value
        return config.override(**values)

    @classmethod
    def from_env(cls, base: "Config | None" = None) -> "Config":
        """Apply FTB_* environment variables on top of *base*."""
        config = base or cls()
        values = {}
        for f in fields(cls):
            env = os.getenv(f"FTB_{f.name.upper()}")
            if env is not None:
                values[f.name] = env
        return config.override(**values)

    def describe(self) -> list[str]:
        """``-* key=value`` lines for the startup log."""
        lines = [f"-* identity={self.identity}"]
        for key, attr in PROPERTY_KEYS.items():
            lines.append(f"-* {key}={getattr(self, attr)}")
        return lines


def load_config(
    properties: Optional[Path] = None,
    **overrides: Any,
) -> Config:
    """Defaults < properties file < environment < *overrides*."""
    config = Config()
    path = properties or Path(DEFAULT_PROPERTIES)
    config = Config.from_properties(path, config)
    config = Config.from_env(config)
    return config.override(**overrides)


# ---------------------------------------------------------------------------
# Value coercion
# ---------------------------------------------------------------------------

_BOOL_FIELDS = {"loopback_off", "reuse_addr", "remote_browse", "search",
                "download", "upload", "delete"}
_INT_FIELDS = {"mcast_port", "mcast_ttl", "so_timeout", "sleep_time",
               "maximum_beacon_period", "request_timeout", "transfer_timeout",
               "poll_interval", "maximum_discovery_message_size", "server_port"}
_PATH_FIELDS = {"root_dir", "log_file"}


def _coerce(name: str, raw: Any) -> Any:
    """Convert *raw* for field *name*; None (with a warning) when invalid."""
    if not isinstance(raw, str):
        return raw
    value = raw.strip()
    if name in _BOOL_FIELDS:
        if value.lower() not in ("true", "false"):
            log.warning("bad value for %r: %r -> keeping previous", name, raw)
            return None
        return value.lower() == "true"
    if name in _INT_FIELDS:
        try:
            return int(value)
        except ValueError:
            log.warning("bad value for %r: %r -> keeping previous", name, raw)
            return None
    if name in _PATH_FIELDS:
        return Path(value)
    if name == "search_match" and value not in SEARCH_MATCH_OPTIONS:
        log.warning("bad value for 'searchMatch': %r -> using 'none'", raw)
        return "none"
    return value
