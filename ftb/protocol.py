"""
FTB control-plane protocol — wire format encode/decode.

Datagram layout (one ASCII line, UDP multicast):
  :{identity}:{serial}:{yyyyMMdd-HHmmss.SSS}:{kind}:{payload...}:

identity = username@hostname.  Payload fields by kind:

  beacon                          serverPort ; remoteBrowse=..,search=..,searchMatch=..,
                                               download=..,upload=..,delete=..
  search-request                  searchType ; searchString
  search-result                   responseIdentity ; responseSerial ; matchedPath
  download/upload/delete-request  targetIdentity ; targetFilePath
  download/upload-result          responseIdentity ; responseSerial ; fileTransferPort
  delete-result, *-error          responseIdentity ; responseSerial

Fields are not escaped: a field containing ':' produces an undecodable line.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Union

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

MULTICAST_GROUP: str = "239.255.41.5"
MULTICAST_PORT: int = 4105
MULTICAST_TTL: int = 2
MAX_DATAGRAM: int = 1024            # receive buffer
ENCODING: str = "ascii"
SEP: str = ":"
TIMESTAMP_FMT: str = "%Y%m%d-%H%M%S"  # + ".SSS"

SEARCH_TYPES: tuple[str, ...] = ("path", "filename", "substring")
SEARCH_MATCH_OPTIONS: tuple[str, ...] = (
    "none", "path", "path-filename", "path-filename-substring",
)


# ---------------------------------------------------------------------------
# Message kinds
# ---------------------------------------------------------------------------

class Family(str, Enum):
    BEACON   = "beacon"
    SEARCH   = "search"
    DOWNLOAD = "download"
    UPLOAD   = "upload"
    DELETE   = "delete"


class MsgKind(str, Enum):
    BEACON          = "beacon"
    SEARCH_REQUEST  = "search-request"
    SEARCH_RESULT   = "search-result"
    SEARCH_ERROR    = "search-error"
    DOWNLOAD_REQUEST = "download-request"
    DOWNLOAD_RESULT = "download-result"
    DOWNLOAD_ERROR  = "download-error"
    UPLOAD_REQUEST  = "upload-request"
    UPLOAD_RESULT   = "upload-result"
    UPLOAD_ERROR    = "upload-error"
    DELETE_REQUEST  = "delete-request"
    DELETE_RESULT   = "delete-result"
    DELETE_ERROR    = "delete-error"

    @property
    def family(self) -> Family:
        return Family(self.value.split("-", 1)[0])

    @property
    def is_request(self) -> bool:
        return self.value.endswith("-request")

    @property
    def is_result(self) -> bool:
        return self.value.endswith("-result")

    @property
    def is_error(self) -> bool:
        return self.value.endswith("-error")

    @classmethod
    def parse(cls, name: str) -> Optional["MsgKind"]:
        """Case-insensitive lookup; None for anything outside the protocol."""
        try:
            return cls(name.strip().lower())
        except ValueError:
            return None


def kind_for(family: Family, suffix: str) -> MsgKind:
    """kind_for(Family.UPLOAD, "error") -> MsgKind.UPLOAD_ERROR"""
    return MsgKind(f"{family.value}-{suffix}")


# ---------------------------------------------------------------------------
# Payload dataclasses
# ---------------------------------------------------------------------------

def _bool(s: str) -> bool:
    return s.strip().lower() == "true"


def _fmt_bool(b: bool) -> str:
    return "true" if b else "false"


@dataclass(frozen=True)
class Services:
    remote_browse: bool = False
    search: bool = False
    search_match: str = "none"
    download: bool = False
    upload: bool = False
    delete: bool = False

    def encode(self) -> str:
        return ",".join([
            f"remoteBrowse={_fmt_bool(self.remote_browse)}",
            f"search={_fmt_bool(self.search)}",
            f"searchMatch={self.search_match}",
            f"download={_fmt_bool(self.download)}",
            f"upload={_fmt_bool(self.upload)}",
            f"delete={_fmt_bool(self.delete)}",
        ])

    @classmethod
    def decode(cls, field: str) -> "Services":
        values: dict = {}
        for pair in field.split(","):
            name, _, value = pair.partition("=")
            name = name.strip()
            if name == "remoteBrowse":
                values["remote_browse"] = _bool(value)
            elif name == "searchMatch":
                values["search_match"] = value.strip()
            elif name in ("search", "download", "upload", "delete"):
                values[name] = _bool(value)
        return cls(**values)

    def allows_search(self, search_type: str) -> bool:
        """Whether *search_type* is served under this searchMatch level."""
        if not self.search:
            return False
        levels = {"path": 1, "path-filename": 2, "path-filename-substring": 3}
        needed = {"path": 1, "filename": 2, "substring": 3}
        return levels.get(self.search_match, 0) >= needed.get(search_type.lower(), 99)

    def __str__(self) -> str:
        return self.encode().replace(",", ", ")


@dataclass(frozen=True)
class BeaconPayload:
    server_port: int
    services: Services

    def fields(self) -> list[str]:
        return [str(self.server_port), self.services.encode()]

    @classmethod
    def parse(cls, f: list[str]) -> "BeaconPayload":
        return cls(server_port=int(f[0]), services=Services.decode(f[1]))


@dataclass(frozen=True)
class SearchRequestPayload:
    search_type: str
    search_string: str

    def fields(self) -> list[str]:
        return [self.search_type, self.search_string]

    @classmethod
    def parse(cls, f: list[str]) -> "SearchRequestPayload":
        return cls(search_type=f[0], search_string=f[1])


@dataclass(frozen=True)
class TargetPayload:
    """download/upload/delete-request."""
    target_identity: str
    target_path: str

    def fields(self) -> list[str]:
        return [self.target_identity, self.target_path]

    @classmethod
    def parse(cls, f: list[str]) -> "TargetPayload":
        return cls(target_identity=f[0], target_path=f[1])


@dataclass(frozen=True)
class ReplyPayload:
    """delete-result and every *-error."""
    response_identity: str
    response_serial: int

    @property
    def response_key(self) -> str:
        return f"{self.response_identity}:{self.response_serial}"

    def fields(self) -> list[str]:
        return [self.response_identity, str(self.response_serial)]

    @classmethod
    def parse(cls, f: list[str]) -> "ReplyPayload":
        return cls(response_identity=f[0], response_serial=int(f[1]))


@dataclass(frozen=True)
class SearchResultPayload(ReplyPayload):
    matched_path: str = ""

    def fields(self) -> list[str]:
        return super().fields() + [self.matched_path]

    @classmethod
    def parse(cls, f: list[str]) -> "SearchResultPayload":
        return cls(response_identity=f[0], response_serial=int(f[1]),
                   matched_path=f[2])


@dataclass(frozen=True)
class PortPayload(ReplyPayload):
    """download/upload-result."""
    port: int = -1

    def fields(self) -> list[str]:
        return super().fields() + [str(self.port)]

    @classmethod
    def parse(cls, f: list[str]) -> "PortPayload":
        return cls(response_identity=f[0], response_serial=int(f[1]),
                   port=int(f[2]))


Payload = Union[
    BeaconPayload, SearchRequestPayload, TargetPayload,
    ReplyPayload, SearchResultPayload, PortPayload,
]

# (payload type, number of wire fields) for every kind
_LAYOUT: dict[MsgKind, tuple[type, int]] = {
    MsgKind.BEACON:           (BeaconPayload, 2),
    MsgKind.SEARCH_REQUEST:   (SearchRequestPayload, 2),
    MsgKind.SEARCH_RESULT:    (SearchResultPayload, 3),
    MsgKind.SEARCH_ERROR:     (ReplyPayload, 2),
    MsgKind.DOWNLOAD_REQUEST: (TargetPayload, 2),
    MsgKind.DOWNLOAD_RESULT:  (PortPayload, 3),
    MsgKind.DOWNLOAD_ERROR:   (ReplyPayload, 2),
    MsgKind.UPLOAD_REQUEST:   (TargetPayload, 2),
    MsgKind.UPLOAD_RESULT:    (PortPayload, 3),
    MsgKind.UPLOAD_ERROR:     (ReplyPayload, 2),
    MsgKind.DELETE_REQUEST:   (TargetPayload, 2),
    MsgKind.DELETE_RESULT:    (ReplyPayload, 2),
    MsgKind.DELETE_ERROR:     (ReplyPayload, 2),
}

assert set(_LAYOUT) == set(MsgKind), "protocol layout does not cover every MsgKind"


# ---------------------------------------------------------------------------
# Message
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Message:
    identity: str
    serial: int
    timestamp: datetime
    kind: MsgKind
    payload: Payload

    def __post_init__(self) -> None:
        expected, _ = _LAYOUT[self.kind]
        if type(self.payload) is not expected:
            raise TypeError(
                f"{self.kind.value} carries {expected.__name__}, "
                f"got {type(self.payload).__name__}"
            )

    @property
    def family(self) -> Family:
        return self.kind.family

    @property
    def key(self) -> str:
        """Correlation key of this message as a request."""
        return f"{self.identity}:{self.serial}"

    @property
    def response_key(self) -> Optional[str]:
        """Key of the request this message answers (responses only)."""
        if isinstance(self.payload, ReplyPayload):
            return self.payload.response_key
        return None

    @property
    def hostname(self) -> str:
        return self.identity.rpartition("@")[2]

    def __str__(self) -> str:
        return encode(self)


# ---------------------------------------------------------------------------
# Encoding / decoding
# ---------------------------------------------------------------------------

def format_timestamp(ts: datetime) -> str:
    return f"{ts.strftime(TIMESTAMP_FMT)}.{ts.microsecond // 1000:03d}"


def parse_timestamp(s: str) -> datetime:
    head, dot, millis = s.partition(".")
    if not dot or len(millis) != 3 or not millis.isdigit():
        raise ValueError(f"Bad timestamp: {s!r}")
    return datetime.strptime(head, TIMESTAMP_FMT).replace(microsecond=int(millis) * 1000)


def encode(msg: Message) -> str:
    """Return the wire line for *msg*."""
    fields = [
        msg.identity,
        str(msg.serial),
        format_timestamp(msg.timestamp),
        msg.kind.value,
        *msg.payload.fields(),
    ]
    return SEP + SEP.join(fields) + SEP


def encode_bytes(msg: Message) -> bytes:
    return encode(msg).encode(ENCODING, errors="replace")


def decode(line: str) -> Optional[Message]:
    """
    Parse one wire line.  Returns None for anything that is not a recognized
    message (too few fields, unknown kind, bad numbers or timestamp).
    """
    line = line.strip().strip("\x00").strip()
    if line.startswith(SEP):
        line = line[1:]
    if line.endswith(SEP):
        line = line[:-1]
    parts = line.split(SEP)
    if len(parts) < 5:
        return None

    kind = MsgKind.parse(parts[3])
    if kind is None:
        return None
    payload_type, n_fields = _LAYOUT[kind]
    payload_fields = parts[4:]
    if len(payload_fields) < n_fields:
        return None

    try:
        return Message(
            identity=parts[0],
            serial=int(parts[1]),
            timestamp=parse_timestamp(parts[2]),
            kind=kind,
            payload=payload_type.parse(payload_fields[:n_fields]),
        )
    except (ValueError, IndexError):
        return None


def decode_bytes(data: bytes) -> Optional[Message]:
    return decode(data.decode(ENCODING, errors="replace"))


# ---------------------------------------------------------------------------
# Message factory
# ---------------------------------------------------------------------------

class SerialCounter:
    """
    Serial numbers are milliseconds since the counter was created.  Two
    messages built in the same millisecond would share a correlation key, so
    a repeated value is bumped past the last one issued.
    """

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self._origin_ms = int(clock() * 1000)
        self._last = -1
        self._lock = threading.Lock()

    def next(self) -> int:
        with self._lock:
            serial = int(self._clock() * 1000) - self._origin_ms
            if serial <= self._last:
                serial = self._last + 1
            self._last = serial
            return serial


class MessageFactory:
    """Builds messages stamped with the local identity, serial and time."""

    def __init__(
        self,
        identity: str,
        serials: SerialCounter | None = None,
        now: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.identity = identity
        self._serials = serials or SerialCounter()
        self._now = now

    def _build(self, kind: MsgKind, payload: Payload) -> Message:
        ts = self._now()
        return Message(
            identity=self.identity,
            serial=self._serials.next(),
            timestamp=ts.replace(microsecond=ts.microsecond // 1000 * 1000),
            kind=kind,
            payload=payload,
        )

    # -- requests ---------------------------------------------------------

    def beacon(self, server_port: int, services: Services) -> Message:
        return self._build(MsgKind.BEACON, BeaconPayload(server_port, services))

    def search_request(self, search_type: str, search_string: str) -> Message:
        return self._build(MsgKind.SEARCH_REQUEST,
                           SearchRequestPayload(search_type, search_string))

    def target_request(self, family: Family, target_identity: str, path: str) -> Message:
        return self._build(kind_for(family, "request"),
                           TargetPayload(target_identity, path))

    # -- responses --------------------------------------------------------

    def search_result(self, request: Message, matched_path: str) -> Message:
        return self._build(MsgKind.SEARCH_RESULT, SearchResultPayload(
            request.identity, request.serial, matched_path))

    def port_result(self, request: Message, port: int) -> Message:
        return self._build(kind_for(request.family, "result"), PortPayload(
            request.identity, request.serial, port))

    def reply(self, request: Message, kind: MsgKind) -> Message:
        """delete-result or any *-error answering *request*."""
        return self._build(kind, ReplyPayload(request.identity, request.serial))

    def error(self, request: Message) -> Message:
        return self.reply(request, kind_for(request.family, "error"))
