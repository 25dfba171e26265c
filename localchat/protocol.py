"""Wire format shared by the daemon, its peers and the chat client.

Every frame is one JSON document on its own line.  Commands and daemon
messages are externally tagged: a variant without data is a bare JSON
string (``"GetPeers"``), a variant with data is a one-key object whose key
names the variant (``{"SetUsername": {"username": "..."}}``).  Timestamps
are RFC 3339 strings in UTC.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar, Dict, Optional, Tuple, Type, Union

__all__ = [
    "ProtocolError",
    "IpcPeer",
    "Message",
    "GetPeers",
    "SendMessage",
    "RequestHistory",
    "SetUsername",
    "ClearDaemonPeerCache",
    "DaemonStatus",
    "PeerList",
    "NewMessage",
    "HistoryResponse",
    "ErrorMessage",
    "IdentityInfo",
    "Success",
    "Command",
    "DaemonMessage",
    "format_timestamp",
    "parse_timestamp",
    "encode",
    "decode_command",
    "decode_daemon_message",
    "decode_message",
]


class ProtocolError(ValueError):
    """Raised when a frame cannot be decoded."""


# --- timestamps -----------------------------------------------------------

_TIMESTAMP = re.compile(
    r"(\d{4})-(\d{2})-(\d{2})[Tt](\d{2}):(\d{2}):(\d{2})"
    r"(?:\.(\d+))?"
    r"([Zz]|[+-]\d{2}:\d{2})\Z"
)


def format_timestamp(moment: datetime) -> str:
    """Render a datetime as an RFC 3339 UTC string ending in ``Z``.

    The fraction is left out when zero and otherwise written with 3 or 6
    digits, whichever is shortest without losing precision.  A naive
    datetime is taken to be UTC already.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    base = moment.strftime("%Y-%m-%dT%H:%M:%S")
    micros = moment.microsecond
    if micros == 0:
        fraction = ""
    elif micros % 1000 == 0:
        fraction = f".{micros // 1000:03d}"
    else:
        fraction = f".{micros:06d}"
    return f"{base}{fraction}Z"


def parse_timestamp(text: str) -> datetime:
    """Parse an RFC 3339 timestamp into an aware UTC datetime."""
    if not isinstance(text, str):
        raise ProtocolError(f"timestamp must be a string, got {type(text).__name__}")
    match = _TIMESTAMP.match(text)
    if match is None:
        raise ProtocolError(f"invalid timestamp: {text!r}")
    year, month, day, hour, minute, second, fraction, offset = match.groups()
    micros = int((fraction or "").ljust(6, "0")[:6])
    if offset in ("Z", "z"):
        zone = timezone.utc
    else:
        sign = -1 if offset[0] == "-" else 1
        hours, minutes = int(offset[1:3]), int(offset[4:6])
        if hours > 23 or minutes > 59:
            raise ProtocolError(f"invalid timestamp offset: {text!r}")
        zone = timezone(sign * timedelta(hours=hours, minutes=minutes))
    try:
        moment = datetime(
            int(year), int(month), int(day),
            int(hour), int(minute), int(second), micros, tzinfo=zone,
        )
    except ValueError as exc:
        raise ProtocolError(f"invalid timestamp: {text!r}") from exc
    return moment.astimezone(timezone.utc)


# --- field helpers --------------------------------------------------------

def _expect_object(payload: Any, what: str) -> Dict[str, Any]:
    if not isinstance(payload, dict):
        raise ProtocolError(f"{what}: expected a JSON object")
    return payload


def _field(payload: Dict[str, Any], key: str, what: str) -> Any:
    if key not in payload:
        raise ProtocolError(f"{what}: missing field `{key}`")
    return payload[key]


def _string(value: Any, key: str, what: str) -> str:
    if not isinstance(value, str):
        raise ProtocolError(f"{what}: field `{key}` must be a string")
    return value


def _str_field(payload: Dict[str, Any], key: str, what: str) -> str:
    return _string(_field(payload, key, what), key, what)


def _opt_str_field(payload: Dict[str, Any], key: str, what: str) -> Optional[str]:
    value = payload.get(key)
    return None if value is None else _string(value, key, what)


def _bool_field(payload: Dict[str, Any], key: str, what: str) -> bool:
    value = _field(payload, key, what)
    if not isinstance(value, bool):
        raise ProtocolError(f"{what}: field `{key}` must be a boolean")
    return value


def _port(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 0xFFFF:
        raise ProtocolError(f"{what}: field `port` must be an integer from 0 to 65535")
    return value


def _list(value: Any, key: str, what: str) -> list:
    if not isinstance(value, list):
        raise ProtocolError(f"{what}: field `{key}` must be a list")
    return value


# --- records --------------------------------------------------------------

@dataclass(frozen=True)
class IpcPeer:
    """A peer as reported to the client; address fields are daemon-side only."""

    id: str
    username: str
    ip: Optional[str] = None
    port: Optional[int] = None

    def _payload(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"id": self.id, "username": self.username}
        if self.ip is not None:
            data["ip"] = self.ip
        if self.port is not None:
            data["port"] = self.port
        return data

    @classmethod
    def _from_payload(cls, payload: Any) -> "IpcPeer":
        what = "IpcPeer"
        data = _expect_object(payload, what)
        port = data.get("port")
        return cls(
            id=_str_field(data, "id", what),
            username=_str_field(data, "username", what),
            ip=_opt_str_field(data, "ip", what),
            port=None if port is None else _port(port, what),
        )


@dataclass(frozen=True)
class Message:
    """A chat message exchanged between peers and shown to the user."""

    id: str
    sender: str
    recipient: str
    content: str
    timestamp: datetime
    is_self: bool

    def _payload(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "sender": self.sender,
            "recipient": self.recipient,
            "content": self.content,
            "timestamp": format_timestamp(self.timestamp),
            "is_self": self.is_self,
        }

    @classmethod
    def _from_payload(cls, payload: Any) -> "Message":
        what = "Message"
        data = _expect_object(payload, what)
        return cls(
            id=_str_field(data, "id", what),
            sender=_str_field(data, "sender", what),
            recipient=_str_field(data, "recipient", what),
            content=_str_field(data, "content", what),
            timestamp=parse_timestamp(_field(data, "timestamp", what)),
            is_self=_bool_field(data, "is_self", what),
        )


# --- commands from the client to the daemon ------------------------------

@dataclass(frozen=True)
class GetPeers:
    """Ask the daemon for the peers it knows."""

    TAG: ClassVar[str] = "GetPeers"
    UNIT: ClassVar[bool] = True


@dataclass(frozen=True)
class SendMessage:
    """Ask the daemon to deliver text to a peer."""

    recipient_id: str
    content: str

    TAG: ClassVar[str] = "SendMessage"
    UNIT: ClassVar[bool] = False

    def _payload(self) -> Any:
        return {"recipient_id": self.recipient_id, "content": self.content}

    @classmethod
    def _from_payload(cls, payload: Any) -> "SendMessage":
        data = _expect_object(payload, cls.TAG)
        return cls(
            recipient_id=_str_field(data, "recipient_id", cls.TAG),
            content=_str_field(data, "content", cls.TAG),
        )


@dataclass(frozen=True)
class RequestHistory:
    """Ask the daemon for stored messages with a peer."""

    peer_id: str
    since_timestamp: Optional[datetime] = None

    TAG: ClassVar[str] = "RequestHistory"
    UNIT: ClassVar[bool] = False

    def _payload(self) -> Any:
        since = None if self.since_timestamp is None else format_timestamp(self.since_timestamp)
        return {"peer_id": self.peer_id, "since_timestamp": since}

    @classmethod
    def _from_payload(cls, payload: Any) -> "RequestHistory":
        data = _expect_object(payload, cls.TAG)
        since = data.get("since_timestamp")
        return cls(
            peer_id=_str_field(data, "peer_id", cls.TAG),
            since_timestamp=None if since is None else parse_timestamp(since),
        )


@dataclass(frozen=True)
class SetUsername:
    """Tell the daemon which name the user chose."""

    username: str

    TAG: ClassVar[str] = "SetUsername"
    UNIT: ClassVar[bool] = False

    def _payload(self) -> Any:
        return {"username": self.username}

    @classmethod
    def _from_payload(cls, payload: Any) -> "SetUsername":
        data = _expect_object(payload, cls.TAG)
        return cls(username=_str_field(data, "username", cls.TAG))


@dataclass(frozen=True)
class ClearDaemonPeerCache:
    """Ask the daemon to forget the peers it has discovered."""

    TAG: ClassVar[str] = "ClearDaemonPeerCache"
    UNIT: ClassVar[bool] = True


# --- messages from the daemon to the client ------------------------------

@dataclass(frozen=True)
class DaemonStatus:
    """Network state of the daemon, or of the connection to it."""

    is_connected_to_network: bool
    active_interface_name: Optional[str] = None

    TAG: ClassVar[str] = "DaemonStatus"
    UNIT: ClassVar[bool] = False

    def _payload(self) -> Any:
        return {
            "is_connected_to_network": self.is_connected_to_network,
            "active_interface_name": self.active_interface_name,
        }

    @classmethod
    def _from_payload(cls, payload: Any) -> "DaemonStatus":
        data = _expect_object(payload, cls.TAG)
        return cls(
            is_connected_to_network=_bool_field(data, "is_connected_to_network", cls.TAG),
            active_interface_name=_opt_str_field(data, "active_interface_name", cls.TAG),
        )


@dataclass(frozen=True)
class PeerList:
    """The peers the daemon currently knows."""

    peers: Tuple[IpcPeer, ...] = ()

    TAG: ClassVar[str] = "PeerList"
    UNIT: ClassVar[bool] = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "peers", tuple(self.peers))

    def _payload(self) -> Any:
        return [peer._payload() for peer in self.peers]

    @classmethod
    def _from_payload(cls, payload: Any) -> "PeerList":
        items = _list(payload, "peers", cls.TAG)
        return cls(tuple(IpcPeer._from_payload(item) for item in items))


@dataclass(frozen=True)
class NewMessage:
    """A message that arrived from another peer."""

    message: Message

    TAG: ClassVar[str] = "NewMessage"
    UNIT: ClassVar[bool] = False

    def _payload(self) -> Any:
        return self.message._payload()

    @classmethod
    def _from_payload(cls, payload: Any) -> "NewMessage":
        return cls(Message._from_payload(payload))


@dataclass(frozen=True)
class HistoryResponse:
    """Stored messages exchanged with a peer."""

    peer_id: str
    messages: Tuple[Message, ...] = ()

    TAG: ClassVar[str] = "HistoryResponse"
    UNIT: ClassVar[bool] = False

    def __post_init__(self) -> None:
        object.__setattr__(self, "messages", tuple(self.messages))

    def _payload(self) -> Any:
        return {
            "peer_id": self.peer_id,
            "messages": [message._payload() for message in self.messages],
        }

    @classmethod
    def _from_payload(cls, payload: Any) -> "HistoryResponse":
        data = _expect_object(payload, cls.TAG)
        items = _list(_field(data, "messages", cls.TAG), "messages", cls.TAG)
        return cls(
            peer_id=_str_field(data, "peer_id", cls.TAG),
            messages=tuple(Message._from_payload(item) for item in items),
        )


@dataclass(frozen=True)
class ErrorMessage:
    """An error reported by the daemon."""

    text: str

    TAG: ClassVar[str] = "Error"
    UNIT: ClassVar[bool] = False

    def _payload(self) -> Any:
        return self.text

    @classmethod
    def _from_payload(cls, payload: Any) -> "ErrorMessage":
        return cls(_string(payload, "0", cls.TAG))


@dataclass(frozen=True)
class IdentityInfo:
    """The full identifier the daemon assigned to the user."""

    user_id: str

    TAG: ClassVar[str] = "IdentityInfo"
    UNIT: ClassVar[bool] = False

    def _payload(self) -> Any:
        return {"user_id": self.user_id}

    @classmethod
    def _from_payload(cls, payload: Any) -> "IdentityInfo":
        data = _expect_object(payload, cls.TAG)
        return cls(user_id=_str_field(data, "user_id", cls.TAG))


@dataclass(frozen=True)
class Success:
    """A confirmation reported by the daemon."""

    text: str

    TAG: ClassVar[str] = "Success"
    UNIT: ClassVar[bool] = False

    def _payload(self) -> Any:
        return self.text

    @classmethod
    def _from_payload(cls, payload: Any) -> "Success":
        return cls(_string(payload, "0", cls.TAG))


Command = Union[GetPeers, SendMessage, RequestHistory, SetUsername, ClearDaemonPeerCache]
DaemonMessage = Union[
    DaemonStatus, PeerList, NewMessage, HistoryResponse, ErrorMessage, IdentityInfo, Success
]

_COMMANDS: Dict[str, Type[Any]] = {
    cls.TAG: cls
    for cls in (GetPeers, SendMessage, RequestHistory, SetUsername, ClearDaemonPeerCache)
}
_DAEMON_MESSAGES: Dict[str, Type[Any]] = {
    cls.TAG: cls
    for cls in (
        DaemonStatus, PeerList, NewMessage, HistoryResponse, ErrorMessage, IdentityInfo, Success
    )
}
_TAGGED = tuple(_COMMANDS.values()) + tuple(_DAEMON_MESSAGES.values())


# --- encoding and decoding -----------------------------------------------

def _dumps(data: Any) -> str:
    return json.dumps(data, ensure_ascii=False, separators=(",", ":"))


def encode(item: Any) -> str:
    """Serialise a command, daemon message, message or peer to one JSON line (no newline)."""
    if isinstance(item, (Message, IpcPeer)):
        return _dumps(item._payload())
    if isinstance(item, _TAGGED):
        if item.UNIT:
            return _dumps(item.TAG)
        return _dumps({item.TAG: item._payload()})
    raise TypeError(f"cannot encode {type(item).__name__}")


def _load(text: Union[str, bytes]) -> Any:
    try:
        return json.loads(text)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        raise ProtocolError(f"malformed JSON: {exc}") from exc


def _decode_tagged(text: Union[str, bytes], table: Dict[str, Type[Any]], kind: str) -> Any:
    data = _load(text)
    if isinstance(data, str):
        cls = table.get(data)
        if cls is None:
            raise ProtocolError(f"unknown {kind} variant `{data}`")
        if not cls.UNIT:
            raise ProtocolError(f"{kind} variant `{data}` needs data")
        return cls()
    if isinstance(data, dict) and len(data) == 1:
        ((tag, payload),) = data.items()
        cls = table.get(tag)
        if cls is None:
            raise ProtocolError(f"unknown {kind} variant `{tag}`")
        if cls.UNIT:
            if payload is not None:
                raise ProtocolError(f"{kind} variant `{tag}` takes no data")
            return cls()
        return cls._from_payload(payload)
    raise ProtocolError(f"expected a {kind}: a variant name or a one-key object")


def decode_command(text: Union[str, bytes]) -> Command:
    """Parse a command sent by the client."""
    return _decode_tagged(text, _COMMANDS, "command")


def decode_daemon_message(text: Union[str, bytes]) -> DaemonMessage:
    """Parse a message sent by the daemon to the client."""
    return _decode_tagged(text, _DAEMON_MESSAGES, "daemon message")


def decode_message(text: Union[str, bytes]) -> Message:
    """Parse a chat message sent between peers."""
    return Message._from_payload(_load(text))