"""User identity of a daemon instance and the daemon's environment settings."""

from __future__ import annotations

import json
import logging
import os
import re
import secrets
import string
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Mapping, Optional, Union

__all__ = [
    "DEFAULT_TCP_PORT",
    "DEFAULT_SOCKET_PATH",
    "UserIdentity",
    "DaemonConfig",
    "random_suffix",
    "sanitize_mdns_name",
    "make_identity",
    "display_name",
    "instance_number",
    "identity_file_path",
    "load_identity",
    "save_identity",
]

logger = logging.getLogger(__name__)

DEFAULT_TCP_PORT = 12345
DEFAULT_SOCKET_PATH = "/tmp/localchat_daemon.sock"
TCP_PORT_ENV = "LOCALCHAT_TCP_PORT"
SOCKET_PATH_ENV = "LOCALCHAT_SOCKET_PATH"
FALLBACK_MDNS_NAME = "LocalChat"
ID_SEPARATOR = " - "

_ALPHANUMERIC = string.ascii_letters + string.digits
_UNSIGNED = re.compile(r"\+?[0-9]+")
_U16_MAX = 0xFFFF


def _parse_u16(text: str) -> Optional[int]:
    if not _UNSIGNED.fullmatch(text):
        return None
    value = int(text)
    return value if value <= _U16_MAX else None


@dataclass(frozen=True)
class UserIdentity:
    """The names under which this daemon's user is known."""

    user_provided_name: str
    m_dns_instance_name: str
    full_message_id: str

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping) -> "UserIdentity":
        if not isinstance(data, Mapping):
            raise ValueError("identity must be a JSON object")
        values = {}
        for key in ("user_provided_name", "m_dns_instance_name", "full_message_id"):
            if key not in data:
                raise ValueError(f"missing field `{key}`")
            if not isinstance(data[key], str):
                raise ValueError(f"field `{key}` must be a string")
            values[key] = data[key]
        return cls(**values)


def random_suffix(length: int = 8) -> str:
    """Return ``length`` random ASCII letters and digits."""
    return "".join(secrets.choice(_ALPHANUMERIC) for _ in range(length))


def sanitize_mdns_name(username: str) -> str:
    """Keep only the alphanumeric characters of a name, falling back to ``LocalChat``."""
    kept = "".join(ch for ch in username if ch.isalnum())
    return kept or FALLBACK_MDNS_NAME


def make_identity(username: str, suffix: Optional[str] = None) -> UserIdentity:
    """Build the identity for a chosen username, with a random suffix unless one is given."""
    if suffix is None:
        suffix = random_suffix()
    return UserIdentity(
        user_provided_name=username,
        m_dns_instance_name=f"{sanitize_mdns_name(username)}_{suffix}",
        full_message_id=f"{username}{ID_SEPARATOR}{suffix}",
    )


def display_name(full_id: str) -> str:
    """The user-chosen part of a full message id."""
    return full_id.split(ID_SEPARATOR, 1)[0]


def instance_number(socket_path: str) -> int:
    """The number formed by the digits of a socket path, or 0 when there is none."""
    digits = "".join(ch for ch in socket_path if ch in string.digits)
    value = _parse_u16(digits)
    return 0 if value is None else value


def identity_file_path(socket_path: str) -> Path:
    """Where the identity of the daemon serving ``socket_path`` is kept."""
    return Path(f"/tmp/localchat_daemon_identity_{instance_number(socket_path)}.json")


def load_identity(path: Union[str, Path]) -> Optional[UserIdentity]:
    """Read a saved identity; ``None`` when the file is missing or unusable."""
    path = Path(path)
    if not path.exists():
        return None
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        logger.error("Failed to read identity file %s: %s", path, exc)
        return None
    try:
        identity = UserIdentity.from_dict(json.loads(text))
    except ValueError as exc:
        logger.error("Failed to decode identity from %s: %s", path, exc)
        return None
    logger.info("Loaded identity from %s: %s", path, identity)
    return identity


def save_identity(identity: UserIdentity, path: Union[str, Path]) -> None:
    """Write an identity as indented JSON, raising ``OSError`` on failure."""
    Path(path).write_text(json.dumps(identity.to_dict(), indent=2), encoding="utf-8")


@dataclass(frozen=True)
class DaemonConfig:
    """Where the daemon listens, as configured through the environment."""

    tcp_port: int = DEFAULT_TCP_PORT
    socket_path: str = DEFAULT_SOCKET_PATH

    @property
    def identity_path(self) -> Path:
        return identity_file_path(self.socket_path)

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DaemonConfig":
        """Read the port and socket path, using defaults for missing or invalid values."""
        env = os.environ if environ is None else environ
        port_text = env.get(TCP_PORT_ENV)
        port = None if port_text is None else _parse_u16(port_text)
        return cls(
            tcp_port=DEFAULT_TCP_PORT if port is None else port,
            socket_path=env.get(SOCKET_PATH_ENV, DEFAULT_SOCKET_PATH),
        )