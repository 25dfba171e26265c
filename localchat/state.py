"""State of the chat window, kept apart from any drawing code.

The methods that change the state return the commands the daemon must be
sent as a result; the window hands them to its :class:`DaemonClient`.
"""

from __future__ import annotations

import enum
import logging
import uuid
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Deque, List, Optional, Tuple, Union

from .protocol import (
    ClearDaemonPeerCache,
    Command,
    DaemonStatus,
    ErrorMessage,
    GetPeers,
    HistoryResponse,
    IdentityInfo,
    IpcPeer,
    Message,
    NewMessage,
    PeerList,
    SendMessage,
    SetUsername,
    Success,
)

__all__ = ["Panel", "ChatState", "load_username"]

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class Panel(enum.Enum):
    """The view shown in the main area of the window."""

    CHAT = "Chat"
    HISTORY = "History"
    SETTINGS = "Settings"


def load_username(path: Optional[PathLike]) -> Optional[str]:
    """The username saved at ``path``, trimmed; ``None`` if absent, unreadable or blank."""
    if path is None:
        return None
    try:
        text = Path(path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None
    name = text.strip()
    if not name:
        return None
    logger.info("Loaded username %r from %s", name, path)
    return name


def _save_username(path: Optional[Path], username: str) -> None:
    if path is None:
        logger.error("No username file configured; username not saved.")
        return
    try:
        path.write_text(username, encoding="utf-8")
    except OSError as exc:
        logger.error("Failed to save username to %s: %s", path, exc)
    else:
        logger.info("Saved username %r to %s", username, path)


class ChatState:
    """Everything the chat window shows, and how it reacts to the daemon and the user."""

    def __init__(self, username_file: Optional[PathLike] = None) -> None:
        self.username_file: Optional[Path] = None if username_file is None else Path(username_file)
        loaded = load_username(self.username_file)
        self._preloaded = loaded

        self.messages: List[Message] = []
        self.peers: List[IpcPeer] = []
        self.current_panel = Panel.CHAT
        self.current_chat_peer_id: Optional[str] = None
        self.current_user_id: Optional[str] = None
        self.username_input = loaded or ""
        self.show_username_prompt = loaded is None
        self.is_loading = loaded is not None
        self.status = "Connecting..."
        self.requested_initial_peers = False
        self.notifications: Deque[Tuple[str, str]] = deque()

    def startup_commands(self) -> List[Command]:
        """Commands to send once at start: the saved username, if there is one."""
        if self._preloaded is None:
            return []
        return [SetUsername(username=self._preloaded)]

    def handle(self, message) -> List[Command]:
        """Apply a message from the daemon or the connection to it."""
        if isinstance(message, DaemonStatus):
            if message.active_interface_name is not None:
                self.status = message.active_interface_name
            else:
                self.status = "Connected" if message.is_connected_to_network else "Disconnected"
            return []
        if isinstance(message, PeerList):
            self.peers = list(message.peers)
            return []
        if isinstance(message, NewMessage):
            self._receive(message.message)
            return []
        if isinstance(message, HistoryResponse):
            self.messages.extend(message.messages)
            return []
        if isinstance(message, ErrorMessage):
            self.status = f"Daemon Error: {message.text}"
            logger.error("Received error from daemon: %s", message.text)
            return []
        if isinstance(message, IdentityInfo):
            self.current_user_id = message.user_id
            self.show_username_prompt = False
            self.is_loading = False
            if not self.requested_initial_peers:
                self.requested_initial_peers = True
                return [GetPeers()]
            return []
        if isinstance(message, Success):
            self.status = f"Success: {message.text}"
            return []
        raise TypeError(f"not a daemon message: {type(message).__name__}")

    def _receive(self, message: Message) -> None:
        if self.current_user_id is not None and message.sender == self.current_user_id:
            logger.info("Ignoring echo of own message %s", message.id)
            return
        if any(known.id == message.id for known in self.messages):
            logger.info("Duplicate message %s from %s not added", message.id, message.sender)
            return
        self.notifications.append((f"New message from {message.sender}", message.content))
        if message.is_self:
            message = Message(
                id=message.id,
                sender=message.sender,
                recipient=message.recipient,
                content=message.content,
                timestamp=message.timestamp,
                is_self=False,
            )
        self.messages.append(message)

    def submit_username(self, username: str) -> List[Command]:
        """Accept the name typed at the prompt, save it and wait for the daemon."""
        name = username.strip()
        if not name:
            return []
        _save_username(self.username_file, name)
        self.show_username_prompt = False
        self.is_loading = True
        return [SetUsername(username=name)]

    def compose(self, text: str) -> List[Command]:
        """Send typed text to the selected peer, showing it locally at once.

        Returns no commands when the text is blank or no peer is selected.
        """
        content = text.strip()
        if not content:
            return []
        recipient = self.current_chat_peer_id
        if not recipient:
            logger.info("Message not sent: no peer selected.")
            return []
        self.messages.append(Message(
            id=str(uuid.uuid4()),
            sender=self.current_user_id or "",
            recipient=recipient,
            content=content,
            timestamp=datetime.now(timezone.utc),
            is_self=True,
        ))
        return [SendMessage(recipient_id=recipient, content=content)]

    def select_peer(self, peer_id: Optional[str]) -> None:
        """Make ``peer_id`` the chat partner, or clear the choice with ``None``."""
        self.current_chat_peer_id = peer_id

    def update_username(self, username: str) -> List[Command]:
        """Change the username from the settings view."""
        name = username.strip()
        if not name:
            return []
        _save_username(self.username_file, name)
        self.is_loading = True
        return [SetUsername(username=name)]

    def delete_username(self) -> None:
        """Forget the saved username and show the prompt again."""
        if self.username_file is not None:
            try:
                self.username_file.unlink()
            except OSError as exc:
                logger.error("Failed to delete username file %s: %s", self.username_file, exc)
            else:
                logger.info("Deleted username file %s", self.username_file)
        self.current_user_id = None
        self.show_username_prompt = True
        self.is_loading = False

    def clear_peers(self) -> List[Command]:
        """Drop the known peers here and in the daemon, then ask for them again."""
        self.peers.clear()
        return [ClearDaemonPeerCache(), GetPeers()]