# autoresponder/transport.py
"""
Chat transport contract.

The session owns exactly one TransportClient. Required methods cover text
sends, media download, identity lookup and the two event streams. Optional
features (voice notes, mark-unread) are announced once through
TransportCapabilities instead of being probed per call.
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol


class ConnectionState(str, Enum):
    CONNECTED = "CONNECTED"
    DISCONNECTED = "DISCONNECTED"
    UNPAIRED = "UNPAIRED"
    CONFLICT = "CONFLICT"


@dataclass(frozen=True)
class TransportCapabilities:
    supports_voice_notes: bool = False
    supports_mark_unread: bool = False


@dataclass
class HostDevice:
    """Identity of the account the transport is logged in as."""
    number: Optional[str] = None
    name: Optional[str] = None


@dataclass
class InboundMessage:
    """
    Transport-neutral view of one WhatsApp message.

    ``chat_id`` is the remote party: ``to`` for messages we sent, ``sender``
    otherwise.
    """
    id: str
    sender: str
    to: str
    body: str = ""
    from_me: bool = False
    type: str = "chat"
    is_voice: bool = False
    has_media: bool = False
    timestamp: float = field(default_factory=time.time)
    quoted_id: Optional[str] = None
    quoted_text: Optional[str] = None
    mimetype: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def chat_id(self) -> str:
        return self.to if self.from_me else self.sender


MessageHandler = Callable[[InboundMessage], Awaitable[None]]
StateHandler = Callable[[ConnectionState], Awaitable[None]]
QrHandler = Callable[[str], Awaitable[None]]


class TransportClient(Protocol):
    capabilities: TransportCapabilities

    async def connect(self) -> bool:
        """Start (or resume) the connection. Returns True when already paired."""
        ...

    async def send_text(self, chat_id: str, text: str, quoted_id: Optional[str] = None) -> None: ...

    async def send_voice_note(self, chat_id: str, audio: bytes, quoted_id: Optional[str] = None) -> None: ...

    async def mark_unread(self, chat_id: str) -> None: ...

    async def download_media(self, message: InboundMessage) -> Optional[str]:
        """Base64 payload (possibly a data URI) or None."""
        ...

    async def get_host_device(self) -> HostDevice: ...

    def on_message(self, handler: MessageHandler) -> None: ...

    def on_state_change(self, handler: StateHandler) -> None: ...

    def on_qr(self, handler: QrHandler) -> None: ...

    async def logout(self) -> None: ...

    async def close(self) -> None: ...


class TransportFactory(Protocol):
    def __call__(self, session_code: str) -> TransportClient: ...
