# autoresponder/session_context.py
"""
Session state.

Everything we keep in memory about one authenticated tenant (``code``):
- Session metadata and lifecycle flags (ready, destroyed, status).
- The AI configuration (replaced wholesale on update).
- Opt-out state (global stop, per-chat stop list).
- The chat history ring (chat id -> bounded message list).
- Scheduled bulk-send jobs.
"""

from __future__ import annotations

import asyncio
import re
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional

from .constants import DEFAULT_CONTEXT_WINDOW

Role = Literal["user", "assistant"]
MatchType = Literal["contains", "exact", "startsWith", "regex"]
JobStatus = Literal["scheduled", "sending", "sent", "failed", "cancelled"]


class SessionStatus(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    READY = "ready"
    RECONNECTING = "reconnecting"
    UNPAIRED = "unpaired"
    CONFLICT = "conflict"


@dataclass
class CustomReplyRule:
    """
    One keyword rule. ``pattern`` is only set for regex rules.
    """
    trigger: str
    response: str
    match_type: MatchType = "contains"
    pattern: Optional[re.Pattern] = None

    def to_dict(self) -> Dict[str, str]:
        return {"trigger": self.trigger, "response": self.response, "matchType": self.match_type}


@dataclass
class AiConfig:
    api_key: str = ""
    model: str = ""
    system_prompt: Optional[str] = None
    auto_reply_enabled: bool = True
    context_window: int = DEFAULT_CONTEXT_WINDOW
    custom_replies: List[CustomReplyRule] = field(default_factory=list)
    voice_reply_enabled: bool = False
    speech_to_text_api_key: str = ""
    text_to_speech_api_key: str = ""
    voice_language: str = "en-US"
    voice_gender: str = "NEUTRAL"

    @property
    def has_llm_credentials(self) -> bool:
        return bool(self.api_key.strip() and self.model.strip())


@dataclass
class ChatHistoryEntry:
    role: Role
    text: str
    timestamp: float


@dataclass
class ChatHistory:
    messages: List[ChatHistoryEntry] = field(default_factory=list)
    last_accessed: float = field(default_factory=time.time)


@dataclass
class GlobalStop:
    active: bool = False
    since: float = 0.0


@dataclass
class ScheduledJob:
    id: str
    message: str
    numbers: List[str]
    send_at: float
    created_at: float
    status: JobStatus = "scheduled"
    results: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    sent_at: Optional[float] = None
    cancelled_at: Optional[float] = None
    timer: Optional[asyncio.Task] = field(default=None, repr=False)

    def cancel_timer(self) -> None:
        if self.timer is not None and not self.timer.done():
            self.timer.cancel()
        self.timer = None


@dataclass
class Session:
    """
    Top-level object representing everything we know about one tenant.

    The transport client is owned exclusively by the session; nothing else
    holds a reference to it across awaits.
    """
    code: str
    started_at: float = field(default_factory=time.time)
    client: Any = None
    capabilities: Any = None
    status: SessionStatus = SessionStatus.DISCONNECTED
    ready: bool = False
    ai_config: Optional[AiConfig] = None
    bot_number: Optional[str] = None
    qr: Optional[str] = None
    last_qr_at: float = 0.0
    global_stop: GlobalStop = field(default_factory=GlobalStop)
    stop_list: Dict[str, float] = field(default_factory=dict)
    chat_history: "OrderedDict[str, ChatHistory]" = field(default_factory=OrderedDict)
    chat_locks: Dict[str, asyncio.Lock] = field(default_factory=dict)
    scheduled_jobs: Dict[str, ScheduledJob] = field(default_factory=dict)
    destroyed: bool = False
    has_been_authenticated: bool = False
    handlers_registered: bool = False
    reconnect_task: Optional[asyncio.Task] = field(default=None, repr=False)
    persona_source: Any = field(default=None, repr=False)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------
    def chat_lock(self, chat_id: str) -> asyncio.Lock:
        lock = self.chat_locks.get(chat_id)
        if lock is None:
            lock = asyncio.Lock()
            self.chat_locks[chat_id] = lock
        return lock

    def cancel_reconnect(self) -> None:
        if self.reconnect_task is not None and not self.reconnect_task.done():
            self.reconnect_task.cancel()
        self.reconnect_task = None

    def clear_scheduled_jobs(self) -> None:
        for job in self.scheduled_jobs.values():
            job.cancel_timer()
        self.scheduled_jobs.clear()
