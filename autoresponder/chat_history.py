# autoresponder/chat_history.py
"""
Chat history ring.

Bounded, per-chat conversational memory kept on the Session:
- Each chat keeps at most ``context_window`` entries (trimmed from the front).
- At most MAX_CHAT_HISTORIES_PER_SESSION chats per session; the least
  recently used chat is evicted one at a time.
- A periodic sweep drops chats idle for more than CHAT_HISTORY_MAX_AGE_SECONDS.

This is a context cache for the LLM. Persona learning reads the persisted
message log instead (see persistence_queue.py).
"""

from __future__ import annotations

import time
from typing import Iterable, List, Optional

from .constants import (
    CHAT_HISTORY_MAX_AGE_SECONDS,
    DEFAULT_CONTEXT_WINDOW,
    MAX_CHAT_HISTORIES_PER_SESSION,
)
from .logging_config import get_logger, log_fields
from .session_context import ChatHistory, ChatHistoryEntry, Role, Session

logger = get_logger(__name__)


def _window_for(session: Session) -> int:
    # Imported lazily: config_manager imports this module.
    from .config_manager import clamp_context_window

    if session.ai_config is None:
        return DEFAULT_CONTEXT_WINDOW
    return clamp_context_window(session.ai_config.context_window)


def _drop_lock(session: Session, chat_id: str) -> None:
    lock = session.chat_locks.get(chat_id)
    if lock is not None and not lock.locked():
        session.chat_locks.pop(chat_id, None)


def _enforce_chat_limit(session: Session) -> None:
    while len(session.chat_history) > MAX_CHAT_HISTORIES_PER_SESSION:
        evicted, _ = session.chat_history.popitem(last=False)
        _drop_lock(session, evicted)
        logger.debug(
            "Evicted least recently used chat history",
            extra=log_fields(code=session.code, chatId=evicted),
        )


def _touch(session: Session, chat_id: str, now: float) -> Optional[ChatHistory]:
    history = session.chat_history.get(chat_id)
    if history is not None:
        history.last_accessed = now
        session.chat_history.move_to_end(chat_id)
    return history


def append_history_entry(
    session: Session,
    chat_id: str,
    role: Role,
    text: str,
    timestamp: Optional[float] = None,
) -> None:
    """
    Append one turn to a chat, trimming it to the session's context window.
    """
    if not chat_id or not isinstance(text, str) or not text.strip():
        return

    now = time.time()
    history = _touch(session, chat_id, now)
    if history is None:
        history = ChatHistory(last_accessed=now)
        session.chat_history[chat_id] = history
        _enforce_chat_limit(session)

    history.messages.append(
        ChatHistoryEntry(role=role, text=text, timestamp=timestamp if timestamp is not None else now)
    )

    window = _window_for(session)
    if len(history.messages) > window:
        del history.messages[: len(history.messages) - window]


def get_history_for_chat(
    session: Session, chat_id: str, window: Optional[int] = None
) -> List[ChatHistoryEntry]:
    """
    Return the most recent turns for a chat (read counts as an access).
    """
    history = _touch(session, chat_id, time.time())
    if history is None:
        return []
    limit = window if window is not None else _window_for(session)
    if limit <= 0:
        return []
    return list(history.messages[-limit:])


def truncate_histories(session: Session, limit: int) -> None:
    """Drop the oldest entries of every chat longer than ``limit``."""
    for history in session.chat_history.values():
        if len(history.messages) > limit:
            del history.messages[: len(history.messages) - limit]


def prune_inactive_chat_histories(
    sessions: Iterable[Session], now: Optional[float] = None
) -> int:
    """
    Remove chats idle for longer than CHAT_HISTORY_MAX_AGE_SECONDS.

    Returns the number of chats removed across all sessions.
    """
    now = time.time() if now is None else now
    cutoff = now - CHAT_HISTORY_MAX_AGE_SECONDS
    removed = 0
    for session in sessions:
        stale = [
            chat_id
            for chat_id, history in session.chat_history.items()
            if history.last_accessed < cutoff
        ]
        for chat_id in stale:
            session.chat_history.pop(chat_id, None)
            _drop_lock(session, chat_id)
        removed += len(stale)

    if removed:
        logger.info("Pruned inactive chat histories", extra=log_fields(removed=removed))
    return removed
