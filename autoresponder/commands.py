# autoresponder/commands.py
"""
Chat commands.

Opt-out commands (exact match, case-insensitive):
- !stopall / !startall  owner only, every chat of the session
- !stop / !start        any sender, this chat only (stop expires after 24h)

Utility command:
- !me <text>  ask the assistant directly. With a quoted message (or an
  explicit "explain ..." request) the assistant explains; otherwise it
  answers the question.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from typing import List, Literal, Optional

from .constants import STOP_TIMEOUT_SECONDS
from .delivery import ReplyDelivery
from .logging_config import get_logger, log_fields
from .session_context import ChatHistoryEntry, Session
from .transport import InboundMessage

logger = get_logger(__name__)

GLOBAL_STOP_ON = "🛑 Global auto replies disabled. I'll stay quiet until you send !startall."
GLOBAL_STOP_ALREADY = "🛑 Global auto replies are already disabled."
GLOBAL_START_ON = "✅ Global auto replies re-enabled for all chats."
GLOBAL_START_ALREADY = "✅ Global auto replies were already enabled."
CHAT_STOP = "🤖 Auto replies disabled for this chat for 24 hours."
CHAT_START = "🤖 Auto replies re-enabled for this chat."
CHAT_START_ALREADY = "🤖 Auto replies were already enabled here."
UTILITY_USAGE = "ℹ️ Usage: !me <your question>, or reply to a message with !me to get it explained."

UTILITY_PREFIX_RE = re.compile(r"^!me(?:\s+|$)", re.IGNORECASE)
EXPLAIN_REQUEST_RE = re.compile(
    r"^(?:please\s+)?(?:explain|what does (?:this|that|it) mean|what is this|meaning|summari[sz]e)\b",
    re.IGNORECASE,
)

UtilityMode = Literal["explain", "question"]


def is_bot_owner(session: Session, msg: InboundMessage) -> bool:
    """
    Owner = a message we sent ourselves, or one coming from the session's own
    number.
    """
    if msg.from_me:
        return True
    if session.bot_number and isinstance(msg.sender, str):
        return session.bot_number == msg.sender.split("@", 1)[0]
    return False


def is_chat_stopped(session: Session, chat_id: str, now: Optional[float] = None) -> bool:
    """
    True while a !stop for this chat is younger than 24h. Expired entries are
    removed on the way.
    """
    stopped_at = session.stop_list.get(chat_id)
    if stopped_at is None:
        return False
    now = time.time() if now is None else now
    if now - stopped_at < STOP_TIMEOUT_SECONDS:
        return True
    del session.stop_list[chat_id]
    return False


async def process_commands(session: Session, msg: InboundMessage, delivery: ReplyDelivery) -> bool:
    """
    Handle opt-out commands. Returns True when the message was a command.
    """
    if not isinstance(msg.body, str):
        return False
    text = msg.body.strip()
    if not text:
        return False

    command = text.lower()
    chat_id = msg.chat_id
    reply: Optional[str] = None

    if is_bot_owner(session, msg):
        if command == "!stopall":
            was_active = session.global_stop.active
            if not was_active:
                session.global_stop.active = True
                session.global_stop.since = time.time()
            reply = GLOBAL_STOP_ALREADY if was_active else GLOBAL_STOP_ON
        elif command == "!startall":
            was_active = session.global_stop.active
            session.global_stop.active = False
            session.global_stop.since = 0.0
            session.stop_list.clear()
            reply = GLOBAL_START_ON if was_active else GLOBAL_START_ALREADY

    if reply is None:
        if command == "!stop":
            session.stop_list[chat_id] = time.time()
            reply = CHAT_STOP
        elif command == "!start":
            reply = CHAT_START if session.stop_list.pop(chat_id, None) is not None else CHAT_START_ALREADY

    if reply is None:
        return False

    logger.info("Chat command processed", extra=log_fields(code=session.code, chatId=chat_id, command=command))
    await delivery.safe_reply(session, chat_id, reply, quoted_id=msg.id)
    return True


# ---------------------------------------------------------------------------
# !me
# ---------------------------------------------------------------------------
@dataclass
class UtilityCommand:
    mode: UtilityMode
    request: str = ""
    quoted_text: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return not self.request and not self.quoted_text

    def directive(self) -> str:
        if self.mode == "explain":
            lines = [
                "Explain the following message clearly and briefly, in the same language it is written in.",
            ]
            if self.quoted_text:
                lines.append(f'Message: "{self.quoted_text}"')
            if self.request:
                lines.append(f"Request: {self.request}")
            return "\n".join(lines)
        return f"Answer the following question directly and helpfully:\n{self.request}"


def parse_utility_command(text: str, quoted_text: Optional[str] = None) -> Optional[UtilityCommand]:
    """
    Returns None unless ``text`` starts with the ``!me`` token.
    """
    if not isinstance(text, str):
        return None
    stripped = text.strip()
    match = UTILITY_PREFIX_RE.match(stripped)
    if match is None:
        return None

    request = stripped[match.end():].strip()
    quoted = quoted_text.strip() if isinstance(quoted_text, str) and quoted_text.strip() else None
    if quoted or EXPLAIN_REQUEST_RE.match(request):
        return UtilityCommand(mode="explain", request=request, quoted_text=quoted)
    return UtilityCommand(mode="question", request=request)


def apply_directive(history: List[ChatHistoryEntry], command: UtilityCommand) -> List[ChatHistoryEntry]:
    """
    Copy of ``history`` whose final user turn is replaced by the directive
    (appended when the history has no user turn at the end).
    """
    rewritten = list(history)
    directive = command.directive()
    if rewritten and rewritten[-1].role == "user":
        last = rewritten[-1]
        rewritten[-1] = ChatHistoryEntry(role="user", text=directive, timestamp=last.timestamp)
    else:
        rewritten.append(ChatHistoryEntry(role="user", text=directive, timestamp=time.time()))
    return rewritten
