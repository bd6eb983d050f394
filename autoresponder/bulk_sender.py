# autoresponder/bulk_sender.py
"""
Bulk sends (immediate, or fired by a scheduled job).

Numbers are normalised to WhatsApp chat ids ("<digits>@c.us"); ids that
already end in @c.us / @g.us are kept as-is. Every successful send goes
into the chat history; sends to contacts are also persisted as
operator-authored outgoing messages (group chats are never persisted).
"""

from __future__ import annotations

import re
from typing import Any, Dict, Iterable, List, Optional

from .chat_history import append_history_entry
from .errors import SessionNotFoundError, SessionNotReadyError, ValidationError
from .logging_config import get_logger, log_fields
from .persistence_queue import PersistenceQueue
from .session_context import Session

logger = get_logger(__name__)

CHAT_ID_RE = re.compile(r"@(c|g)\.us$", re.IGNORECASE)
MIN_PHONE_DIGITS = 8


def format_phone_number(raw: Any) -> Optional[str]:
    value = raw.strip() if isinstance(raw, str) else ""
    if not value:
        return None
    if CHAT_ID_RE.search(value):
        return value
    digits = re.sub(r"\D", "", value)
    if len(digits) < MIN_PHONE_DIGITS:
        return None
    return f"{digits}@c.us"


def normalize_numbers(numbers: Any) -> List[str]:
    """Format and de-duplicate, keeping first-seen order."""
    if not isinstance(numbers, (list, tuple)):
        return []
    seen = set()
    formatted: List[str] = []
    for raw in numbers:
        number = format_phone_number(raw)
        if number and number not in seen:
            seen.add(number)
            formatted.append(number)
    return formatted


async def perform_bulk_send(
    session: Session,
    queue: PersistenceQueue,
    message: str,
    numbers: Iterable[str],
) -> List[Dict[str, Any]]:
    results: List[Dict[str, Any]] = []
    for number in numbers:
        try:
            await session.client.send_text(number, message)
        except Exception as exc:
            logger.error(
                "Failed to send message",
                extra=log_fields(code=session.code, number=number, error=str(exc)),
            )
            results.append({"number": number, "success": False, "error": str(exc)})
            continue

        results.append({"number": number, "success": True})
        append_history_entry(session, number, "assistant", message)
        queue.queue_message(session.code, number, "outgoing", message, is_ai_generated=False)
    return results


async def send_bulk_messages(
    session: Optional[Session],
    queue: PersistenceQueue,
    message: str,
    numbers: Any,
) -> Dict[str, Any]:
    if session is None:
        raise SessionNotFoundError()
    if not session.ready:
        raise SessionNotReadyError()

    targets = normalize_numbers(numbers)
    if not targets:
        raise ValidationError("No valid numbers provided")

    results = await perform_bulk_send(session, queue, message, targets)
    success = sum(1 for item in results if item["success"])
    logger.info(
        "Bulk send completed",
        extra=log_fields(code=session.code, total=len(targets), success=success),
    )
    return {
        "total": len(targets),
        "sent": success,
        "failed": len(targets) - success,
        "results": results,
    }
