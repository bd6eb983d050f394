# autoresponder/persistence_queue.py
"""
PersistenceQueue

Batches chat messages in memory and flushes them to the DocumentStore:
- one capped message log per (session, contact)
- one capped "universal" corpus per session, fed ONLY by human-written
  outgoing messages (AI replies are stored in the contact log for the
  record but never learned from)

Flush triggers:
- a periodic task (FLUSH_INTERVAL_SECONDS)
- flush_session(code) on logout / destroy
- an immediate flush when a contact buffer reaches the retention size
- a forced flush when the global buffer cap is reached

A failed flush puts the drained batches back (at-least-once). If the forced
flush itself fails, the three largest buffers are halved so memory stays
bounded.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Literal, Optional, Tuple

from .constants import (
    AI_REPLY_PREFIX,
    BROADCAST_MARKER,
    FLUSH_INTERVAL_SECONDS,
    GROUP_SUFFIX,
    HUMAN_REPLY_PREFIX,
    MAX_MESSAGES_PER_CONTACT,
    MAX_PERSISTED_MESSAGE_CHARS,
    MAX_TOTAL_BUFFER_SIZE,
    NEWSLETTER_MARKER,
    USER_MESSAGE_PREFIX,
)
from .document_store import DocumentStore
from .logging_config import get_logger, log_fields

logger = get_logger(__name__)

Direction = Literal["incoming", "outgoing"]
BufferKey = Tuple[str, str]

EMERGENCY_TRIM_BUFFERS = 3


@dataclass
class PersistedMessage:
    session_code: str
    contact_id: str
    direction: Direction
    message: str
    timestamp: datetime
    is_ai_generated: bool = False

    @property
    def labelled(self) -> str:
        if self.direction == "incoming":
            return f"{USER_MESSAGE_PREFIX}{self.message}"
        if self.is_ai_generated:
            return f"{AI_REPLY_PREFIX}{self.message}"
        return f"{HUMAN_REPLY_PREFIX}{self.message}"


@dataclass
class Batch:
    session_code: str
    contact_id: str
    messages: List[PersistedMessage] = field(default_factory=list)


def _to_datetime(value) -> datetime:
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    return datetime.now(timezone.utc)


def _sanitize(message) -> str:
    if not isinstance(message, str):
        return ""
    return message.strip()[:MAX_PERSISTED_MESSAGE_CHARS]


class PersistenceQueue:
    """
    Process-wide message buffer in front of the document store.

    Limits are constructor arguments so tests can exercise backpressure with
    small numbers.
    """

    def __init__(
        self,
        store: DocumentStore,
        *,
        flush_interval: float = FLUSH_INTERVAL_SECONDS,
        retention: int = MAX_MESSAGES_PER_CONTACT,
        max_total: int = MAX_TOTAL_BUFFER_SIZE,
    ) -> None:
        self.store = store
        self.flush_interval = flush_interval
        self.retention = retention
        self.max_per_contact = retention * 2
        self.max_total = max_total
        self._buffers: Dict[BufferKey, List[PersistedMessage]] = {}
        self._flush_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None

    # -------------------------------------------------------------------------
    # Introspection
    # -------------------------------------------------------------------------
    @property
    def total_buffered(self) -> int:
        return sum(len(buffer) for buffer in self._buffers.values())

    def buffered(self, session_code: str, contact_id: str) -> List[PersistedMessage]:
        return list(self._buffers.get((session_code, contact_id), []))

    @property
    def flush_in_progress(self) -> bool:
        return self._flush_task is not None

    # -------------------------------------------------------------------------
    # Enqueue
    # -------------------------------------------------------------------------
    def queue_message(
        self,
        session_code: str,
        contact_id: str,
        direction: Direction,
        message,
        timestamp=None,
        *,
        has_media: bool = False,
        is_ai_generated: bool = False,
    ) -> bool:
        """
        Buffer one message. Returns False when the message is not eligible.
        """
        if not session_code or not contact_id or direction not in ("incoming", "outgoing"):
            return False
        if has_media:
            return False
        if GROUP_SUFFIX in contact_id or BROADCAST_MARKER in contact_id or NEWSLETTER_MARKER in contact_id:
            return False

        text = _sanitize(message)
        if not text:
            return False

        if self.total_buffered >= self.max_total:
            logger.warning(
                "Global message buffer limit reached, forcing immediate flush",
                extra=log_fields(totalBufferSize=self.total_buffered, maxSize=self.max_total),
            )
            self._spawn_flush(on_error=self._emergency_trim)

        key = (session_code, contact_id)
        buffer = self._buffers.setdefault(key, [])
        buffer.append(
            PersistedMessage(
                session_code=session_code,
                contact_id=contact_id,
                direction=direction,
                message=text,
                timestamp=_to_datetime(timestamp),
                is_ai_generated=is_ai_generated,
            )
        )
        if len(buffer) > self.max_per_contact:
            del buffer[: len(buffer) - self.max_per_contact]

        self._ensure_timer()

        if len(buffer) >= self.retention:
            self._spawn_flush(on_error=None)
        return True

    # -------------------------------------------------------------------------
    # Flushing
    # -------------------------------------------------------------------------
    async def flush(self) -> None:
        """
        Flush every buffer. Concurrent callers share the in-flight flush.
        """
        task = self._start_flush()
        if task is not None:
            await asyncio.shield(task)

    async def flush_session(self, session_code: str) -> None:
        if not session_code:
            return
        batches = self._drain(lambda code, _contact: code == session_code)
        if not batches:
            return
        await self._persist_or_requeue(batches)

    async def shutdown(self) -> None:
        if self._timer_task is not None:
            self._timer_task.cancel()
            self._timer_task = None

        if self._flush_task is not None:
            try:
                await asyncio.shield(self._flush_task)
            except Exception:
                logger.exception("In-flight flush failed during shutdown")

        await self.flush()
        self._buffers.clear()

    def _start_flush(self) -> Optional[asyncio.Task]:
        if self._flush_task is not None:
            return self._flush_task
        if not self._buffers:
            return None

        loop = asyncio.get_running_loop()
        batches = self._drain()
        task = loop.create_task(self._persist_or_requeue(batches))
        self._flush_task = task

        def _clear(done: asyncio.Task) -> None:
            if self._flush_task is done:
                self._flush_task = None

        task.add_done_callback(_clear)
        return task

    def _spawn_flush(self, on_error) -> None:
        try:
            task = self._start_flush()
        except RuntimeError:
            # No running loop: the periodic flush will pick it up.
            return
        if task is None:
            return

        def _report(done: asyncio.Task) -> None:
            if done.cancelled():
                return
            error = done.exception()
            if error is None:
                return
            logger.error("Immediate flush failed", extra=log_fields(error=str(error)))
            if on_error is not None:
                on_error()

        task.add_done_callback(_report)

    async def _persist_or_requeue(self, batches: List[Batch]) -> None:
        try:
            await self.persist_batches(batches)
        except Exception:
            for batch in batches:
                self._requeue(batch)
            raise

    def _drain(self, predicate=None) -> List[Batch]:
        drained: List[Batch] = []
        for key in list(self._buffers.keys()):
            session_code, contact_id = key
            if predicate is not None and not predicate(session_code, contact_id):
                continue
            drained.append(Batch(session_code, contact_id, self._buffers.pop(key)))
        return drained

    def _requeue(self, batch: Batch) -> None:
        if not batch.messages:
            return
        key = (batch.session_code, batch.contact_id)
        # Older (drained) messages go in front of anything that arrived meanwhile.
        merged = batch.messages + self._buffers.get(key, [])
        if len(merged) > self.max_per_contact:
            merged = merged[len(merged) - self.max_per_contact:]
        self._buffers[key] = merged

    def _emergency_trim(self) -> None:
        largest = sorted(self._buffers.items(), key=lambda item: len(item[1]), reverse=True)
        for key, buffer in largest[:EMERGENCY_TRIM_BUFFERS]:
            del buffer[: len(buffer) // 2]
            logger.warning(
                "Dropped messages to prevent memory overflow",
                extra=log_fields(sessionCode=key[0], contactId=key[1], remaining=len(buffer)),
            )

    def _ensure_timer(self) -> None:
        if self._timer_task is not None and not self._timer_task.done():
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        self._timer_task = loop.create_task(self._periodic_flush())

    async def _periodic_flush(self) -> None:
        while True:
            await asyncio.sleep(self.flush_interval)
            try:
                await self.flush()
            except Exception:
                logger.exception("Periodic chat persistence flush failed")

    # -------------------------------------------------------------------------
    # Storage
    # -------------------------------------------------------------------------
    async def persist_batches(self, batches: List[Batch]) -> None:
        if not batches:
            return

        universal: Dict[str, List[str]] = {}
        for batch in batches:
            entries = [
                {"message": item.labelled, "timestamp": item.timestamp}
                for item in batch.messages
                if item.message
            ]
            if entries:
                await self.store.append_contact_messages(batch.session_code, batch.contact_id, entries)

            own_replies = [
                item.message
                for item in batch.messages
                if item.direction == "outgoing" and not item.is_ai_generated
            ]
            if own_replies:
                universal.setdefault(batch.session_code, []).extend(own_replies)

        if universal:
            await asyncio.gather(
                *(
                    self.store.append_universal_messages(code, messages)
                    for code, messages in universal.items()
                )
            )

    # -------------------------------------------------------------------------
    # Retrieval
    # -------------------------------------------------------------------------
    async def get_chat_messages(self, session_code: str, contact_id: str):
        if not session_code or not contact_id:
            return []
        return await self.store.get_contact_messages(session_code, contact_id)

    async def get_universal_persona(self, session_code: str) -> List[str]:
        if not session_code:
            return []
        return await self.store.get_universal_messages(session_code)
