# autoresponder/scheduler.py
"""
Scheduled bulk messages.

A job lives in ``session.scheduled_jobs`` with a cancellable asyncio timer
and is mirrored in the document store so it survives restarts. Lifecycle:

    scheduled -> sending -> sent | failed
    scheduled | sending -> cancelled

When the timer fires while the session is not ready, the job goes back to
``scheduled`` and is retried 5 seconds later. Store failures are logged and
never stop a job.
"""

from __future__ import annotations

import asyncio
import secrets
import string
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, List, Optional

from .bulk_sender import normalize_numbers, perform_bulk_send
from .constants import (
    MAX_SCHEDULE_DELAY_SECONDS,
    MIN_SCHEDULE_DELAY_SECONDS,
    SCHEDULE_RETRY_DELAY_SECONDS,
)
from .document_store import DocumentStore
from .errors import (
    AutoresponderError,
    JobConflictError,
    JobNotFoundError,
    SessionNotFoundError,
    SessionNotReadyError,
    ValidationError,
)
from .logging_config import get_logger, log_fields
from .persistence_queue import PersistenceQueue
from .session_context import ScheduledJob, Session

logger = get_logger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def new_job_id(now: Optional[float] = None) -> str:
    now = time.time() if now is None else now
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))
    return f"{int(now * 1000)}-{suffix}"


# ---------------------------------------------------------------------------
# Time conversions (epoch seconds in memory, aware datetimes in the store)
# ---------------------------------------------------------------------------
def to_epoch(value: Any) -> Optional[float]:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value.timestamp()
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return float(value)
    if isinstance(value, str) and value:
        try:
            return to_epoch(datetime.fromisoformat(value.replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def to_datetime(epoch: Optional[float]) -> Optional[datetime]:
    if epoch is None:
        return None
    return datetime.fromtimestamp(epoch, tz=timezone.utc)


def to_iso(epoch: Optional[float]) -> Optional[str]:
    moment = to_datetime(epoch)
    return moment.isoformat().replace("+00:00", "Z") if moment else None


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------
def serialize_job(job: ScheduledJob) -> Dict[str, Any]:
    return {
        "id": job.id,
        "status": job.status,
        "message": job.message,
        "numbers": list(job.numbers),
        "sendAt": to_iso(job.send_at),
        "createdAt": to_iso(job.created_at),
        "sentAt": to_iso(job.sent_at),
        "cancelledAt": to_iso(job.cancelled_at),
        "error": job.error,
        "results": list(job.results),
    }


def job_to_document(job: ScheduledJob) -> Dict[str, Any]:
    return {
        "jobId": job.id,
        "message": job.message,
        "numbers": list(job.numbers),
        "sendAt": to_datetime(job.send_at),
        "createdAt": to_datetime(job.created_at),
        "status": job.status,
        "results": list(job.results),
        "error": job.error,
        "sentAt": to_datetime(job.sent_at),
        "cancelledAt": to_datetime(job.cancelled_at),
    }


def document_to_job(doc: Dict[str, Any]) -> ScheduledJob:
    now = time.time()
    return ScheduledJob(
        id=doc.get("jobId") or doc.get("id"),
        message=doc.get("message") or "",
        numbers=list(doc.get("numbers") or []),
        send_at=to_epoch(doc.get("sendAt")) or now,
        created_at=to_epoch(doc.get("createdAt")) or now,
        status=doc.get("status") or "scheduled",
        results=list(doc.get("results") or []),
        error=doc.get("error") or None,
        sent_at=to_epoch(doc.get("sentAt")),
        cancelled_at=to_epoch(doc.get("cancelledAt")),
    )


class Scheduler:
    def __init__(
        self,
        store: DocumentStore,
        queue: PersistenceQueue,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.queue = queue
        self.sleep = sleep

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    async def schedule_messages(
        self,
        session: Optional[Session],
        message: str,
        numbers: Any,
        send_at: datetime,
    ) -> Dict[str, Any]:
        if session is None:
            raise SessionNotFoundError()
        if not session.ready:
            raise SessionNotReadyError()

        targets = normalize_numbers(numbers)
        if not targets:
            raise ValidationError("No valid numbers provided")

        send_at_epoch = to_epoch(send_at)
        if send_at_epoch is None:
            raise ValidationError("Invalid schedule time")
        now = time.time()
        delay = send_at_epoch - now
        if delay < MIN_SCHEDULE_DELAY_SECONDS:
            raise ValidationError("Schedule time must be at least 10 seconds in the future")
        if delay > MAX_SCHEDULE_DELAY_SECONDS:
            raise ValidationError("Schedule time cannot be more than 7 days ahead")

        job = ScheduledJob(
            id=new_job_id(now),
            message=message,
            numbers=targets,
            send_at=send_at_epoch,
            created_at=now,
        )
        session.scheduled_jobs[job.id] = job
        self.arm(session, job)

        try:
            await self.store.save_scheduled_job(session.code, job_to_document(job))
        except Exception as exc:
            logger.error(
                "Failed to persist scheduled message",
                extra=log_fields(code=session.code, jobId=job.id, error=str(exc)),
            )

        logger.info(
            "Scheduled message created",
            extra=log_fields(code=session.code, jobId=job.id, numbers=len(targets), delay=round(delay)),
        )
        return serialize_job(job)

    async def list_scheduled_messages(self, session: Optional[Session]) -> List[Dict[str, Any]]:
        if session is None:
            raise SessionNotFoundError()
        try:
            documents = await self.store.list_scheduled_jobs(session.code)
        except Exception as exc:
            logger.error(
                "Failed to list scheduled messages",
                extra=log_fields(code=session.code, error=str(exc)),
            )
            raise AutoresponderError("Failed to load scheduled messages") from exc
        return [serialize_job(document_to_job(doc)) for doc in documents]

    async def cancel_scheduled_message(self, session: Optional[Session], job_id: str) -> Dict[str, Any]:
        job = self._require_job(session, job_id)
        job.cancel_timer()

        if job.status in ("scheduled", "sending"):
            job.status = "cancelled"
            job.cancelled_at = time.time()
            job.error = None
            await self._update(
                session, job,
                {"status": job.status, "cancelledAt": to_datetime(job.cancelled_at), "error": None},
                "Failed to persist cancellation",
            )
        return serialize_job(job)

    async def remove_scheduled_message(self, session: Optional[Session], job_id: str) -> Dict[str, Any]:
        job = self._require_job(session, job_id)
        if job.status == "sending":
            raise JobConflictError("Cannot remove a job that is currently sending")

        job.cancel_timer()
        session.scheduled_jobs.pop(job_id, None)
        try:
            removed = await self.store.delete_scheduled_job(session.code, job_id)
            if not removed:
                logger.warning(
                    "Scheduled message not found in persistence while removing",
                    extra=log_fields(code=session.code, jobId=job_id),
                )
        except Exception as exc:
            logger.error(
                "Failed to delete scheduled message",
                extra=log_fields(code=session.code, jobId=job_id, error=str(exc)),
            )
        return serialize_job(job)

    async def hydrate(self, session: Session) -> int:
        """
        Re-arm persisted jobs after a restart. Jobs caught mid-send go back
        to ``scheduled``. Returns the number of jobs armed.
        """
        try:
            documents = await self.store.load_active_scheduled_jobs(session.code)
        except Exception as exc:
            logger.error(
                "Failed to hydrate scheduled messages",
                extra=log_fields(code=session.code, error=str(exc)),
            )
            return 0

        armed = 0
        for doc in documents:
            job = document_to_job(doc)
            if not job.id or job.id in session.scheduled_jobs:
                continue
            if job.status == "sending":
                job.status = "scheduled"
                await self._update(session, job, {"status": "scheduled"}, "Failed to reset hydrated job")
            session.scheduled_jobs[job.id] = job
            self.arm(session, job)
            armed += 1

        if armed:
            logger.info("Scheduled messages hydrated", extra=log_fields(code=session.code, jobs=armed))
        return armed

    # -------------------------------------------------------------------------
    # Execution
    # -------------------------------------------------------------------------
    def arm(self, session: Session, job: ScheduledJob, delay: Optional[float] = None) -> None:
        if job.status != "scheduled":
            return
        job.cancel_timer()
        wait = max(delay if delay is not None else job.send_at - time.time(), 0.0)
        job.timer = asyncio.get_running_loop().create_task(self._fire(session, job, wait))

    async def _fire(self, session: Session, job: ScheduledJob, delay: float) -> None:
        try:
            if delay > 0:
                await self.sleep(delay)
            job.timer = None
            await self.run_job(session, job)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "Scheduled message execution error",
                extra=log_fields(code=session.code, jobId=job.id),
            )

    async def run_job(self, session: Session, job: ScheduledJob) -> None:
        job.status = "sending"
        job.error = None
        await self._update(session, job, {"status": "sending", "error": None}, "Failed to mark job as sending")
        if job.status == "cancelled":
            return

        if not session.ready:
            job.status = "scheduled"
            await self._update(
                session, job, {"status": "scheduled"}, "Failed to reschedule job while client not ready"
            )
            self.arm(session, job, SCHEDULE_RETRY_DELAY_SECONDS)
            return

        try:
            results = await perform_bulk_send(session, self.queue, job.message, job.numbers)
        except Exception as exc:
            if job.status == "cancelled":
                job.error = str(exc)
                await self._update(session, job, {"error": job.error}, "Failed to persist failed job state")
                return
            job.status = "failed"
            job.error = str(exc)
            job.sent_at = time.time()
            await self._update(
                session, job,
                {"status": "failed", "error": job.error, "sentAt": to_datetime(job.sent_at)},
                "Failed to persist failed job state",
            )
            logger.error(
                "Scheduled message failed",
                extra=log_fields(code=session.code, jobId=job.id, error=job.error),
            )
            return

        if job.status == "cancelled":
            # Cancelled while sending: keep the cancellation, record what went out.
            job.results = results
            await self._update(session, job, {"results": results}, "Failed to persist sent job state")
            return

        job.status = "sent"
        job.sent_at = time.time()
        job.results = results
        await self._update(
            session, job,
            {"status": "sent", "sentAt": to_datetime(job.sent_at), "results": results, "error": None},
            "Failed to persist sent job state",
        )
        logger.info(
            "Scheduled message sent",
            extra=log_fields(
                code=session.code,
                jobId=job.id,
                success=sum(1 for item in results if item.get("success")),
                total=len(results),
            ),
        )

    # -------------------------------------------------------------------------
    # Internal helpers
    # -------------------------------------------------------------------------
    @staticmethod
    def _require_job(session: Optional[Session], job_id: str) -> ScheduledJob:
        if session is None:
            raise SessionNotFoundError()
        job = session.scheduled_jobs.get(job_id)
        if job is None:
            raise JobNotFoundError()
        return job

    async def _update(self, session: Session, job: ScheduledJob, fields: Dict[str, Any], failure: str) -> None:
        try:
            await self.store.update_scheduled_job(session.code, job.id, fields)
        except Exception as exc:
            logger.error(failure, extra=log_fields(code=session.code, jobId=job.id, error=str(exc)))
