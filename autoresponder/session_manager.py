# autoresponder/session_manager.py
"""
Session lifecycle.

SessionRegistry holds one Session per authorization code. SessionManager
drives each session through its connection states:

    disconnected -> connecting -> ready -> reconnecting <-> disconnected
                                        -> unpaired  (destroyed)
                                        -> conflict  (destroyed, recreated)

It also runs two background sweeps: stale-session removal every 5 minutes
and idle chat-history pruning every hour.
"""

from __future__ import annotations

import asyncio
import time
from typing import Awaitable, Callable, Dict, List, Optional

from .chat_history import prune_inactive_chat_histories, truncate_histories
from .config import settings
from .config_manager import config_from_document
from .constants import (
    CHAT_HISTORY_PRUNE_INTERVAL_SECONDS,
    QR_REFRESH_INTERVAL_SECONDS,
    RECONNECT_DELAY_SECONDS,
    SESSION_HEALTH_CHECK_INTERVAL_SECONDS,
)
from .document_store import DocumentStore
from .errors import AutoresponderError
from .logging_config import get_logger, log_fields
from .persistence_queue import PersistenceQueue
from .persona_source import StoredPersonaSource
from .reply_orchestrator import ReplyOrchestrator
from .scheduler import Scheduler
from .session_context import Session, SessionStatus
from .transport import ConnectionState, InboundMessage, TransportClient, TransportFactory

logger = get_logger(__name__)


class SessionRegistry:
    """
    One session per code, looked up by code.
    """

    def __init__(self) -> None:
        self._sessions: Dict[str, Session] = {}

    def create(self, code: str) -> Session:
        if code in self._sessions:
            raise AutoresponderError(f"Session {code} already exists", status_code=409)
        session = Session(code=code)
        self._sessions[code] = session
        return session

    def get(self, code: str) -> Optional[Session]:
        return self._sessions.get(code)

    def remove(self, code: str) -> Optional[Session]:
        return self._sessions.pop(code, None)

    def list(self) -> List[Session]:
        return list(self._sessions.values())

    def clear(self) -> None:
        self._sessions.clear()

    def __contains__(self, code: object) -> bool:
        return code in self._sessions

    def __len__(self) -> int:
        return len(self._sessions)


class SessionManager:
    def __init__(
        self,
        registry: SessionRegistry,
        transport_factory: TransportFactory,
        store: DocumentStore,
        queue: PersistenceQueue,
        orchestrator: ReplyOrchestrator,
        scheduler: Scheduler,
        *,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        max_idle_seconds: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.registry = registry
        self.transport_factory = transport_factory
        self.store = store
        self.queue = queue
        self.orchestrator = orchestrator
        self.scheduler = scheduler
        self.reconnect_delay = reconnect_delay
        self.max_idle_seconds = (
            max_idle_seconds if max_idle_seconds is not None else settings.SESSION_MAX_IDLE_SECONDS
        )
        self.sleep = sleep
        self._background: List[asyncio.Task] = []

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    def get_session(self, code: str) -> Optional[Session]:
        return self.registry.get(code)

    async def ensure_session(self, code: str) -> Session:
        """
        Return the existing session for ``code`` or create and connect one.
        A failed start leaves nothing behind in the registry.
        """
        existing = self.registry.get(code)
        if existing is not None:
            return existing

        session = self.registry.create(code)
        session.status = SessionStatus.CONNECTING
        session.persona_source = StoredPersonaSource(self.queue, code)
        self.start_background_tasks()

        try:
            await self._connect_client(session)
        except Exception as exc:
            logger.error(
                "Failed to initialize WhatsApp client",
                extra=log_fields(code=code, error=str(exc)),
            )
            await self._discard(session)
            self.registry.remove(code)
            raise AutoresponderError("Failed to start WhatsApp session") from exc

        logger.info(
            "WhatsApp session initialized",
            extra=log_fields(code=code, ready=session.ready, status=session.status.value),
        )
        return session

    async def destroy_session(self, code: str, *, logout: bool = False) -> bool:
        session = self.registry.remove(code)
        if session is None:
            return False

        try:
            await self.queue.flush_session(code)
        except Exception as exc:
            logger.error("Failed to flush messages before logout", extra=log_fields(code=code, error=str(exc)))

        if logout and session.client is not None:
            try:
                await session.client.logout()
            except Exception as exc:
                logger.warning("Transport logout failed", extra=log_fields(code=code, error=str(exc)))

        await self._discard(session)
        logger.info("Session destroyed", extra=log_fields(code=code))
        return True

    async def shutdown_all(self) -> None:
        await self.stop_background_tasks()
        for session in self.registry.list():
            try:
                await self.queue.flush_session(session.code)
            except Exception as exc:
                logger.error(
                    "Failed to flush messages during shutdown",
                    extra=log_fields(code=session.code, error=str(exc)),
                )
            await self._discard(session)
            logger.info("Session destroyed", extra=log_fields(code=session.code))
        self.registry.clear()

    async def restore_sessions(self, throttle: Optional[float] = None) -> int:
        """
        Start a session for every code with a persisted configuration.
        """
        if not settings.AUTO_RESTORE_SESSIONS:
            logger.debug("Auto restore disabled; skipping session hydration")
            return 0

        try:
            codes = await self.store.list_session_codes()
        except Exception as exc:
            logger.error("Failed to load persisted sessions", extra=log_fields(error=str(exc)))
            return 0

        pause = settings.SESSION_RESTORE_THROTTLE_SECONDS if throttle is None else throttle
        restored = 0
        for index, code in enumerate(codes):
            try:
                await self.ensure_session(code)
                restored += 1
            except Exception as exc:
                logger.error(
                    "Failed to restore WhatsApp session on startup",
                    extra=log_fields(code=code, error=str(exc)),
                )
            if pause and index < len(codes) - 1:
                await self.sleep(pause)

        logger.info(
            "Session restore summary",
            extra=log_fields(
                restored=restored,
                sessions=[{"code": s.code, "ready": s.ready} for s in self.registry.list()],
            ),
        )
        return restored

    # -------------------------------------------------------------------------
    # Connection
    # -------------------------------------------------------------------------
    async def _connect_client(self, session: Session) -> None:
        client: TransportClient = self.transport_factory(session.code)
        session.client = client
        session.capabilities = client.capabilities
        session.handlers_registered = False
        self._register_handlers(session)

        if await client.connect():
            await self._mark_ready(session)

    def _register_handlers(self, session: Session) -> None:
        if session.handlers_registered:
            logger.debug("Event handlers already registered", extra=log_fields(code=session.code))
            return
        session.handlers_registered = True
        client = session.client

        async def on_message(msg: InboundMessage) -> None:
            await self.orchestrator.handle_message(session, msg)

        async def on_state(state: ConnectionState) -> None:
            await self.handle_state_change(session, state)

        async def on_qr(qr: str) -> None:
            self.capture_qr(session, qr)

        client.on_message(on_message)
        client.on_state_change(on_state)
        client.on_qr(on_qr)

    def capture_qr(self, session: Session, qr: str, now: Optional[float] = None) -> bool:
        """Keep at most one QR refresh per 30 seconds."""
        now = time.time() if now is None else now
        if session.qr and now - session.last_qr_at < QR_REFRESH_INTERVAL_SECONDS:
            return False
        session.qr = qr
        session.last_qr_at = now
        logger.info("QR code updated", extra=log_fields(code=session.code))
        return True

    async def _mark_ready(self, session: Session) -> None:
        session.ready = True
        session.status = SessionStatus.READY
        session.has_been_authenticated = True
        session.started_at = time.time()
        session.qr = None

        try:
            host = await session.client.get_host_device()
            if host.number:
                session.bot_number = host.number
        except Exception as exc:
            logger.warning("Failed to retrieve host device info", extra=log_fields(code=session.code, error=str(exc)))

        await asyncio.gather(self.hydrate_config(session), self.scheduler.hydrate(session))
        logger.info(
            "WhatsApp client ready",
            extra=log_fields(code=session.code, botNumber=session.bot_number),
        )

    async def hydrate_config(self, session: Session) -> None:
        try:
            document = await self.store.load_session_config(session.code)
        except Exception as exc:
            logger.error("Failed to load persisted session config", extra=log_fields(code=session.code, error=str(exc)))
            return
        if not document:
            logger.debug("No persisted session config found", extra=log_fields(code=session.code))
            return

        session.ai_config = config_from_document(document, session.ai_config)
        truncate_histories(session, session.ai_config.context_window)
        logger.info(
            "Applied persisted AI config",
            extra=log_fields(
                code=session.code,
                model=session.ai_config.model or None,
                hasApiKey=bool(session.ai_config.api_key),
                autoReplyEnabled=session.ai_config.auto_reply_enabled,
            ),
        )

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------
    async def handle_state_change(self, session: Session, state: ConnectionState) -> None:
        code = session.code
        logger.info("WhatsApp session state changed", extra=log_fields(code=code, state=state.value))
        if session.destroyed:
            return

        if state == ConnectionState.CONNECTED:
            if session.ready:
                session.status = SessionStatus.READY
                return
            session.cancel_reconnect()
            await self._mark_ready(session)

        elif state == ConnectionState.UNPAIRED:
            session.ready = False
            if not session.has_been_authenticated:
                logger.info("Session unpaired during initial setup, waiting for QR scan", extra=log_fields(code=code))
                return
            logger.error("WhatsApp unpaired (logout), destroying session", extra=log_fields(code=code))
            session.status = SessionStatus.UNPAIRED
            await self.destroy_session(code)

        elif state == ConnectionState.CONFLICT:
            logger.error("WhatsApp conflict, forcing session restart", extra=log_fields(code=code))
            session.ready = False
            session.status = SessionStatus.CONFLICT
            await self.destroy_session(code)
            try:
                await self.ensure_session(code)
            except Exception as exc:
                logger.error("Failed to recreate session after conflict", extra=log_fields(code=code, error=str(exc)))

        elif state == ConnectionState.DISCONNECTED:
            logger.warning("WhatsApp client disconnected", extra=log_fields(code=code))
            session.ready = False
            session.status = SessionStatus.DISCONNECTED
            self._schedule_reconnect(session)

    def _schedule_reconnect(self, session: Session) -> None:
        session.cancel_reconnect()
        session.status = SessionStatus.RECONNECTING
        session.reconnect_task = asyncio.get_running_loop().create_task(self._reconnect(session))
        logger.info(
            "Scheduling reconnection attempt",
            extra=log_fields(code=session.code, delay=self.reconnect_delay),
        )

    async def _reconnect(self, session: Session) -> None:
        await self.sleep(self.reconnect_delay)
        session.reconnect_task = None
        if session.destroyed or session.ready or self.registry.get(session.code) is not session:
            return

        logger.info("Attempting to reconnect WhatsApp client", extra=log_fields(code=session.code))
        try:
            if session.client is not None:
                await session.client.close()
            await self._connect_client(session)
        except Exception as exc:
            session.status = SessionStatus.DISCONNECTED
            logger.error("Failed to reconnect WhatsApp client", extra=log_fields(code=session.code, error=str(exc)))

    async def _discard(self, session: Session) -> None:
        session.cancel_reconnect()
        session.clear_scheduled_jobs()
        session.destroyed = True
        session.ready = False
        if session.client is not None:
            try:
                await session.client.close()
            except Exception as exc:
                logger.debug("Error closing transport client", extra=log_fields(code=session.code, error=str(exc)))

    # -------------------------------------------------------------------------
    # Background sweeps
    # -------------------------------------------------------------------------
    async def sweep_sessions(self, now: Optional[float] = None) -> int:
        """
        Drop sessions flagged destroyed, and sessions that never
        authenticated within the idle ceiling.
        """
        now = time.time() if now is None else now
        stale: List[Session] = []
        for session in self.registry.list():
            if session.destroyed:
                stale.append(session)
            elif not session.has_been_authenticated and not session.ready:
                if now - session.started_at > self.max_idle_seconds:
                    logger.warning(
                        "Removing stale unauthenticated session",
                        extra=log_fields(code=session.code, idleSeconds=round(now - session.started_at)),
                    )
                    stale.append(session)

        for session in stale:
            await self._discard(session)
            if self.registry.get(session.code) is session:
                self.registry.remove(session.code)

        if stale:
            logger.info(
                "Session health check completed",
                extra=log_fields(removed=len(stale), remaining=len(self.registry)),
            )
        return len(stale)

    def start_background_tasks(self) -> None:
        if self._background:
            return
        loop = asyncio.get_running_loop()
        self._background = [
            loop.create_task(self._every(SESSION_HEALTH_CHECK_INTERVAL_SECONDS, self.sweep_sessions)),
            loop.create_task(self._every(CHAT_HISTORY_PRUNE_INTERVAL_SECONDS, self._prune_histories)),
        ]

    async def stop_background_tasks(self) -> None:
        tasks, self._background = self._background, []
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _prune_histories(self) -> int:
        return prune_inactive_chat_histories(self.registry.list())

    async def _every(self, interval: float, job: Callable[[], Awaitable[int]]) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await job()
            except Exception:
                logger.exception("Background sweep failed")
