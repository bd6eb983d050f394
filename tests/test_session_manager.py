"""Session registry and connection state machine."""

import asyncio
import contextlib

import pytest

from autoresponder.config import settings
from autoresponder.config_manager import config_to_document
from autoresponder.errors import AutoresponderError
from autoresponder.scheduler import Scheduler
from autoresponder.session_context import ScheduledJob, SessionStatus
from autoresponder.session_manager import SessionManager, SessionRegistry
from autoresponder.transport import ConnectionState

from .helpers import BOT_NUMBER, CONTACT, TransportFactoryStub, make_config, make_message


class FailingFactory(TransportFactoryStub):
    def __call__(self, session_code):
        transport = super().__call__(session_code)
        transport.connect_error = ConnectionError("evolution unreachable")
        return transport


def _build(store, queue, orchestrator, sleeper, factory):
    return SessionManager(
        SessionRegistry(),
        factory,
        store,
        queue,
        orchestrator,
        Scheduler(store, queue, sleep=sleeper),
        reconnect_delay=2,
        max_idle_seconds=1800,
        sleep=sleeper,
    )


@pytest.fixture
def factory():
    return TransportFactoryStub()


@pytest.fixture
async def manager(store, queue, orchestrator, sleeper, factory):
    manager = _build(store, queue, orchestrator, sleeper, factory)
    yield manager
    await manager.shutdown_all()


class TestRegistry:
    def test_one_session_per_code(self):
        registry = SessionRegistry()
        session = registry.create("alpha-code")

        assert registry.get("alpha-code") is session
        assert "alpha-code" in registry
        with pytest.raises(AutoresponderError):
            registry.create("alpha-code")

        assert registry.remove("alpha-code") is session
        assert len(registry) == 0
        assert registry.remove("alpha-code") is None


class TestStartup:
    async def test_paired_transport_becomes_ready(self, store, manager, factory):
        await store.save_session_config("alpha-code", config_to_document(make_config(context_window=20)))

        session = await manager.ensure_session("alpha-code")

        assert session.ready
        assert session.status == SessionStatus.READY
        assert session.has_been_authenticated
        assert session.bot_number == BOT_NUMBER
        assert session.client is factory.last
        assert session.capabilities.supports_voice_notes
        assert session.ai_config.api_key == "test-api-key-123"
        assert session.ai_config.context_window == 20

    async def test_existing_session_is_reused(self, manager, factory):
        first = await manager.ensure_session("alpha-code")
        second = await manager.ensure_session("alpha-code")
        assert first is second
        assert len(factory.created) == 1

    async def test_failed_start_leaves_nothing_behind(self, store, queue, orchestrator, sleeper):
        failing = FailingFactory()
        manager = _build(store, queue, orchestrator, sleeper, failing)
        try:
            with pytest.raises(AutoresponderError, match="Failed to start WhatsApp session"):
                await manager.ensure_session("alpha-code")
            assert manager.get_session("alpha-code") is None
            assert failing.last.closed
        finally:
            await manager.shutdown_all()

    async def test_unpaired_session_waits_for_qr_scan(self, store, queue, orchestrator, sleeper):
        unpaired = TransportFactoryStub(paired=False)
        manager = _build(store, queue, orchestrator, sleeper, unpaired)
        try:
            session = await manager.ensure_session("alpha-code")
            assert not session.ready
            assert session.status == SessionStatus.CONNECTING

            await unpaired.last.emit_qr("qr-payload-1")
            assert session.qr == "qr-payload-1"

            await unpaired.last.emit_state(ConnectionState.CONNECTED)
            assert session.ready
            assert session.qr is None
        finally:
            await manager.shutdown_all()


class TestQrThrottle:
    def test_refresh_at_most_every_thirty_seconds(self, manager):
        session = manager.registry.create("alpha-code")

        assert manager.capture_qr(session, "first", now=1000.0)
        assert not manager.capture_qr(session, "second", now=1029.0)
        assert session.qr == "first"
        assert manager.capture_qr(session, "third", now=1030.5)
        assert session.qr == "third"


class TestStateChanges:
    async def test_messages_are_routed_to_the_orchestrator(self, manager, factory):
        session = await manager.ensure_session("alpha-code")
        session.ai_config = make_config()

        await factory.last.emit_message(make_message("hello"))

        assert factory.last.texts == ["Sure, sounds good."]
        assert session.chat_history[CONTACT].messages[0].text == "hello"

    async def test_unpaired_after_login_destroys_session(self, manager, factory):
        session = await manager.ensure_session("alpha-code")

        await factory.last.emit_state(ConnectionState.UNPAIRED)

        assert session.destroyed
        assert manager.get_session("alpha-code") is None
        assert factory.last.closed

    async def test_unpaired_during_setup_keeps_session(self, store, queue, orchestrator, sleeper):
        unpaired = TransportFactoryStub(paired=False)
        manager = _build(store, queue, orchestrator, sleeper, unpaired)
        try:
            session = await manager.ensure_session("alpha-code")
            await manager.handle_state_change(session, ConnectionState.UNPAIRED)
            assert manager.get_session("alpha-code") is session
            assert not session.destroyed
        finally:
            await manager.shutdown_all()

    async def test_conflict_recreates_session(self, manager, factory):
        old = await manager.ensure_session("alpha-code")

        await manager.handle_state_change(old, ConnectionState.CONFLICT)

        new = manager.get_session("alpha-code")
        assert old.destroyed
        assert new is not old
        assert new.ready
        assert len(factory.created) == 2

    async def test_disconnect_schedules_one_reconnect(self, manager, factory, sleeper):
        session = await manager.ensure_session("alpha-code")
        first_client = factory.last

        await manager.handle_state_change(session, ConnectionState.DISCONNECTED)
        assert not session.ready
        assert session.status == SessionStatus.RECONNECTING

        await session.reconnect_task

        assert sleeper.delays == [2]
        assert first_client.closed
        assert session.client is factory.last
        assert session.client is not first_client
        assert session.ready

    async def test_reconnect_skipped_once_destroyed(self, manager, factory, sleeper):
        session = await manager.ensure_session("alpha-code")
        await manager.handle_state_change(session, ConnectionState.DISCONNECTED)
        task = session.reconnect_task

        await manager.destroy_session("alpha-code")

        with contextlib.suppress(asyncio.CancelledError):
            await task
        assert task.cancelled()
        assert len(factory.created) == 1


class TestTeardown:
    async def test_destroy_with_logout(self, manager, factory, queue, store):
        await manager.ensure_session("alpha-code")
        queue.queue_message("alpha-code", CONTACT, "incoming", "pending message")

        assert await manager.destroy_session("alpha-code", logout=True)

        assert factory.last.logged_out
        assert factory.last.closed
        assert len(await store.get_contact_messages("alpha-code", CONTACT)) == 1
        assert not await manager.destroy_session("alpha-code")

    async def test_destroy_cancels_scheduled_timers(self, manager):
        session = await manager.ensure_session("alpha-code")
        job = ScheduledJob(id="job-1", message="hi", numbers=[CONTACT], send_at=0, created_at=0)
        session.scheduled_jobs[job.id] = job
        manager.scheduler.sleep = asyncio.sleep
        manager.scheduler.arm(session, job, delay=3600)
        timer = job.timer

        await manager.destroy_session("alpha-code")

        assert session.scheduled_jobs == {}
        with contextlib.suppress(asyncio.CancelledError):
            await timer
        assert timer.cancelled()

    async def test_shutdown_all_empties_registry(self, manager, factory):
        await manager.ensure_session("alpha-code")
        await manager.ensure_session("beta-code")

        await manager.shutdown_all()

        assert len(manager.registry) == 0
        assert all(transport.closed for transport in factory.created)


class TestSweeps:
    async def test_stale_unauthenticated_sessions_are_removed(self, store, queue, orchestrator, sleeper):
        unpaired = TransportFactoryStub(paired=False)
        manager = _build(store, queue, orchestrator, sleeper, unpaired)
        try:
            session = await manager.ensure_session("alpha-code")
            now = session.started_at + 1801

            assert await manager.sweep_sessions(now=now) == 1
            assert manager.get_session("alpha-code") is None
            assert session.destroyed
        finally:
            await manager.shutdown_all()

    async def test_authenticated_sessions_survive_the_sweep(self, manager):
        session = await manager.ensure_session("alpha-code")
        assert await manager.sweep_sessions(now=session.started_at + 10 * 3600) == 0
        assert manager.get_session("alpha-code") is session


class TestRestore:
    async def test_disabled_restore_is_a_noop(self, store, manager):
        await store.save_session_config("alpha-code", {"aiConfig": {}})
        assert await manager.restore_sessions() == 0
        assert len(manager.registry) == 0

    async def test_restores_every_persisted_session(self, store, manager, sleeper, monkeypatch):
        monkeypatch.setattr(settings, "AUTO_RESTORE_SESSIONS", True)
        await store.save_session_config("alpha-code", config_to_document(make_config()))
        await store.save_session_config("beta-code", config_to_document(make_config()))

        restored = await manager.restore_sessions(throttle=0.5)

        assert restored == 2
        assert sleeper.delays == [0.5]
        assert manager.get_session("beta-code").ai_config.model == "gemini-test"
