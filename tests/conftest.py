"""Shared pytest fixtures for the autoresponder tests."""
import os
import sys
sys.dont_write_bytecode = True

# Settings are read once, on first import of autoresponder.config.
os.environ.setdefault("STORE_BACKEND", "memory")
os.environ.setdefault("AUTH_CODES", "alpha-code,beta-code")
os.environ.setdefault("AUTO_RESTORE_SESSIONS", "false")
os.environ.setdefault("EVOLUTION_BASE_URL", "http://evolution.test")
os.environ.setdefault("WEBHOOK_BASE_URL", "http://app.test")
os.environ.setdefault("EVOLUTION_WEBHOOK_SECRET", "test-webhook-secret")

import pytest  # noqa: E402

from autoresponder.delivery import ReplyDelivery  # noqa: E402
from autoresponder.document_store import InMemoryDocumentStore  # noqa: E402
from autoresponder.persistence_queue import PersistenceQueue  # noqa: E402
from autoresponder.reply_orchestrator import ReplyOrchestrator  # noqa: E402

from .helpers import FakeLlm, FakeSpeech, FakeTransport, SleepRecorder, make_session  # noqa: E402


@pytest.fixture
def store():
    return InMemoryDocumentStore()


@pytest.fixture
async def queue(store):
    queue = PersistenceQueue(store, flush_interval=3600)
    yield queue
    await queue.shutdown()


@pytest.fixture
def sleeper():
    return SleepRecorder()


@pytest.fixture
def llm():
    return FakeLlm()


@pytest.fixture
def speech():
    return FakeSpeech()


@pytest.fixture
def delivery(speech, sleeper):
    return ReplyDelivery(speech, fragment_delay=1.5, sleep=sleeper)


@pytest.fixture
def orchestrator(queue, llm, speech, delivery, sleeper):
    return ReplyOrchestrator(queue, llm, speech, delivery, sleep=sleeper)


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def session(transport):
    return make_session(client=transport)
