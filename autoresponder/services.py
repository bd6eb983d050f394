# autoresponder/services.py
"""
Shared in-process singletons.

One Services object is built per application and hung on
``app.state.services``; routes reach every collaborator through it.
Tests build their own with an in-memory store and a fake transport.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from .auth import AuthCodeProvider
from .constants import FRAGMENT_DELAY_SECONDS
from .delivery import ReplyDelivery
from .document_store import DocumentStore, create_document_store
from .evolution_transport import create_evolution_transport
from .llm_client import LlmClient
from .persistence_queue import PersistenceQueue
from .reply_orchestrator import ReplyOrchestrator
from .scheduler import Scheduler
from .session_manager import SessionManager, SessionRegistry
from .speech import SpeechGateway
from .transport import TransportFactory


@dataclass
class Services:
    store: DocumentStore
    queue: PersistenceQueue
    llm: LlmClient
    speech: SpeechGateway
    delivery: ReplyDelivery
    orchestrator: ReplyOrchestrator
    scheduler: Scheduler
    registry: SessionRegistry
    manager: SessionManager
    auth: AuthCodeProvider
    started_at: float = field(default_factory=time.time)


def build_services(
    *,
    store: Optional[DocumentStore] = None,
    transport_factory: Optional[TransportFactory] = None,
    llm: Optional[LlmClient] = None,
    speech: Optional[SpeechGateway] = None,
    auth: Optional[AuthCodeProvider] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    fragment_delay: float = FRAGMENT_DELAY_SECONDS,
) -> Services:
    """
    Wire the whole object graph. Every argument defaults to the production
    collaborator configured from ``settings``.
    """
    store = store if store is not None else create_document_store()
    queue = PersistenceQueue(store)
    llm = llm or LlmClient()
    speech = speech or SpeechGateway()

    delivery = ReplyDelivery(speech, fragment_delay=fragment_delay, sleep=sleep)

    orchestrator = ReplyOrchestrator(queue, llm, speech, delivery, sleep=sleep)
    scheduler = Scheduler(store, queue, sleep=sleep)
    registry = SessionRegistry()
    manager = SessionManager(
        registry,
        transport_factory or create_evolution_transport,
        store,
        queue,
        orchestrator,
        scheduler,
        sleep=sleep,
    )

    return Services(
        store=store,
        queue=queue,
        llm=llm,
        speech=speech,
        delivery=delivery,
        orchestrator=orchestrator,
        scheduler=scheduler,
        registry=registry,
        manager=manager,
        auth=auth or AuthCodeProvider(),
    )
