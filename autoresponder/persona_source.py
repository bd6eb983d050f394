# autoresponder/persona_source.py
"""
Persona sources.

The reply orchestrator asks for a persona only once it is about to call the
LLM. ``StoredPersonaSource`` reads persisted data for one session and picks,
in order:
- contact:   the contact's own log, when it is large and yields examples
- universal: the session-wide corpus of the operator's own replies
- bootstrap: a neutral default profile
"""

from __future__ import annotations

from typing import Protocol

from .constants import (
    CONTACT_PERSONA_MIN_EXAMPLES,
    CONTACT_PERSONA_MIN_MESSAGES,
    DEFAULT_EXAMPLE_LIMIT,
)
from .logging_config import get_logger, log_fields
from .persistence_queue import PersistenceQueue
from .persona_profiler import (
    PersonaProfile,
    build_persona_profile,
    build_standalone_examples,
    extract_contact_persona_data,
)

logger = get_logger(__name__)


class PersonaSource(Protocol):
    async def load(self, contact_id: str) -> PersonaProfile: ...


class StoredPersonaSource:
    def __init__(
        self,
        queue: PersistenceQueue,
        session_code: str,
        example_limit: int = DEFAULT_EXAMPLE_LIMIT,
    ) -> None:
        self.queue = queue
        self.session_code = session_code
        self.example_limit = example_limit

    async def load(self, contact_id: str) -> PersonaProfile:
        messages = await self.queue.get_chat_messages(self.session_code, contact_id)
        if len(messages) >= CONTACT_PERSONA_MIN_MESSAGES:
            extraction = extract_contact_persona_data(messages, self.example_limit)
            if len(extraction.examples) >= CONTACT_PERSONA_MIN_EXAMPLES:
                logger.debug(
                    "Using contact-specific persona",
                    extra=log_fields(
                        code=self.session_code,
                        chatId=contact_id,
                        totalMessages=len(messages),
                        exampleCount=len(extraction.examples),
                    ),
                )
                return build_persona_profile(
                    "contact", extraction.replies, extraction.examples, self.example_limit
                )

        universal = await self.queue.get_universal_persona(self.session_code)
        if universal:
            logger.debug(
                "Using universal persona",
                extra=log_fields(code=self.session_code, chatId=contact_id, corpusSize=len(universal)),
            )
            return build_persona_profile(
                "universal",
                universal,
                build_standalone_examples(universal, self.example_limit),
                self.example_limit,
            )

        return build_persona_profile("bootstrap", [], [], self.example_limit)
