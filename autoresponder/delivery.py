# autoresponder/delivery.py
"""
Outbound delivery.

- split_reply: break a long reply into natural fragments
- ReplyDelivery.safe_reply: send one text (or voice note), never raising
- ReplyDelivery.send_fragmented_reply: fragments with human-like pacing
- ReplyDelivery.mark_chat_unread: best-effort, capability gated
"""

from __future__ import annotations

import asyncio
import re
from typing import Awaitable, Callable, List, Optional

from .constants import (
    FRAGMENT_DELAY_SECONDS,
    FRAGMENT_MAX_CHARS,
    LONG_SENTENCE_CHARS,
    MIN_AUDIO_SIZE,
    SINGLE_MESSAGE_MAX_CHARS,
)
from .logging_config import get_logger, log_fields
from .session_context import AiConfig, Session
from .speech import SpeechGateway, pick_voice_language

logger = get_logger(__name__)

# Sentences end in . ! ?; trailing text without punctuation is its own sentence.
SENTENCE_RE = re.compile(r"[^.!?]*[.!?]+|[^.!?]+$")
# Split after a run of clause separators, keeping the separator on the left.
CLAUSE_SPLIT_RE = re.compile(r"(?<=[:;,\n-])(?![:;,\n-])")


def _pack_words(text: str, limit: int = FRAGMENT_MAX_CHARS) -> List[str]:
    fragments: List[str] = []
    current = ""
    for word in text.split():
        candidate = f"{current} {word}" if current else word
        if len(candidate) > limit and current:
            fragments.append(current)
            current = word
        else:
            current = candidate
    if current:
        fragments.append(current)
    return fragments


def _split_long(sentence: str) -> List[str]:
    if len(sentence.strip()) <= LONG_SENTENCE_CHARS:
        return [sentence]

    clauses = [clause for clause in CLAUSE_SPLIT_RE.split(sentence) if clause.strip()]
    if len(clauses) > 1:
        pieces: List[str] = []
        for clause in clauses:
            if len(clause.strip()) > LONG_SENTENCE_CHARS:
                pieces.extend(_pack_words(clause))
            else:
                pieces.append(clause)
        return pieces
    return _pack_words(sentence)


def split_reply(text: str) -> List[str]:
    """
    Replies up to 60 chars go out whole. Longer ones are split into
    sentences; a sentence over 100 chars is split at clause separators
    (``: ; , - newline``), or failing that packed into <= 80 char chunks at
    word boundaries.
    """
    if not isinstance(text, str) or not text.strip():
        return []
    if len(text) <= SINGLE_MESSAGE_MAX_CHARS:
        return [text.strip()]

    sentences = SENTENCE_RE.findall(text) or [text]
    fragments: List[str] = []
    for sentence in sentences:
        fragments.extend(_split_long(sentence))
    return [fragment.strip() for fragment in fragments if fragment.strip()]


class ReplyDelivery:
    def __init__(
        self,
        speech: SpeechGateway,
        fragment_delay: float = FRAGMENT_DELAY_SECONDS,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.speech = speech
        self.fragment_delay = fragment_delay
        self.sleep = sleep

    async def safe_reply(
        self,
        session: Session,
        chat_id: str,
        text: str,
        *,
        quoted_id: Optional[str] = None,
        as_voice: bool = False,
    ) -> bool:
        """
        Send ``text`` to ``chat_id``. Voice notes fall back to text when TTS
        fails or the transport cannot send audio. Returns False on failure.
        """
        client = session.client
        if client is None:
            return False
        try:
            if as_voice and await self._try_voice(session, chat_id, text, quoted_id):
                return True
            await client.send_text(chat_id, text, quoted_id)
            return True
        except Exception as exc:
            logger.error(
                "Failed to send reply",
                extra=log_fields(code=session.code, chatId=chat_id, error=str(exc)),
            )
            return False

    async def _try_voice(self, session: Session, chat_id: str, text: str, quoted_id: Optional[str]) -> bool:
        config: Optional[AiConfig] = session.ai_config
        capabilities = session.capabilities
        if (
            config is None
            or not config.text_to_speech_api_key
            or not text.strip()
            or capabilities is None
            or not capabilities.supports_voice_notes
        ):
            return False

        spoken = text.strip()
        try:
            audio = await self.speech.synthesize_speech(
                spoken,
                config.text_to_speech_api_key,
                language=pick_voice_language(spoken, config.voice_language),
                gender=config.voice_gender or "NEUTRAL",
            )
        except Exception as exc:
            logger.error(
                "Failed to synthesize voice reply, falling back to text",
                extra=log_fields(code=session.code, chatId=chat_id, error=str(exc)),
            )
            return False

        if not audio or len(audio) < MIN_AUDIO_SIZE:
            logger.warning(
                "TTS returned invalid audio buffer, falling back to text",
                extra=log_fields(code=session.code, chatId=chat_id, audioSize=len(audio or b"")),
            )
            return False

        try:
            await session.client.send_voice_note(chat_id, audio, quoted_id)
        except Exception as exc:
            logger.error(
                "Failed to send voice reply, falling back to text",
                extra=log_fields(code=session.code, chatId=chat_id, error=str(exc)),
            )
            return False
        return True

    async def send_fragmented_reply(
        self,
        session: Session,
        chat_id: str,
        text: str,
        *,
        quoted_id: Optional[str] = None,
        as_voice: bool = False,
    ) -> List[str]:
        fragments = split_reply(text)
        for index, fragment in enumerate(fragments):
            await self.safe_reply(session, chat_id, fragment, quoted_id=quoted_id, as_voice=as_voice)
            if index < len(fragments) - 1:
                await self.sleep(self.fragment_delay)
        return fragments

    async def mark_chat_unread(self, session: Session, chat_id: str) -> None:
        capabilities = session.capabilities
        if session.client is None or capabilities is None or not capabilities.supports_mark_unread:
            return
        try:
            await session.client.mark_unread(chat_id)
        except Exception as exc:
            logger.debug(
                "Failed to mark chat unread",
                extra=log_fields(code=session.code, chatId=chat_id, error=str(exc)),
            )
