# autoresponder/reply_orchestrator.py
"""
ReplyOrchestrator

Decides, for every inbound message, whether and how to answer. Stages run in
a fixed order and each one may end processing:

 1. chat-type filter (groups, broadcasts, status, newsletters)
 2. clock-skew filter (messages older than the session start)
 3. opt-out commands (!stop, !start, !stopall, !startall)
 4. self-sent passthrough (recorded for persona learning, never answered)
 5. opt-out filter (global stop, per-chat stop)
 6. input acquisition (voice transcription or plain text)
 7. utility command detection (!me)
 8. history + persistence of the inbound text
 9. custom keyword rules
10. credential / auto-reply gate
11. persona-conditioned generation
12. delivery

This module does NOT:
- Talk HTTP (transport, LLM and speech are injected collaborators).
- Own sessions (SessionManager does).
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import time
from typing import Awaitable, Callable, Iterable, List, Optional

from .chat_history import append_history_entry, get_history_for_chat
from .commands import (
    UTILITY_USAGE,
    UtilityCommand,
    apply_directive,
    is_bot_owner,
    is_chat_stopped,
    parse_utility_command,
    process_commands,
)
from .config_manager import clamp_context_window
from .constants import (
    BROADCAST_MARKER,
    GROUP_SUFFIX,
    LLM_MAX_RETRIES,
    LLM_RETRY_BASE_DELAY_SECONDS,
    MEDIA_DOWNLOAD_ATTEMPTS,
    MEDIA_DOWNLOAD_BASE_DELAY_SECONDS,
    MESSAGE_TIMESTAMP_TOLERANCE_SECONDS,
    MIN_AUDIO_SIZE,
    NEWSLETTER_MARKER,
    VOICE_MAX_AGE_SECONDS,
)
from .delivery import ReplyDelivery
from .errors import LlmError
from .llm_client import LlmClient
from .logging_config import get_logger, log_fields
from .persistence_queue import PersistenceQueue
from .persona_profiler import PersonaProfile, build_persona_profile
from .persona_source import PersonaSource, StoredPersonaSource
from .session_context import AiConfig, ChatHistoryEntry, CustomReplyRule, Session
from .speech import SpeechGateway
from .transport import InboundMessage

logger = get_logger(__name__)

VOICE_TOO_OLD = "⏰ Sorry, I can't process voice messages older than 24 hours. Please send a new one!"
VOICE_DOWNLOAD_FAILED = (
    "❌ Sorry, I couldn't download your voice message after a few tries. This might be due to "
    "network issues or the message not being ready. Please try again in a moment or send as text."
)
VOICE_INVALID_FORMAT = "❌ Invalid voice message format. Please try again."
VOICE_TOO_SHORT = (
    "❌ Voice message too short or corrupted (only {size} bytes received). "
    "Please record a longer/clearer one or send text."
)
VOICE_NOT_UNDERSTOOD = (
    "🎤 Sorry, I couldn't understand your voice message. This could be due to:\n"
    "• Audio too short or unclear\n"
    "• Background noise\n"
    "• Unsupported language\n\n"
    "Please try speaking more clearly or send a text message."
)
VOICE_PROCESSING_ERROR = "❌ Sorry, there was an error processing your voice message."

NO_REPLY = "⏱️ Sorry, the AI took too long to respond. Please try again."
NO_REPLY_VOICE = "⏱️ Sorry, the AI took too long to respond to your voice message. Please try again."
REPLY_ERROR = "❌ Sorry, an error occurred while generating a reply. Please try again."
REPLY_OVERLOADED = "⏳ The AI service is currently overloaded. Please try again in a few moments."
REPLY_RATE_LIMITED = "⏱️ Rate limit reached. Please wait a moment before trying again."
REPLY_INVALID_REQUEST = "❌ Invalid request. Please check your message and try again."
REPLY_VOICE_ERROR = "❌ Sorry, I couldn't process your voice message. Please try sending it as text."
CONFIG_MISSING = "⚙️ AI replies are not configured for this number yet. Add an API key and model to use !me."


def is_filtered_chat(chat_id: str) -> bool:
    if not isinstance(chat_id, str) or not chat_id:
        return True
    return GROUP_SUFFIX in chat_id or BROADCAST_MARKER in chat_id or NEWSLETTER_MARKER in chat_id


def find_custom_reply(rules: Iterable[CustomReplyRule], text: str) -> Optional[str]:
    """
    First matching rule wins. Regex rules see the original-case text, the
    others compare case-insensitively.
    """
    lowered = text.lower()
    for rule in rules or []:
        trigger = rule.trigger.lower()
        if rule.match_type == "exact":
            matched = lowered == trigger
        elif rule.match_type == "startsWith":
            matched = lowered.startswith(trigger)
        elif rule.match_type == "regex":
            matched = rule.pattern is not None and rule.pattern.search(text) is not None
        else:
            matched = trigger in lowered
        if matched:
            return rule.response
    return None


def strip_data_uri(media: str) -> Optional[str]:
    """
    "data:audio/ogg;base64,AAAA" -> "AAAA". None for a malformed envelope.
    """
    if not media.startswith("data:"):
        return media
    comma = media.find(",")
    if comma <= 0:
        return None
    return media[comma + 1:]


def speech_error_message(exc: Exception) -> str:
    detail = str(exc).lower()
    if "api key" in detail:
        return VOICE_PROCESSING_ERROR + " The Speech-to-Text API key may be invalid."
    if "quota" in detail or "limit" in detail:
        return VOICE_PROCESSING_ERROR + " API quota exceeded. Please try again later."
    if "permission" in detail:
        return VOICE_PROCESSING_ERROR + " API permissions issue. Please contact support."
    return VOICE_PROCESSING_ERROR + " Please try sending it as text."


def reply_error_message(exc: Exception, is_voice: bool) -> str:
    status = getattr(exc, "status_code", None)
    if status == 503:
        return REPLY_OVERLOADED
    if status == 429:
        return REPLY_RATE_LIMITED
    if status == 400:
        return REPLY_INVALID_REQUEST
    if is_voice:
        return REPLY_VOICE_ERROR
    return REPLY_ERROR


class ReplyOrchestrator:
    """
    Create once at startup; ``handle_message`` is registered as the inbound
    message handler of every session.
    """

    def __init__(
        self,
        queue: PersistenceQueue,
        llm: LlmClient,
        speech: SpeechGateway,
        delivery: ReplyDelivery,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.queue = queue
        self.llm = llm
        self.speech = speech
        self.delivery = delivery
        self.sleep = sleep

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------
    async def handle_message(self, session: Session, msg: InboundMessage) -> None:
        """
        Never raises: anything unexpected is logged and the message dropped.
        """
        try:
            await self._handle(session, msg)
        except Exception:
            logger.exception(
                "Unhandled error while processing message",
                extra=log_fields(code=session.code, chatId=msg.chat_id, messageId=msg.id),
            )

    def persona_source_for(self, session: Session) -> PersonaSource:
        if session.persona_source is None:
            session.persona_source = StoredPersonaSource(self.queue, session.code)
        return session.persona_source

    # -------------------------------------------------------------------------
    # Stages
    # -------------------------------------------------------------------------
    async def _handle(self, session: Session, msg: InboundMessage) -> None:
        if session.destroyed or not session.ready:
            return

        chat_id = msg.chat_id

        # 1) Non-personal chats
        if is_filtered_chat(chat_id):
            logger.debug("Skipping non-personal chat", extra=log_fields(code=session.code, chatId=chat_id))
            return

        # 2) Stale history replayed on reconnect
        if session.started_at and msg.timestamp + MESSAGE_TIMESTAMP_TOLERANCE_SECONDS < session.started_at:
            return

        # 3) Opt-out commands
        if await process_commands(session, msg, self.delivery):
            return

        # 4) Our own messages feed persona learning only
        if msg.from_me:
            self._record_own_message(session, msg)
            return

        # 5) Opt-out state
        if session.global_stop.active and not is_bot_owner(session, msg):
            return
        if is_chat_stopped(session, chat_id):
            return

        async with session.chat_lock(chat_id):
            await self._respond(session, msg)

    def _record_own_message(self, session: Session, msg: InboundMessage) -> None:
        text = msg.body.strip() if isinstance(msg.body, str) else ""
        if not text or msg.has_media or msg.is_voice:
            return
        append_history_entry(session, msg.chat_id, "assistant", text, msg.timestamp)
        self.queue.queue_message(session.code, msg.chat_id, "outgoing", text, msg.timestamp)

    async def _respond(self, session: Session, msg: InboundMessage) -> None:
        chat_id = msg.chat_id
        config = session.ai_config
        voice_input = bool(
            msg.is_voice and config is not None and config.voice_reply_enabled and config.speech_to_text_api_key
        )

        # 6) Input
        if voice_input:
            text = await self._transcribe_voice(session, msg, config)
        else:
            text = msg.body.strip() if isinstance(msg.body, str) else ""
        if not text:
            return

        # 7) !me
        utility = parse_utility_command(text, msg.quoted_text)
        if utility is not None and utility.is_empty:
            await self.delivery.safe_reply(session, chat_id, UTILITY_USAGE, quoted_id=msg.id)
            await self.delivery.mark_chat_unread(session, chat_id)
            return

        # 8) Inbound turn
        append_history_entry(session, chat_id, "user", text, msg.timestamp)
        self.queue.queue_message(
            session.code,
            chat_id,
            "incoming",
            text,
            msg.timestamp,
            has_media=msg.has_media and not msg.is_voice,
        )

        as_voice = bool(
            msg.is_voice and config is not None and config.voice_reply_enabled and config.text_to_speech_api_key
        )

        # 9) Keyword rules
        if utility is None:
            if config is None:
                return
            custom = find_custom_reply(config.custom_replies, text)
            if custom is not None:
                await self.delivery.safe_reply(session, chat_id, custom, quoted_id=msg.id, as_voice=as_voice)
                append_history_entry(session, chat_id, "assistant", custom)
                self.queue.queue_message(session.code, chat_id, "outgoing", custom, is_ai_generated=False)
                await self.delivery.mark_chat_unread(session, chat_id)
                logger.info("Custom reply sent", extra=log_fields(code=session.code, chatId=chat_id))
                return

        # 10) Gates
        if config is None or not config.has_llm_credentials:
            if utility is not None:
                await self.delivery.safe_reply(session, chat_id, CONFIG_MISSING, quoted_id=msg.id)
                await self.delivery.mark_chat_unread(session, chat_id)
            return
        if not config.auto_reply_enabled and utility is None:
            return

        # 11 + 12) Generate and deliver
        try:
            reply = await self._generate(session, chat_id, config, utility)
            if reply:
                await self.delivery.send_fragmented_reply(
                    session, chat_id, reply, quoted_id=msg.id, as_voice=as_voice
                )
                append_history_entry(session, chat_id, "assistant", reply)
                self.queue.queue_message(session.code, chat_id, "outgoing", reply, is_ai_generated=True)
                logger.info(
                    "AI reply sent",
                    extra=log_fields(code=session.code, chatId=chat_id, replyLength=len(reply), utility=bool(utility)),
                )
            else:
                await self.delivery.safe_reply(
                    session, chat_id, NO_REPLY_VOICE if msg.is_voice else NO_REPLY, quoted_id=msg.id
                )
            await self.delivery.mark_chat_unread(session, chat_id)
        except Exception as exc:
            logger.error(
                "AI reply error",
                extra=log_fields(
                    code=session.code,
                    chatId=chat_id,
                    error=str(exc),
                    statusCode=getattr(exc, "status_code", None),
                ),
            )
            await self.delivery.safe_reply(
                session, chat_id, reply_error_message(exc, msg.is_voice), quoted_id=msg.id
            )
            await self.delivery.mark_chat_unread(session, chat_id)

    async def _generate(
        self,
        session: Session,
        chat_id: str,
        config: AiConfig,
        utility: Optional[UtilityCommand],
    ) -> Optional[str]:
        window = clamp_context_window(config.context_window)
        history: List[ChatHistoryEntry] = get_history_for_chat(session, chat_id, window)
        if utility is not None:
            history = apply_directive(history, utility)

        persona = await self._load_persona(session, chat_id)
        return await self._generate_with_retry(session, chat_id, config, history, persona)

    async def _load_persona(self, session: Session, chat_id: str) -> PersonaProfile:
        try:
            return await self.persona_source_for(session).load(chat_id)
        except Exception as exc:
            logger.warning(
                "Persona load failed, using bootstrap profile",
                extra=log_fields(code=session.code, chatId=chat_id, error=str(exc)),
            )
            return build_persona_profile("bootstrap", [], [])

    async def _generate_with_retry(
        self,
        session: Session,
        chat_id: str,
        config: AiConfig,
        history: List[ChatHistoryEntry],
        persona: PersonaProfile,
    ) -> Optional[str]:
        attempt = 0
        while True:
            try:
                return await self.llm.generate_reply(config, history, persona)
            except LlmError as exc:
                if not exc.is_overload or attempt >= LLM_MAX_RETRIES:
                    raise
                attempt += 1
                delay = LLM_RETRY_BASE_DELAY_SECONDS * attempt
                logger.info(
                    "Retrying after API overload",
                    extra=log_fields(code=session.code, chatId=chat_id, retryCount=attempt, delay=delay),
                )
                await self.sleep(delay)

    # -------------------------------------------------------------------------
    # Voice input
    # -------------------------------------------------------------------------
    async def _transcribe_voice(self, session: Session, msg: InboundMessage, config: AiConfig) -> str:
        """
        Returns the transcription, or "" after telling the sender why their
        voice note could not be used.
        """
        chat_id = msg.chat_id
        age = time.time() - msg.timestamp
        if age > VOICE_MAX_AGE_SECONDS:
            await self._reject_voice(session, msg, VOICE_TOO_OLD)
            return ""

        try:
            media = await self.download_media_with_retry(session, msg)
            if not media:
                logger.warning(
                    "Failed to download voice message media after retries",
                    extra=log_fields(code=session.code, chatId=chat_id, messageAge=age),
                )
                await self._reject_voice(session, msg, VOICE_DOWNLOAD_FAILED)
                return ""

            encoded = strip_data_uri(media)
            if encoded is None:
                logger.error(
                    "Invalid data URI format in media",
                    extra=log_fields(code=session.code, chatId=chat_id, mediaPreview=media[:100]),
                )
                await self._reject_voice(session, msg, VOICE_INVALID_FORMAT)
                return ""

            try:
                audio = base64.b64decode(encoded)
            except (binascii.Error, ValueError):
                audio = b""

            if len(audio) < MIN_AUDIO_SIZE:
                logger.error(
                    "Invalid tiny audio buffer from download",
                    extra=log_fields(code=session.code, chatId=chat_id, audioSize=len(audio)),
                )
                await self._reject_voice(session, msg, VOICE_TOO_SHORT.format(size=len(audio)))
                return ""

            text = await self.speech.transcribe_audio(
                audio, config.speech_to_text_api_key, config.voice_language or "en-US"
            )
        except Exception as exc:
            logger.error(
                "Failed to process voice message",
                extra=log_fields(code=session.code, chatId=chat_id, error=str(exc)),
            )
            await self._reject_voice(session, msg, speech_error_message(exc))
            return ""

        text = (text or "").strip()
        if not text:
            logger.warning(
                "Voice message transcription returned empty text",
                extra=log_fields(code=session.code, chatId=chat_id, audioSize=len(audio)),
            )
            await self._reject_voice(session, msg, VOICE_NOT_UNDERSTOOD)
            return ""

        logger.info(
            "Voice message transcribed successfully",
            extra=log_fields(code=session.code, chatId=chat_id, transcriptionLength=len(text)),
        )
        return text

    async def _reject_voice(self, session: Session, msg: InboundMessage, text: str) -> None:
        await self.delivery.safe_reply(session, msg.chat_id, text, quoted_id=msg.id)
        await self.delivery.mark_chat_unread(session, msg.chat_id)

    async def download_media_with_retry(
        self,
        session: Session,
        msg: InboundMessage,
        attempts: int = MEDIA_DOWNLOAD_ATTEMPTS,
        base_delay: float = MEDIA_DOWNLOAD_BASE_DELAY_SECONDS,
    ) -> Optional[str]:
        """
        Up to ``attempts`` downloads with a linearly growing pause (1s, 2s).
        """
        for attempt in range(1, attempts + 1):
            try:
                media = await session.client.download_media(msg)
                if isinstance(media, str) and media:
                    return media
                logger.debug(
                    "Download returned empty media",
                    extra=log_fields(code=session.code, chatId=msg.chat_id, attempt=attempt),
                )
            except Exception as exc:
                logger.error(
                    f"Media download attempt {attempt} failed",
                    extra=log_fields(code=session.code, chatId=msg.chat_id, error=str(exc)),
                )
            if attempt < attempts:
                await self.sleep(base_delay * attempt)

        logger.warning(
            "All download retries exhausted",
            extra=log_fields(code=session.code, chatId=msg.chat_id, attempts=attempts),
        )
        return None
