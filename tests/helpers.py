"""Fakes and builders shared by the test modules."""
import time
from itertools import count
from typing import Any, List, Optional

from autoresponder.errors import TransportError
from autoresponder.session_context import AiConfig, Session, SessionStatus
from autoresponder.transport import (
    ConnectionState,
    HostDevice,
    InboundMessage,
    TransportCapabilities,
)

BOT_NUMBER = "15550000000"
BOT_CHAT = f"{BOT_NUMBER}@c.us"
CONTACT = "15551234567@c.us"

_message_ids = count(1)


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------
class FakeTransport:
    """In-memory TransportClient recording everything sent through it."""

    def __init__(
        self,
        session_code: str = "alpha-code",
        *,
        paired: bool = True,
        voice: bool = True,
        unread: bool = True,
        host_number: Optional[str] = BOT_NUMBER,
    ) -> None:
        self.session_code = session_code
        self.capabilities = TransportCapabilities(supports_voice_notes=voice, supports_mark_unread=unread)
        self.paired = paired
        self.host_number = host_number
        self.connect_error: Optional[Exception] = None
        self.fail_send_to: set = set()
        self.sent: List[tuple] = []
        self.voice_notes: List[tuple] = []
        self.unread: List[str] = []
        self.media_results: List[Any] = []
        self.download_calls = 0
        self.connect_calls = 0
        self.logged_out = False
        self.closed = False
        self.message_handlers: list = []
        self.state_handlers: list = []
        self.qr_handlers: list = []
        self.events: List[dict] = []

    @property
    def texts(self) -> List[str]:
        return [text for _, text, _ in self.sent]

    async def connect(self) -> bool:
        self.connect_calls += 1
        if self.connect_error is not None:
            raise self.connect_error
        return self.paired

    async def send_text(self, chat_id: str, text: str, quoted_id: Optional[str] = None) -> None:
        if chat_id in self.fail_send_to:
            raise TransportError("send failed")
        self.sent.append((chat_id, text, quoted_id))

    async def send_voice_note(self, chat_id: str, audio: bytes, quoted_id: Optional[str] = None) -> None:
        self.voice_notes.append((chat_id, audio, quoted_id))

    async def mark_unread(self, chat_id: str) -> None:
        self.unread.append(chat_id)

    async def download_media(self, message: InboundMessage) -> Optional[str]:
        self.download_calls += 1
        if not self.media_results:
            return None
        result = self.media_results.pop(0) if len(self.media_results) > 1 else self.media_results[0]
        if isinstance(result, Exception):
            raise result
        return result

    async def get_host_device(self) -> HostDevice:
        return HostDevice(number=self.host_number)

    def on_message(self, handler) -> None:
        self.message_handlers.append(handler)

    def on_state_change(self, handler) -> None:
        self.state_handlers.append(handler)

    def on_qr(self, handler) -> None:
        self.qr_handlers.append(handler)

    async def emit_message(self, message: InboundMessage) -> None:
        for handler in list(self.message_handlers):
            await handler(message)

    async def emit_state(self, state: ConnectionState) -> None:
        for handler in list(self.state_handlers):
            await handler(state)

    async def emit_qr(self, qr: str) -> None:
        for handler in list(self.qr_handlers):
            await handler(qr)

    async def logout(self) -> None:
        self.logged_out = True

    async def close(self) -> None:
        self.closed = True

    async def dispatch_event(self, payload: dict) -> None:
        self.events.append(payload)


class TransportFactoryStub:
    """Hands out FakeTransports and remembers them in creation order."""

    def __init__(self, **defaults: Any) -> None:
        self.defaults = defaults
        self.created: List[FakeTransport] = []

    def __call__(self, session_code: str) -> FakeTransport:
        transport = FakeTransport(session_code, **self.defaults)
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


class FakeLlm:
    """Returns queued outcomes in order; the last one repeats."""

    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes) or ["Sure, sounds good."]
        self.calls: List[dict] = []

    async def generate_reply(self, config, history, persona=None):
        self.calls.append({"config": config, "history": list(history), "persona": persona})
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeSpeech:
    def __init__(self, transcript: Any = "hello from a voice note", audio: bytes = b"\x01" * 256) -> None:
        self.transcript = transcript
        self.audio = audio
        self.transcribed: List[tuple] = []
        self.synthesized: List[tuple] = []

    async def transcribe_audio(self, audio: bytes, api_key: str, language: str = "en-US") -> str:
        self.transcribed.append((audio, api_key, language))
        if isinstance(self.transcript, Exception):
            raise self.transcript
        return self.transcript

    async def synthesize_speech(self, text: str, api_key: str, language: str = "en-US", gender: str = "NEUTRAL") -> bytes:
        self.synthesized.append((text, api_key, language, gender))
        if isinstance(self.audio, Exception):
            raise self.audio
        return self.audio


class SleepRecorder:
    """Drop-in for asyncio.sleep that returns at once and records delays."""

    def __init__(self) -> None:
        self.delays: List[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------
def make_config(**overrides: Any) -> AiConfig:
    fields = {"api_key": "test-api-key-123", "model": "gemini-test"}
    fields.update(overrides)
    return AiConfig(**fields)


def make_message(body: str = "hi", *, sender: str = CONTACT, from_me: bool = False, **overrides: Any) -> InboundMessage:
    fields = {
        "id": f"MSG{next(_message_ids):04d}",
        "sender": BOT_CHAT if from_me else sender,
        "to": sender if from_me else BOT_CHAT,
        "body": body,
        "from_me": from_me,
        "timestamp": time.time(),
    }
    fields.update(overrides)
    return InboundMessage(**fields)


def make_session(code: str = "alpha-code", client: Optional[FakeTransport] = None, **overrides: Any) -> Session:
    client = client or FakeTransport(code)
    fields = {
        "code": code,
        "client": client,
        "capabilities": client.capabilities,
        "ready": True,
        "status": SessionStatus.READY,
        "started_at": time.time() - 60,
        "bot_number": BOT_NUMBER,
        "has_been_authenticated": True,
    }
    fields.update(overrides)
    return Session(**fields)

