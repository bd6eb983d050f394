# autoresponder/evolution_transport.py
"""
Evolution API transport.

Talks to an Evolution API gateway (one instance per session code) over
httpx. Outbound calls are plain REST; inbound traffic (messages, QR codes,
connection updates) reaches us through the webhook route
``POST /webhooks/evolution/{code}`` and is fed to ``dispatch_event``.
The webhook is registered with an X-Webhook-Secret header that the route
checks before any event is dispatched.

Webhook normalisation:
- messages.upsert    -> InboundMessage -> on_message handlers
- connection.update  -> ConnectionState -> on_state_change handlers
- qrcode.updated     -> QR data URI -> on_qr handlers
"""

from __future__ import annotations

import base64
from typing import Any, Dict, List, Optional

import httpx

from .config import settings
from .errors import TransportError, ValidationError
from .logging_config import get_logger, log_fields
from .transport import (
    ConnectionState,
    HostDevice,
    InboundMessage,
    MessageHandler,
    QrHandler,
    StateHandler,
    TransportCapabilities,
)

logger = get_logger(__name__)

WHATSAPP_USER_SUFFIX = "@s.whatsapp.net"
CONTACT_SUFFIX = "@c.us"

MEDIA_MESSAGE_TYPES = {
    "audioMessage",
    "imageMessage",
    "videoMessage",
    "documentMessage",
    "stickerMessage",
}

WEBHOOK_EVENTS = ["MESSAGES_UPSERT", "CONNECTION_UPDATE", "QRCODE_UPDATED"]
WEBHOOK_SECRET_HEADER = "X-Webhook-Secret"

# Baileys disconnect reasons
REASON_LOGGED_OUT = 401
REASON_CONNECTION_REPLACED = 440


class InvalidPayloadError(ValidationError):
    """Raised when an Evolution webhook payload has an invalid shape."""


# ---------------------------------------------------------------------------
# Normalisation helpers
# ---------------------------------------------------------------------------
def to_chat_id(jid: str) -> str:
    """WhatsApp user JIDs become ``<digits>@c.us``; everything else is kept."""
    if jid.endswith(WHATSAPP_USER_SUFFIX):
        return jid[: -len(WHATSAPP_USER_SUFFIX)] + CONTACT_SUFFIX
    return jid


def to_number(chat_id: str) -> str:
    for suffix in (CONTACT_SUFFIX, WHATSAPP_USER_SUFFIX):
        if chat_id.endswith(suffix):
            return chat_id[: -len(suffix)]
    return chat_id


def _parse_timestamp(value: Any) -> Optional[float]:
    if isinstance(value, dict):
        value = value.get("low")
    try:
        parsed = float(value)
    except (TypeError, ValueError):
        return None
    return parsed if parsed > 0 else None


def _extract_text(message_type: str, message: Dict[str, Any]) -> str:
    if message_type == "conversation":
        return message.get("conversation") or ""
    if message_type == "extendedTextMessage":
        return (message.get("extendedTextMessage") or {}).get("text") or ""
    content = message.get(message_type) or {}
    if isinstance(content, dict):
        return content.get("caption") or ""
    return ""


def _extract_quote(message_type: str, message: Dict[str, Any]):
    content = message.get(message_type) or {}
    context = content.get("contextInfo") if isinstance(content, dict) else None
    if not context:
        return None, None
    quoted = context.get("quotedMessage") or {}
    quoted_text = quoted.get("conversation") or (quoted.get("extendedTextMessage") or {}).get("text")
    return context.get("stanzaId"), quoted_text


def normalize_message(data: Dict[str, Any], own_id: str = "") -> InboundMessage:
    """
    Convert a ``messages.upsert`` data block into an InboundMessage.

    Raises:
        InvalidPayloadError: If required fields are missing or invalid.
    """
    key = data.get("key") or {}

    message_id = key.get("id")
    if not message_id or not isinstance(message_id, str):
        raise InvalidPayloadError("missing or invalid message_id")

    remote_jid = key.get("remoteJid") or ""
    if not remote_jid:
        raise InvalidPayloadError("missing remoteJid")

    remote = to_chat_id(remote_jid)
    from_me = bool(key.get("fromMe"))
    message_type = data.get("messageType") or "unknown"
    message = data.get("message") or {}

    audio = message.get("audioMessage") or {}
    is_voice = message_type == "audioMessage" and bool(audio.get("ptt"))
    has_media = message_type in MEDIA_MESSAGE_TYPES
    quoted_id, quoted_text = _extract_quote(message_type, message)

    mimetype = None
    media = message.get(message_type)
    if has_media and isinstance(media, dict):
        mimetype = media.get("mimetype")

    kwargs: Dict[str, Any] = {}
    timestamp = _parse_timestamp(data.get("messageTimestamp"))
    if timestamp is not None:
        kwargs["timestamp"] = timestamp

    return InboundMessage(
        id=message_id,
        sender=own_id if from_me else remote,
        to=remote if from_me else own_id,
        body=_extract_text(message_type, message),
        from_me=from_me,
        type="ptt" if is_voice else message_type,
        is_voice=is_voice,
        has_media=has_media,
        quoted_id=quoted_id,
        quoted_text=quoted_text,
        mimetype=mimetype,
        raw=data,
        **kwargs,
    )


def map_connection_state(data: Dict[str, Any]) -> Optional[ConnectionState]:
    """
    ``open`` -> CONNECTED; ``close`` -> UNPAIRED (logged out), CONFLICT
    (replaced by another login) or DISCONNECTED. Intermediate states map to
    None.
    """
    state = str(data.get("state") or "").lower()
    if state == "open":
        return ConnectionState.CONNECTED
    if state != "close":
        return None

    try:
        reason = int(data.get("statusReason") or 0)
    except (TypeError, ValueError):
        reason = 0
    if reason == REASON_LOGGED_OUT:
        return ConnectionState.UNPAIRED
    if reason == REASON_CONNECTION_REPLACED:
        return ConnectionState.CONFLICT
    return ConnectionState.DISCONNECTED


def _event_name(payload: Dict[str, Any]) -> str:
    return str(payload.get("event") or "").lower().replace("_", ".")


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------
class EvolutionTransport:
    """
    One Evolution API instance, named after the session code.
    """

    capabilities = TransportCapabilities(supports_voice_notes=True, supports_mark_unread=True)

    def __init__(
        self,
        session_code: str,
        *,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        webhook_base_url: Optional[str] = None,
        webhook_secret: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> None:
        self.instance = session_code
        self.base_url = (base_url or settings.EVOLUTION_BASE_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.EVOLUTION_API_KEY
        self.webhook_url = (
            f"{(webhook_base_url or settings.WEBHOOK_BASE_URL).rstrip('/')}/webhooks/evolution/{session_code}"
        )
        self.webhook_secret = (
            webhook_secret if webhook_secret is not None else settings.EVOLUTION_WEBHOOK_SECRET
        )
        self.timeout = timeout or settings.TRANSPORT_TIMEOUT_SECONDS
        self.own_id = ""
        self.closed = False
        self._message_handlers: List[MessageHandler] = []
        self._state_handlers: List[StateHandler] = []
        self._qr_handlers: List[QrHandler] = []

    # -------------------------------------------------------------------------
    # HTTP
    # -------------------------------------------------------------------------
    async def _request(
        self,
        method: str,
        path: str,
        payload: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        headers = {"apikey": self.api_key, "Content-Type": "application/json"}
        try:
            async with httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout) as client:
                resp = await client.request(method, path, json=payload, params=params, headers=headers)
                resp.raise_for_status()
        except httpx.HTTPStatusError as exc:
            raise TransportError(
                f"Evolution API responded with {exc.response.status_code}",
                status_code=exc.response.status_code,
            ) from exc
        except httpx.HTTPError as exc:
            raise TransportError(f"Evolution API request failed: {exc}") from exc

        try:
            return resp.json()
        except ValueError:
            return {"raw": resp.text}

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------
    def webhook_config(self) -> Dict[str, Any]:
        """Webhook block for Evolution; the secret comes back as a request header."""
        config: Dict[str, Any] = {
            "enabled": True,
            "url": self.webhook_url,
            "byEvents": False,
            "base64": True,
            "events": WEBHOOK_EVENTS,
        }
        if self.webhook_secret:
            config["headers"] = {WEBHOOK_SECRET_HEADER: self.webhook_secret}
        return config

    async def _refresh_webhook(self) -> None:
        # Instances created earlier may carry a stale webhook without the secret header.
        try:
            await self._request("POST", f"/webhook/set/{self.instance}", {"webhook": self.webhook_config()})
        except TransportError as exc:
            logger.warning(
                "Failed to refresh Evolution webhook",
                extra=log_fields(code=self.instance, error=str(exc)),
            )

    async def connect(self) -> bool:
        """
        Ensure the instance exists with our webhook, then report whether it is
        already paired. When it is not, the current QR code is emitted.
        """
        try:
            created = await self._request(
                "POST",
                "/instance/create",
                {
                    "instanceName": self.instance,
                    "qrcode": True,
                    "integration": "WHATSAPP-BAILEYS",
                    "webhook": self.webhook_config(),
                },
            )
            qr = ((created or {}).get("qrcode") or {}).get("base64")
            if qr:
                await self._emit_qr(qr)
        except TransportError as exc:
            # 403 / 409: the instance already exists (session restore).
            if exc.status_code not in (400, 403, 409):
                raise
            logger.debug("Evolution instance already exists", extra=log_fields(code=self.instance))
            await self._refresh_webhook()

        state = await self._request("GET", f"/instance/connectionState/{self.instance}")
        instance_state = ((state or {}).get("instance") or {}).get("state") or (state or {}).get("state")
        if instance_state == "open":
            return True

        connect = await self._request("GET", f"/instance/connect/{self.instance}")
        qr = (connect or {}).get("base64")
        if qr:
            await self._emit_qr(qr)
        return False

    async def logout(self) -> None:
        await self._request("DELETE", f"/instance/logout/{self.instance}")

    async def close(self) -> None:
        self.closed = True
        self._message_handlers.clear()
        self._state_handlers.clear()
        self._qr_handlers.clear()

    # -------------------------------------------------------------------------
    # Outbound
    # -------------------------------------------------------------------------
    async def send_text(self, chat_id: str, text: str, quoted_id: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {"number": to_number(chat_id), "text": text}
        if quoted_id:
            payload["quoted"] = {"key": {"id": quoted_id}}
        await self._request("POST", f"/message/sendText/{self.instance}", payload)

    async def send_voice_note(self, chat_id: str, audio: bytes, quoted_id: Optional[str] = None) -> None:
        payload: Dict[str, Any] = {
            "number": to_number(chat_id),
            "audio": base64.b64encode(audio).decode("ascii"),
        }
        if quoted_id:
            payload["quoted"] = {"key": {"id": quoted_id}}
        await self._request("POST", f"/message/sendWhatsAppAudio/{self.instance}", payload)

    async def mark_unread(self, chat_id: str) -> None:
        await self._request(
            "POST",
            f"/chat/markChatUnread/{self.instance}",
            {"chat": to_number(chat_id)},
        )

    async def download_media(self, message: InboundMessage) -> Optional[str]:
        data = await self._request(
            "POST",
            f"/chat/getBase64FromMediaMessage/{self.instance}",
            {"message": {"key": {"id": message.id}}, "convertToMp4": False},
        )
        encoded = (data or {}).get("base64")
        return encoded if isinstance(encoded, str) and encoded else None

    async def get_host_device(self) -> HostDevice:
        data = await self._request(
            "GET", "/instance/fetchInstances", params={"instanceName": self.instance}
        )
        entries = data if isinstance(data, list) else [data] if isinstance(data, dict) else []
        for entry in entries:
            if not isinstance(entry, dict):
                continue
            nested = entry.get("instance") or {}
            owner = entry.get("ownerJid") or nested.get("owner") or ""
            if owner:
                self.own_id = to_chat_id(owner)
                return HostDevice(
                    number=to_number(self.own_id),
                    name=entry.get("profileName") or nested.get("profileName"),
                )
        return HostDevice()

    # -------------------------------------------------------------------------
    # Inbound
    # -------------------------------------------------------------------------
    def on_message(self, handler: MessageHandler) -> None:
        self._message_handlers.append(handler)

    def on_state_change(self, handler: StateHandler) -> None:
        self._state_handlers.append(handler)

    def on_qr(self, handler: QrHandler) -> None:
        self._qr_handlers.append(handler)

    async def _emit_qr(self, qr: str) -> None:
        for handler in list(self._qr_handlers):
            await handler(qr)

    async def dispatch_event(self, payload: Dict[str, Any]) -> None:
        """
        Route one webhook payload to the registered handlers.
        """
        if self.closed:
            return

        event = _event_name(payload)
        data = payload.get("data") or {}

        if event == "messages.upsert":
            records = data if isinstance(data, list) else [data]
            for record in records:
                try:
                    message = normalize_message(record, self.own_id)
                except InvalidPayloadError as exc:
                    logger.warning(
                        "Dropping malformed Evolution message",
                        extra=log_fields(code=self.instance, error=str(exc)),
                    )
                    continue
                for handler in list(self._message_handlers):
                    await handler(message)
            return

        if event == "connection.update":
            state = map_connection_state(data)
            if state is None:
                return
            for handler in list(self._state_handlers):
                await handler(state)
            return

        if event == "qrcode.updated":
            qr = (data.get("qrcode") or {}).get("base64") if isinstance(data, dict) else None
            if qr:
                await self._emit_qr(qr)
            return

        logger.debug("Ignoring Evolution event", extra=log_fields(code=self.instance, event=event))


def create_evolution_transport(session_code: str) -> EvolutionTransport:
    return EvolutionTransport(session_code)
