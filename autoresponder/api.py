# autoresponder/api.py
"""
HTTP routes.

Exposes:
- POST   /auth                              → start a session for an authorised code
- GET    /auth/{code}/status                → session status
- DELETE /auth/{code}                       → end a session (?logout=true unpairs)
- GET    /qr/{code}                         → latest pairing QR
- GET    /ai/{code}, POST /ai/{code}        → AI configuration
- POST   /ai/{code}/replies                 → custom reply rules
- POST   /messages/{code}/bulk              → immediate bulk send
- GET    /messages/{code}/schedule          → scheduled jobs
- POST   /messages/{code}/schedule          → schedule a bulk send
- DELETE /messages/{code}/schedule/{job_id} → cancel (?remove=true deletes)
- /persona/{code}/...                       → persona corpus inspection and edits
- POST   /webhooks/evolution/{code}         → transport events (X-Webhook-Secret)
- GET    /health                            → uptime and session counts

Every collaborator comes from ``request.app.state.services``.
"""

from __future__ import annotations

import hmac
import re
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Body, Depends, Header, Request

from .bulk_sender import send_bulk_messages
from .config import settings
from .config_manager import config_to_document, serialize_ai_config, update_ai_config
from .constants import AI_REPLY_PREFIX, DEFAULT_CONTEXT_WINDOW, HUMAN_REPLY_PREFIX, USER_MESSAGE_PREFIX
from .errors import (
    AutoresponderError,
    NotFoundError,
    SessionNotFoundError,
    UnauthorizedError,
    ValidationError,
)
from .logging_config import get_logger, log_fields
from .models import AiConfigPayload, AuthRequest, BulkMessagePayload, CustomRepliesPayload, SchedulePayload
from .services import Services
from .session_context import Session

logger = get_logger(__name__)

router = APIRouter()

QR_DATA_URI_RE = re.compile(r"^data:image/(png|jpeg);base64,[a-z0-9+/=]+$", re.IGNORECASE)

DEFAULT_AI_CONFIG: Dict[str, Any] = {
    "apiKey": "",
    "hasApiKey": False,
    "model": "",
    "systemPrompt": None,
    "autoReplyEnabled": True,
    "contextWindow": DEFAULT_CONTEXT_WINDOW,
    "customReplies": [],
    "voiceReplyEnabled": False,
    "speechToTextApiKey": "",
    "textToSpeechApiKey": "",
    "hasSpeechToTextApiKey": False,
    "hasTextToSpeechApiKey": False,
    "voiceLanguage": "en-US",
    "voiceGender": "NEUTRAL",
}


def get_services(request: Request) -> Services:
    return request.app.state.services


def _require_session(services: Services, code: str, message: str = "Session not found") -> Session:
    session = services.manager.get_session(code)
    if session is None:
        raise NotFoundError(message)
    return session


def _parse_index(raw: str) -> int:
    try:
        index = int(raw)
    except (TypeError, ValueError):
        raise ValidationError("Invalid message index") from None
    if index < 0:
        raise ValidationError("Invalid message index")
    return index


def _credential_flags(persisted: Dict[str, Any]) -> Dict[str, bool]:
    credentials = persisted.get("credentials") or {}
    cloud = credentials.get("googleCloud") or {}
    return {
        "hasApiKey": bool((credentials.get("gemini") or {}).get("apiKey")),
        "hasSpeechToTextApiKey": bool(cloud.get("speechToTextApiKey")),
        "hasTextToSpeechApiKey": bool(cloud.get("textToSpeechApiKey")),
    }


async def _require_authorized(services: Services, raw_code: str) -> str:
    code = (raw_code or "").strip()
    if not code:
        raise ValidationError("Code is required")
    if not await services.auth.is_authorized(code):
        raise UnauthorizedError("Invalid code")
    return code


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------
@router.post("/auth")
async def start_session(req: AuthRequest, services: Services = Depends(get_services)) -> dict:
    code = await _require_authorized(services, req.code)
    session = await services.manager.ensure_session(code)
    return {"success": True, "ready": session.ready}


@router.get("/auth/{code}/status")
async def session_status(code: str, services: Services = Depends(get_services)) -> dict:
    code = await _require_authorized(services, code)
    session = _require_session(services, code, "No active session")
    return {"active": True, "ready": session.ready, "status": session.status.value}


@router.delete("/auth/{code}")
async def end_session(code: str, logout: bool = False, services: Services = Depends(get_services)) -> dict:
    code = await _require_authorized(services, code)
    removed = await services.manager.destroy_session(code, logout=logout)
    if not removed:
        raise NotFoundError("No active session")
    return {"success": True}


@router.get("/qr/{code}")
async def get_qr(code: str, services: Services = Depends(get_services)) -> dict:
    session = _require_session(services, code, "No session found")
    qr = session.qr if isinstance(session.qr, str) and QR_DATA_URI_RE.match(session.qr) else None
    return {"qr": qr, "ready": session.ready}


# ---------------------------------------------------------------------------
# AI configuration
# ---------------------------------------------------------------------------
@router.get("/ai/{code}")
async def get_ai_config(code: str, services: Services = Depends(get_services)) -> dict:
    session = _require_session(services, code, "No session found")
    config = serialize_ai_config(session.ai_config) or dict(DEFAULT_AI_CONFIG)

    try:
        persisted = await services.store.load_session_config(code)
    except Exception as exc:
        logger.debug(
            "Failed to load persisted config for status check",
            extra=log_fields(code=code, error=str(exc)),
        )
        persisted = None

    if persisted:
        config.update(_credential_flags(persisted))
    return {"config": config}


@router.post("/ai/{code}")
async def configure_ai(
    code: str,
    payload: AiConfigPayload,
    services: Services = Depends(get_services),
) -> dict:
    session = _require_session(services, code, "No session found")
    current = session.ai_config

    api_key = payload.apiKey
    if not api_key and payload.reuseStoredApiKey and current is not None:
        api_key = current.api_key
    if not api_key:
        raise ValidationError("API key is required")

    stt_key = payload.speechToTextApiKey
    tts_key = payload.textToSpeechApiKey
    if payload.voiceReplyEnabled and current is not None:
        stt_key = stt_key or current.speech_to_text_api_key
        tts_key = tts_key or current.text_to_speech_api_key

    fields = payload.to_fields()
    fields.update(apiKey=api_key, speechToTextApiKey=stt_key, textToSpeechApiKey=tts_key)
    updated = update_ai_config(session, fields)

    try:
        await services.store.save_session_config(code, config_to_document(updated))
    except Exception as exc:
        logger.error("Failed to persist AI configuration", extra=log_fields(code=code, error=str(exc)))
        raise AutoresponderError("Failed to persist AI configuration") from exc

    try:
        persisted = await services.store.load_session_config(code) or {}
    except Exception as exc:
        logger.error("Failed to reload persisted AI config", extra=log_fields(code=code, error=str(exc)))
        persisted = {}

    return {
        "success": True,
        "config": serialize_ai_config(session.ai_config),
        "persisted": {
            "updatedAt": persisted.get("updatedAt"),
            "model": (persisted.get("aiConfig") or {}).get("model"),
            **_credential_flags(persisted),
        },
    }


@router.post("/ai/{code}/replies")
async def update_custom_replies(
    code: str,
    payload: CustomRepliesPayload,
    services: Services = Depends(get_services),
) -> dict:
    session = _require_session(services, code, "No session found")
    updated = update_ai_config(
        session, {"customReplies": [entry.model_dump() for entry in payload.customReplies]}
    )

    try:
        await services.store.save_session_config(code, config_to_document(updated))
    except Exception as exc:
        logger.error("Failed to persist AI configuration", extra=log_fields(code=code, error=str(exc)))

    return {"success": True, "customReplies": serialize_ai_config(updated)["customReplies"]}


# ---------------------------------------------------------------------------
# Outbound messages
# ---------------------------------------------------------------------------
@router.post("/messages/{code}/bulk")
async def bulk_send(
    code: str,
    payload: BulkMessagePayload,
    services: Services = Depends(get_services),
) -> dict:
    session = _require_session(services, code)
    result = await send_bulk_messages(session, services.queue, payload.message, payload.numbers)
    return {**result, "success": True}


@router.get("/messages/{code}/schedule")
async def list_scheduled(code: str, services: Services = Depends(get_services)) -> dict:
    session = _require_session(services, code)
    return {"jobs": await services.scheduler.list_scheduled_messages(session)}


@router.post("/messages/{code}/schedule", status_code=201)
async def create_schedule(
    code: str,
    payload: SchedulePayload,
    services: Services = Depends(get_services),
) -> dict:
    session = _require_session(services, code)
    job = await services.scheduler.schedule_messages(
        session, payload.message, payload.numbers, payload.sendAt
    )
    return {"success": True, "job": job}


@router.delete("/messages/{code}/schedule/{job_id}")
async def cancel_schedule(
    code: str,
    job_id: str,
    remove: bool = False,
    services: Services = Depends(get_services),
) -> dict:
    session = _require_session(services, code)
    if remove:
        job = await services.scheduler.remove_scheduled_message(session, job_id)
    else:
        job = await services.scheduler.cancel_scheduled_message(session, job_id)
    return {"success": True, "job": job, "removed": remove}


# ---------------------------------------------------------------------------
# Persona corpus
# ---------------------------------------------------------------------------
@router.get("/persona/{code}/contacts")
async def persona_contacts(code: str, services: Services = Depends(get_services)) -> dict:
    _require_session(services, code)
    contacts = await services.store.list_contacts(code)
    return {"contacts": contacts, "total": len(contacts)}


@router.get("/persona/{code}/contact/{contact_id}")
async def contact_persona(code: str, contact_id: str, services: Services = Depends(get_services)) -> dict:
    _require_session(services, code)
    messages = await services.store.get_contact_messages(code, contact_id)

    def count(prefix: str) -> int:
        return sum(1 for entry in messages if entry["message"].startswith(prefix))

    return {
        "contactId": contact_id,
        "total": len(messages),
        "userMessages": count(USER_MESSAGE_PREFIX),
        "myReplies": count(HUMAN_REPLY_PREFIX),
        "aiReplies": count(AI_REPLY_PREFIX),
        "messages": [
            {"id": index, "message": entry["message"], "timestamp": entry.get("timestamp")}
            for index, entry in enumerate(messages)
        ],
    }


@router.get("/persona/{code}/universal")
async def universal_persona(code: str, services: Services = Depends(get_services)) -> dict:
    _require_session(services, code)
    messages = await services.store.get_universal_messages(code)
    return {
        "total": len(messages),
        "messages": [{"id": index, "message": text} for index, text in enumerate(messages)],
    }


@router.put("/persona/{code}/contact/{contact_id}/message/{index}")
async def update_contact_message(
    code: str,
    contact_id: str,
    index: str,
    body: Optional[Dict[str, Any]] = Body(None),
    services: Services = Depends(get_services),
) -> dict:
    _require_session(services, code)
    entry = await services.store.update_contact_message(
        code, contact_id, _parse_index(index), (body or {}).get("message")
    )
    return {"success": True, "message": entry}


@router.delete("/persona/{code}/contact/{contact_id}/message/{index}")
async def delete_contact_message(
    code: str,
    contact_id: str,
    index: str,
    services: Services = Depends(get_services),
) -> dict:
    _require_session(services, code)
    remaining = await services.store.delete_contact_message(code, contact_id, _parse_index(index))
    return {"success": True, "remainingMessages": remaining}


@router.put("/persona/{code}/universal/message/{index}")
async def update_universal_message(
    code: str,
    index: str,
    body: Optional[Dict[str, Any]] = Body(None),
    services: Services = Depends(get_services),
) -> dict:
    _require_session(services, code)
    text = await services.store.update_universal_message(code, _parse_index(index), (body or {}).get("message"))
    return {"success": True, "message": text}


@router.delete("/persona/{code}/universal/message/{index}")
async def delete_universal_message(
    code: str,
    index: str,
    services: Services = Depends(get_services),
) -> dict:
    _require_session(services, code)
    remaining = await services.store.delete_universal_message(code, _parse_index(index))
    return {"success": True, "remainingMessages": remaining}


# ---------------------------------------------------------------------------
# Transport webhooks
# ---------------------------------------------------------------------------
def _verify_webhook_secret(code: str, provided: Optional[str]) -> None:
    """Fail closed: without a configured secret only non-production accepts events."""
    expected = settings.EVOLUTION_WEBHOOK_SECRET
    if not expected:
        if settings.is_production:
            logger.error(
                "EVOLUTION_WEBHOOK_SECRET not configured - rejecting webhook",
                extra=log_fields(code=code),
            )
            raise UnauthorizedError("Unauthorized")
        logger.warning(
            "EVOLUTION_WEBHOOK_SECRET not set - accepting webhook unverified",
            extra=log_fields(code=code),
        )
        return
    if not provided or not hmac.compare_digest(provided.encode(), expected.encode()):
        logger.warning("Evolution webhook secret mismatch", extra=log_fields(code=code))
        raise UnauthorizedError("Unauthorized")


@router.post("/webhooks/evolution/{code}")
async def evolution_webhook(
    code: str,
    background_tasks: BackgroundTasks,
    payload: Dict[str, Any] = Body(...),
    x_webhook_secret: Optional[str] = Header(None, alias="X-Webhook-Secret"),
    services: Services = Depends(get_services),
) -> dict:
    """
    Acknowledge at once; the event is dispatched after the response is sent.
    Events without the shared secret never reach the transport.
    """
    _verify_webhook_secret(code, x_webhook_secret)
    session = services.manager.get_session(code)
    if session is None or session.client is None:
        raise SessionNotFoundError()
    background_tasks.add_task(session.client.dispatch_event, payload)
    return {"received": True}


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------
@router.get("/health")
async def health(services: Services = Depends(get_services)) -> dict:
    sessions = services.registry.list()
    return {
        "status": "ok",
        "uptime": round(time.time() - services.started_at, 3),
        "sessions": len(sessions),
        "readySessions": sum(1 for session in sessions if session.ready),
    }
