# autoresponder/config_manager.py
"""
AI configuration management.

- Clamp the context window into [MIN_CONTEXT_WINDOW, MAX_CONTEXT_WINDOW].
- Sanitize custom reply rules (regex rules are compiled here, once).
- Apply updates to a session (wholesale replacement + history truncation).
- Convert between the in-memory AiConfig and its stored / API shapes.
"""

from __future__ import annotations

import math
import re
from dataclasses import replace
from typing import Any, Dict, Iterable, List, Mapping, Optional

from .chat_history import truncate_histories
from .constants import DEFAULT_CONTEXT_WINDOW, MAX_CONTEXT_WINDOW, MIN_CONTEXT_WINDOW
from .logging_config import get_logger, log_fields
from .session_context import AiConfig, CustomReplyRule, Session

logger = get_logger(__name__)

MATCH_TYPES = ("contains", "exact", "startsWith", "regex")

# camelCase (API / storage) -> AiConfig attribute
_FIELD_MAP = {
    "apiKey": "api_key",
    "model": "model",
    "systemPrompt": "system_prompt",
    "autoReplyEnabled": "auto_reply_enabled",
    "contextWindow": "context_window",
    "voiceReplyEnabled": "voice_reply_enabled",
    "speechToTextApiKey": "speech_to_text_api_key",
    "textToSpeechApiKey": "text_to_speech_api_key",
    "voiceLanguage": "voice_language",
    "voiceGender": "voice_gender",
}


def clamp_context_window(value: Any) -> int:
    """
    Clamp to [10, 1000]; anything non-numeric falls back to the default (50).
    """
    if isinstance(value, bool) or value is None:
        return DEFAULT_CONTEXT_WINDOW
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return DEFAULT_CONTEXT_WINDOW
    if math.isnan(numeric):
        return DEFAULT_CONTEXT_WINDOW
    if numeric < MIN_CONTEXT_WINDOW:
        return MIN_CONTEXT_WINDOW
    if numeric > MAX_CONTEXT_WINDOW:
        return MAX_CONTEXT_WINDOW
    return int(math.floor(numeric + 0.5))


def sanitize_custom_replies(entries: Any) -> List[CustomReplyRule]:
    """
    Normalize raw rule dicts (or CustomReplyRule objects) into compiled rules.

    Entries without a trigger or response are dropped. A regex that does not
    compile degrades that single rule to ``contains``.
    """
    if not isinstance(entries, (list, tuple)):
        return []

    rules: List[CustomReplyRule] = []
    for entry in entries:
        if isinstance(entry, CustomReplyRule):
            raw = entry.to_dict()
        elif isinstance(entry, Mapping):
            raw = entry
        else:
            continue

        trigger = raw.get("trigger")
        response = raw.get("response")
        trigger = trigger.strip() if isinstance(trigger, str) else ""
        response = response.strip() if isinstance(response, str) else ""
        if not trigger or not response:
            continue

        match_type = raw.get("matchType") or raw.get("match_type") or "contains"
        if match_type not in MATCH_TYPES:
            match_type = "contains"

        rule = CustomReplyRule(trigger=trigger, response=response, match_type=match_type)
        if match_type == "regex":
            try:
                rule.pattern = re.compile(trigger, re.IGNORECASE)
            except re.error as exc:
                logger.warning(
                    "Invalid custom reply regex; falling back to 'contains'",
                    extra=log_fields(trigger=trigger, error=str(exc)),
                )
                rule.match_type = "contains"
        rules.append(rule)

    return rules


def serialize_custom_replies(rules: Iterable[CustomReplyRule]) -> List[Dict[str, str]]:
    return [rule.to_dict() for rule in rules or []]


def _clean_str(value: Any, fallback: str = "") -> str:
    return value.strip() if isinstance(value, str) else fallback


def apply_config_fields(base: AiConfig, fields: Mapping[str, Any]) -> AiConfig:
    """
    Return a new AiConfig with camelCase ``fields`` applied over ``base``.
    """
    updates: Dict[str, Any] = {}
    for key, attr in _FIELD_MAP.items():
        if key not in fields or fields[key] is None:
            continue
        value = fields[key]
        if attr in ("auto_reply_enabled", "voice_reply_enabled"):
            updates[attr] = bool(value)
        elif attr == "context_window":
            updates[attr] = clamp_context_window(value)
        elif attr == "system_prompt":
            text = _clean_str(value)
            updates[attr] = text or None
        else:
            updates[attr] = _clean_str(value, getattr(base, attr))

    next_config = replace(base, **updates)
    if "customReplies" in fields and fields["customReplies"] is not None:
        next_config.custom_replies = sanitize_custom_replies(fields["customReplies"])
    else:
        next_config.custom_replies = sanitize_custom_replies(base.custom_replies)
    next_config.context_window = clamp_context_window(next_config.context_window)
    return next_config


def update_ai_config(session: Session, fields: Mapping[str, Any]) -> AiConfig:
    """
    Replace the session's AI configuration and truncate chat histories that
    exceed the new context window.
    """
    base = session.ai_config or AiConfig()
    next_config = apply_config_fields(base, fields)
    session.ai_config = next_config

    truncate_histories(session, next_config.context_window)

    logger.info(
        "AI configuration updated",
        extra=log_fields(
            code=session.code,
            autoReplyEnabled=next_config.auto_reply_enabled,
            customReplyCount=len(next_config.custom_replies),
            contextWindow=next_config.context_window,
        ),
    )
    return next_config


def serialize_ai_config(config: Optional[AiConfig]) -> Optional[Dict[str, Any]]:
    """API view of the configuration."""
    if config is None:
        return None
    return {
        "apiKey": config.api_key,
        "hasApiKey": bool(config.api_key),
        "model": config.model,
        "systemPrompt": config.system_prompt,
        "autoReplyEnabled": config.auto_reply_enabled,
        "contextWindow": clamp_context_window(config.context_window),
        "customReplies": serialize_custom_replies(config.custom_replies),
        "voiceReplyEnabled": config.voice_reply_enabled,
        "speechToTextApiKey": config.speech_to_text_api_key,
        "textToSpeechApiKey": config.text_to_speech_api_key,
        "hasSpeechToTextApiKey": bool(config.speech_to_text_api_key),
        "hasTextToSpeechApiKey": bool(config.text_to_speech_api_key),
        "voiceLanguage": config.voice_language,
        "voiceGender": config.voice_gender,
    }


# ---------------------------------------------------------------------------
# Storage shape
# ---------------------------------------------------------------------------
def config_to_document(config: AiConfig) -> Dict[str, Any]:
    """
    Stored shape: feature flags under ``aiConfig``, secrets under
    ``credentials``, rules under ``customReplies``.
    """
    return {
        "aiConfig": {
            "model": config.model,
            "systemPrompt": config.system_prompt,
            "autoReplyEnabled": config.auto_reply_enabled,
            "contextWindow": config.context_window,
            "voiceReplyEnabled": config.voice_reply_enabled,
            "voiceLanguage": config.voice_language,
            "voiceGender": config.voice_gender,
        },
        "credentials": {
            "gemini": {"apiKey": config.api_key},
            "googleCloud": {
                "speechToTextApiKey": config.speech_to_text_api_key,
                "textToSpeechApiKey": config.text_to_speech_api_key,
            },
        },
        "customReplies": serialize_custom_replies(config.custom_replies),
    }


def config_from_document(document: Optional[Mapping[str, Any]], base: Optional[AiConfig] = None) -> AiConfig:
    base = base or AiConfig()
    if not document:
        return replace(base, custom_replies=list(base.custom_replies))

    stored = dict(document.get("aiConfig") or {})
    credentials = document.get("credentials") or {}
    llm_creds = credentials.get("gemini") or {}
    cloud_creds = credentials.get("googleCloud") or {}

    fields: Dict[str, Any] = dict(stored)
    api_key = _clean_str(llm_creds.get("apiKey")) or _clean_str(stored.get("apiKey"))
    if api_key:
        fields["apiKey"] = api_key
    for key in ("speechToTextApiKey", "textToSpeechApiKey"):
        value = _clean_str(cloud_creds.get(key))
        if value:
            fields[key] = value

    replies = stored.get("customReplies")
    if not isinstance(replies, list):
        replies = document.get("customReplies")
    fields["customReplies"] = replies if isinstance(replies, list) else []

    return apply_config_fields(base, fields)
