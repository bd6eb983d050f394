# autoresponder/models.py
"""
Pydantic models for the HTTP request payloads. Domain state lives in
session_context as plain dataclasses.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


PHONE_RE = re.compile(r"^\+?\d+$")


def _coerce_bool(value: Any, fallback: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in ("true", "1"):
            return True
        if lowered in ("false", "0"):
            return False
    if value in (1, 0):
        return bool(value)
    return fallback


def _dedupe(values: List[str]) -> List[str]:
    return list(dict.fromkeys(value.strip() for value in values if value.strip()))


class AuthRequest(BaseModel):
    code: str = Field("", description="Authorization code identifying the session")

    @field_validator("code", mode="before")
    @classmethod
    def _strip(cls, value: Any) -> str:
        return str(value or "").strip()


class CustomReplyEntry(BaseModel):
    trigger: str = Field(..., min_length=1)
    response: str = Field(..., min_length=1)
    matchType: Literal["contains", "exact", "startsWith", "regex"] = "contains"

    @field_validator("trigger", "response")
    @classmethod
    def _strip(cls, value: str) -> str:
        return value.strip()


class CustomRepliesPayload(BaseModel):
    customReplies: List[CustomReplyEntry] = Field(default_factory=list)


class AiConfigPayload(BaseModel):
    """
    Body of POST /ai/{code}. ``apiKey`` may be omitted when
    ``reuseStoredApiKey`` is set and the session already has one.
    """
    apiKey: str = ""
    reuseStoredApiKey: bool = False
    model: str = Field(..., min_length=1, description="Model is required")
    systemPrompt: Optional[str] = None
    autoReplyEnabled: bool = True
    contextWindow: Any = None
    customReplies: List[CustomReplyEntry] = Field(default_factory=list)
    voiceReplyEnabled: bool = False
    speechToTextApiKey: str = ""
    textToSpeechApiKey: str = ""
    voiceLanguage: str = "en-US"
    voiceGender: str = "NEUTRAL"

    @field_validator("apiKey", "speechToTextApiKey", "textToSpeechApiKey", mode="before")
    @classmethod
    def _clean_key(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) else ""

    @field_validator("apiKey")
    @classmethod
    def _key_length(cls, value: str) -> str:
        if value and len(value) < 10:
            raise ValueError("API key must be at least 10 characters")
        return value

    @field_validator("model")
    @classmethod
    def _strip_model(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Model is required")
        return value

    @field_validator("systemPrompt", mode="before")
    @classmethod
    def _clean_prompt(cls, value: Any) -> Optional[str]:
        if not isinstance(value, str):
            return None
        return value.strip() or None

    @field_validator("reuseStoredApiKey", mode="before")
    @classmethod
    def _reuse(cls, value: Any) -> bool:
        return _coerce_bool(value, False)

    @field_validator("autoReplyEnabled", mode="before")
    @classmethod
    def _auto_reply(cls, value: Any) -> bool:
        return _coerce_bool(value, True)

    @field_validator("voiceReplyEnabled", mode="before")
    @classmethod
    def _voice_reply(cls, value: Any) -> bool:
        return _coerce_bool(value, False)

    @field_validator("voiceLanguage", mode="before")
    @classmethod
    def _language(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) and value.strip() else "en-US"

    @field_validator("voiceGender", mode="before")
    @classmethod
    def _gender(cls, value: Any) -> str:
        return value.strip() if isinstance(value, str) and value.strip() else "NEUTRAL"

    def to_fields(self) -> Dict[str, Any]:
        """camelCase fields for config_manager, without the request-only flag."""
        fields = self.model_dump(exclude={"reuseStoredApiKey"})
        fields["customReplies"] = [entry.model_dump() for entry in self.customReplies]
        return fields


class BulkMessagePayload(BaseModel):
    message: str = Field(..., min_length=1, max_length=4096)
    numbers: List[str] = Field(..., min_length=1, max_length=1000)

    @field_validator("message")
    @classmethod
    def _strip_message(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("Message is required")
        return value

    @field_validator("numbers")
    @classmethod
    def _phone_numbers(cls, values: List[str]) -> List[str]:
        for value in values:
            stripped = value.strip()
            if not PHONE_RE.match(stripped):
                raise ValueError("Invalid phone number")
        return _dedupe(values)


class SchedulePayload(BulkMessagePayload):
    sendAt: datetime

