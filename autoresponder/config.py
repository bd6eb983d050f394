# autoresponder/config.py
"""
Process configuration.

Values come from the environment (or a local .env file) and are exposed as
the module-level ``settings`` object, e.g. ``settings.MONGO_URI``.
"""

from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    ENVIRONMENT: str = "development"
    PORT: int = 3000
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = Field(default_factory=lambda: ["*"])

    # Authorization codes: comma separated list and/or a remote JSON source
    AUTH_CODES: str = ""
    AUTH_CODES_URL: Optional[str] = None
    AUTH_CODES_REFRESH_SECONDS: float = 300.0

    # LLM (OpenAI-compatible chat completions; Gemini's endpoint by default)
    LLM_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta/openai/"
    AI_TIMEOUT_SECONDS: float = 30.0

    # Google speech services (API-key REST endpoints)
    SPEECH_BASE_URL: str = "https://speech.googleapis.com"
    TTS_BASE_URL: str = "https://texttospeech.googleapis.com"

    # Evolution API gateway (chat transport)
    EVOLUTION_BASE_URL: str = "http://localhost:8080"
    EVOLUTION_API_KEY: str = ""
    WEBHOOK_BASE_URL: str = "http://localhost:3000"
    # Shared secret Evolution sends back in X-Webhook-Secret; required in production
    EVOLUTION_WEBHOOK_SECRET: str = ""
    TRANSPORT_TIMEOUT_SECONDS: float = 20.0

    # Document store
    STORE_BACKEND: Literal["mongo", "memory"] = "mongo"
    MONGO_URI: str = "mongodb://localhost:27017"
    MONGO_DB_NAME: str = "autoresponder"

    # Session lifecycle
    SESSION_MAX_IDLE_SECONDS: float = 60 * 60
    AUTO_RESTORE_SESSIONS: bool = True
    SESSION_RESTORE_THROTTLE_SECONDS: float = 1.0

    @property
    def is_production(self) -> bool:
        return self.ENVIRONMENT == "production"

    @property
    def static_auth_codes(self) -> List[str]:
        return [code.strip() for code in self.AUTH_CODES.split(",") if code.strip()]


settings = Settings()
