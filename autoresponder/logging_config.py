# autoresponder/logging_config.py
"""
Structured JSON logging.

Usage:
    from .logging_config import get_logger
    logger = get_logger(__name__)
    logger.info("Session ready", extra={"extra_fields": {"code": code}})
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any, Dict, Optional


class JsonFormatter(logging.Formatter):
    """One JSON object per line, with any ``extra_fields`` merged in."""

    def format(self, record: logging.LogRecord) -> str:
        log_obj: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        if record.exc_info:
            log_obj["exception"] = self.formatException(record.exc_info)

        extra_fields = getattr(record, "extra_fields", None)
        if isinstance(extra_fields, dict):
            log_obj.update(extra_fields)

        return json.dumps(log_obj, default=str, ensure_ascii=False)


def setup_logging(level: Optional[str] = None, stream: Optional[Any] = None) -> None:
    """
    Configure the root logger once at startup (app lifespan).
    """
    if level is None:
        from .config import settings

        level = settings.LOG_LEVEL
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    handler = logging.StreamHandler(stream or sys.stdout)
    handler.setFormatter(JsonFormatter())

    root_logger = logging.getLogger()
    root_logger.handlers.clear()
    root_logger.addHandler(handler)
    root_logger.setLevel(numeric_level)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)


def log_fields(**fields: Any) -> Dict[str, Any]:
    """Shorthand for ``extra={"extra_fields": {...}}``."""
    return {"extra_fields": fields}
