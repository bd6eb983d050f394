# autoresponder/errors.py
"""
Error taxonomy.

Every error raised toward the HTTP boundary derives from AutoresponderError
and carries the status code the API should answer with. Errors coming from
collaborators (LLM, speech, transport) are raised inside the reply pipeline
and converted there into user-facing apologies.
"""

from __future__ import annotations

from typing import Any, Optional


class AutoresponderError(Exception):
    status_code: int = 500

    def __init__(self, message: str, *, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(AutoresponderError):
    status_code = 400


class UnauthorizedError(AutoresponderError):
    status_code = 401


class NotFoundError(AutoresponderError):
    status_code = 404


class SessionNotFoundError(NotFoundError):
    def __init__(self, message: str = "Session not found") -> None:
        super().__init__(message)


class SessionNotReadyError(AutoresponderError):
    status_code = 409

    def __init__(self, message: str = "Session is not ready yet") -> None:
        super().__init__(message)


class JobNotFoundError(NotFoundError):
    def __init__(self, message: str = "Scheduled message not found") -> None:
        super().__init__(message)


class JobConflictError(AutoresponderError):
    status_code = 409


class LlmError(AutoresponderError):
    """
    Failure reported by the LLM endpoint.

    status_code mirrors the HTTP status (503 overload, 429 rate limit, ...).
    """

    def __init__(self, message: str, *, status_code: int = 500, payload: Any = None) -> None:
        super().__init__(message, status_code=status_code)
        self.payload = payload

    @property
    def is_overload(self) -> bool:
        return self.status_code == 503


class SpeechError(AutoresponderError):
    status_code = 502


class TransportError(AutoresponderError):
    status_code = 502
