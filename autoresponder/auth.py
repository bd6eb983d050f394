# autoresponder/auth.py
"""
Authorization codes.

A session can only be started with a known code. Codes come from:
- settings.AUTH_CODES (comma separated, always honoured)
- settings.AUTH_CODES_URL, a JSON document {"secret_code": [...]}, cached
  for AUTH_CODES_REFRESH_SECONDS; concurrent refreshes share one request
"""

from __future__ import annotations

import asyncio
import time
from typing import List, Optional

import httpx

from .config import settings
from .logging_config import get_logger, log_fields

logger = get_logger(__name__)


class AuthCodeProvider:
    def __init__(
        self,
        source_url: Optional[str] = None,
        static_codes: Optional[List[str]] = None,
        refresh_seconds: Optional[float] = None,
    ) -> None:
        self.source_url = source_url if source_url is not None else settings.AUTH_CODES_URL
        self.static_codes = static_codes if static_codes is not None else settings.static_auth_codes
        self.refresh_seconds = (
            refresh_seconds if refresh_seconds is not None else settings.AUTH_CODES_REFRESH_SECONDS
        )
        self._cached: List[str] = []
        self._fetched_at = 0.0
        self._inflight: Optional[asyncio.Task] = None

    async def _fetch(self) -> List[str]:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.get(self.source_url, headers={"Accept": "application/json"})
            resp.raise_for_status()
            try:
                payload = resp.json()
            except ValueError:
                payload = {}

        raw = payload.get("secret_code") if isinstance(payload, dict) else None
        codes = [item.strip() for item in raw or [] if isinstance(item, str) and item.strip()]
        self._cached = codes
        self._fetched_at = time.time()
        if not codes:
            logger.warning("Auth code source returned no codes", extra=log_fields(source=self.source_url))
        return codes

    async def _refresh(self) -> List[str]:
        try:
            return await self._fetch()
        except (httpx.HTTPError, ValueError) as exc:
            logger.error(
                "Failed to load auth codes from source",
                extra=log_fields(source=self.source_url, error=str(exc)),
            )
            if not self._cached:
                self._fetched_at = 0.0
            return self._cached

    async def load_remote_codes(self, force: bool = False) -> List[str]:
        if not self.source_url:
            return []
        fresh = self._cached and time.time() - self._fetched_at < self.refresh_seconds
        if fresh and not force:
            return self._cached

        if self._inflight is None:
            task = asyncio.ensure_future(self._refresh())
            self._inflight = task

            def _clear(done: asyncio.Task) -> None:
                if self._inflight is done:
                    self._inflight = None

            task.add_done_callback(_clear)
        return await asyncio.shield(self._inflight)

    async def is_authorized(self, code: Optional[str]) -> bool:
        trimmed = code.strip() if isinstance(code, str) else ""
        if not trimmed:
            return False
        if trimmed in self.static_codes:
            return True
        return trimmed in await self.load_remote_codes()
