# app.py
"""
FastAPI entrypoint for the WhatsApp autoresponder.

Exposes the routes in autoresponder/api.py (sessions, AI config, bulk and
scheduled sends, persona inspection, transport webhooks, health).

Lifecycle:
- startup   → logging, store connection, restore persisted sessions
- shutdown  → flush persistence, close every session, close the store
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from autoresponder.api import router
from autoresponder.config import settings
from autoresponder.errors import AutoresponderError
from autoresponder.logging_config import get_logger, log_fields, setup_logging
from autoresponder.services import Services, build_services

logger = get_logger("autoresponder.app")


async def shutdown_services(services: Services) -> None:
    """Flush buffered messages, close every session, then the store."""
    try:
        await services.queue.shutdown()
    except Exception as exc:
        logger.error("Failed to flush persistence queue on shutdown", extra=log_fields(error=str(exc)))
    await services.manager.shutdown_all()
    try:
        await services.store.close()
    except Exception as exc:
        logger.error("Failed to close document store", extra=log_fields(error=str(exc)))
    logger.info("Shutdown complete")


def create_app(services: Optional[Services] = None) -> FastAPI:
    services = services or build_services()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging()
        await services.store.connect()
        restored = await services.manager.restore_sessions()
        logger.info(
            "Server started",
            extra=log_fields(port=settings.PORT, environment=settings.ENVIRONMENT, restoredSessions=restored),
        )
        try:
            yield
        finally:
            await shutdown_services(services)

    app = FastAPI(title="WhatsApp Autoresponder", version="1.0.0", lifespan=lifespan)
    app.state.services = services

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials="*" not in settings.CORS_ORIGINS,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(AutoresponderError)
    async def autoresponder_error_handler(request: Request, exc: AutoresponderError) -> JSONResponse:
        if exc.status_code >= 500:
            logger.error(
                "Request failed",
                extra=log_fields(path=request.url.path, status=exc.status_code, error=exc.message),
            )
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.exception_handler(RequestValidationError)
    async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [
            {"loc": [str(part) for part in error.get("loc", ())], "msg": error.get("msg", "")}
            for error in exc.errors()
        ]
        return JSONResponse(status_code=400, content={"error": "Invalid request payload", "details": details})

    app.include_router(router)
    return app


app = create_app()


def main() -> int:
    import uvicorn

    try:
        uvicorn.run(app, host="0.0.0.0", port=settings.PORT)
    except Exception:
        logger.exception("Fatal error")
        return 1
    return 0


# For local dev convenience:
if __name__ == "__main__":
    raise SystemExit(main())
