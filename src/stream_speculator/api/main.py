"""FastAPI application factory and entry point.

Usage::

    # Development server (from project root)
    uvicorn stream_speculator.api.main:app --reload

    # Production
    gunicorn stream_speculator.api.main:app -k uvicorn.workers.UvicornWorker
"""

from __future__ import annotations

import time
import uuid
from typing import Callable

import structlog
from fastapi import FastAPI, Request, Response

from stream_speculator.api.routes import channels, health, webhooks
from stream_speculator.config.settings import get_settings
from stream_speculator.context import AppContext, build_context
from stream_speculator.core.logging_config import configure_logging, request_id_var

logger = structlog.get_logger(__name__)


def create_app(context: AppContext | None = None) -> FastAPI:
    """Build and configure the FastAPI application.

    Args:
        context: Pre-built application context.  When omitted, one is built
            from settings at startup and closed at shutdown.

    Returns:
        A fully configured ``FastAPI`` instance.
    """
    settings = get_settings()
    configure_logging(settings.log_level)

    application = FastAPI(
        title=settings.app_name,
        description="Live channel tracking, viewer metrics and prediction lifecycle.",
        version="0.1.0",
        debug=settings.debug,
        redirect_slashes=False,
    )

    # ---- Request logging middleware ----------------------------------------

    @application.middleware("http")
    async def request_logging_middleware(
        request: Request, call_next: Callable
    ) -> Response:
        """Log every request with its status and duration under a fresh ``request_id``."""
        request_id = str(uuid.uuid4())
        request_id_var.set(request_id)
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(
            request_id=request_id,
            method=request.method,
            path=request.url.path,
        )

        start = time.perf_counter()
        response = None
        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error("unhandled_exception", exc_info=exc)
            raise
        finally:
            elapsed_ms = round((time.perf_counter() - start) * 1000, 2)
            status_code = getattr(response, "status_code", 500)
            log_fn = logger.warning if status_code >= 400 else logger.info
            log_fn(
                "request_complete",
                status_code=status_code,
                elapsed_ms=elapsed_ms,
            )

        response.headers["X-Request-ID"] = request_id
        return response

    # ---- Routers ------------------------------------------------------------

    application.include_router(health.router)
    application.include_router(webhooks.router)
    application.include_router(channels.router, prefix="/api/channels")

    # ---- Lifecycle events -------------------------------------------------

    owns_context = context is None
    application.state.context = context

    @application.on_event("startup")
    async def on_startup() -> None:
        if application.state.context is None:
            application.state.context = build_context(settings)
        logger.info(
            "application_startup",
            app_name=settings.app_name,
            store_backend=settings.store_backend,
            scheduler_backend=settings.scheduler_backend,
        )

    @application.on_event("shutdown")
    async def on_shutdown() -> None:
        if owns_context and application.state.context is not None:
            await application.state.context.aclose()
        logger.info("application_shutdown")

    return application


app = create_app()
