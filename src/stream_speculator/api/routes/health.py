"""Health check routes.

``GET /health``
    Liveness only; no I/O.
``GET /api/health``
    Pings the document store and, when tasks go through Celery, asks the
    workers to respond.  Always returns HTTP 200; the ``status`` field is
    ``"ok"`` or ``"degraded"``.

These endpoints are diagnostic: they must never raise HTTP 5xx errors.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from stream_speculator.api.dependencies import get_context
from stream_speculator.context import AppContext
from stream_speculator.scheduling.backends import CeleryQueueBackend

logger = logging.getLogger(__name__)

router = APIRouter(tags=["system"])


async def _check_store(ctx: AppContext) -> str:
    try:
        return "ok" if await ctx.store.ping() else "error"
    except Exception:
        logger.exception("Health check: store unreachable")
        return "error"


async def _check_celery_workers(backend: CeleryQueueBackend) -> str:
    """Ask Celery workers to respond.

    Returns:
        ``"ok"`` if at least one worker responds, ``"no_workers"`` if none
        respond, or ``"error"`` if the broker connection fails.
    """
    try:
        loop = asyncio.get_running_loop()
        inspect = backend.celery_app.control.inspect(timeout=2.0)
        ping_result = await loop.run_in_executor(None, inspect.ping)
        return "ok" if ping_result else "no_workers"
    except Exception:
        logger.exception("Health check: Celery inspect failed")
        return "error"


@router.get("/health")
async def health() -> JSONResponse:
    """Return ``{"status": "ok"}`` without touching any dependency."""
    return JSONResponse({"status": "ok"})


@router.get("/api/health")
async def system_health(ctx: AppContext = Depends(get_context)) -> JSONResponse:
    checks: dict[str, str] = {"store": await _check_store(ctx)}
    backend = ctx.scheduler.backend
    if isinstance(backend, CeleryQueueBackend):
        checks["celery"] = await _check_celery_workers(backend)
    status = "ok" if all(value == "ok" for value in checks.values()) else "degraded"
    return JSONResponse(
        {
            "status": status,
            "checks": checks,
            "scheduler_backend": type(backend).__name__,
            "timestamp": datetime.now(UTC).isoformat(),
        }
    )
