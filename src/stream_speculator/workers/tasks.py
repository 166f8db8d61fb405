"""Celery task that feeds delivered batches into the dispatcher.

Every delivery, local or queued, is a list of wire-format task dicts.  The
worker builds a fresh :class:`~stream_speculator.context.AppContext` inside
the delivery's own event loop (``asyncio.run``), so Redis and HTTP
connections never outlive the loop they were opened on.

Error handling policy: per-task failures are reported in the returned
summary and logged by the dispatcher; they never fail the Celery task, so a
bad message cannot trigger a redelivery storm.  Only a failure to build the
context or to reach the backend propagates.
"""

from __future__ import annotations

import asyncio
from typing import Any

import structlog

from stream_speculator.config.settings import get_settings
from stream_speculator.context import build_context
from stream_speculator.scheduling.backends import CeleryQueueBackend
from stream_speculator.workers.celery_app import celery_app

logger = structlog.get_logger(__name__)


async def _dispatch(batch: list[dict[str, Any]]) -> dict[str, int]:
    ctx = build_context(get_settings(), backend=CeleryQueueBackend(celery_app))
    try:
        report = await ctx.dispatcher.dispatch(batch)  # type: ignore[union-attr]
    finally:
        await ctx.aclose()
    return {"ok": report.ok, "deferred": report.deferred, "failed": report.failed}


@celery_app.task(
    name="stream_speculator.workers.tasks.run_scheduled_tasks",
    bind=True,
)  # type: ignore[misc]
def run_scheduled_tasks(self: Any, batch: list[dict[str, Any]]) -> dict[str, int]:  # noqa: ANN401
    """Dispatch one delivered batch of scheduled tasks.

    Args:
        batch: Wire-format task dicts.

    Returns:
        Counts of ok, deferred and failed tasks.
    """
    log = logger.bind(celery_task_id=self.request.id, batch_size=len(batch))
    summary = asyncio.run(_dispatch(batch))
    log.info("scheduled_batch_complete", **summary)
    return summary
