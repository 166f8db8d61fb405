"""Celery application for Stream Speculator.

All configuration values are sourced from ``Settings`` so that no secrets or
environment-specific values are hard-coded here.

Usage (starting a worker)::

    celery -A stream_speculator.workers.celery_app worker --loglevel=info

Delayed deliveries are plain ``countdown`` messages, so no Beat process is
needed: the monitoring chain reschedules itself.
"""

from __future__ import annotations

import logging

from celery import Celery
from celery.signals import worker_process_init
from dotenv import load_dotenv

_logger = logging.getLogger(__name__)

load_dotenv()

from stream_speculator.config.settings import get_settings  # noqa: E402
from stream_speculator.core.logging_config import configure_logging  # noqa: E402

settings = get_settings()

#: The global Celery application instance.
celery_app = Celery(
    "stream_speculator",
    broker=settings.celery_broker_url,
    backend=settings.celery_result_backend,
    include=["stream_speculator.workers.tasks"],
)

# ---------------------------------------------------------------------------
# Core configuration
# ---------------------------------------------------------------------------

celery_app.conf.update(
    # All task arguments are wire-format task dicts.
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # Acknowledge after completion so a crashed worker's batch is redelivered.
    task_acks_late=True,
    worker_prefetch_multiplier=1,
    result_expires=3_600,
    # A batch holds at most one PubSub window (about 32 s) plus handler I/O.
    task_soft_time_limit=120,
    task_time_limit=180,
    task_routes={
        "stream_speculator.workers.tasks.run_scheduled_tasks": {"queue": "scheduled"},
    },
    # Countdowns up to the 900 s delivery ceiling must survive broker redelivery.
    broker_transport_options={"visibility_timeout": 3_600},
)


@worker_process_init.connect
def _configure_worker_logging(**kwargs: object) -> None:  # noqa: ARG001
    """Route worker log records through structlog after fork."""
    configure_logging(settings.log_level)
    _logger.info("Celery worker process initialised")
