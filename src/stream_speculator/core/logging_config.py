"""structlog setup shared by the API process and the Celery workers.

``configure_logging()`` is called once per process: by ``create_app()`` and
by the ``worker_process_init`` signal.  Records from both ``structlog`` and
stdlib loggers end up as one JSON object per line on stdout, carrying the
``request_id`` of the webhook being served or the ``task_id`` of the
scheduled task being dispatched.
"""

from __future__ import annotations

import logging
import sys
from contextvars import ContextVar

import structlog
from structlog.types import EventDict, Processor, WrappedLogger

request_id_var: ContextVar[str | None] = ContextVar("request_id", default=None)
"""Set by the request-logging middleware for one HTTP request."""

task_id_var: ContextVar[str | None] = ContextVar("task_id", default=None)
"""Set by the dispatcher while one scheduled task's handler runs."""

# Matched case-insensitively against event keys and one level of nested keys.
_SECRET_MARKERS = ("secret", "token", "authorization", "signature")

_QUIET_LOGGERS = ("uvicorn.access", "httpx", "httpcore", "websockets", "celery.redirected")


def _is_secret(key: object) -> bool:
    lowered = str(key).lower()
    return any(marker in lowered for marker in _SECRET_MARKERS)


def _redact_secrets(
    logger: WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    """Mask Twitch credentials and EventSub signatures before rendering.

    Nested dicts are scanned one level deep so ``headers={...}`` passed to a
    log call loses its ``Twitch-Eventsub-Message-Signature`` value.
    """
    for key, value in event_dict.items():
        if _is_secret(key):
            event_dict[key] = "[REDACTED]"
        elif isinstance(value, dict):
            for nested_key in value:
                if _is_secret(nested_key):
                    value[nested_key] = "[REDACTED]"
    return event_dict


def _add_context_ids(
    logger: WrappedLogger,  # noqa: ARG001
    method_name: str,  # noqa: ARG001
    event_dict: EventDict,
) -> EventDict:
    for key, var in (("request_id", request_id_var), ("task_id", task_id_var)):
        value = var.get()
        if value is not None:
            event_dict.setdefault(key, value)
    return event_dict


def configure_logging(log_level: str = "INFO") -> None:
    """Route all logging through structlog at *log_level*.

    ``"DEBUG"`` switches the renderer to structlog's console output; every
    other level renders JSON with ``timestamp``, ``level``, ``logger`` and
    ``event`` keys.  Calling it again replaces the previous root handler.
    """
    level = log_level.upper()
    debug = level == "DEBUG"

    shared: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        _add_context_ids,
        _redact_secrets,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.format_exc_info,
    ]
    renderer: Processor = (
        structlog.dev.ConsoleRenderer() if debug else structlog.processors.JSONRenderer()
    )

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        structlog.stdlib.ProcessorFormatter(
            foreign_pre_chain=shared,
            processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, renderer],
        )
    )
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level, logging.INFO))

    if not debug:
        for name in _QUIET_LOGGERS:
            logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[*shared, structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
