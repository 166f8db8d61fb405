"""Process-wide application context.

Holds every collaborator the handlers need (settings, store, scheduler,
Twitch clients, clock).  The web app builds it once at startup; Celery
workers build one per delivered batch, inside the event loop that runs the
batch, because redis.asyncio connections are bound to their loop.
Handlers receive it explicitly instead of reaching for module globals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from stream_speculator.config.settings import Settings
from stream_speculator.core.store import DocumentStore, InMemoryDocumentStore, RedisDocumentStore
from stream_speculator.scheduling.backends import CeleryQueueBackend, DeliveryBackend, LocalTimerBackend
from stream_speculator.scheduling.scheduler import Clock, Scheduler, utc_now
from stream_speculator.twitch.client import TwitchClient
from stream_speculator.twitch.pubsub import ViewerCountCollector

if TYPE_CHECKING:
    from celery import Celery

    from stream_speculator.scheduling.dispatcher import TaskDispatcher

logger = logging.getLogger(__name__)


@dataclass
class AppContext:
    """Collaborators shared by the scheduler, dispatcher and task handlers."""

    settings: Settings
    store: DocumentStore
    scheduler: Scheduler
    twitch: TwitchClient
    collector: ViewerCountCollector
    clock: Clock = utc_now
    dispatcher: TaskDispatcher | None = field(default=None, repr=False)

    def now_ms(self) -> int:
        """Current time as epoch milliseconds."""
        return int(self.clock().timestamp() * 1000)

    async def aclose(self) -> None:
        await self.scheduler.backend.aclose()
        await self.twitch.aclose()
        await self.store.aclose()


def _build_store(settings: Settings) -> DocumentStore:
    if settings.store_backend == "memory":
        return InMemoryDocumentStore()
    return RedisDocumentStore.from_url(settings.redis_url)


def _build_backend(settings: Settings, celery_app: Celery | None) -> DeliveryBackend:
    if settings.scheduler_backend == "celery":
        if celery_app is None:
            from stream_speculator.workers.celery_app import celery_app  # noqa: PLC0415
        return CeleryQueueBackend(celery_app)
    return LocalTimerBackend()


def build_context(
    settings: Settings,
    *,
    store: DocumentStore | None = None,
    backend: DeliveryBackend | None = None,
    twitch: TwitchClient | None = None,
    collector: ViewerCountCollector | None = None,
    clock: Clock = utc_now,
    celery_app: Celery | None = None,
) -> AppContext:
    """Build the context and its dispatcher from *settings*.

    Any collaborator may be passed in explicitly (tests do); the rest are
    chosen from ``settings.store_backend`` and ``settings.scheduler_backend``.
    A :class:`LocalTimerBackend` is bound to the new dispatcher so that local
    deliveries flow straight back into it.
    """
    from stream_speculator.handlers.routing import build_routes  # noqa: PLC0415
    from stream_speculator.scheduling.dispatcher import TaskDispatcher  # noqa: PLC0415

    store = store or _build_store(settings)
    backend = backend or _build_backend(settings, celery_app)
    scheduler = Scheduler(store, backend, clock)
    context = AppContext(
        settings=settings,
        store=store,
        scheduler=scheduler,
        twitch=twitch
        or TwitchClient(
            client_id=settings.twitch_client_id,
            client_secret=settings.twitch_client_secret,
            webhook_callback=settings.twitch_webhook_callback,
            webhook_secret=settings.twitch_webhook_secret,
        ),
        collector=collector or ViewerCountCollector(auth_token=settings.twitch_pubsub_token, clock=clock),
        clock=clock,
    )
    context.dispatcher = TaskDispatcher(build_routes(context), scheduler, clock)
    if isinstance(backend, LocalTimerBackend):
        backend.bind(context.dispatcher.dispatch)
    logger.info(
        "Application context built (store=%s, scheduler=%s)",
        type(store).__name__,
        type(backend).__name__,
    )
    return context
