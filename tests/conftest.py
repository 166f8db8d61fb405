"""Shared pytest fixtures for Stream Speculator tests.

Fixture summary
---------------
clock      : Mutable fixed clock (``FixedClock``) starting at 12:00:10 UTC.
store      : Fresh ``InMemoryDocumentStore``.
backend    : ``RecordingBackend`` that records deliveries instead of sending them.
scheduler  : ``Scheduler`` over ``store`` / ``backend`` / ``clock``.
settings   : ``Settings`` with the memory store and a known webhook secret.
twitch     : ``MagicMock`` standing in for ``TwitchClient`` (async methods are AsyncMocks).
collector  : ``MagicMock`` standing in for ``ViewerCountCollector``.
ctx        : ``AppContext`` wired from all of the above.

All fixtures run without Redis, Celery, or network access.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from typing import Sequence
from unittest.mock import AsyncMock, MagicMock

import pytest

from stream_speculator.config.settings import Settings
from stream_speculator.context import AppContext, build_context
from stream_speculator.core.store import InMemoryDocumentStore
from stream_speculator.scheduling.backends import DeliveryBackend
from stream_speculator.scheduling.scheduler import Scheduler
from stream_speculator.scheduling.tasks import BaseTask

WEBHOOK_SECRET = "test-webhook-secret-0123456789"
START = datetime(2024, 5, 1, 12, 0, 10, tzinfo=UTC)


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


class RecordingBackend(DeliveryBackend):
    """Delivery backend that keeps every call for inspection.

    Attributes:
        calls: One list of ``(task, delay)`` pairs per backend call.
        fail_with: Exception raised by the next call, if set.
    """

    def __init__(self) -> None:
        self.calls: list[list[tuple[BaseTask, int]]] = []
        self.fail_with: Exception | None = None

    async def deliver(self, task: BaseTask, delay: int) -> None:
        await self.deliver_batch([(task, delay)])

    async def deliver_batch(self, entries: Sequence[tuple[BaseTask, int]]) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.calls.append(list(entries))

    @property
    def delivered(self) -> list[tuple[BaseTask, int]]:
        """All delivered ``(task, delay)`` pairs, flattened across calls."""
        return [entry for call in self.calls for entry in call]

    @property
    def tasks(self) -> list[BaseTask]:
        return [task for task, _ in self.delivered]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store() -> InMemoryDocumentStore:
    return InMemoryDocumentStore()


@pytest.fixture
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture
def scheduler(store: InMemoryDocumentStore, backend: RecordingBackend, clock: FixedClock) -> Scheduler:
    return Scheduler(store, backend, clock)


@pytest.fixture
def settings() -> Settings:
    return Settings(
        store_backend="memory",
        scheduler_backend="local",
        twitch_client_id="client-id",
        twitch_client_secret="client-secret",
        twitch_webhook_secret=WEBHOOK_SECRET,
        twitch_webhook_callback="https://example.test/webhooks/twitch",
        is_offline=False,
    )


@pytest.fixture
def twitch() -> MagicMock:
    client = MagicMock()
    client.get_stream_by_user_id = AsyncMock(return_value=None)
    client.get_user = AsyncMock(return_value=None)
    client.subscribe = AsyncMock(return_value={})
    client.aclose = AsyncMock()
    return client


@pytest.fixture
def collector() -> MagicMock:
    mock = MagicMock()
    mock.collect = AsyncMock(return_value={})
    return mock


@pytest.fixture
def ctx(
    settings: Settings,
    store: InMemoryDocumentStore,
    backend: RecordingBackend,
    twitch: MagicMock,
    collector: MagicMock,
    clock: FixedClock,
) -> AppContext:
    return build_context(
        settings,
        store=store,
        backend=backend,
        twitch=twitch,
        collector=collector,
        clock=clock,
    )
