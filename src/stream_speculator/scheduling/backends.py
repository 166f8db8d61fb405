"""Delivery backends: how a scheduled task reaches the dispatcher after its delay.

:class:`CeleryQueueBackend`
    Production.  Each delivery is a ``run_scheduled_tasks`` Celery message
    with ``countdown`` set to the computed delay.  The worker feeds the
    batch into the dispatcher.

:class:`LocalTimerBackend`
    Development.  In-process ``loop.call_later`` timers that invoke a
    dispatch callback directly.  Pending timers are lost when the process
    exits.

The backend is picked once when the application context is built; the
scheduler and handlers only see the :class:`DeliveryBackend` interface.
"""

from __future__ import annotations

import abc
import asyncio
import logging
from collections import defaultdict
from typing import Any, Awaitable, Callable, Sequence

from celery import Celery, group

from stream_speculator.core.exceptions import TaskDeliveryError
from stream_speculator.scheduling.tasks import BaseTask

logger = logging.getLogger(__name__)

RUN_SCHEDULED_TASKS = "stream_speculator.workers.tasks.run_scheduled_tasks"
"""Name of the Celery task that receives delivered batches."""

DispatchCallback = Callable[[list[BaseTask]], Awaitable[Any]]


class DeliveryBackend(abc.ABC):
    """Hands tasks to the dispatcher after a delay."""

    @abc.abstractmethod
    async def deliver(self, task: BaseTask, delay: int) -> None:
        """Deliver one task after *delay* seconds.

        Raises:
            TaskDeliveryError: If the backend refuses the task.
        """

    @abc.abstractmethod
    async def deliver_batch(self, entries: Sequence[tuple[BaseTask, int]]) -> None:
        """Deliver several ``(task, delay)`` pairs in one backend call.

        Raises:
            TaskDeliveryError: If the backend refuses the batch.
        """

    async def aclose(self) -> None:
        """Release backend resources."""


# ---------------------------------------------------------------------------
# Local timers
# ---------------------------------------------------------------------------


class LocalTimerBackend(DeliveryBackend):
    """Fires tasks from ``loop.call_later`` timers in the current process.

    Args:
        callback: Coroutine function receiving the delivered tasks (normally
            ``TaskDispatcher.dispatch``).  May be bound later with
            :meth:`bind` because the dispatcher is built after the scheduler.
    """

    def __init__(self, callback: DispatchCallback | None = None) -> None:
        self._callback = callback
        self._timers: set[asyncio.TimerHandle] = set()
        self._running: set[asyncio.Task[Any]] = set()

    def bind(self, callback: DispatchCallback) -> None:
        self._callback = callback

    @property
    def pending(self) -> int:
        """Number of timers that have not fired yet."""
        return len(self._timers)

    def _fire(self, handle_box: list[asyncio.TimerHandle], tasks: list[BaseTask]) -> None:
        if handle_box:
            self._timers.discard(handle_box[0])
        if self._callback is None:
            logger.error("Local timer fired with no dispatcher bound; dropping %d task(s)", len(tasks))
            return
        running = asyncio.ensure_future(self._callback(tasks))
        self._running.add(running)
        running.add_done_callback(self._running.discard)

    def _schedule(self, tasks: list[BaseTask], delay: int) -> None:
        loop = asyncio.get_running_loop()
        handle_box: list[asyncio.TimerHandle] = []
        handle = loop.call_later(max(0, delay), self._fire, handle_box, tasks)
        handle_box.append(handle)
        self._timers.add(handle)

    async def deliver(self, task: BaseTask, delay: int) -> None:
        self._schedule([task], delay)

    async def deliver_batch(self, entries: Sequence[tuple[BaseTask, int]]) -> None:
        for delay, tasks in _group_by_delay(entries).items():
            self._schedule(tasks, delay)

    async def aclose(self) -> None:
        for handle in self._timers:
            handle.cancel()
        self._timers.clear()
        for running in list(self._running):
            running.cancel()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)


# ---------------------------------------------------------------------------
# Celery queue
# ---------------------------------------------------------------------------


class CeleryQueueBackend(DeliveryBackend):
    """Enqueues delayed ``run_scheduled_tasks`` messages on the Celery broker.

    Celery's publish calls are synchronous, so they run in the default
    executor to keep the event loop free.

    Args:
        celery_app: The configured Celery application.
    """

    def __init__(self, celery_app: Celery) -> None:
        self.celery_app = celery_app

    def _signature(self, tasks: list[BaseTask], delay: int) -> Any:
        return self.celery_app.signature(
            RUN_SCHEDULED_TASKS,
            args=([task.to_wire() for task in tasks],),
            countdown=delay,
        )

    async def _publish(self, send: Callable[[], Any], task_count: int) -> None:
        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(None, send)
        except Exception as exc:
            logger.exception("Celery delivery of %d task(s) failed", task_count)
            raise TaskDeliveryError(f"could not enqueue {task_count} task(s): {exc}", task_count) from exc

    async def deliver(self, task: BaseTask, delay: int) -> None:
        signature = self._signature([task], delay)
        await self._publish(signature.apply_async, 1)

    async def deliver_batch(self, entries: Sequence[tuple[BaseTask, int]]) -> None:
        signatures = [
            self._signature(tasks, delay) for delay, tasks in _group_by_delay(entries).items()
        ]
        if not signatures:
            return
        await self._publish(group(signatures).apply_async, len(entries))


def _group_by_delay(entries: Sequence[tuple[BaseTask, int]]) -> dict[int, list[BaseTask]]:
    grouped: dict[int, list[BaseTask]] = defaultdict(list)
    for task, delay in entries:
        grouped[delay].append(task)
    return dict(grouped)
