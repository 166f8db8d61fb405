"""Scheduler: idempotent admission of tasks into the delivery backend.

A repeating chain (``repeats=True``) is admitted only when its dedup record
does not yet exist.  The record is keyed by the task type, so at most one
chain per type runs at any time no matter how many callers try to start it.
Continuation deliveries (``is_repeat=True``) skip the check because their
chain already owns the record.
"""

from __future__ import annotations

import asyncio
from datetime import UTC, datetime
from typing import Callable, Sequence

import structlog

from stream_speculator.core.store import DocumentStore
from stream_speculator.scheduling.backends import DeliveryBackend
from stream_speculator.scheduling.delay import compute_delay
from stream_speculator.scheduling.tasks import BaseTask, TaskType

logger = structlog.get_logger(__name__)

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(UTC)


def _chain_payload(task: BaseTask) -> dict:
    data = getattr(task, "data", None)
    if data is None:
        return {}
    if isinstance(data, list):
        return {}
    return data.model_dump(mode="json", by_alias=True, exclude_none=True, exclude={"sub_tasks"})


class Scheduler:
    """Admits tasks into a :class:`DeliveryBackend` with per-type chain dedup.

    Args:
        store: Document store holding the chain dedup records.
        backend: Where admitted tasks are delivered.
        clock: Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        store: DocumentStore,
        backend: DeliveryBackend,
        clock: Clock = utc_now,
    ) -> None:
        self.store = store
        self.backend = backend
        self.clock = clock

    async def _admit_chain(self, task: BaseTask) -> bool:
        created = await self.store.create_chain(task.chain_key, _chain_payload(task))
        if not created:
            logger.debug("chain_already_running", task_type=TaskType(task.type).name)
        else:
            logger.info("chain_started", task_type=TaskType(task.type).name)
        return created

    async def schedule(self, task: BaseTask) -> bool:
        """Admit and deliver a single task.

        Returns:
            ``False`` if *task* starts a chain that is already running (nothing
            is enqueued).  ``True`` once the task has been handed to the backend.

        Raises:
            TaskDeliveryError: If the backend refuses the task.
        """
        if task.is_initial and not await self._admit_chain(task):
            return False
        delay = compute_delay(task, self.clock())
        await self.backend.deliver(task, delay)
        return True

    async def schedule_batch(self, tasks: Sequence[BaseTask]) -> None:
        """Admit and deliver several tasks with one backend call.

        Chain-initiating tasks are de-duplicated by type first, so a batch
        containing two initiators of the same type issues one creation and
        enqueues at most one of them.  Creations for distinct types run
        concurrently.

        Raises:
            TaskDeliveryError: If the backend refuses the batch.
        """
        initiators: dict[int, BaseTask] = {}
        admitted: list[BaseTask] = []
        for task in tasks:
            if task.is_initial:
                initiators.setdefault(int(task.type), task)
            else:
                admitted.append(task)

        if initiators:
            candidates = list(initiators.values())
            created = await asyncio.gather(*(self._admit_chain(t) for t in candidates))
            admitted = [t for t, ok in zip(candidates, created) if ok] + admitted

        if not admitted:
            return
        now = self.clock()
        await self.backend.deliver_batch([(task, compute_delay(task, now)) for task in admitted])

    async def end(self, task: BaseTask) -> None:
        """Stop *task*'s chain by deleting its dedup record.  Safe to repeat."""
        removed = await self.store.delete_chain(task.chain_key)
        if removed:
            logger.info("chain_ended", task_type=TaskType(task.type).name)

    async def redeliver(self, task: BaseTask) -> None:
        """Re-enqueue an already admitted task without touching dedup records."""
        await self.backend.deliver(task, compute_delay(task, self.clock()))
