"""Unit tests for the Scheduler.

Tests cover:
- Chain-initiating tasks are admitted exactly once per type
- Concurrent initiators: exactly one wins, exactly one delivery
- Continuations and plain tasks skip the dedup check
- schedule_batch(): initiator dedup, one backend call, empty batches
- end() releases the chain so it can be started again
- Initiator payload is merged into an already running chain record
- Backend failures propagate as TaskDeliveryError
"""

from __future__ import annotations

import asyncio

import pytest

from stream_speculator.core.exceptions import TaskDeliveryError
from stream_speculator.scheduling.scheduler import Scheduler
from stream_speculator.scheduling.tasks import (
    CreatePredictionData,
    CreatePredictionTask,
    MonitorChannelData,
    MonitorChannelTask,
    TaskType,
    initial_stream_monitoring_task,
)

from tests.conftest import RecordingBackend

CHAIN_KEY = str(int(TaskType.MONITOR_STREAMS))


def _create_prediction(channel_id: str = "1") -> CreatePredictionTask:
    return CreatePredictionTask(data=CreatePredictionData(channel_id=channel_id))


# ---------------------------------------------------------------------------
# schedule()
# ---------------------------------------------------------------------------


class TestSchedule:
    async def test_initial_task_creates_chain_and_delivers(
        self, scheduler: Scheduler, store, backend: RecordingBackend
    ) -> None:
        """The first initiator creates the chain record and is delivered with its delay."""
        assert await scheduler.schedule(initial_stream_monitoring_task()) is True
        assert await store.get_chain(CHAIN_KEY) == {"streamsChanged": True}
        assert len(backend.delivered) == 1
        _, delay = backend.delivered[0]
        assert delay == 15

    async def test_duplicate_initiator_is_rejected(
        self, scheduler: Scheduler, backend: RecordingBackend
    ) -> None:
        """A second initiator while the chain runs returns False and enqueues nothing."""
        await scheduler.schedule(initial_stream_monitoring_task())
        assert await scheduler.schedule(initial_stream_monitoring_task()) is False
        assert len(backend.delivered) == 1

    async def test_concurrent_initiators_admit_exactly_one(
        self, scheduler: Scheduler, backend: RecordingBackend
    ) -> None:
        """Twenty initiators racing on the same loop produce one chain."""
        results = await asyncio.gather(
            *(scheduler.schedule(initial_stream_monitoring_task()) for _ in range(20))
        )
        assert results.count(True) == 1
        assert len(backend.delivered) == 1

    async def test_continuation_skips_dedup(
        self, scheduler: Scheduler, backend: RecordingBackend
    ) -> None:
        """is_repeat deliveries are always enqueued while the chain runs."""
        await scheduler.schedule(initial_stream_monitoring_task())
        continuation = initial_stream_monitoring_task().model_copy(update={"is_repeat": True})
        assert await scheduler.schedule(continuation) is True
        assert await scheduler.schedule(continuation) is True
        assert len(backend.delivered) == 3

    async def test_non_repeating_task_never_touches_chains(
        self, scheduler: Scheduler, store, backend: RecordingBackend
    ) -> None:
        await scheduler.schedule(_create_prediction())
        await scheduler.schedule(_create_prediction())
        assert store.chains == {}
        assert len(backend.delivered) == 2

    async def test_backend_failure_propagates(
        self, scheduler: Scheduler, backend: RecordingBackend
    ) -> None:
        backend.fail_with = TaskDeliveryError("broker down")
        with pytest.raises(TaskDeliveryError):
            await scheduler.schedule(_create_prediction())


# ---------------------------------------------------------------------------
# schedule_batch()
# ---------------------------------------------------------------------------


class TestScheduleBatch:
    async def test_single_backend_call(self, scheduler: Scheduler, backend: RecordingBackend) -> None:
        """Mixed tasks go out in one deliver_batch call, initiators first."""
        await scheduler.schedule_batch(
            [
                _create_prediction("1"),
                initial_stream_monitoring_task(),
                MonitorChannelTask(data=MonitorChannelData(channel_id="2")),
            ]
        )
        assert len(backend.calls) == 1
        types = [task.type for task in backend.tasks]
        assert types == [TaskType.MONITOR_STREAMS, TaskType.CREATE_PREDICTION, TaskType.MONITOR_CHANNEL]

    async def test_duplicate_initiators_in_one_batch(
        self, scheduler: Scheduler, backend: RecordingBackend
    ) -> None:
        """Two initiators of the same type in one batch enqueue one task."""
        await scheduler.schedule_batch(
            [initial_stream_monitoring_task(), initial_stream_monitoring_task()]
        )
        assert len(backend.tasks) == 1

    async def test_running_chain_initiator_is_dropped(
        self, scheduler: Scheduler, backend: RecordingBackend
    ) -> None:
        """The initiator is dropped but the other tasks of the batch still go out."""
        await scheduler.schedule(initial_stream_monitoring_task())
        await scheduler.schedule_batch([initial_stream_monitoring_task(), _create_prediction()])
        assert [task.type for task, _ in backend.calls[-1]] == [TaskType.CREATE_PREDICTION]

    async def test_empty_batch_makes_no_backend_call(
        self, scheduler: Scheduler, backend: RecordingBackend
    ) -> None:
        await scheduler.schedule_batch([])
        assert backend.calls == []

    async def test_batch_of_rejected_initiators_makes_no_backend_call(
        self, scheduler: Scheduler, backend: RecordingBackend
    ) -> None:
        await scheduler.schedule(initial_stream_monitoring_task())
        await scheduler.schedule_batch([initial_stream_monitoring_task()])
        assert len(backend.calls) == 1


# ---------------------------------------------------------------------------
# Chain lifecycle
# ---------------------------------------------------------------------------


class TestChainLifecycle:
    async def test_end_allows_restart(self, scheduler: Scheduler, store) -> None:
        """After end(), the next initiator creates a fresh chain."""
        task = initial_stream_monitoring_task()
        await scheduler.schedule(task)
        await scheduler.end(task)
        assert await store.get_chain(CHAIN_KEY) is None
        assert await scheduler.schedule(initial_stream_monitoring_task()) is True

    async def test_end_is_idempotent(self, scheduler: Scheduler) -> None:
        task = initial_stream_monitoring_task()
        await scheduler.end(task)
        await scheduler.end(task)

    async def test_rejected_initiator_merges_payload(self, scheduler: Scheduler, store) -> None:
        """A losing initiator still raises streamsChanged on the running chain."""
        await scheduler.schedule(initial_stream_monitoring_task())
        assert await store.test_and_clear_chain_flag(CHAIN_KEY, "streamsChanged") is True

        assert await scheduler.schedule(initial_stream_monitoring_task()) is False
        assert (await store.get_chain(CHAIN_KEY))["streamsChanged"] is True

    async def test_redeliver_uses_current_clock(
        self, scheduler: Scheduler, backend: RecordingBackend, clock
    ) -> None:
        """redeliver() recomputes the delay from the clock and skips dedup."""
        task = initial_stream_monitoring_task()
        await scheduler.schedule(task)
        clock.advance(10)
        await scheduler.redeliver(task)
        assert [delay for _, delay in backend.delivered] == [15, 5]
