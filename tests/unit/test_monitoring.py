"""Unit tests for the monitoring handlers.

Tests cover:
- MONITOR_STREAMS with the changed flag set: rescans live channels in pages
  of 500 and schedules sub-tasks plus a continuation in one batch
- MONITOR_STREAMS with the flag clear: carries the previous sub-tasks forward
- No live channels: the chain ends itself
- A failed flag read falls back to a rescan
- GET_REAL_TIME_STREAM_METRICS stores samples and updates the channel stream
- A channel that goes offline while a sample is in flight stays offline
- MONITOR_CHANNEL subscribes only to missing event types, and not offline
"""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

from stream_speculator.context import AppContext
from stream_speculator.core.models import Channel, StreamInfo, StreamMetric, WebhookSubscription
from stream_speculator.handlers.monitoring import (
    handle_get_real_time_stream_metrics,
    handle_monitor_channel,
    handle_monitor_streams,
)
from stream_speculator.scheduling.tasks import (
    GetRealTimeStreamMetricsTask,
    MonitorChannelData,
    MonitorChannelTask,
    MonitorStreamsData,
    MonitorStreamsTask,
    initial_stream_monitoring_task,
)
from stream_speculator.twitch.config import CHANNEL_EVENT_TYPES, STREAM_ONLINE

from tests.conftest import RecordingBackend


async def _add_live_channels(ctx: AppContext, count: int) -> list[str]:
    ids = [f"{n:05d}" for n in range(count)]
    for cid in ids:
        await ctx.store.save_channel(
            Channel(id=cid, is_live=True, stream=StreamInfo(id=f"s{cid}", started_at=0))
        )
    return ids


async def _start_chain(ctx: AppContext) -> MonitorStreamsTask:
    task = initial_stream_monitoring_task()
    await ctx.scheduler.schedule(task)
    return task


# ---------------------------------------------------------------------------
# MONITOR_STREAMS
# ---------------------------------------------------------------------------


class TestMonitorStreams:
    async def test_rescan_pages_live_channels(self, ctx: AppContext, backend: RecordingBackend) -> None:
        """501 live channels become pages of 500 and 1, plus the continuation."""
        ids = await _add_live_channels(ctx, 501)
        task = await _start_chain(ctx)
        backend.calls.clear()

        await handle_monitor_streams(ctx, task)

        assert len(backend.calls) == 1
        batch = [t for t, _ in backend.calls[0]]
        metrics_tasks = [t for t in batch if isinstance(t, GetRealTimeStreamMetricsTask)]
        assert [len(t.data) for t in metrics_tasks] == [500, 1]
        assert metrics_tasks[0].data + metrics_tasks[1].data == ids

        continuation = batch[-1]
        assert isinstance(continuation, MonitorStreamsTask)
        assert continuation.is_repeat
        assert continuation.data.sub_tasks == metrics_tasks
        assert continuation.data.streams_changed is None

    async def test_flag_is_cleared_after_rescan(self, ctx: AppContext) -> None:
        await _add_live_channels(ctx, 3)
        task = await _start_chain(ctx)

        await handle_monitor_streams(ctx, task)

        assert (await ctx.store.get_chain(task.chain_key))["streamsChanged"] is False

    async def test_unchanged_reuses_previous_sub_tasks(
        self, ctx: AppContext, backend: RecordingBackend
    ) -> None:
        """With the flag clear, the store is not scanned and sub-tasks are carried over."""
        await _start_chain(ctx)
        await ctx.store.set_chain_fields("1", streamsChanged=False)
        previous = [GetRealTimeStreamMetricsTask(data=["a", "b"])]
        task = MonitorStreamsTask(
            when=initial_stream_monitoring_task().when,
            repeats=True,
            is_repeat=True,
            data=MonitorStreamsData(sub_tasks=previous),
        )
        ctx.store.list_live_channel_ids = AsyncMock(side_effect=AssertionError("scanned"))
        backend.calls.clear()

        await handle_monitor_streams(ctx, task)

        batch = [t for t, _ in backend.calls[0]]
        assert batch[0].data == ["a", "b"]
        assert batch[-1].data.sub_tasks == previous

    async def test_continuation_delay_skips_current_anchor(
        self, ctx: AppContext, backend: RecordingBackend, clock
    ) -> None:
        """A continuation running exactly on :25 waits for :55, not zero."""
        await _add_live_channels(ctx, 1)
        task = await _start_chain(ctx)
        clock.advance(15)
        backend.calls.clear()

        await handle_monitor_streams(ctx, task.model_copy(update={"is_repeat": True}))

        delays = {type(t).__name__: d for t, d in backend.calls[0]}
        assert delays["MonitorStreamsTask"] == 30
        assert delays["GetRealTimeStreamMetricsTask"] == 0

    async def test_no_live_channels_ends_chain(self, ctx: AppContext, backend: RecordingBackend) -> None:
        task = await _start_chain(ctx)
        backend.calls.clear()

        await handle_monitor_streams(ctx, task)

        assert backend.calls == []
        assert await ctx.store.get_chain(task.chain_key) is None

    async def test_ended_chain_can_restart(self, ctx: AppContext) -> None:
        """After the chain ends, a new stream going live starts a fresh one."""
        task = await _start_chain(ctx)
        await handle_monitor_streams(ctx, task)
        assert await ctx.scheduler.schedule(initial_stream_monitoring_task()) is True

    async def test_flag_read_failure_rescans(self, ctx: AppContext, backend: RecordingBackend) -> None:
        await _add_live_channels(ctx, 2)
        task = await _start_chain(ctx)
        ctx.store.test_and_clear_chain_flag = AsyncMock(side_effect=RuntimeError("redis down"))
        backend.calls.clear()

        await handle_monitor_streams(ctx, task)

        batch = [t for t, _ in backend.calls[0]]
        assert batch[0].data == ["00000", "00001"]

    async def test_new_live_channel_seen_on_next_tick(
        self, ctx: AppContext, backend: RecordingBackend
    ) -> None:
        """A losing initiator raises the flag, so the next tick rescans."""
        await _add_live_channels(ctx, 1)
        task = await _start_chain(ctx)
        await handle_monitor_streams(ctx, task)
        continuation = [t for t, _ in backend.calls[-1]][-1]

        await ctx.store.save_channel(Channel(id="99999", is_live=True))
        assert await ctx.scheduler.schedule(initial_stream_monitoring_task()) is False
        await handle_monitor_streams(ctx, continuation)

        batch = [t for t, _ in backend.calls[-1]]
        assert batch[0].data == ["00000", "99999"]


# ---------------------------------------------------------------------------
# GET_REAL_TIME_STREAM_METRICS
# ---------------------------------------------------------------------------


class TestRealTimeMetrics:
    async def test_stores_samples_and_updates_channel(self, ctx: AppContext, collector) -> None:
        await _add_live_channels(ctx, 2)
        collector.collect.return_value = {
            "00000": StreamMetric(channel_id="00000", value=321, timestamp=1_000),
        }

        await handle_get_real_time_stream_metrics(
            ctx, GetRealTimeStreamMetricsTask(data=["00000", "00001"])
        )

        collector.collect.assert_awaited_once_with(["00000", "00001"])
        metric = await ctx.store.get_stream_metric("00000")
        assert metric is not None and metric.value == 321
        assert (await ctx.store.get_channel("00000")).stream.viewer_count == 321
        assert await ctx.store.get_stream_metric("00001") is None

    async def test_sample_for_channel_without_stream(self, ctx: AppContext, collector) -> None:
        """The sample is stored even if the channel has no stream document."""
        collector.collect.return_value = {"x": StreamMetric(channel_id="x", value=5, timestamp=1)}

        await handle_get_real_time_stream_metrics(ctx, GetRealTimeStreamMetricsTask(data=["x"]))

        assert (await ctx.store.get_stream_metric("x")).value == 5
        assert await ctx.store.get_channel("x") is None

    async def test_offline_during_collection_stays_offline(self, ctx: AppContext, collector) -> None:
        """A channel that goes offline while its sample is in flight is not brought back."""
        await _add_live_channels(ctx, 1)

        async def collect_while_going_offline(channel_ids: list[str]) -> dict[str, StreamMetric]:
            await ctx.store.update_channel("00000", is_live=False)
            return {"00000": StreamMetric(channel_id="00000", value=999, timestamp=1)}

        collector.collect.side_effect = collect_while_going_offline

        await handle_get_real_time_stream_metrics(ctx, GetRealTimeStreamMetricsTask(data=["00000"]))

        channel = await ctx.store.get_channel("00000")
        assert channel.is_live is False
        assert channel.stream.viewer_count == 0
        assert await ctx.store.list_live_channel_ids(None, 10) == []
        assert (await ctx.store.get_stream_metric("00000")).value == 999

    async def test_concurrent_offline_and_sample(self, ctx: AppContext, collector) -> None:
        """Slow channel reads cannot turn an offline update into a stale overwrite."""
        await _add_live_channels(ctx, 1)
        collector.collect.return_value = {
            "00000": StreamMetric(channel_id="00000", value=7, timestamp=1)
        }
        read_channel = ctx.store.get_channel

        async def slow_get_channel(channel_id: str) -> Channel | None:
            channel = await read_channel(channel_id)
            await asyncio.sleep(0.02)
            return channel

        ctx.store.get_channel = slow_get_channel  # type: ignore[method-assign]

        async def go_offline() -> None:
            await asyncio.sleep(0.01)
            await ctx.store.update_channel("00000", is_live=False)

        await asyncio.gather(
            handle_get_real_time_stream_metrics(ctx, GetRealTimeStreamMetricsTask(data=["00000"])),
            go_offline(),
        )

        assert (await read_channel("00000")).is_live is False
        assert await ctx.store.list_live_channel_ids(None, 10) == []


# ---------------------------------------------------------------------------
# MONITOR_CHANNEL
# ---------------------------------------------------------------------------


class TestMonitorChannel:
    async def test_subscribes_to_missing_types(self, ctx: AppContext, twitch) -> None:
        await ctx.store.record_webhook_subscription(
            WebhookSubscription(id="sub-1", type=STREAM_ONLINE, channel_id="7")
        )

        await handle_monitor_channel(ctx, MonitorChannelTask(data=MonitorChannelData(channel_id="7")))

        requested = [c.args[0] for c in twitch.subscribe.await_args_list]
        assert STREAM_ONLINE not in requested
        assert sorted(requested) == sorted(t for t in CHANNEL_EVENT_TYPES if t != STREAM_ONLINE)

    async def test_offline_mode_skips(self, ctx: AppContext, twitch) -> None:
        ctx.settings.is_offline = True

        await handle_monitor_channel(ctx, MonitorChannelTask(data=MonitorChannelData(channel_id="7")))

        twitch.subscribe.assert_not_awaited()
