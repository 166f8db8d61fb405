"""Channel and stream monitoring handlers.

``MONITOR_STREAMS`` is a self-perpetuating chain.  Each tick fans out one
``GET_REAL_TIME_STREAM_METRICS`` task per page of live channels and schedules
its own continuation in the same batch.  The page scan only runs when the
chain record's ``streamsChanged`` flag was raised since the previous tick;
otherwise the previous fan-out is carried forward in the continuation's
payload.  When there is nothing left to poll the chain ends itself.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING

import structlog

from stream_speculator.core.models import StreamMetric
from stream_speculator.scheduling.tasks import (
    GetRealTimeStreamMetricsTask,
    MonitorChannelTask,
    MonitorStreamsData,
    MonitorStreamsTask,
)
from stream_speculator.twitch.config import CHANNEL_EVENT_TYPES, MAX_TOPICS_PER_CONNECTION

if TYPE_CHECKING:
    from stream_speculator.context import AppContext

logger = structlog.get_logger(__name__)

STREAMS_CHANGED_FIELD = "streamsChanged"


async def handle_monitor_channel(ctx: AppContext, task: MonitorChannelTask) -> None:
    """Register the EventSub subscriptions a monitored channel needs.

    Types already recorded for the channel are skipped.  Nothing is
    registered when running offline, since EventSub could not reach the
    callback anyway.
    """
    channel_id = task.data.channel_id
    if ctx.settings.is_offline:
        logger.info("eventsub_skipped_offline", channel_id=channel_id)
        return

    existing = await ctx.store.get_webhook_subscription_types(channel_id)
    for event_type in CHANNEL_EVENT_TYPES:
        if event_type in existing:
            continue
        await ctx.twitch.subscribe(event_type, channel_id)
        logger.info("eventsub_requested", channel_id=channel_id, event_type=event_type)


async def _scan_live_channels(ctx: AppContext) -> list[GetRealTimeStreamMetricsTask]:
    return [
        GetRealTimeStreamMetricsTask(data=page)
        async for page in ctx.store.iter_live_channel_pages(MAX_TOPICS_PER_CONNECTION)
    ]


async def handle_monitor_streams(ctx: AppContext, task: MonitorStreamsTask) -> None:
    """Run one tick of the monitoring chain."""
    try:
        changed = await ctx.store.test_and_clear_chain_flag(task.chain_key, STREAMS_CHANGED_FIELD)
    except Exception:
        # Fail open: a failed read means rescan.
        logger.exception("streams_changed_read_failed")
        changed = True

    if changed:
        sub_tasks = await _scan_live_channels(ctx)
        logger.info("live_channels_rescanned", pages=len(sub_tasks))
    else:
        sub_tasks = list(task.data.sub_tasks)

    if not sub_tasks:
        await ctx.scheduler.end(task)
        return

    continuation = task.model_copy(
        update={"is_repeat": True, "data": MonitorStreamsData(sub_tasks=sub_tasks)}
    )
    await ctx.scheduler.schedule_batch([*sub_tasks, continuation])


async def _apply_sample(ctx: AppContext, metric: StreamMetric) -> None:
    await ctx.store.save_stream_metric(metric)
    # A channel that went offline since the page was scanned keeps its state.
    await ctx.store.set_stream_viewer_count(metric.channel_id, metric.value)


async def handle_get_real_time_stream_metrics(
    ctx: AppContext,
    task: GetRealTimeStreamMetricsTask,
) -> None:
    """Collect one round of viewer counts and store what arrived."""
    samples = await ctx.collector.collect(task.data)
    await asyncio.gather(*(_apply_sample(ctx, metric) for metric in samples.values()))
    missing = len(task.data) - len(samples)
    if missing:
        logger.info("viewer_counts_missing", requested=len(task.data), missing=missing)
