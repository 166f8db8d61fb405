"""Stream online/offline handling and channel tracking.

Going online marks the channel live, (re)starts the monitoring chain and
schedules the channel's internal prediction.  Going offline marks it not
live, tells the monitoring chain to rescan, and cancels every prediction on
the channel that is still active.  Locked predictions are left to be
resolved.
"""

from __future__ import annotations

from datetime import timedelta
from typing import TYPE_CHECKING

import structlog

from stream_speculator.core.models import Channel, PredictionStatus, StreamInfo, to_epoch_ms
from stream_speculator.handlers.monitoring import STREAMS_CHANGED_FIELD
from stream_speculator.scheduling.tasks import (
    BaseTask,
    CreatePredictionData,
    CreatePredictionTask,
    MonitorChannelData,
    MonitorChannelTask,
    PredictionEventData,
    PredictionEventTask,
    PredictionEventType,
    StreamEventTask,
    StreamEventType,
    TaskType,
    When,
    initial_stream_monitoring_task,
)

if TYPE_CHECKING:
    from stream_speculator.context import AppContext

logger = structlog.get_logger(__name__)


def _create_prediction_task(ctx: AppContext, channel_id: str, delay: timedelta) -> CreatePredictionTask:
    fire_at = ctx.clock() + delay
    return CreatePredictionTask(
        data=CreatePredictionData(channel_id=channel_id),
        when=[When.at_timestamp(int(fire_at.timestamp() * 1000))] if delay else [],
    )


async def _go_online(ctx: AppContext, task: StreamEventTask) -> None:
    event = task.data
    stream = await ctx.twitch.get_stream_by_user_id(event.channel_id) or {}
    started_at = to_epoch_ms(event.started_at or stream.get("started_at")) or ctx.now_ms()
    await ctx.store.update_channel(
        event.channel_id,
        is_live=True,
        stream=StreamInfo(
            id=event.stream_id or str(stream.get("id", "")),
            title=stream.get("title", ""),
            started_at=started_at,
            viewer_count=int(stream.get("viewer_count", 0)),
        ),
    )
    delay = timedelta(minutes=ctx.settings.create_prediction_delay_minutes)
    await ctx.scheduler.schedule_batch(
        [
            initial_stream_monitoring_task(),
            _create_prediction_task(ctx, event.channel_id, delay),
        ]
    )
    logger.info("stream_online", channel_id=event.channel_id)


async def _go_offline(ctx: AppContext, task: StreamEventTask) -> None:
    channel_id = task.data.channel_id
    await ctx.store.set_chain_fields(str(int(TaskType.MONITOR_STREAMS)), **{STREAMS_CHANGED_FIELD: True})
    await ctx.store.update_channel(channel_id, is_live=False)

    active = await ctx.store.list_open_predictions(channel_id, status=PredictionStatus.ACTIVE)
    now_ms = ctx.now_ms()
    cancellations: list[BaseTask] = [
        PredictionEventTask(
            data=PredictionEventData(
                type=PredictionEventType.END,
                prediction=prediction.model_copy(
                    update={
                        "status": PredictionStatus.CANCELED,
                        "winning_outcome_id": None,
                        "ended_at": now_ms,
                    }
                ),
            )
        )
        for prediction in active
    ]
    if cancellations:
        await ctx.scheduler.schedule_batch(cancellations)
    logger.info("stream_offline", channel_id=channel_id, canceled_predictions=len(cancellations))


async def handle_stream_event(ctx: AppContext, task: StreamEventTask) -> None:
    if task.data.type is StreamEventType.ONLINE:
        await _go_online(ctx, task)
    else:
        await _go_offline(ctx, task)


async def track_channel(ctx: AppContext, channel_id: str) -> Channel:
    """Start tracking a broadcaster.

    Stores the channel from Helix and schedules its EventSub registration.
    If the channel is already live, the monitoring chain is started and its
    internal prediction is created straight away.

    Raises:
        LookupError: If Twitch has no user with *channel_id*.
    """
    user = await ctx.twitch.get_user(channel_id)
    if user is None:
        raise LookupError(f"unknown Twitch user {channel_id}")
    stream = await ctx.twitch.get_stream_by_user_id(channel_id)

    channel = await ctx.store.update_channel(
        str(user["id"]),
        display_name=user.get("display_name", ""),
        user_name=user.get("login", ""),
        is_live=stream is not None,
        profile_image_url=user.get("profile_image_url"),
        stream=StreamInfo(
            id=str(stream["id"]),
            title=stream.get("title", ""),
            started_at=to_epoch_ms(stream.get("started_at")) or ctx.now_ms(),
            viewer_count=int(stream.get("viewer_count", 0)),
        )
        if stream
        else None,
    )

    tasks: list[BaseTask] = [MonitorChannelTask(data=MonitorChannelData(channel_id=channel.id))]
    if channel.is_live:
        tasks.append(initial_stream_monitoring_task())
        tasks.append(_create_prediction_task(ctx, channel.id, timedelta(0)))
    await ctx.scheduler.schedule_batch(tasks)
    logger.info("channel_tracked", channel_id=channel.id, is_live=channel.is_live)
    return channel
