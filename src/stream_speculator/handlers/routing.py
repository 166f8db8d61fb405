"""Fixed routing table from task type to handler."""

from __future__ import annotations

from functools import partial
from typing import TYPE_CHECKING

from stream_speculator.handlers.monitoring import (
    handle_get_real_time_stream_metrics,
    handle_monitor_channel,
    handle_monitor_streams,
)
from stream_speculator.handlers.predictions import handle_create_prediction, handle_prediction_event
from stream_speculator.handlers.streams import handle_stream_event
from stream_speculator.scheduling.dispatcher import TaskHandler
from stream_speculator.scheduling.tasks import TaskType

if TYPE_CHECKING:
    from stream_speculator.context import AppContext

_HANDLERS = {
    TaskType.MONITOR_CHANNEL: handle_monitor_channel,
    TaskType.MONITOR_STREAMS: handle_monitor_streams,
    TaskType.GET_REAL_TIME_STREAM_METRICS: handle_get_real_time_stream_metrics,
    TaskType.PREDICTION_EVENT: handle_prediction_event,
    TaskType.STREAM_EVENT: handle_stream_event,
    TaskType.CREATE_PREDICTION: handle_create_prediction,
}


def build_routes(ctx: AppContext) -> dict[TaskType, TaskHandler]:
    """Bind every handler to *ctx*.  Covers all :class:`TaskType` members."""
    return {task_type: partial(handler, ctx) for task_type, handler in _HANDLERS.items()}
