"""Scheduled task models.

A scheduled task is a tagged union keyed by :class:`TaskType`; each variant
carries its own typed ``data`` payload.  On the wire a task is a JSON object::

    {
        "type": 1,
        "data": {"streamsChanged": true, "subTasks": []},
        "when": [{"at": {"second": 25}}, {"at": {"second": 55}}],
        "repeats": true,
        "isRepeat": false
    }

Use :func:`parse_task` to turn a wire dict (or JSON string) into the right
variant and :meth:`BaseTask.to_wire` to go back.
"""

from __future__ import annotations

import enum
from typing import Annotated, Any, Optional, Union

from pydantic import Discriminator, Field, Tag, TypeAdapter, model_validator

from stream_speculator.core.models import Prediction, WireModel


class TaskType(enum.IntEnum):
    """Kinds of scheduled task.  The integer values are the wire format and
    the chain dedup record keys, so they must never be renumbered."""

    MONITOR_CHANNEL = 0
    MONITOR_STREAMS = 1
    GET_REAL_TIME_STREAM_METRICS = 2
    PREDICTION_EVENT = 3
    STREAM_EVENT = 4
    CREATE_PREDICTION = 5


# ---------------------------------------------------------------------------
# Fire-time descriptors
# ---------------------------------------------------------------------------


class SecondAnchor(WireModel):
    """Recurring second-of-minute anchor."""

    second: int = Field(ge=0, le=59)


class When(WireModel):
    """One fire-time descriptor: either ``at`` (anchor) or ``timestamp`` (epoch ms)."""

    at: Optional[SecondAnchor] = None
    timestamp: Optional[int] = None

    @model_validator(mode="after")
    def _exactly_one(self) -> "When":
        if (self.at is None) == (self.timestamp is None):
            raise ValueError("exactly one of 'at' or 'timestamp' must be set")
        return self

    @classmethod
    def at_second(cls, second: int) -> "When":
        return cls(at=SecondAnchor(second=second))

    @classmethod
    def at_timestamp(cls, timestamp_ms: int) -> "When":
        return cls(timestamp=timestamp_ms)


# ---------------------------------------------------------------------------
# Task variants
# ---------------------------------------------------------------------------


class BaseTask(WireModel):
    """Fields shared by every task variant."""

    type: TaskType
    when: list[When] = Field(default_factory=list)
    repeats: bool = False
    is_repeat: bool = False

    @property
    def is_initial(self) -> bool:
        """True for the delivery that starts a repeating chain."""
        return self.repeats and not self.is_repeat

    @property
    def chain_key(self) -> str:
        """Dedup record key for this task's chain."""
        return str(int(self.type))

    def to_wire(self) -> dict[str, Any]:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class MonitorChannelData(WireModel):
    channel_id: str


class MonitorChannelTask(BaseTask):
    """Register EventSub subscriptions for one channel."""

    type: TaskType = TaskType.MONITOR_CHANNEL
    data: MonitorChannelData


class GetRealTimeStreamMetricsTask(BaseTask):
    """Collect one round of viewer counts for a page of live channels."""

    type: TaskType = TaskType.GET_REAL_TIME_STREAM_METRICS
    data: list[str]


class MonitorStreamsData(WireModel):
    """Payload of the monitoring chain.

    ``streams_changed`` is only set on the initiating task (it seeds the
    dedup record).  ``sub_tasks`` carries the previous tick's fan-out so the
    next tick can reuse it when the live set has not changed.
    """

    streams_changed: Optional[bool] = None
    sub_tasks: list[GetRealTimeStreamMetricsTask] = Field(default_factory=list)


class MonitorStreamsTask(BaseTask):
    """Self-rescheduling monitoring chain."""

    type: TaskType = TaskType.MONITOR_STREAMS
    data: MonitorStreamsData = Field(default_factory=MonitorStreamsData)


class PredictionEventType(str, enum.Enum):
    BEGIN = "begin"
    PROGRESS = "progress"
    LOCK = "lock"
    END = "end"


class PredictionEventData(WireModel):
    type: PredictionEventType
    prediction: Prediction


class PredictionEventTask(BaseTask):
    """Advance one prediction through its lifecycle."""

    type: TaskType = TaskType.PREDICTION_EVENT
    data: PredictionEventData


class StreamEventType(str, enum.Enum):
    ONLINE = "stream.online"
    OFFLINE = "stream.offline"


class StreamEventData(WireModel):
    """A ``stream.online`` / ``stream.offline`` notification.

    ``started_at`` is the RFC 3339 string Twitch sends; only set when online.
    """

    type: StreamEventType
    channel_id: str
    stream_id: Optional[str] = None
    started_at: Optional[str] = None


class StreamEventTask(BaseTask):
    type: TaskType = TaskType.STREAM_EVENT
    data: StreamEventData


class CreatePredictionData(WireModel):
    channel_id: str


class CreatePredictionTask(BaseTask):
    """Create the internal prediction for a channel that has been live a while."""

    type: TaskType = TaskType.CREATE_PREDICTION
    data: CreatePredictionData


# ---------------------------------------------------------------------------
# Tagged union
# ---------------------------------------------------------------------------


def _task_tag(value: Any) -> str | None:
    """Map a raw task (dict or model) to the name of its :class:`TaskType`."""
    raw = value.get("type") if isinstance(value, dict) else getattr(value, "type", None)
    try:
        return TaskType(int(raw)).name
    except (TypeError, ValueError):
        return None


ScheduledTask = Annotated[
    Union[
        Annotated[MonitorChannelTask, Tag(TaskType.MONITOR_CHANNEL.name)],
        Annotated[MonitorStreamsTask, Tag(TaskType.MONITOR_STREAMS.name)],
        Annotated[
            GetRealTimeStreamMetricsTask,
            Tag(TaskType.GET_REAL_TIME_STREAM_METRICS.name),
        ],
        Annotated[PredictionEventTask, Tag(TaskType.PREDICTION_EVENT.name)],
        Annotated[StreamEventTask, Tag(TaskType.STREAM_EVENT.name)],
        Annotated[CreatePredictionTask, Tag(TaskType.CREATE_PREDICTION.name)],
    ],
    Discriminator(_task_tag),
]
"""Any scheduled task variant, discriminated by ``type``."""

_TASK_ADAPTER: TypeAdapter[ScheduledTask] = TypeAdapter(ScheduledTask)


def parse_task(raw: dict[str, Any] | str | bytes) -> BaseTask:
    """Validate a wire task into its typed variant.

    Args:
        raw: A wire dict, or the JSON text of one.

    Returns:
        The matching task model.

    Raises:
        pydantic.ValidationError: If the type is unknown or the payload does
            not match the variant's schema.
    """
    if isinstance(raw, (str, bytes)):
        return _TASK_ADAPTER.validate_json(raw)
    return _TASK_ADAPTER.validate_python(raw)


def initial_stream_monitoring_task() -> MonitorStreamsTask:
    """Return a fresh copy of the task that starts the monitoring chain.

    Fires at seconds 25 and 55 of each minute, a few seconds before Twitch
    publishes viewer counts at :00 and :30, so the collector's window is
    already open when samples arrive.
    """
    return MonitorStreamsTask(
        when=[When.at_second(25), When.at_second(55)],
        data=MonitorStreamsData(streams_changed=True),
        repeats=True,
    )


STREAM_MONITORING_INITIAL_TASK: MonitorStreamsTask = initial_stream_monitoring_task()
"""Shared template of the monitoring chain's first task.  Do not mutate; call
:func:`initial_stream_monitoring_task` for a copy you can change."""
