"""Pydantic domain models mirrored from Twitch into the document store.

The wire and storage format uses camelCase keys (``isLive``, ``channelId``,
``winningOutcomeId``); attributes are snake_case.  Parsing accepts either
spelling.  Serialise with :meth:`WireModel.to_wire` so stored documents and
task payloads stay in camelCase.

All timestamps are integer epoch milliseconds.
"""

from __future__ import annotations

import enum
import re
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class WireModel(BaseModel):
    """Base model with camelCase aliases for the JSON wire/storage format."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
    )

    def to_wire(self) -> dict[str, Any]:
        """Return a JSON-compatible dict keyed by the camelCase aliases."""
        return self.model_dump(mode="json", by_alias=True)


# ---------------------------------------------------------------------------
# Channels and metrics
# ---------------------------------------------------------------------------


class StreamInfo(WireModel):
    """The stream currently running on a live channel.

    Attributes:
        id: Twitch stream id.
        title: Stream title at the time it went live.
        started_at: Stream start time (epoch ms).
        viewer_count: Most recent viewer-count sample.
    """

    id: str
    title: str = ""
    started_at: int
    viewer_count: int = 0


class Channel(WireModel):
    """A tracked broadcaster channel.

    ``is_live`` flips on ``stream.online`` / ``stream.offline`` notifications and
    is the filter the monitoring chain pages over.
    """

    id: str
    display_name: str = ""
    user_name: str = ""
    is_live: bool = False
    profile_image_url: Optional[str] = None
    stream: Optional[StreamInfo] = None


class StreamMetricType(enum.IntEnum):
    """Kinds of per-channel stream metrics.  Values are part of the storage key."""

    VIEWER_COUNT = 0


class StreamMetric(WireModel):
    """One sample of a stream metric.  Stored once per (channel, type) and overwritten."""

    channel_id: str
    type: StreamMetricType = StreamMetricType.VIEWER_COUNT
    value: int
    timestamp: int


# ---------------------------------------------------------------------------
# Predictions
# ---------------------------------------------------------------------------


class PredictionStatus(str, enum.Enum):
    """Lifecycle states of a prediction.  ``RESOLVED`` and ``CANCELED`` are terminal."""

    ACTIVE = "active"
    LOCKED = "locked"
    RESOLVED = "resolved"
    CANCELED = "canceled"

    @property
    def is_terminal(self) -> bool:
        return self in (PredictionStatus.RESOLVED, PredictionStatus.CANCELED)


class PredictionOutcome(WireModel):
    """One outcome of a prediction.

    Attributes:
        id: Outcome id (Twitch-issued, or generated for internal predictions).
        title: Outcome label.
        color: Twitch outcome colour (``"blue"`` / ``"pink"``).
        channel_point_users: Users who bet channel points on Twitch.
        channel_points: Channel points wagered on Twitch.
        coins: Coins wagered inside this application.
        coin_users: Users who wagered coins inside this application.
    """

    id: str
    title: str = ""
    color: str = "blue"
    channel_point_users: int = 0
    channel_points: int = 0
    coins: int = 0
    coin_users: int = 0


class Prediction(WireModel):
    """A prediction mirrored from Twitch or created internally for a live channel."""

    id: str
    channel_id: str
    title: str = ""
    outcomes: dict[str, PredictionOutcome] = Field(default_factory=dict)
    status: PredictionStatus = PredictionStatus.ACTIVE
    winning_outcome_id: Optional[str] = None
    started_at: int = 0
    locks_at: int = 0
    ended_at: Optional[int] = None


class WebhookSubscription(WireModel):
    """An EventSub subscription confirmed through the verification handshake."""

    id: str
    type: str
    channel_id: str


_FRACTION = re.compile(r"\.(\d{6})\d+")


def parse_rfc3339(value: str) -> datetime:
    """Parse an RFC 3339 timestamp as Twitch sends them.

    Twitch uses a ``Z`` suffix and up to nine fractional digits; anything past
    microseconds is dropped.

    Raises:
        ValueError: If *value* is not a timestamp.
    """
    return datetime.fromisoformat(_FRACTION.sub(r".\1", value.replace("Z", "+00:00")))


def to_epoch_ms(value: str | None) -> int | None:
    """Convert an RFC 3339 timestamp to epoch milliseconds."""
    if not value:
        return None
    return int(parse_rfc3339(value).timestamp() * 1000)
