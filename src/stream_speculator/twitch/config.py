"""Twitch platform constants used by the Helix client and the PubSub collector."""

from __future__ import annotations

# ---------------------------------------------------------------------------
# API constants
# ---------------------------------------------------------------------------

TWITCH_API_BASE: str = "https://api.twitch.tv/helix"
"""Base URL for the Twitch Helix REST API."""

TWITCH_TOKEN_URL: str = "https://id.twitch.tv/oauth2/token"
"""OAuth 2.0 token endpoint for the Client Credentials grant."""

TWITCH_PUBSUB_URL: str = "wss://pubsub-edge.twitch.tv"
"""PubSub WebSocket endpoint carrying ``video-playback-by-id`` viewer counts."""

MAX_TOPICS_PER_CONNECTION: int = 500
"""Topic limit per PubSub connection (and so per metrics sub-task page)."""

WINDOW_MARGIN_SECONDS: float = 2.0
"""Grace period added after the :00 / :30 viewer-count publication."""

VIEWER_COUNT_INTERVAL_SECONDS: int = 30
"""Twitch publishes viewer counts at second 0 and second 30 of each minute."""

# ---------------------------------------------------------------------------
# EventSub
# ---------------------------------------------------------------------------

STREAM_ONLINE: str = "stream.online"
STREAM_OFFLINE: str = "stream.offline"
PREDICTION_BEGIN: str = "channel.prediction.begin"
PREDICTION_PROGRESS: str = "channel.prediction.progress"
PREDICTION_LOCK: str = "channel.prediction.lock"
PREDICTION_END: str = "channel.prediction.end"

PREDICTION_EVENT_PREFIX: str = "channel.prediction."

CHANNEL_EVENT_TYPES: tuple[str, ...] = (
    STREAM_ONLINE,
    STREAM_OFFLINE,
    PREDICTION_BEGIN,
    PREDICTION_PROGRESS,
    PREDICTION_LOCK,
    PREDICTION_END,
)
"""EventSub types every monitored channel subscribes to."""

EVENTSUB_VERSION: str = "1"
"""Subscription version used for every type in :data:`CHANNEL_EVENT_TYPES`."""
