"""Real-time viewer counts from Twitch PubSub.

Twitch publishes a ``viewcount`` message on each channel's
``video-playback-by-id.{channel_id}`` topic at second 0 and second 30 of
every minute.  :class:`ViewerCountCollector` opens one connection, listens to
up to :data:`~stream_speculator.twitch.config.MAX_TOPICS_PER_CONNECTION`
topics, and keeps it open only until the next publication (plus a small
margin) or until every channel has reported, whichever comes first.

Usage::

    collector = ViewerCountCollector(auth_token=token)
    samples = await collector.collect(["12826", "141981764"])
    # {"12826": StreamMetric(channel_id="12826", value=5120, ...), ...}
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import UTC, datetime
from typing import Any, Callable, Sequence

import websockets

from stream_speculator.core.exceptions import TwitchApiError
from stream_speculator.core.models import StreamMetric, StreamMetricType
from stream_speculator.twitch.config import (
    MAX_TOPICS_PER_CONNECTION,
    TWITCH_PUBSUB_URL,
    VIEWER_COUNT_INTERVAL_SECONDS,
    WINDOW_MARGIN_SECONDS,
)

logger = logging.getLogger(__name__)

_TOPIC_PREFIX = "video-playback-by-id."


def seconds_until_next_viewer_count_update(now: datetime) -> int:
    """Whole seconds from *now* until the next :00 or :30 publication."""
    second = now.second
    if second >= VIEWER_COUNT_INTERVAL_SECONDS:
        return 60 - second
    return VIEWER_COUNT_INTERVAL_SECONDS - second


def _topic(channel_id: str) -> str:
    return f"{_TOPIC_PREFIX}{channel_id}"


def _parse_viewcount(raw: str | bytes) -> StreamMetric | None:
    """Return the sample carried by a PubSub frame, or ``None`` for anything else."""
    try:
        frame = json.loads(raw)
    except ValueError:
        logger.debug("pubsub: ignoring non-JSON frame")
        return None
    if frame.get("type") != "MESSAGE":
        return None
    data = frame.get("data") or {}
    topic = data.get("topic", "")
    if not topic.startswith(_TOPIC_PREFIX):
        return None
    try:
        message = json.loads(data.get("message") or "{}")
    except ValueError:
        return None
    if message.get("type") != "viewcount":
        return None
    return StreamMetric(
        channel_id=topic[len(_TOPIC_PREFIX):],
        type=StreamMetricType.VIEWER_COUNT,
        value=int(message.get("viewers", 0)),
        timestamp=int(float(message.get("server_time", 0)) * 1000),
    )


class ViewerCountCollector:
    """Collects one viewer-count sample per channel within a bounded window.

    Args:
        auth_token: Optional OAuth token sent with the ``LISTEN`` frame.
        url: PubSub endpoint.
        clock: Returns the current aware UTC datetime.
        connect: Factory returning an async context manager that yields the
            websocket.  Defaults to :func:`websockets.connect`.
    """

    def __init__(
        self,
        auth_token: str = "",
        url: str = TWITCH_PUBSUB_URL,
        clock: Callable[[], datetime] | None = None,
        connect: Callable[[str], Any] | None = None,
    ) -> None:
        self.auth_token = auth_token
        self.url = url
        self.clock = clock or (lambda: datetime.now(UTC))
        self._connect = connect or websockets.connect

    def window_seconds(self) -> float:
        """Seconds the next collection may stay open."""
        return seconds_until_next_viewer_count_update(self.clock()) + WINDOW_MARGIN_SECONDS

    def _listen_frame(self, channel_ids: Sequence[str]) -> str:
        data: dict[str, Any] = {"topics": [_topic(cid) for cid in channel_ids]}
        if self.auth_token:
            data["auth_token"] = self.auth_token
        return json.dumps({"type": "LISTEN", "nonce": uuid.uuid4().hex, "data": data})

    async def collect(self, channel_ids: Sequence[str]) -> dict[str, StreamMetric]:
        """Return the viewer counts that arrive before the window closes.

        Channels that do not report in time are simply absent from the
        result.  The connection is closed on every exit path.

        Args:
            channel_ids: Channels to listen to.  At most
                :data:`MAX_TOPICS_PER_CONNECTION`.

        Returns:
            Mapping of channel id to its sample.

        Raises:
            ValueError: If more channel ids than one connection allows are given.
            TwitchApiError: If PubSub rejects the ``LISTEN`` request.
        """
        if len(channel_ids) > MAX_TOPICS_PER_CONNECTION:
            raise ValueError(
                f"at most {MAX_TOPICS_PER_CONNECTION} channels per connection, got {len(channel_ids)}"
            )
        if not channel_ids:
            return {}

        pending = set(channel_ids)
        samples: dict[str, StreamMetric] = {}
        window = self.window_seconds()

        try:
            async with asyncio.timeout(window):
                async with self._connect(self.url) as ws:
                    await ws.send(self._listen_frame(channel_ids))
                    async for raw in ws:
                        self._check_listen_response(raw)
                        sample = _parse_viewcount(raw)
                        if sample is None or sample.channel_id not in pending:
                            continue
                        samples[sample.channel_id] = sample
                        pending.discard(sample.channel_id)
                        if not pending:
                            break
        except TimeoutError:
            logger.info(
                "pubsub: window closed after %.0fs with %d/%d samples",
                window,
                len(samples),
                len(channel_ids),
            )
        except (OSError, websockets.WebSocketException) as exc:
            logger.warning(
                "pubsub: connection lost (%s) with %d/%d samples",
                exc,
                len(samples),
                len(channel_ids),
            )
        return samples

    @staticmethod
    def _check_listen_response(raw: str | bytes) -> None:
        try:
            frame = json.loads(raw)
        except ValueError:
            return
        if frame.get("type") == "RESPONSE" and frame.get("error"):
            raise TwitchApiError(f"pubsub: LISTEN rejected: {frame['error']}")
