"""Twitch EventSub webhook ingestion.

Every inbound request is authenticated first (:func:`verify_signature`);
only then is it interpreted by message type:

``webhook_callback_verification``
    Subscription handshake.  The subscription is recorded and the challenge
    is echoed back as ``text/plain``.
``revocation``
    Twitch dropped the subscription; the record is removed.
``notification``
    ``stream.online`` / ``stream.offline`` become a ``STREAM_EVENT`` task and
    ``channel.prediction.*`` become a ``PREDICTION_EVENT`` task.  Other
    subscription types are acknowledged and ignored.

Authenticity failures never reach the scheduler.
"""

from __future__ import annotations

import hashlib
import hmac
import json
from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Any, Mapping

import structlog

from stream_speculator.core.exceptions import WebhookVerificationError
from stream_speculator.core.models import (
    Prediction,
    PredictionOutcome,
    PredictionStatus,
    WebhookSubscription,
    parse_rfc3339,
    to_epoch_ms,
)
from stream_speculator.scheduling.tasks import (
    BaseTask,
    PredictionEventData,
    PredictionEventTask,
    PredictionEventType,
    StreamEventData,
    StreamEventTask,
    StreamEventType,
)
from stream_speculator.twitch.config import PREDICTION_EVENT_PREFIX, STREAM_OFFLINE, STREAM_ONLINE

if TYPE_CHECKING:
    from stream_speculator.context import AppContext

logger = structlog.get_logger(__name__)

MESSAGE_ID_HEADER = "twitch-eventsub-message-id"
TIMESTAMP_HEADER = "twitch-eventsub-message-timestamp"
SIGNATURE_HEADER = "twitch-eventsub-message-signature"
MESSAGE_TYPE_HEADER = "twitch-eventsub-message-type"

_REQUIRED_HEADERS = (MESSAGE_ID_HEADER, TIMESTAMP_HEADER, SIGNATURE_HEADER, MESSAGE_TYPE_HEADER)
_SUPPORTED_ALGORITHMS = frozenset({"sha256"})


# ---------------------------------------------------------------------------
# Verification
# ---------------------------------------------------------------------------


def verify_signature(
    headers: Mapping[str, str],
    body: bytes,
    secret: str,
    now: datetime,
    max_age_seconds: int | None = None,
) -> str:
    """Authenticate an EventSub request.

    The expected signature is ``HMAC(secret, message_id + timestamp + body)``
    in hex, sent as ``<algorithm>=<hexdigest>``.

    Args:
        headers: Request headers (matched case-insensitively).
        body: Raw request body, exactly as received.
        secret: The shared EventSub secret.
        now: Current aware datetime, for the replay check.
        max_age_seconds: Reject messages whose timestamp is older than this.
            ``None`` disables the check.

    Returns:
        The message type header value.

    Raises:
        WebhookVerificationError: ``status_code=400`` if a required header is
            missing, ``401`` on an unsupported algorithm, a signature
            mismatch, or a stale timestamp.
    """
    lowered = {key.lower(): value for key, value in headers.items()}
    missing = [name for name in _REQUIRED_HEADERS if not lowered.get(name)]
    if missing:
        raise WebhookVerificationError(f"missing headers: {', '.join(missing)}", status_code=400)

    algorithm, _, signature = lowered[SIGNATURE_HEADER].partition("=")
    if algorithm not in _SUPPORTED_ALGORITHMS or not signature:
        raise WebhookVerificationError(f"unsupported signature algorithm {algorithm!r}")

    message = lowered[MESSAGE_ID_HEADER].encode() + lowered[TIMESTAMP_HEADER].encode() + body
    expected = hmac.new(secret.encode(), message, getattr(hashlib, algorithm)).hexdigest()
    if not hmac.compare_digest(expected, signature):
        raise WebhookVerificationError("signature mismatch")

    if max_age_seconds is not None:
        try:
            sent_at = parse_rfc3339(lowered[TIMESTAMP_HEADER])
        except ValueError as exc:
            raise WebhookVerificationError("unparseable message timestamp") from exc
        if sent_at.tzinfo is None:
            raise WebhookVerificationError("message timestamp has no offset")
        if (now - sent_at).total_seconds() > max_age_seconds:
            raise WebhookVerificationError("message timestamp too old")

    return lowered[MESSAGE_TYPE_HEADER]


# ---------------------------------------------------------------------------
# Translation
# ---------------------------------------------------------------------------


def normalize_prediction(event: dict[str, Any]) -> Prediction:
    """Build a :class:`Prediction` from a ``channel.prediction.*`` event body.

    Twitch's ``users`` / ``channel_points`` become the external aggregates;
    the internal coin aggregates start at zero.  Missing ``status`` means the
    prediction is still active.
    """
    outcomes = {
        str(item["id"]): PredictionOutcome(
            id=str(item["id"]),
            title=item.get("title", ""),
            color=item.get("color", "blue"),
            channel_point_users=item.get("users") or 0,
            channel_points=item.get("channel_points") or 0,
        )
        for item in event.get("outcomes") or []
    }
    return Prediction(
        id=str(event["id"]),
        channel_id=str(event["broadcaster_user_id"]),
        title=event.get("title", ""),
        outcomes=outcomes,
        status=PredictionStatus(event.get("status") or PredictionStatus.ACTIVE.value),
        winning_outcome_id=event.get("winning_outcome_id"),
        started_at=to_epoch_ms(event.get("started_at")) or 0,
        locks_at=to_epoch_ms(event.get("locks_at")) or 0,
        ended_at=to_epoch_ms(event.get("ended_at")),
    )


def notification_to_task(subscription_type: str, event: dict[str, Any]) -> BaseTask | None:
    """Map an EventSub notification to the task that handles it, if any."""
    if subscription_type in (STREAM_ONLINE, STREAM_OFFLINE):
        return StreamEventTask(
            data=StreamEventData(
                type=StreamEventType(subscription_type),
                channel_id=str(event["broadcaster_user_id"]),
                stream_id=event.get("id"),
                started_at=event.get("started_at"),
            )
        )
    if subscription_type.startswith(PREDICTION_EVENT_PREFIX):
        suffix = subscription_type[len(PREDICTION_EVENT_PREFIX):]
        if suffix not in {t.value for t in PredictionEventType}:
            return None
        return PredictionEventTask(
            data=PredictionEventData(
                type=PredictionEventType(suffix),
                prediction=normalize_prediction(event),
            )
        )
    return None


# ---------------------------------------------------------------------------
# Request processing
# ---------------------------------------------------------------------------


@dataclass
class WebhookReply:
    """What the HTTP layer should answer with."""

    status_code: int = 200
    content: str = ""
    media_type: str = "text/plain"


async def process_webhook(ctx: AppContext, headers: Mapping[str, str], body: bytes) -> WebhookReply:
    """Authenticate and act on one EventSub request.

    Raises:
        WebhookVerificationError: If the request fails authentication.
        TaskDeliveryError: If the resulting task cannot be enqueued.
    """
    message_type = verify_signature(
        headers,
        body,
        ctx.settings.twitch_webhook_secret,
        ctx.clock(),
        ctx.settings.webhook_max_age_seconds,
    )
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise WebhookVerificationError("body is not JSON", status_code=400) from exc

    subscription = payload.get("subscription") or {}
    subscription_type = subscription.get("type", "")

    if message_type == "webhook_callback_verification":
        await ctx.store.record_webhook_subscription(
            WebhookSubscription(
                id=subscription["id"],
                type=subscription_type,
                channel_id=str((subscription.get("condition") or {}).get("broadcaster_user_id", "")),
            )
        )
        logger.info("eventsub_subscription_verified", subscription_type=subscription_type)
        return WebhookReply(content=str(payload.get("challenge", "")))

    if message_type == "revocation":
        await ctx.store.delete_webhook_subscription(subscription.get("id", ""))
        logger.warning(
            "eventsub_subscription_revoked",
            subscription_type=subscription_type,
            reason=subscription.get("status"),
        )
        return WebhookReply()

    if message_type != "notification":
        return WebhookReply()

    try:
        task = notification_to_task(subscription_type, payload.get("event") or {})
    except (KeyError, ValueError) as exc:
        logger.warning("eventsub_notification_malformed", subscription_type=subscription_type, error=str(exc))
        return WebhookReply(status_code=400)
    if task is None:
        logger.debug("eventsub_notification_ignored", subscription_type=subscription_type)
        return WebhookReply()
    await ctx.scheduler.schedule(task)
    return WebhookReply()
