"""Prediction lifecycle handlers.

Predictions move through ``active -> locked -> resolved | canceled``.  Events
arrive at least once and possibly out of order, so every transition is
checked against the stored state:

- ``begin`` creates the prediction only if it does not exist yet.
- ``progress`` refreshes the Twitch-side aggregates while the prediction is
  open (active or locked); the internal coin aggregates are kept.
- ``lock`` moves an active prediction to locked.
- ``end`` moves an open prediction to resolved (with a winner) or canceled.

Anything aimed at a terminal or unknown prediction is logged and dropped.
"""

from __future__ import annotations

import math
import uuid
from typing import TYPE_CHECKING

import structlog

from stream_speculator.core.models import Prediction, PredictionOutcome, PredictionStatus
from stream_speculator.scheduling.tasks import (
    CreatePredictionTask,
    PredictionEventData,
    PredictionEventTask,
    PredictionEventType,
    When,
)

if TYPE_CHECKING:
    from stream_speculator.context import AppContext

logger = structlog.get_logger(__name__)


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


def _merge_external_aggregates(stored: Prediction, incoming: Prediction) -> dict[str, PredictionOutcome]:
    outcomes = {oid: out.model_copy() for oid, out in stored.outcomes.items()}
    for oid, update in incoming.outcomes.items():
        current = outcomes.get(oid)
        if current is None:
            outcomes[oid] = update.model_copy(update={"coins": 0, "coin_users": 0})
            continue
        outcomes[oid] = current.model_copy(
            update={
                "title": update.title or current.title,
                "color": update.color,
                "channel_point_users": update.channel_point_users,
                "channel_points": update.channel_points,
            }
        )
    return outcomes


def apply_prediction_event(
    stored: Prediction | None,
    event: PredictionEventType,
    incoming: Prediction,
    now_ms: int,
) -> Prediction | None:
    """Return the prediction after *event*, or ``None`` if nothing should change.

    Pure function over the stored and incoming documents; persisting the
    result is the caller's job.
    """
    if event is PredictionEventType.BEGIN:
        if stored is not None:
            return None
        return incoming.model_copy(update={"status": PredictionStatus.ACTIVE, "ended_at": None})

    if stored is None or stored.status.is_terminal:
        return None

    outcomes = _merge_external_aggregates(stored, incoming)
    title = incoming.title or stored.title

    if event is PredictionEventType.PROGRESS:
        return stored.model_copy(update={"outcomes": outcomes, "title": title})

    if event is PredictionEventType.LOCK:
        if stored.status is not PredictionStatus.ACTIVE:
            return None
        return stored.model_copy(
            update={"outcomes": outcomes, "title": title, "status": PredictionStatus.LOCKED}
        )

    if incoming.status.is_terminal:
        status = incoming.status
    elif incoming.winning_outcome_id:
        status = PredictionStatus.RESOLVED
    else:
        status = PredictionStatus.CANCELED
    return stored.model_copy(
        update={
            "outcomes": outcomes,
            "title": title,
            "status": status,
            "winning_outcome_id": incoming.winning_outcome_id if status is PredictionStatus.RESOLVED else None,
            "ended_at": incoming.ended_at or now_ms,
        }
    )


_OPEN_STATUSES = frozenset({PredictionStatus.ACTIVE, PredictionStatus.LOCKED})

# Statuses each event may move a stored prediction out of.
_ALLOWED_FROM: dict[PredictionEventType, frozenset[PredictionStatus]] = {
    PredictionEventType.PROGRESS: _OPEN_STATUSES,
    PredictionEventType.LOCK: frozenset({PredictionStatus.ACTIVE}),
    PredictionEventType.END: _OPEN_STATUSES,
}


async def handle_prediction_event(ctx: AppContext, task: PredictionEventTask) -> None:
    """Apply one lifecycle event to the stored prediction.

    ``begin`` inserts the whole document.  Every later event writes only the
    fields it changed, and only while the stored status still permits the
    transition: a ``lock`` landing after a concurrent ``end`` is dropped.
    """
    event = task.data.type
    incoming = task.data.prediction
    stored = await ctx.store.get_prediction(incoming.id)
    updated = apply_prediction_event(stored, event, incoming, ctx.now_ms())
    if updated is None:
        logger.info(
            "prediction_event_ignored",
            prediction_id=incoming.id,
            event=event.value,
            status=stored.status.value if stored else None,
        )
        return

    if stored is None:
        await ctx.store.save_prediction(updated)
    else:
        changed = {
            name: getattr(updated, name)
            for name in Prediction.model_fields
            if getattr(updated, name) != getattr(stored, name)
        }
        if changed:
            applied = await ctx.store.update_prediction(
                updated.id, only_if_status=_ALLOWED_FROM[event], **changed
            )
            if applied is None:
                logger.info("prediction_event_superseded", prediction_id=updated.id, event=event.value)
                return
    logger.info(
        "prediction_transitioned",
        prediction_id=updated.id,
        event=event.value,
        status=updated.status.value,
    )


# ---------------------------------------------------------------------------
# Internal predictions
# ---------------------------------------------------------------------------


def nice_target(viewer_count: int) -> int:
    """Round *viewer_count* up to the next round number above it.

    The step is half the leading power of ten (minimum 10), so 42 -> 50,
    120 -> 150, 1234 -> 1500 and 9999 -> 10000.
    """
    digits = len(str(max(viewer_count, 1)))
    step = max(10, 10 ** (digits - 1) // 2)
    return math.ceil((viewer_count + 1) / step) * step


def build_viewer_prediction(
    channel_id: str,
    viewer_count: int,
    now_ms: int,
    lock_minutes: int,
) -> Prediction:
    """Create the internal "will the stream reach N viewers" prediction."""
    prediction_id = uuid.uuid4().hex
    target = nice_target(viewer_count)
    yes = PredictionOutcome(id=f"{prediction_id}-yes", title=f"{target:,}+ viewers", color="blue")
    no = PredictionOutcome(id=f"{prediction_id}-no", title=f"Under {target:,}", color="pink")
    return Prediction(
        id=prediction_id,
        channel_id=channel_id,
        title=f"Will the stream reach {target:,} viewers?",
        outcomes={yes.id: yes, no.id: no},
        status=PredictionStatus.ACTIVE,
        started_at=now_ms,
        locks_at=now_ms + lock_minutes * 60_000,
    )


async def handle_create_prediction(ctx: AppContext, task: CreatePredictionTask) -> None:
    """Open the internal prediction for a channel that is still live."""
    channel_id = task.data.channel_id
    channel = await ctx.store.get_channel(channel_id)
    if channel is None or not channel.is_live:
        logger.info("create_prediction_skipped", channel_id=channel_id, reason="not_live")
        return

    stream = await ctx.twitch.get_stream_by_user_id(channel_id)
    if stream is None:
        logger.info("create_prediction_skipped", channel_id=channel_id, reason="stream_ended")
        return

    prediction = build_viewer_prediction(
        channel_id,
        int(stream.get("viewer_count", 0)),
        ctx.now_ms(),
        ctx.settings.prediction_lock_minutes,
    )
    await ctx.scheduler.schedule_batch(
        [
            PredictionEventTask(
                data=PredictionEventData(type=PredictionEventType.BEGIN, prediction=prediction)
            ),
            PredictionEventTask(
                data=PredictionEventData(type=PredictionEventType.LOCK, prediction=prediction),
                when=[When.at_timestamp(prediction.locks_at)],
            ),
        ]
    )
    logger.info("prediction_created", channel_id=channel_id, prediction_id=prediction.id)
