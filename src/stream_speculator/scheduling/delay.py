"""Delay calculation for scheduled tasks.

Pure functions: the caller supplies ``now`` (an aware UTC datetime), so the
result is deterministic and trivially testable.
"""

from __future__ import annotations

import math
from datetime import datetime

from stream_speculator.scheduling.tasks import BaseTask, When

MAX_DELAY_SECONDS = 900
"""Longest delay a single delivery may carry, matching the delay-queue ceiling."""


def _anchor_delay(second: int, now: datetime, is_repeat: bool) -> int:
    until = second - (now.second + now.microsecond / 1_000_000)
    delay = math.floor(until + 60 if until < 0 else until)
    # A repeat landing exactly on its anchor has just fired there.
    if is_repeat and delay == 0:
        return 60
    return delay


def _timestamp_delay(timestamp_ms: int, now: datetime, max_delay: int | None) -> int:
    now_ms = now.timestamp() * 1000
    delay = max(0, math.floor((timestamp_ms - now_ms) / 1000 + 0.5))
    if max_delay is not None:
        delay = min(max_delay, delay)
    return delay


def _descriptor_delay(
    when: When,
    now: datetime,
    is_repeat: bool,
    max_delay: int | None,
) -> int:
    if when.at is not None:
        return _anchor_delay(when.at.second, now, is_repeat)
    return _timestamp_delay(when.timestamp or 0, now, max_delay)


def compute_delay(
    task: BaseTask,
    now: datetime,
    max_delay: int | None = MAX_DELAY_SECONDS,
) -> int:
    """Return the whole seconds to wait before *task* should fire.

    Each ``when`` descriptor resolves independently and the earliest wins:

    - second-of-minute anchor: seconds until the anchor next comes round,
      wrapping into the next minute when it has already passed.  A repeat
      delivery that resolves to ``0`` waits a full minute instead.
    - absolute timestamp: rounded seconds until the timestamp, never
      negative and never above *max_delay*.

    Args:
        task: The task to schedule.
        now: Current time as an aware datetime.
        max_delay: Ceiling for timestamp descriptors, or ``None`` for no
            ceiling.

    Returns:
        Non-negative delay in seconds; ``0`` when ``when`` is empty.
    """
    if not task.when:
        return 0
    return min(
        _descriptor_delay(when, now, task.is_repeat, max_delay) for when in task.when
    )


def seconds_until_due(task: BaseTask, now: datetime) -> int:
    """Unclamped :func:`compute_delay`; positive once a delivery arrived early."""
    return compute_delay(task, now, max_delay=None)


def is_timestamp_only(task: BaseTask) -> bool:
    """True when every ``when`` descriptor is an absolute timestamp."""
    return bool(task.when) and all(when.timestamp is not None for when in task.when)
