"""Deadline calculation for message conditions.

Pure functions: no I/O, no clock reads. Callers pass ``now`` explicitly so the
result is deterministic for a fixed snapshot.
"""

from datetime import datetime, timedelta
from typing import Optional, Protocol

from app.db.models import CHECK_IN_KINDS, TriggerKind
from app.utils.errors import InvalidConditionKindError


class ConditionSnapshot(Protocol):
    """Attributes the calculator reads; satisfied by ``MessageCondition``."""

    trigger_kind: TriggerKind
    last_checked: Optional[datetime]
    hours_threshold: Optional[int]
    minutes_threshold: Optional[int]
    trigger_date: Optional[datetime]


def has_threshold(condition: ConditionSnapshot) -> bool:
    """A zero threshold is a real (immediate) threshold, only None means unset."""
    return (
        condition.hours_threshold is not None
        or condition.minutes_threshold is not None
    )


def check_in_deadline(condition: ConditionSnapshot) -> Optional[datetime]:
    """last_checked + hours + minutes, or None when either input is missing."""
    if condition.last_checked is None or not has_threshold(condition):
        return None
    return condition.last_checked + timedelta(
        hours=condition.hours_threshold or 0,
        minutes=condition.minutes_threshold or 0,
    )


def calculate_deadline(
    condition: ConditionSnapshot,
    now: datetime,
    allow_elapsed_trigger_date: bool = False,
) -> Optional[datetime]:
    """Compute the next absolute delivery deadline for a condition.

    Rules, in priority order:

    1. ``scheduled`` with a ``trigger_date`` still in the future -> that date.
    2. Check-in kinds with ``last_checked`` and a threshold ->
       ``last_checked + threshold``. ``inactivity_to_date`` additionally
       honours an earlier future ``trigger_date``.
    3. Past check-in deadlines are returned as-is; the plan generator decides
       how to react to an overdue deadline.

    ``allow_elapsed_trigger_date`` lifts the "still in the future" requirement
    on ``trigger_date``; the recovery monitor uses it to find scheduled
    conditions whose date silently passed.

    Raises:
        InvalidConditionKindError: for ``panic_trigger`` conditions, which
            never have a deadline.
    """
    kind = condition.trigger_kind

    if kind == TriggerKind.PANIC_TRIGGER:
        raise InvalidConditionKindError(
            "Panic trigger conditions have no deadline",
        )

    trigger_date = condition.trigger_date
    usable_trigger_date = trigger_date is not None and (
        allow_elapsed_trigger_date or trigger_date > now
    )

    if kind == TriggerKind.SCHEDULED:
        return trigger_date if usable_trigger_date else None

    if kind in CHECK_IN_KINDS:
        deadline = check_in_deadline(condition)
        if kind == TriggerKind.INACTIVITY_TO_DATE and usable_trigger_date:
            if deadline is None or trigger_date < deadline:
                return trigger_date
        return deadline

    raise InvalidConditionKindError(f"Unsupported trigger kind: {kind}")


def is_overdue(deadline: Optional[datetime], now: datetime) -> bool:
    return deadline is not None and deadline <= now
