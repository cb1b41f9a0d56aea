"""Reminder plan generation.

Turns a deadline plus reminder lead times into an ordered list of schedule
entry drafts: zero or more reminders followed by exactly one final delivery.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Iterable, List, Optional

from app.config.settings import settings
from app.db.models import DeliveryPriority, RetryStrategy, ScheduleKind


@dataclass(frozen=True)
class ScheduleEntryDraft:
    """A schedule entry that has not been persisted yet."""

    kind: ScheduleKind
    scheduled_at: datetime
    priority: DeliveryPriority
    retry_strategy: RetryStrategy
    lead_minutes: Optional[int] = None

    @property
    def is_final_delivery(self) -> bool:
        return self.kind == ScheduleKind.FINAL_DELIVERY


def normalize_lead_times(lead_times: Optional[Iterable]) -> List[int]:
    """De-duplicate, drop non-positive or non-numeric values, sort furthest first."""
    minutes = set()
    for value in lead_times or []:
        try:
            as_int = int(value)
        except (TypeError, ValueError):
            continue
        if as_int > 0:
            minutes.add(as_int)
    return sorted(minutes, reverse=True)


def _reminder_priority(lead_minutes: int, high_priority_lead_minutes: int) -> DeliveryPriority:
    if lead_minutes < high_priority_lead_minutes:
        return DeliveryPriority.HIGH
    return DeliveryPriority.NORMAL


def generate_reminder_plan(
    deadline: datetime,
    lead_times: Optional[Iterable],
    now: datetime,
    overdue_grace_seconds: Optional[int] = None,
    high_priority_lead_minutes: Optional[int] = None,
) -> List[ScheduleEntryDraft]:
    """Build the plan for one deadline.

    Args:
        deadline: Absolute delivery deadline (naive UTC).
        lead_times: Minutes before the deadline at which to remind the owner.
        now: Current time (naive UTC).
        overdue_grace_seconds: Offset used to compress an overdue plan.
        high_priority_lead_minutes: Reminders closer than this are ``high``.

    Returns:
        Drafts ordered by strictly increasing ``scheduled_at``; the last one
        is always the single final delivery.
    """
    grace = timedelta(
        seconds=overdue_grace_seconds
        if overdue_grace_seconds is not None
        else settings.OVERDUE_GRACE_SECONDS
    )
    high_lead = (
        high_priority_lead_minutes
        if high_priority_lead_minutes is not None
        else settings.HIGH_PRIORITY_LEAD_MINUTES
    )
    minutes = normalize_lead_times(lead_times)

    if deadline <= now:
        # Overdue: a lone reminder (when the condition uses reminders) and the
        # final delivery, both a few seconds out so the next poll picks them up
        drafts: List[ScheduleEntryDraft] = []
        offset = grace
        if minutes:
            drafts.append(
                ScheduleEntryDraft(
                    kind=ScheduleKind.REMINDER,
                    scheduled_at=now + offset,
                    priority=DeliveryPriority.CRITICAL,
                    retry_strategy=RetryStrategy.AGGRESSIVE,
                )
            )
            offset += grace
        drafts.append(
            ScheduleEntryDraft(
                kind=ScheduleKind.FINAL_DELIVERY,
                scheduled_at=now + offset,
                priority=DeliveryPriority.CRITICAL,
                retry_strategy=RetryStrategy.AGGRESSIVE,
            )
        )
        return drafts

    drafts = [
        ScheduleEntryDraft(
            kind=ScheduleKind.REMINDER,
            scheduled_at=deadline - timedelta(minutes=lead),
            priority=_reminder_priority(lead, high_lead),
            retry_strategy=RetryStrategy.STANDARD,
            lead_minutes=lead,
        )
        for lead in minutes
        if deadline - timedelta(minutes=lead) > now
    ]
    drafts.append(
        ScheduleEntryDraft(
            kind=ScheduleKind.FINAL_DELIVERY,
            scheduled_at=deadline,
            priority=DeliveryPriority.CRITICAL,
            retry_strategy=RetryStrategy.AGGRESSIVE,
        )
    )
    return drafts
