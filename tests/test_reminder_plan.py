from datetime import timedelta

from app.db.models import DeliveryPriority, RetryStrategy, ScheduleKind
from app.services.conditions.reminder_plan import (
    generate_reminder_plan,
    normalize_lead_times,
)

from tests.conftest import T0


class TestLeadTimeNormalization:
    def test_dedupes_drops_non_positive_and_sorts_furthest_first(self):
        assert normalize_lead_times([60, 15, 60, 0, -5, 1440]) == [1440, 60, 15]

    def test_ignores_non_numeric_values(self):
        assert normalize_lead_times(["30", None, "soon", 10]) == [30, 10]

    def test_empty_input(self):
        assert normalize_lead_times(None) == []
        assert normalize_lead_times([]) == []


class TestFuturePlan:
    """Plans for deadlines that have not passed yet."""

    def test_reminders_precede_single_final_delivery(self):
        deadline = T0 + timedelta(hours=24)
        plan = generate_reminder_plan(deadline, [60, 1440 * 2, 15], T0)

        # 2880 minutes before the deadline is already in the past
        assert [d.kind for d in plan] == [
            ScheduleKind.REMINDER,
            ScheduleKind.REMINDER,
            ScheduleKind.FINAL_DELIVERY,
        ]
        assert [d.scheduled_at for d in plan] == [
            deadline - timedelta(minutes=60),
            deadline - timedelta(minutes=15),
            deadline,
        ]

    def test_timestamps_strictly_increase(self):
        plan = generate_reminder_plan(T0 + timedelta(days=2), [5, 30, 120, 600], T0)
        times = [d.scheduled_at for d in plan]
        assert all(a < b for a, b in zip(times, times[1:]))

    def test_final_delivery_is_critical_and_aggressive(self):
        plan = generate_reminder_plan(T0 + timedelta(hours=3), [30], T0)
        final = plan[-1]
        assert final.is_final_delivery
        assert final.priority == DeliveryPriority.CRITICAL
        assert final.retry_strategy == RetryStrategy.AGGRESSIVE

    def test_reminder_priority_depends_on_lead_time(self):
        plan = generate_reminder_plan(
            T0 + timedelta(days=2), [1440, 30], T0, high_priority_lead_minutes=60
        )
        far, near = plan[0], plan[1]
        assert far.priority == DeliveryPriority.NORMAL
        assert near.priority == DeliveryPriority.HIGH
        assert far.retry_strategy == RetryStrategy.STANDARD
        assert near.lead_minutes == 30

    def test_no_lead_times_only_final_delivery(self):
        deadline = T0 + timedelta(hours=1)
        plan = generate_reminder_plan(deadline, [], T0)
        assert len(plan) == 1
        assert plan[0].scheduled_at == deadline

    def test_exactly_one_final_delivery(self):
        plan = generate_reminder_plan(T0 + timedelta(hours=5), [10, 20, 30], T0)
        assert sum(1 for d in plan if d.is_final_delivery) == 1


class TestOverduePlan:
    """Deadline already passed: compress to the near future."""

    def test_overdue_with_reminders(self):
        plan = generate_reminder_plan(
            T0 - timedelta(hours=2), [60], T0, overdue_grace_seconds=5
        )
        assert [d.kind for d in plan] == [ScheduleKind.REMINDER, ScheduleKind.FINAL_DELIVERY]
        assert plan[0].scheduled_at == T0 + timedelta(seconds=5)
        assert plan[1].scheduled_at == T0 + timedelta(seconds=10)
        for draft in plan:
            assert draft.priority == DeliveryPriority.CRITICAL
            assert draft.retry_strategy == RetryStrategy.AGGRESSIVE

    def test_overdue_without_reminders(self):
        plan = generate_reminder_plan(T0 - timedelta(minutes=1), [], T0, overdue_grace_seconds=5)
        assert len(plan) == 1
        assert plan[0].is_final_delivery
        assert plan[0].scheduled_at == T0 + timedelta(seconds=5)

    def test_deadline_equal_to_now_is_overdue(self):
        plan = generate_reminder_plan(T0, [], T0, overdue_grace_seconds=3)
        assert plan[0].scheduled_at == T0 + timedelta(seconds=3)
