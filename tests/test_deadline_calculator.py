import pytest
from datetime import timedelta

from app.db.models import TriggerKind
from app.services.conditions.deadline_calculator import (
    calculate_deadline,
    check_in_deadline,
    is_overdue,
)
from app.utils.errors import InvalidConditionKindError

from tests.conftest import T0, build_condition


class TestScheduledKind:
    """Scheduled conditions deliver on their trigger date."""

    def test_future_trigger_date_is_the_deadline(self):
        trigger = T0 + timedelta(days=3)
        condition = build_condition(
            trigger_kind=TriggerKind.SCHEDULED, trigger_date=trigger, hours_threshold=None
        )
        assert calculate_deadline(condition, T0) == trigger

    def test_elapsed_trigger_date_gives_no_deadline(self):
        condition = build_condition(
            trigger_kind=TriggerKind.SCHEDULED,
            trigger_date=T0 - timedelta(minutes=1),
            hours_threshold=None,
        )
        assert calculate_deadline(condition, T0) is None

    def test_elapsed_trigger_date_visible_when_allowed(self):
        trigger = T0 - timedelta(minutes=1)
        condition = build_condition(
            trigger_kind=TriggerKind.SCHEDULED, trigger_date=trigger, hours_threshold=None
        )
        assert calculate_deadline(condition, T0, allow_elapsed_trigger_date=True) == trigger

    def test_missing_trigger_date_gives_no_deadline(self):
        condition = build_condition(trigger_kind=TriggerKind.SCHEDULED, hours_threshold=None)
        assert calculate_deadline(condition, T0) is None


class TestCheckInKinds:
    """Check-in kinds deliver after a period of silence."""

    @pytest.mark.parametrize(
        "kind", [TriggerKind.NO_CHECK_IN, TriggerKind.REGULAR_CHECK_IN]
    )
    def test_last_checked_plus_threshold(self, kind):
        condition = build_condition(
            trigger_kind=kind, last_checked=T0, hours_threshold=24, minutes_threshold=30
        )
        assert calculate_deadline(condition, T0) == T0 + timedelta(hours=24, minutes=30)

    def test_minutes_only_threshold(self):
        condition = build_condition(
            last_checked=T0, hours_threshold=None, minutes_threshold=45
        )
        assert calculate_deadline(condition, T0) == T0 + timedelta(minutes=45)

    def test_zero_threshold_is_immediate(self):
        condition = build_condition(
            last_checked=T0, hours_threshold=0, minutes_threshold=None
        )
        assert calculate_deadline(condition, T0) == T0

    def test_no_last_checked_gives_no_deadline(self):
        condition = build_condition(last_checked=None)
        assert calculate_deadline(condition, T0) is None

    def test_no_threshold_gives_no_deadline(self):
        condition = build_condition(
            last_checked=T0, hours_threshold=None, minutes_threshold=None
        )
        assert check_in_deadline(condition) is None
        assert calculate_deadline(condition, T0) is None

    def test_past_deadline_is_returned(self):
        condition = build_condition(
            last_checked=T0 - timedelta(hours=30), hours_threshold=24
        )
        deadline = calculate_deadline(condition, T0)
        assert deadline == T0 - timedelta(hours=6)
        assert is_overdue(deadline, T0)

    def test_deterministic_for_same_snapshot(self):
        condition = build_condition(last_checked=T0, hours_threshold=5)
        assert calculate_deadline(condition, T0) == calculate_deadline(condition, T0)


class TestInactivityToDate:
    """Inactivity-to-date honours whichever limit comes first."""

    def test_check_in_deadline_when_earlier(self):
        condition = build_condition(
            trigger_kind=TriggerKind.INACTIVITY_TO_DATE,
            last_checked=T0,
            hours_threshold=2,
            trigger_date=T0 + timedelta(days=1),
        )
        assert calculate_deadline(condition, T0) == T0 + timedelta(hours=2)

    def test_trigger_date_when_earlier(self):
        trigger = T0 + timedelta(hours=1)
        condition = build_condition(
            trigger_kind=TriggerKind.INACTIVITY_TO_DATE,
            last_checked=T0,
            hours_threshold=48,
            trigger_date=trigger,
        )
        assert calculate_deadline(condition, T0) == trigger


class TestPanicKind:
    def test_panic_has_no_deadline(self):
        condition = build_condition(
            trigger_kind=TriggerKind.PANIC_TRIGGER, hours_threshold=None
        )
        with pytest.raises(InvalidConditionKindError):
            calculate_deadline(condition, T0)

    def test_is_overdue_handles_missing_deadline(self):
        assert is_overdue(None, T0) is False
