import pytest
from datetime import timedelta
from unittest.mock import patch

from sqlalchemy import select

from app.db.models import (
    DeliveryPriority,
    DeliveryRecord,
    DeliverySource,
    ReminderSchedule,
    RetryStrategy,
    ScheduleKind,
    ScheduleStatus,
    TriggerKind,
)
from app.services.conditions.reminder_plan import ScheduleEntryDraft
from app.services.conditions.schedule_service import ScheduleService
from app.services.scheduler.worker import SchedulerWorker
from app.services.sync.events import ConditionAction

from tests.conftest import T0


def _draft(
    offset_minutes: int,
    kind=ScheduleKind.REMINDER,
    retry_strategy=RetryStrategy.STANDARD,
) -> ScheduleEntryDraft:
    return ScheduleEntryDraft(
        kind=kind,
        scheduled_at=T0 + timedelta(minutes=offset_minutes),
        priority=DeliveryPriority.CRITICAL
        if kind == ScheduleKind.FINAL_DELIVERY
        else DeliveryPriority.NORMAL,
        retry_strategy=retry_strategy,
    )


def _final(offset_minutes: int = -1) -> ScheduleEntryDraft:
    return _draft(
        offset_minutes,
        kind=ScheduleKind.FINAL_DELIVERY,
        retry_strategy=RetryStrategy.AGGRESSIVE,
    )


@pytest.fixture
def worker(db_session, dispatcher, event_bus) -> SchedulerWorker:
    return SchedulerWorker(
        db_session,
        dispatcher=dispatcher,
        event_bus=event_bus,
        batch_limit=50,
        concurrency=2,
        timeout_seconds=0.2,
        retry_delay_seconds=60,
        max_retries=3,
    )


@pytest.fixture
def armed_condition(make_condition):
    return make_condition(active=True, last_checked=T0 - timedelta(hours=24))


async def _seed(db_session, condition, drafts):
    return await ScheduleService(db_session).insert_entries(
        condition.message_id, condition.id, drafts
    )


def _all_entries(db_session, condition):
    return list(
        db_session.scalars(
            select(ReminderSchedule)
            .where(ReminderSchedule.condition_id == condition.id)
            .order_by(ReminderSchedule.created_at, ReminderSchedule.scheduled_at)
        ).all()
    )


class TestSuccessfulDispatch:
    @pytest.mark.asyncio
    async def test_due_reminder_is_sent(
        self, worker, dispatcher, db_session, armed_condition, published_events
    ):
        (reminder,) = await _seed(db_session, armed_condition, [_draft(-1)])

        report = await worker.run_cycle(now=T0)

        assert report["claimed"] == 1
        assert report["sent"] == 1
        assert dispatcher.reminders == [
            (armed_condition.owner_id, armed_condition.message_id)
        ]
        assert reminder.status == ScheduleStatus.SENT
        assert published_events[-1].action == ConditionAction.REMINDER_SENT

    @pytest.mark.asyncio
    async def test_future_entries_are_left_alone(
        self, worker, dispatcher, db_session, armed_condition
    ):
        (later,) = await _seed(db_session, armed_condition, [_draft(30)])

        report = await worker.run_cycle(now=T0)

        assert report["claimed"] == 0
        assert dispatcher.reminders == []
        assert later.status == ScheduleStatus.PENDING

    @pytest.mark.asyncio
    async def test_final_delivery_closes_the_cycle(
        self, worker, dispatcher, db_session, armed_condition
    ):
        await _seed(db_session, armed_condition, [_final(-1), _draft(60)])

        report = await worker.run_cycle(now=T0)

        assert report["sent"] == 1
        assert dispatcher.deliveries == [
            (armed_condition.recipients, armed_condition.message_id)
        ]
        assert armed_condition.active is False
        record = db_session.scalars(select(DeliveryRecord)).one()
        assert record.source == DeliverySource.SCHEDULER
        statuses = {e.kind: e.status for e in _all_entries(db_session, armed_condition)}
        assert statuses[ScheduleKind.FINAL_DELIVERY] == ScheduleStatus.SENT
        assert statuses[ScheduleKind.REMINDER] == ScheduleStatus.OBSOLETE


class TestRecurringCheckIn:
    @pytest.mark.asyncio
    async def test_delivery_restarts_the_cycle(
        self, worker, dispatcher, db_session, make_condition, condition_service
    ):
        condition = make_condition(trigger_kind=TriggerKind.REGULAR_CHECK_IN)
        await condition_service.arm(condition.id, now=T0)

        report = await worker.run_cycle(now=T0 + timedelta(hours=25))

        assert report["sent"] >= 1
        assert len(dispatcher.deliveries) == 1
        assert condition.active is True
        assert condition.last_checked == T0 + timedelta(hours=25)
        assert db_session.scalars(select(DeliveryRecord)).one().source == (
            DeliverySource.SCHEDULER
        )

        pending = [
            e
            for e in _all_entries(db_session, condition)
            if e.status == ScheduleStatus.PENDING
        ]
        assert {e.kind: e.scheduled_at for e in pending} == {
            ScheduleKind.REMINDER: T0 + timedelta(hours=48),
            ScheduleKind.FINAL_DELIVERY: T0 + timedelta(hours=49),
        }

    @pytest.mark.asyncio
    async def test_one_shot_kinds_are_still_disarmed(
        self, worker, db_session, make_condition, condition_service
    ):
        condition = make_condition(trigger_kind=TriggerKind.NO_CHECK_IN)
        await condition_service.arm(condition.id, now=T0)

        await worker.run_cycle(now=T0 + timedelta(hours=25))

        assert condition.active is False
        assert not [
            e
            for e in _all_entries(db_session, condition)
            if e.status == ScheduleStatus.PENDING
        ]


class TestFailedDispatch:
    @pytest.mark.asyncio
    async def test_aggressive_failure_is_requeued(
        self, worker, dispatcher, db_session, armed_condition
    ):
        dispatcher.fail_final = True
        (final,) = await _seed(db_session, armed_condition, [_final(-1)])

        report = await worker.run_cycle(now=T0)

        assert report["failed"] == 1
        assert report["requeued"] == 1
        assert final.status == ScheduleStatus.FAILED
        assert final.last_error == "channel unavailable"
        retry = [
            e
            for e in _all_entries(db_session, armed_condition)
            if e.status == ScheduleStatus.PENDING
        ]
        assert len(retry) == 1
        assert retry[0].retry_count == 1
        assert retry[0].scheduled_at == T0 + timedelta(seconds=60)
        assert retry[0].kind == ScheduleKind.FINAL_DELIVERY

    @pytest.mark.asyncio
    async def test_retries_stop_at_the_limit(
        self, worker, dispatcher, db_session, armed_condition, published_events
    ):
        dispatcher.fail_final = True
        (final,) = await _seed(db_session, armed_condition, [_final(-1)])
        final.retry_count = 3
        db_session.commit()

        report = await worker.run_cycle(now=T0)

        assert report["requeued"] == 0
        assert published_events[-1].action == ConditionAction.DELIVERY_FAILED
        assert [e.status for e in _all_entries(db_session, armed_condition)] == [
            ScheduleStatus.FAILED
        ]

    @pytest.mark.asyncio
    async def test_standard_failure_is_not_requeued(
        self, worker, dispatcher, db_session, armed_condition
    ):
        dispatcher.fail_reminders = True
        await _seed(db_session, armed_condition, [_draft(-1)])

        report = await worker.run_cycle(now=T0)

        assert report["failed"] == 1
        assert report["requeued"] == 0

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(
        self, worker, dispatcher, db_session, armed_condition
    ):
        dispatcher.delay_seconds = 1.0
        (reminder,) = await _seed(db_session, armed_condition, [_draft(-1)])

        report = await worker.run_cycle(now=T0)

        assert report["failed"] == 1
        assert reminder.status == ScheduleStatus.FAILED
        assert "timed out" in reminder.last_error

    @pytest.mark.asyncio
    async def test_dispatcher_exception_counts_as_failure(
        self, worker, dispatcher, db_session, armed_condition
    ):
        dispatcher.raise_error = ConnectionError("socket closed")
        (reminder,) = await _seed(db_session, armed_condition, [_draft(-1)])

        await worker.run_cycle(now=T0)

        assert reminder.status == ScheduleStatus.FAILED
        assert "socket closed" in reminder.last_error

    @pytest.mark.asyncio
    async def test_entry_of_disarmed_condition_fails_without_dispatch(
        self, worker, dispatcher, db_session, make_condition
    ):
        condition = make_condition(active=False)
        (reminder,) = await _seed(db_session, condition, [_draft(-1)])

        await worker.run_cycle(now=T0)

        assert dispatcher.reminders == []
        assert reminder.status == ScheduleStatus.FAILED


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_in_flight_dispatches_are_bounded(
        self, worker, dispatcher, db_session, armed_condition
    ):
        dispatcher.delay_seconds = 0.02
        await _seed(db_session, armed_condition, [_draft(-i) for i in range(1, 7)])

        report = await worker.run_cycle(now=T0)

        assert report["sent"] == 6
        assert dispatcher.max_in_flight <= 2

    @pytest.mark.asyncio
    async def test_every_claimed_entry_leaves_processing(
        self, worker, dispatcher, db_session, armed_condition
    ):
        dispatcher.fail_reminders = True
        await _seed(db_session, armed_condition, [_draft(-i) for i in range(1, 4)])

        await worker.run_cycle(now=T0)

        assert all(
            e.status != ScheduleStatus.PROCESSING
            for e in _all_entries(db_session, armed_condition)
        )


class TestUnexpectedErrors:
    @pytest.mark.asyncio
    async def test_error_before_dispatch_fails_the_entry(
        self, worker, dispatcher, db_session, armed_condition
    ):
        (reminder,) = await _seed(db_session, armed_condition, [_draft(-1)])

        with patch.object(
            worker, "_dispatch", side_effect=RuntimeError("lookup exploded")
        ):
            report = await worker.run_cycle(now=T0)

        assert report["failed"] == 1
        assert reminder.status == ScheduleStatus.FAILED
        assert reminder.last_error == "RuntimeError: lookup exploded"

    @pytest.mark.asyncio
    async def test_error_while_recording_fails_the_entry(
        self, worker, dispatcher, db_session, armed_condition
    ):
        (reminder,) = await _seed(db_session, armed_condition, [_draft(-1)])
        original_complete = worker.schedule.complete
        calls = []

        async def complete_once_broken(*args, **kwargs):
            calls.append(args)
            if len(calls) == 1:
                raise RuntimeError("driver hiccup")
            return await original_complete(*args, **kwargs)

        with patch.object(
            worker.schedule, "complete", side_effect=complete_once_broken
        ):
            report = await worker.run_cycle(now=T0)

        assert len(report["errors"]) == 1
        assert reminder.status == ScheduleStatus.FAILED
        assert reminder.last_error == "RuntimeError: driver hiccup"

    @pytest.mark.asyncio
    async def test_sent_entry_is_kept_when_closing_the_cycle_fails(
        self, worker, dispatcher, db_session, armed_condition
    ):
        (final,) = await _seed(db_session, armed_condition, [_final(-1)])

        with patch.object(
            worker.conditions,
            "record_scheduled_delivery",
            side_effect=RuntimeError("bus exploded"),
        ):
            report = await worker.run_cycle(now=T0)

        assert report["sent"] == 1
        assert len(report["errors"]) == 1
        assert final.status == ScheduleStatus.SENT
        # Left armed for the recovery monitor
        assert armed_condition.active is True
