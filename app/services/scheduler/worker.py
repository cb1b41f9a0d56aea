import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from app.config.settings import settings
from app.db.models import (
    MessageCondition,
    ReminderSchedule,
    RetryStrategy,
    ScheduleKind,
    ScheduleStatus,
)
from app.services.conditions.condition_service import ConditionService
from app.services.conditions.schedule_service import ScheduleService
from app.services.notifications.dispatch import (
    DispatchResult,
    NotificationDispatcher,
    dispatch_with_timeout,
)
from app.services.notifications.registry import NotificationDispatcherRegistry
from app.services.sync.events import ConditionAction, EventBus, get_event_bus
from app.utils.datetime_utils import naive_utc_now
from app.utils.errors import ConflictError, PersistenceFailureError
from app.utils.logging import get_logger

logger = get_logger()


@dataclass
class CycleReport:
    claimed: int = 0
    sent: int = 0
    failed: int = 0
    requeued: int = 0
    skipped: int = 0
    errors: List[str] = field(default_factory=list)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "claimed": self.claimed,
            "sent": self.sent,
            "failed": self.failed,
            "requeued": self.requeued,
            "skipped": self.skipped,
            "errors": list(self.errors),
        }


class SchedulerWorker:
    """Claims due schedule entries and dispatches them with bounded concurrency.

    Every claimed entry is completed as sent or failed, whatever the dispatch
    does, so nothing stays in processing longer than one cycle unless the
    worker itself dies (the recovery monitor handles that case).
    """

    def __init__(
        self,
        db_session: Session,
        dispatcher: Optional[NotificationDispatcher] = None,
        event_bus: Optional[EventBus] = None,
        batch_limit: Optional[int] = None,
        concurrency: Optional[int] = None,
        timeout_seconds: Optional[float] = None,
        retry_delay_seconds: Optional[int] = None,
        max_retries: Optional[int] = None,
    ):
        self.db = db_session
        self.dispatcher = dispatcher or NotificationDispatcherRegistry.create_dispatcher()
        self.event_bus = event_bus or get_event_bus()
        self.schedule = ScheduleService(db_session)
        self.conditions = ConditionService(
            db_session, dispatcher=self.dispatcher, event_bus=self.event_bus
        )
        self.batch_limit = batch_limit or settings.SCHEDULER_BATCH_LIMIT
        self.concurrency = concurrency or settings.DISPATCH_CONCURRENCY
        self.timeout_seconds = timeout_seconds or settings.DISPATCH_TIMEOUT_SECONDS
        self.retry_delay_seconds = (
            retry_delay_seconds
            if retry_delay_seconds is not None
            else settings.AGGRESSIVE_RETRY_DELAY_SECONDS
        )
        self.max_retries = (
            max_retries if max_retries is not None else settings.AGGRESSIVE_MAX_RETRIES
        )

    async def run_cycle(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Claim one batch of due entries and process them"""
        now = now or naive_utc_now()
        report = CycleReport()

        entries = await self.schedule.claim_due(now, self.batch_limit)
        report.claimed = len(entries)
        if not entries:
            return report.as_dict()

        semaphore = asyncio.Semaphore(self.concurrency)
        await asyncio.gather(
            *(self._process_entry(entry, semaphore, report, now) for entry in entries)
        )

        logger.info("Scheduler cycle completed", **report.as_dict())
        return report.as_dict()

    async def _dispatch(
        self, entry: ReminderSchedule, condition: Optional[MessageCondition]
    ) -> DispatchResult:
        if condition is None:
            return DispatchResult.failed("Condition no longer exists")
        if not condition.active:
            return DispatchResult.failed("Condition is not armed")

        if entry.kind == ScheduleKind.REMINDER:
            call = self.dispatcher.remind_owner(condition.owner_id, entry.message_id)
        else:
            call = self.dispatcher.deliver_final(
                list(condition.recipients or []), entry.message_id
            )
        return await dispatch_with_timeout(call, self.timeout_seconds)

    async def _process_entry(
        self,
        entry: ReminderSchedule,
        semaphore: asyncio.Semaphore,
        report: CycleReport,
        now: datetime,
    ):
        condition = None
        async with semaphore:
            try:
                condition = self.db.get(MessageCondition, entry.condition_id)
                result = await self._dispatch(entry, condition)
            except Exception as e:
                logger.opt(exception=e).error(
                    "Dispatch raised unexpectedly", entry_id=str(entry.id)
                )
                result = DispatchResult.failed(f"{type(e).__name__}: {e}")

        try:
            await self._record_outcome(entry, condition, result, report, now)
        except (PersistenceFailureError, ConflictError) as e:
            # Entry stays in processing; the recovery monitor returns it to pending
            report.errors.append(f"{entry.id}: {e.message}")
            logger.error(
                "Failed to record dispatch outcome",
                entry_id=str(entry.id),
                error=e.message,
            )
        except Exception as e:
            report.errors.append(f"{entry.id}: {type(e).__name__}: {e}")
            logger.opt(exception=e).error(
                "Unexpected error recording dispatch outcome", entry_id=str(entry.id)
            )
            await self._fail_unrecorded(entry, f"{type(e).__name__}: {e}", now)

    async def _fail_unrecorded(self, entry: ReminderSchedule, error: str, now: datetime):
        """Move an entry still in processing to failed. Sent entries are kept."""
        self.db.rollback()
        try:
            await self.schedule.complete(
                entry.id, ScheduleStatus.FAILED, error=error, now=now
            )
        except PersistenceFailureError as e:
            logger.error(
                "Could not mark entry failed", entry_id=str(entry.id), error=e.message
            )

    async def _record_outcome(
        self,
        entry: ReminderSchedule,
        condition: Optional[MessageCondition],
        result: DispatchResult,
        report: CycleReport,
        now: datetime,
    ):
        if result.success:
            completed = await self.schedule.complete(
                entry.id, ScheduleStatus.SENT, now=now
            )
            if not completed:
                # Superseded while the dispatch was in flight
                report.skipped += 1
                return
            report.sent += 1

            if entry.kind == ScheduleKind.FINAL_DELIVERY:
                await self.conditions.record_scheduled_delivery(
                    entry.condition_id, entry.id, now
                )
            elif condition is not None:
                self.conditions.publish_event(condition, ConditionAction.REMINDER_SENT)
            return

        completed = await self.schedule.complete(
            entry.id, ScheduleStatus.FAILED, error=result.error, now=now
        )
        if not completed:
            report.skipped += 1
            return
        report.failed += 1

        logger.warning(
            "Dispatch failed",
            entry_id=str(entry.id),
            kind=entry.kind.value,
            retry_count=entry.retry_count,
            error=result.error,
        )

        if self._should_requeue(entry, condition):
            await self.schedule.requeue(entry, self.retry_delay_seconds, now)
            report.requeued += 1
        elif condition is not None:
            self.conditions.publish_event(condition, ConditionAction.DELIVERY_FAILED)

    def _should_requeue(
        self, entry: ReminderSchedule, condition: Optional[MessageCondition]
    ) -> bool:
        return (
            entry.retry_strategy == RetryStrategy.AGGRESSIVE
            and entry.retry_count < self.max_retries
            and condition is not None
            and condition.active
        )

