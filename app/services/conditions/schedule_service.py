from datetime import datetime, timedelta
from typing import Iterable, List, Optional
import uuid

from sqlalchemy import and_, exists, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.db.models import (
    ACTIVE_SCHEDULE_STATUSES,
    DeliveryRecord,
    DeliverySource,
    MessageCondition,
    ReminderSchedule,
    ScheduleKind,
    ScheduleStatus,
)
from app.services.conditions.reminder_plan import ScheduleEntryDraft
from app.utils.datetime_utils import naive_utc_now
from app.utils.errors import PersistenceFailureError
from app.utils.logging import get_logger

logger = get_logger()

# Only an in-flight final covers a deadline. A sent final may belong to an
# earlier arming; delivery records settle those.
COVERING_FINAL_STATUSES = (
    ScheduleStatus.PENDING,
    ScheduleStatus.PROCESSING,
)


class ScheduleService:
    """Durable queue of reminder and final-delivery entries.

    Methods that take ``commit`` let the caller fold the write into a larger
    transaction (for example a check-in that updates the condition and its
    plan atomically).
    """

    def __init__(self, db_session: Session):
        self.db = db_session

    def _commit(self, action: str):
        try:
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Schedule store {action} failed", error=str(e))
            raise PersistenceFailureError(f"Failed to {action}: {e}")

    async def get_entry(self, entry_id: uuid.UUID) -> Optional[ReminderSchedule]:
        return self.db.get(ReminderSchedule, entry_id)

    async def insert_entries(
        self,
        message_id: uuid.UUID,
        condition_id: uuid.UUID,
        drafts: Iterable[ScheduleEntryDraft],
        commit: bool = True,
    ) -> List[ReminderSchedule]:
        """Persist a plan. All entries are written or none are."""
        entries = [
            ReminderSchedule(
                message_id=message_id,
                condition_id=condition_id,
                scheduled_at=draft.scheduled_at,
                kind=draft.kind,
                status=ScheduleStatus.PENDING,
                priority=draft.priority,
                retry_strategy=draft.retry_strategy,
                retry_count=0,
            )
            for draft in drafts
        ]
        try:
            self.db.add_all(entries)
            self.db.flush()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceFailureError(f"Failed to insert schedule entries: {e}")

        if commit:
            self._commit("insert schedule entries")
        return entries

    async def mark_obsolete(
        self,
        message_id: uuid.UUID,
        condition_id: Optional[uuid.UUID] = None,
        commit: bool = True,
    ) -> int:
        """Supersede every pending or processing entry of a message.

        Idempotent: sent, failed and already obsolete entries are untouched.
        """
        filters = [
            ReminderSchedule.message_id == message_id,
            ReminderSchedule.status.in_(ACTIVE_SCHEDULE_STATUSES),
        ]
        if condition_id is not None:
            filters.append(ReminderSchedule.condition_id == condition_id)

        try:
            result = self.db.execute(
                update(ReminderSchedule)
                .where(and_(*filters))
                .values(status=ScheduleStatus.OBSOLETE)
                .execution_options(synchronize_session="fetch")
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceFailureError(f"Failed to mark entries obsolete: {e}")

        if commit:
            self._commit("mark schedule entries obsolete")
        return result.rowcount or 0

    async def replace_plan(
        self,
        condition: MessageCondition,
        drafts: List[ScheduleEntryDraft],
        commit: bool = True,
    ) -> List[ReminderSchedule]:
        """Obsolete the current plan and insert a new one in one transaction."""
        obsoleted = await self.mark_obsolete(
            condition.message_id, condition.id, commit=False
        )
        entries = await self.insert_entries(
            condition.message_id, condition.id, drafts, commit=False
        )
        if commit:
            self._commit("replace schedule plan")

        logger.debug(
            "Schedule plan replaced",
            condition_id=str(condition.id),
            obsoleted=obsoleted,
            inserted=len(entries),
        )
        return entries

    async def claim_due(
        self, now: Optional[datetime] = None, limit: int = 50
    ) -> List[ReminderSchedule]:
        """Atomically move up to ``limit`` due entries from pending to processing.

        The conditional UPDATE only matches rows that are still pending, so two
        concurrent claimers never receive the same entry even on databases
        where ``SKIP LOCKED`` is a no-op.
        """
        now = now or naive_utc_now()
        try:
            candidate_ids = self.db.scalars(
                select(ReminderSchedule.id)
                .where(
                    and_(
                        ReminderSchedule.status == ScheduleStatus.PENDING,
                        ReminderSchedule.scheduled_at <= now,
                    )
                )
                .order_by(ReminderSchedule.scheduled_at)
                .limit(limit)
                .with_for_update(skip_locked=True)
            ).all()

            if not candidate_ids:
                self.db.commit()
                return []

            claimed_ids = self.db.scalars(
                update(ReminderSchedule)
                .where(
                    and_(
                        ReminderSchedule.id.in_(candidate_ids),
                        ReminderSchedule.status == ScheduleStatus.PENDING,
                    )
                )
                .values(status=ScheduleStatus.PROCESSING, last_attempt_at=now)
                .returning(ReminderSchedule.id)
                .execution_options(synchronize_session=False)
            ).all()
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceFailureError(f"Failed to claim due entries: {e}")

        if not claimed_ids:
            return []

        logger.info("Claimed due schedule entries", count=len(claimed_ids))
        return list(
            self.db.scalars(
                select(ReminderSchedule)
                .where(ReminderSchedule.id.in_(claimed_ids))
                .order_by(ReminderSchedule.scheduled_at)
                .execution_options(populate_existing=True)
            ).all()
        )

    async def complete(
        self,
        entry_id: uuid.UUID,
        outcome: ScheduleStatus,
        error: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        """Record the outcome of a processing entry.

        Returns False when the entry is no longer processing, e.g. it was
        obsoleted by a replan while its dispatch was in flight.
        """
        if outcome not in (ScheduleStatus.SENT, ScheduleStatus.FAILED):
            raise ValueError(f"Invalid completion outcome: {outcome}")

        values = {"status": outcome, "last_attempt_at": now or naive_utc_now()}
        if error is not None:
            values["last_error"] = error[:2000]

        try:
            result = self.db.execute(
                update(ReminderSchedule)
                .where(
                    and_(
                        ReminderSchedule.id == entry_id,
                        ReminderSchedule.status == ScheduleStatus.PROCESSING,
                    )
                )
                .values(**values)
                .execution_options(synchronize_session="fetch")
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceFailureError(f"Failed to complete entry {entry_id}: {e}")

        self._commit("complete schedule entry")
        logger.debug(
            "Schedule entry completed",
            entry_id=str(entry_id),
            outcome=outcome.value,
            applied=result.rowcount == 1,
        )
        return result.rowcount == 1

    async def requeue(
        self, entry: ReminderSchedule, delay_seconds: int, now: Optional[datetime] = None
    ) -> ReminderSchedule:
        """Queue a fresh pending copy of a failed entry ``delay_seconds`` later."""
        now = now or naive_utc_now()
        retry = ReminderSchedule(
            message_id=entry.message_id,
            condition_id=entry.condition_id,
            scheduled_at=now + timedelta(seconds=delay_seconds),
            kind=entry.kind,
            status=ScheduleStatus.PENDING,
            priority=entry.priority,
            retry_strategy=entry.retry_strategy,
            retry_count=entry.retry_count + 1,
        )
        self.db.add(retry)
        self._commit("requeue schedule entry")
        logger.info(
            "Schedule entry requeued",
            failed_entry_id=str(entry.id),
            kind=entry.kind.value,
            retry_count=retry.retry_count,
            scheduled_at=retry.scheduled_at.isoformat(),
        )
        return retry

    async def reset_stuck(self, cutoff: datetime) -> int:
        """Return processing entries last attempted before ``cutoff`` to pending."""
        try:
            result = self.db.execute(
                update(ReminderSchedule)
                .where(
                    and_(
                        ReminderSchedule.status == ScheduleStatus.PROCESSING,
                        ReminderSchedule.last_attempt_at < cutoff,
                    )
                )
                .values(status=ScheduleStatus.PENDING)
                .execution_options(synchronize_session="fetch")
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceFailureError(f"Failed to reset stuck entries: {e}")

        self._commit("reset stuck schedule entries")
        return result.rowcount or 0

    async def list_for_condition(
        self, condition_id: uuid.UUID, include_obsolete: bool = False
    ) -> List[ReminderSchedule]:
        query = select(ReminderSchedule).where(
            ReminderSchedule.condition_id == condition_id
        )
        if not include_obsolete:
            query = query.where(ReminderSchedule.status != ScheduleStatus.OBSOLETE)
        return list(
            self.db.scalars(
                query.order_by(ReminderSchedule.scheduled_at, ReminderSchedule.created_at)
            ).all()
        )

    async def upcoming_reminders(
        self, message_id: uuid.UUID, now: Optional[datetime] = None
    ) -> List[ReminderSchedule]:
        """Pending reminders of a message that have not come due yet."""
        now = now or naive_utc_now()
        return list(
            self.db.scalars(
                select(ReminderSchedule)
                .where(
                    and_(
                        ReminderSchedule.message_id == message_id,
                        ReminderSchedule.kind == ScheduleKind.REMINDER,
                        ReminderSchedule.status == ScheduleStatus.PENDING,
                        ReminderSchedule.scheduled_at > now,
                    )
                )
                .order_by(ReminderSchedule.scheduled_at)
            ).all()
        )

    async def has_covering_final_delivery(
        self, message_id: uuid.UUID, condition_id: uuid.UUID
    ) -> bool:
        """True when a pending or processing final delivery exists."""
        return bool(
            self.db.scalar(
                select(
                    exists().where(
                        and_(
                            ReminderSchedule.message_id == message_id,
                            ReminderSchedule.condition_id == condition_id,
                            ReminderSchedule.kind == ScheduleKind.FINAL_DELIVERY,
                            ReminderSchedule.status.in_(COVERING_FINAL_STATUSES),
                        )
                    )
                )
            )
        )

    async def delivered_since(
        self, message_id: uuid.UUID, since: datetime
    ) -> bool:
        return bool(
            self.db.scalar(
                select(
                    exists().where(
                        and_(
                            DeliveryRecord.message_id == message_id,
                            DeliveryRecord.delivered_at >= since,
                        )
                    )
                )
            )
        )

    def add_delivery_record(
        self,
        condition: MessageCondition,
        source: DeliverySource,
        delivered_at: datetime,
        schedule_entry_id: Optional[uuid.UUID] = None,
        note: Optional[str] = None,
    ) -> DeliveryRecord:
        """Stage a delivery record; the caller commits."""
        record = DeliveryRecord(
            message_id=condition.message_id,
            condition_id=condition.id,
            delivered_at=delivered_at,
            source=source,
            recipient_count=len(condition.recipients or []),
            schedule_entry_id=schedule_entry_id,
            note=note[:255] if note else None,
        )
        self.db.add(record)
        return record
