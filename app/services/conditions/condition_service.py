from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional
import uuid

from fastapi import Depends
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.db.models import (
    DeliverySource,
    MessageCondition,
    ReminderSchedule,
    TriggerKind,
)
from app.db.session import get_sync_session
from app.schemas.condition_schemas import CreateConditionRequest, UpdateConditionRequest
from app.services.conditions.deadline_calculator import calculate_deadline, has_threshold
from app.services.conditions.reminder_plan import generate_reminder_plan
from app.services.conditions.schedule_service import ScheduleService
from app.services.notifications.dispatch import (
    DispatchResult,
    NotificationDispatcher,
    dispatch_with_timeout,
)
from app.services.notifications.registry import NotificationDispatcherRegistry
from app.services.sync.events import (
    ConditionAction,
    ConditionEvent,
    EventBus,
    get_event_bus,
)
from app.utils.datetime_utils import naive_utc_now
from app.utils.errors import (
    BusinessLogicError,
    ConflictError,
    DispatchFailureError,
    InvalidConditionKindError,
    NotFoundError,
    PersistenceFailureError,
)
from app.utils.logging import get_logger

logger = get_logger()


@dataclass(frozen=True)
class ArmOutcome:
    condition: MessageCondition
    # None for panic conditions and when no deadline can be computed
    deadline: Optional[datetime]


@dataclass(frozen=True)
class PanicOutcome:
    condition_id: uuid.UUID
    delivered_at: datetime
    active: bool


class ConditionService:
    """Condition store: lifecycle of message conditions and their plans.

    Every mutation of a condition bumps its version column. A writer holding
    a stale snapshot gets ``ConflictError`` instead of silently overwriting a
    concurrent check-in, arm or disarm.
    """

    def __init__(
        self,
        db_session: Session,
        dispatcher: Optional[NotificationDispatcher] = None,
        event_bus: Optional[EventBus] = None,
    ):
        self.db = db_session
        self.schedule = ScheduleService(db_session)
        self.dispatcher = dispatcher or NotificationDispatcherRegistry.create_dispatcher()
        self.event_bus = event_bus or get_event_bus()

    def _commit(self, action: str):
        try:
            self.db.commit()
        except StaleDataError:
            self.db.rollback()
            raise ConflictError(f"Condition changed concurrently during {action}")
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Condition store {action} failed", error=str(e))
            raise PersistenceFailureError(f"Failed to {action}: {e}")

    def _flush(self, action: str):
        """Write the condition row now so a version clash surfaces as a conflict
        before any schedule statement runs."""
        try:
            self.db.flush()
        except StaleDataError:
            self.db.rollback()
            raise ConflictError(f"Condition changed concurrently during {action}")
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceFailureError(f"Failed to {action}: {e}")

    def publish_event(self, condition: MessageCondition, action: ConditionAction):
        self.event_bus.publish(
            ConditionEvent(
                condition_id=condition.id,
                message_id=condition.message_id,
                action=action,
                active=condition.active,
                version=condition.version,
            )
        )

    # Queries

    async def get_condition(self, condition_id: uuid.UUID) -> Optional[MessageCondition]:
        return self.db.get(MessageCondition, condition_id)

    async def get_condition_or_raise(self, condition_id: uuid.UUID) -> MessageCondition:
        condition = await self.get_condition(condition_id)
        if condition is None:
            raise NotFoundError(
                f"Condition not found: {condition_id}", error_code="CONDITION_NOT_FOUND"
            )
        return condition

    async def get_by_message_id(self, message_id: uuid.UUID) -> Optional[MessageCondition]:
        return self.db.execute(
            select(MessageCondition).where(MessageCondition.message_id == message_id)
        ).scalar_one_or_none()

    async def list_active_conditions(self) -> List[MessageCondition]:
        return list(
            self.db.scalars(
                select(MessageCondition).where(MessageCondition.active.is_(True))
            ).all()
        )

    def compute_deadline(
        self, condition: MessageCondition, now: Optional[datetime] = None
    ) -> Optional[datetime]:
        """Deadline for display; None for panic conditions and incomplete ones."""
        if condition.is_panic:
            return None
        return calculate_deadline(condition, now or naive_utc_now())

    async def get_schedule(
        self, condition_id: uuid.UUID, include_obsolete: bool = False
    ) -> List[ReminderSchedule]:
        await self.get_condition_or_raise(condition_id)
        return await self.schedule.list_for_condition(condition_id, include_obsolete)

    # Validation

    def _validate(self, condition: MessageCondition):
        kind = condition.trigger_kind
        if condition.is_check_in_kind and not has_threshold(condition):
            raise BusinessLogicError(
                f"{kind.value} conditions require an hours or minutes threshold",
                error_code="THRESHOLD_REQUIRED",
            )
        if kind in (TriggerKind.SCHEDULED, TriggerKind.INACTIVITY_TO_DATE):
            if condition.trigger_date is None:
                raise BusinessLogicError(
                    f"{kind.value} conditions require a trigger date",
                    error_code="TRIGGER_DATE_REQUIRED",
                )
        if kind != TriggerKind.PANIC_TRIGGER and condition.panic_keep_armed:
            raise InvalidConditionKindError(
                "panicKeepArmed only applies to panic trigger conditions"
            )

    # Mutations

    async def create_condition(self, request: CreateConditionRequest) -> MessageCondition:
        """Attach a new, disarmed condition to a message"""
        if await self.get_by_message_id(request.message_id) is not None:
            raise BusinessLogicError(
                f"Message {request.message_id} already has a condition",
                error_code="CONDITION_ALREADY_EXISTS",
            )

        condition = MessageCondition(
            message_id=request.message_id,
            owner_id=request.owner_id,
            trigger_kind=request.trigger_kind,
            active=False,
            hours_threshold=request.hours_threshold,
            minutes_threshold=request.minutes_threshold,
            trigger_date=request.trigger_date,
            reminder_lead_times=list(request.reminder_lead_times),
            recipients=list(request.recipients),
            panic_keep_armed=request.panic_keep_armed,
        )
        self._validate(condition)

        self.db.add(condition)
        try:
            self.db.commit()
        except IntegrityError:
            # Lost a race with another create for the same message
            self.db.rollback()
            raise BusinessLogicError(
                f"Message {request.message_id} already has a condition",
                error_code="CONDITION_ALREADY_EXISTS",
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            raise PersistenceFailureError(f"Failed to create condition: {e}")

        logger.info(
            "Condition created",
            condition_id=str(condition.id),
            trigger_kind=condition.trigger_kind.value,
        )
        self.publish_event(condition, ConditionAction.CREATED)
        return condition

    async def update_condition(
        self,
        condition_id: uuid.UUID,
        request: UpdateConditionRequest,
        now: Optional[datetime] = None,
    ) -> MessageCondition:
        """Apply a partial update; an armed condition gets a fresh plan"""
        now = now or naive_utc_now()
        condition = await self.get_condition_or_raise(condition_id)

        if (
            request.expected_version is not None
            and request.expected_version != condition.version
        ):
            raise ConflictError(
                f"Condition {condition_id} is at version {condition.version}, "
                f"expected {request.expected_version}"
            )

        for field, value in request.changes().items():
            if field in ("reminder_lead_times", "recipients"):
                value = list(value or [])
            setattr(condition, field, value)
        try:
            self._validate(condition)
        except BusinessLogicError:
            # Discard the unflushed changes
            self.db.rollback()
            raise
        self._flush("update condition")

        if condition.active and not condition.is_panic:
            await self._replan(condition, now, commit=False)
        self._commit("update condition")

        self.publish_event(condition, ConditionAction.UPDATED)
        return condition

    async def _replan(
        self, condition: MessageCondition, now: datetime, commit: bool = True
    ) -> Optional[datetime]:
        """Supersede the current plan with one for the latest deadline.

        A condition without a computable deadline just loses its plan.
        """
        deadline = calculate_deadline(condition, now)
        if deadline is None:
            await self.schedule.mark_obsolete(
                condition.message_id, condition.id, commit=commit
            )
            return None

        drafts = generate_reminder_plan(deadline, condition.reminder_lead_times, now)
        await self.schedule.replace_plan(condition, drafts, commit=commit)
        return deadline

    async def arm(
        self, condition_id: uuid.UUID, now: Optional[datetime] = None
    ) -> ArmOutcome:
        """Activate a condition, build its reminder plan and return the deadline.

        The plan is written after arming commits; a failed plan write is
        logged and left for the next check-in or recovery pass to repair.
        """
        now = now or naive_utc_now()
        condition = await self.get_condition_or_raise(condition_id)

        if condition.is_panic:
            if not condition.active:
                condition.active = True
                self._commit("arm condition")
                self.publish_event(condition, ConditionAction.ARMED)
            return ArmOutcome(condition=condition, deadline=None)

        condition.active = True
        if condition.is_check_in_kind:
            condition.last_checked = now
        self._commit("arm condition")

        try:
            deadline = await self._replan(condition, now)
        except PersistenceFailureError as e:
            deadline = calculate_deadline(condition, now)
            logger.error(
                "Condition armed but plan write failed",
                condition_id=str(condition.id),
                error=e.message,
            )

        logger.info(
            "Condition armed",
            condition_id=str(condition.id),
            deadline=deadline.isoformat() if deadline else None,
        )
        self.publish_event(condition, ConditionAction.ARMED)
        return ArmOutcome(condition=condition, deadline=deadline)

    async def disarm(
        self, condition_id: uuid.UUID, now: Optional[datetime] = None
    ) -> MessageCondition:
        """Deactivate a condition and obsolete its pending plan. Idempotent."""
        condition = await self.get_condition_or_raise(condition_id)
        if not condition.active:
            return condition

        condition.active = False
        self._flush("disarm condition")
        await self.schedule.mark_obsolete(
            condition.message_id, condition.id, commit=False
        )
        self._commit("disarm condition")

        logger.info("Condition disarmed", condition_id=str(condition.id))
        self.publish_event(condition, ConditionAction.DISARMED)
        return condition

    async def check_in(
        self, condition_id: uuid.UUID, now: Optional[datetime] = None
    ) -> Optional[datetime]:
        """Record owner activity and push the deadline out.

        The timestamp and the regenerated plan commit together, so a lost
        race leaves neither behind.
        """
        now = now or naive_utc_now()
        condition = await self.get_condition_or_raise(condition_id)

        if not condition.is_check_in_kind:
            raise InvalidConditionKindError(
                f"Check-in is not supported for {condition.trigger_kind.value} conditions"
            )
        if not condition.active:
            raise BusinessLogicError(
                f"Condition {condition_id} is not armed",
                error_code="CONDITION_NOT_ARMED",
            )

        condition.last_checked = now
        self._flush("check in")
        deadline = await self._replan(condition, now, commit=False)
        self._commit("check in")

        logger.info(
            "Condition checked in",
            condition_id=str(condition.id),
            deadline=deadline.isoformat() if deadline else None,
        )
        self.publish_event(condition, ConditionAction.CHECKED_IN)
        return deadline

    async def close_cycle(
        self, condition: MessageCondition, now: datetime, commit: bool = True
    ) -> Optional[datetime]:
        """End the current cycle after a final delivery went out.

        Recurring check-ins stay armed: the cycle restarts at ``now`` and a
        fresh plan replaces the old one. Every other kind is disarmed and
        loses its plan. Returns the next deadline, if any.
        """
        if condition.is_recurring:
            condition.last_checked = now
            self._flush("restart cycle")
            deadline = await self._replan(condition, now, commit=False)
        else:
            condition.active = False
            self._flush("close cycle")
            await self.schedule.mark_obsolete(
                condition.message_id, condition.id, commit=False
            )
            deadline = None

        if commit:
            self._commit("close cycle")
        return deadline

    async def deliver_now(
        self,
        condition: MessageCondition,
        source: DeliverySource,
        disarm: bool,
        now: Optional[datetime] = None,
    ) -> DispatchResult:
        """Dispatch the final delivery immediately, bypassing the queue.

        On success a delivery record is written and, when ``disarm`` is set,
        the cycle is closed through ``close_cycle``. On failure nothing
        changes.
        """
        now = now or naive_utc_now()
        result = await dispatch_with_timeout(
            self.dispatcher.deliver_final(
                list(condition.recipients or []), condition.message_id
            )
        )
        if not result.success:
            logger.warning(
                "Immediate delivery failed",
                condition_id=str(condition.id),
                source=source.value,
                error=result.error,
            )
            return result

        self.schedule.add_delivery_record(condition, source, now)
        if disarm:
            await self.close_cycle(condition, now, commit=False)
        self._commit("record delivery")
        return result

    async def fire_panic(
        self, condition_id: uuid.UUID, now: Optional[datetime] = None
    ) -> PanicOutcome:
        """Deliver a panic-trigger message right away"""
        now = now or naive_utc_now()
        condition = await self.get_condition_or_raise(condition_id)

        if not condition.is_panic:
            raise InvalidConditionKindError(
                f"Panic is not supported for {condition.trigger_kind.value} conditions"
            )
        if not condition.active:
            raise BusinessLogicError(
                f"Condition {condition_id} is not armed",
                error_code="CONDITION_NOT_ARMED",
            )

        result = await self.deliver_now(
            condition,
            DeliverySource.PANIC,
            disarm=not condition.panic_keep_armed,
            now=now,
        )
        if not result.success:
            raise DispatchFailureError(f"Panic delivery failed: {result.error}")

        logger.info(
            "Panic delivery sent",
            condition_id=str(condition.id),
            keep_armed=condition.panic_keep_armed,
        )
        self.publish_event(condition, ConditionAction.PANIC_FIRED)
        return PanicOutcome(
            condition_id=condition.id, delivered_at=now, active=condition.active
        )

    async def record_scheduled_delivery(
        self,
        condition_id: uuid.UUID,
        entry_id: uuid.UUID,
        now: Optional[datetime] = None,
    ) -> Optional[MessageCondition]:
        """Close a condition's cycle after its queued final delivery went out"""
        now = now or naive_utc_now()
        condition = await self.get_condition(condition_id)
        if condition is None:
            return None

        self.schedule.add_delivery_record(
            condition, DeliverySource.SCHEDULER, now, schedule_entry_id=entry_id
        )
        await self.close_cycle(condition, now, commit=False)
        self._commit("record scheduled delivery")

        self.publish_event(condition, ConditionAction.DELIVERED)
        return condition


def get_condition_service(
    db: Session = Depends(get_sync_session),
) -> ConditionService:
    """Dependency to provide ConditionService instance"""
    return ConditionService(db)
