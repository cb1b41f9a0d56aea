from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from app.config.settings import settings
from app.db.models import DeliverySource, MessageCondition
from app.services.conditions.condition_service import ConditionService
from app.services.conditions.deadline_calculator import calculate_deadline
from app.services.conditions.reminder_plan import generate_reminder_plan
from app.services.conditions.schedule_service import ScheduleService
from app.services.notifications.dispatch import NotificationDispatcher
from app.services.notifications.registry import NotificationDispatcherRegistry
from app.services.sync.events import ConditionAction, EventBus, get_event_bus
from app.utils.datetime_utils import naive_utc_now
from app.utils.errors import ConflictError, PersistenceFailureError
from app.utils.logging import get_logger

logger = get_logger()


class RecoveryMonitor:
    """Repairs what the scheduler worker cannot repair on its own.

    Two checks per pass:

    1. Entries stuck in processing (the worker died mid-dispatch) go back to
       pending.
    2. Armed conditions whose deadline already passed without an in-flight
       final delivery are reconciled against delivery records or delivered
       immediately. If that dispatch fails a fresh final delivery is
       queued instead, so every recovered condition ends with a delivery
       record and a closed cycle, or armed with a due entry.
    """

    def __init__(
        self,
        db_session: Session,
        dispatcher: Optional[NotificationDispatcher] = None,
        event_bus: Optional[EventBus] = None,
        stuck_threshold_minutes: Optional[int] = None,
    ):
        self.db = db_session
        self.dispatcher = dispatcher or NotificationDispatcherRegistry.create_dispatcher()
        self.event_bus = event_bus or get_event_bus()
        self.schedule = ScheduleService(db_session)
        self.conditions = ConditionService(
            db_session, dispatcher=self.dispatcher, event_bus=self.event_bus
        )
        self.stuck_threshold = timedelta(
            minutes=stuck_threshold_minutes or settings.STUCK_THRESHOLD_MINUTES
        )

    async def reset_stuck_entries(self, now: Optional[datetime] = None) -> int:
        now = now or naive_utc_now()
        reset = await self.schedule.reset_stuck(now - self.stuck_threshold)
        if reset:
            logger.warning("Reset stuck schedule entries", count=reset)
        return reset

    async def recover_missed_deadlines(
        self, now: Optional[datetime] = None
    ) -> Dict[str, int]:
        now = now or naive_utc_now()
        counts = {"checked": 0, "delivered": 0, "requeued": 0, "reconciled": 0, "errors": 0}

        for condition in await self.conditions.list_active_conditions():
            if condition.is_panic:
                continue
            counts["checked"] += 1

            deadline = calculate_deadline(
                condition, now, allow_elapsed_trigger_date=True
            )
            if deadline is None or deadline > now:
                continue
            if await self.schedule.has_covering_final_delivery(
                condition.message_id, condition.id
            ):
                continue

            try:
                outcome = await self._recover_condition(condition, deadline, now)
            except (PersistenceFailureError, ConflictError) as e:
                counts["errors"] += 1
                logger.error(
                    "Recovery failed for condition",
                    condition_id=str(condition.id),
                    error=e.message,
                )
                continue
            counts[outcome] += 1

        return counts

    async def _recover_condition(
        self, condition: MessageCondition, deadline: datetime, now: datetime
    ) -> str:
        if await self.schedule.delivered_since(condition.message_id, deadline):
            # Delivered already but the cycle was never closed
            if condition.is_recurring:
                await self.conditions.close_cycle(condition, now)
                self.conditions.publish_event(condition, ConditionAction.RECOVERED)
            else:
                await self.conditions.disarm(condition.id, now)
            return "reconciled"

        logger.warning(
            "Missed deadline detected",
            condition_id=str(condition.id),
            deadline=deadline.isoformat(),
        )
        result = await self.conditions.deliver_now(
            condition, DeliverySource.RECOVERY, disarm=True, now=now
        )
        if result.success:
            logger.info("Missed deadline delivered", condition_id=str(condition.id))
            self.conditions.publish_event(condition, ConditionAction.RECOVERED)
            return "delivered"

        drafts = generate_reminder_plan(deadline, [], now)
        await self.schedule.replace_plan(condition, drafts)
        return "requeued"

    async def run(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """One full recovery pass"""
        now = now or naive_utc_now()
        reset = await self.reset_stuck_entries(now)
        counts = await self.recover_missed_deadlines(now)

        report = {"stuck_reset": reset, **counts}
        logger.info("Recovery pass completed", **report)
        return report
