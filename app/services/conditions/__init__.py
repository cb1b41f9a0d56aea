from .condition_service import ArmOutcome, ConditionService, PanicOutcome
from .deadline_calculator import calculate_deadline
from .reminder_plan import ScheduleEntryDraft, generate_reminder_plan, normalize_lead_times
from .schedule_service import ScheduleService

__all__ = [
    "ArmOutcome",
    "ConditionService",
    "PanicOutcome",
    "ScheduleService",
    "ScheduleEntryDraft",
    "calculate_deadline",
    "generate_reminder_plan",
    "normalize_lead_times",
]
