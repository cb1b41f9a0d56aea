from datetime import datetime
from typing import Any, List, Optional
import uuid

from pydantic import Field, field_validator

from app.db.models import (
    DeliveryPriority,
    MessageCondition,
    ReminderSchedule,
    RetryStrategy,
    ScheduleKind,
    ScheduleStatus,
    TriggerKind,
)
from app.schemas.camel_base_model import CamelCaseBaseModel as BaseModel
from app.utils.datetime_utils import to_naive_utc


class CreateConditionRequest(BaseModel):
    """Request schema for attaching a condition to a message"""

    message_id: uuid.UUID = Field(..., description="Message the condition guards")
    owner_id: uuid.UUID = Field(..., description="Owner who receives reminders")
    trigger_kind: TriggerKind = Field(..., description="Trigger kind")
    hours_threshold: Optional[int] = Field(
        default=None, ge=0, description="Hours of silence before delivery"
    )
    minutes_threshold: Optional[int] = Field(
        default=None, ge=0, description="Minutes of silence before delivery"
    )
    trigger_date: Optional[datetime] = Field(
        default=None, description="Absolute delivery date"
    )
    reminder_lead_times: List[int] = Field(
        default_factory=list, description="Minutes before the deadline to remind"
    )
    recipients: List[str] = Field(
        default_factory=list, description="Recipient references"
    )
    panic_keep_armed: bool = Field(
        default=False, description="Stay armed after a panic delivery"
    )

    @field_validator("trigger_date")
    @classmethod
    def normalize_trigger_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v) if v is not None else None


class UpdateConditionRequest(BaseModel):
    """Partial update; only fields present in the request are applied"""

    hours_threshold: Optional[int] = Field(default=None, ge=0)
    minutes_threshold: Optional[int] = Field(default=None, ge=0)
    trigger_date: Optional[datetime] = None
    reminder_lead_times: Optional[List[int]] = None
    recipients: Optional[List[str]] = None
    panic_keep_armed: Optional[bool] = None
    expected_version: Optional[int] = Field(
        default=None, description="Reject the update if the stored version differs"
    )

    @field_validator("trigger_date")
    @classmethod
    def normalize_trigger_date(cls, v: Optional[datetime]) -> Optional[datetime]:
        return to_naive_utc(v) if v is not None else None

    def changes(self) -> dict:
        """Fields explicitly sent by the client, excluding control fields"""
        return {
            name: getattr(self, name)
            for name in self.model_fields_set
            if name != "expected_version"
        }


class ConditionResponse(BaseModel):
    """Response schema for a condition and its computed deadline"""

    id: uuid.UUID
    message_id: uuid.UUID
    owner_id: uuid.UUID
    trigger_kind: TriggerKind
    active: bool
    last_checked: Optional[datetime] = None
    hours_threshold: Optional[int] = None
    minutes_threshold: Optional[int] = None
    trigger_date: Optional[datetime] = None
    reminder_lead_times: List[int] = Field(default_factory=list)
    recipients: List[Any] = Field(default_factory=list)
    panic_keep_armed: bool = False
    version: int
    deadline: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_model(
        cls, condition: MessageCondition, deadline: Optional[datetime] = None
    ) -> "ConditionResponse":
        return cls(
            id=condition.id,
            message_id=condition.message_id,
            owner_id=condition.owner_id,
            trigger_kind=condition.trigger_kind,
            active=condition.active,
            last_checked=condition.last_checked,
            hours_threshold=condition.hours_threshold,
            minutes_threshold=condition.minutes_threshold,
            trigger_date=condition.trigger_date,
            reminder_lead_times=list(condition.reminder_lead_times or []),
            recipients=list(condition.recipients or []),
            panic_keep_armed=condition.panic_keep_armed,
            version=condition.version,
            deadline=deadline,
            created_at=condition.created_at,
            updated_at=condition.updated_at,
        )


class ScheduleEntryResponse(BaseModel):
    """Response schema for one schedule entry"""

    id: uuid.UUID
    message_id: uuid.UUID
    condition_id: uuid.UUID
    scheduled_at: datetime
    kind: ScheduleKind
    status: ScheduleStatus
    priority: DeliveryPriority
    retry_strategy: RetryStrategy
    retry_count: int = 0
    last_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @classmethod
    def from_model(cls, entry: ReminderSchedule) -> "ScheduleEntryResponse":
        return cls(
            id=entry.id,
            message_id=entry.message_id,
            condition_id=entry.condition_id,
            scheduled_at=entry.scheduled_at,
            kind=entry.kind,
            status=entry.status,
            priority=entry.priority,
            retry_strategy=entry.retry_strategy,
            retry_count=entry.retry_count,
            last_attempt_at=entry.last_attempt_at,
            last_error=entry.last_error,
        )


class ConditionScheduleResponse(BaseModel):
    condition_id: uuid.UUID
    deadline: Optional[datetime] = None
    entries: List[ScheduleEntryResponse] = Field(default_factory=list)


class PanicResponse(BaseModel):
    condition_id: uuid.UUID
    delivered_at: datetime
    active: bool = Field(..., description="Whether the condition stayed armed")
