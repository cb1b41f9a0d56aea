from typing import Any, List, Optional
from datetime import datetime
import uuid
from sqlalchemy import (
    String,
    Boolean,
    Integer,
    Text,
    ForeignKey,
    Enum,
    Index,
    JSON,
    Uuid,
    func,
    CheckConstraint,
    DateTime,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
import enum


class Base(DeclarativeBase):
    pass


# Enums
class TriggerKind(enum.Enum):
    NO_CHECK_IN = "no_check_in"
    REGULAR_CHECK_IN = "regular_check_in"
    SCHEDULED = "scheduled"
    PANIC_TRIGGER = "panic_trigger"
    INACTIVITY_TO_DATE = "inactivity_to_date"


# Kinds whose deadline is last_checked + threshold
CHECK_IN_KINDS = frozenset(
    {
        TriggerKind.NO_CHECK_IN,
        TriggerKind.REGULAR_CHECK_IN,
        TriggerKind.INACTIVITY_TO_DATE,
    }
)


class ScheduleKind(enum.Enum):
    REMINDER = "reminder"
    FINAL_DELIVERY = "final_delivery"


class ScheduleStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SENT = "sent"
    FAILED = "failed"
    OBSOLETE = "obsolete"


# Statuses a replan or disarm must supersede
ACTIVE_SCHEDULE_STATUSES = (ScheduleStatus.PENDING, ScheduleStatus.PROCESSING)


class DeliveryPriority(enum.Enum):
    NORMAL = "normal"
    HIGH = "high"
    CRITICAL = "critical"


class RetryStrategy(enum.Enum):
    STANDARD = "standard"
    AGGRESSIVE = "aggressive"


class DeliverySource(enum.Enum):
    SCHEDULER = "scheduler"
    PANIC = "panic"
    RECOVERY = "recovery"


# Base model with common audit fields
class AuditMixin:
    """Mixin for common audit fields"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, server_default=func.now(), onupdate=func.now()
    )


# Models
class MessageCondition(Base, AuditMixin):
    """Delivery rule attached to a message; one per message"""

    __tablename__ = "message_conditions"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    message_id: Mapped[uuid.UUID] = mapped_column(Uuid, unique=True, nullable=False)
    owner_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    trigger_kind: Mapped[TriggerKind] = mapped_column(
        Enum(TriggerKind), nullable=False
    )
    active: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_checked: Mapped[Optional[datetime]] = mapped_column(DateTime)
    hours_threshold: Mapped[Optional[int]] = mapped_column(Integer)
    minutes_threshold: Mapped[Optional[int]] = mapped_column(Integer)
    trigger_date: Mapped[Optional[datetime]] = mapped_column(DateTime)
    # Minutes before the deadline
    reminder_lead_times: Mapped[List[int]] = mapped_column(
        JSON, default=list, nullable=False
    )
    # Opaque recipient references
    recipients: Mapped[List[Any]] = mapped_column(JSON, default=list, nullable=False)
    panic_keep_armed: Mapped[bool] = mapped_column(
        Boolean, default=False, nullable=False
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    # Relationships
    schedule_entries: Mapped[List["ReminderSchedule"]] = relationship(
        back_populates="condition", order_by="ReminderSchedule.scheduled_at"
    )

    __mapper_args__ = {"version_id_col": version}

    # Constraints
    __table_args__ = (
        CheckConstraint(
            "hours_threshold IS NULL OR hours_threshold >= 0",
            name="ck_cond_hours_non_negative",
        ),
        CheckConstraint(
            "minutes_threshold IS NULL OR minutes_threshold >= 0",
            name="ck_cond_minutes_non_negative",
        ),
        Index("idx_cond_active_kind", "active", "trigger_kind"),
        Index("idx_cond_owner", "owner_id"),
    )

    @property
    def is_check_in_kind(self) -> bool:
        return self.trigger_kind in CHECK_IN_KINDS

    @property
    def is_panic(self) -> bool:
        return self.trigger_kind == TriggerKind.PANIC_TRIGGER

    @property
    def is_recurring(self) -> bool:
        """Recurring check-ins stay armed and start a new cycle after delivery"""
        return self.trigger_kind == TriggerKind.REGULAR_CHECK_IN


class ReminderSchedule(Base, AuditMixin):
    """One planned reminder or final-delivery work item"""

    __tablename__ = "reminder_schedule"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    message_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    condition_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("message_conditions.id", ondelete="CASCADE"),
        nullable=False,
    )
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    kind: Mapped[ScheduleKind] = mapped_column(Enum(ScheduleKind), nullable=False)
    status: Mapped[ScheduleStatus] = mapped_column(
        Enum(ScheduleStatus), default=ScheduleStatus.PENDING, nullable=False
    )
    priority: Mapped[DeliveryPriority] = mapped_column(
        Enum(DeliveryPriority), default=DeliveryPriority.NORMAL, nullable=False
    )
    retry_strategy: Mapped[RetryStrategy] = mapped_column(
        Enum(RetryStrategy), default=RetryStrategy.STANDARD, nullable=False
    )
    # Number of aggressive requeues that preceded this entry
    retry_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_attempt_at: Mapped[Optional[datetime]] = mapped_column(DateTime)
    last_error: Mapped[Optional[str]] = mapped_column(Text)

    # Relationships
    condition: Mapped["MessageCondition"] = relationship(
        back_populates="schedule_entries"
    )

    # Constraints
    __table_args__ = (
        Index("idx_sched_status_scheduled_at", "status", "scheduled_at"),
        Index("idx_sched_message_condition", "message_id", "condition_id"),
        Index("idx_sched_status_last_attempt", "status", "last_attempt_at"),
    )


class DeliveryRecord(Base, AuditMixin):
    """Successful final delivery of a message to its recipients"""

    __tablename__ = "delivery_records"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    message_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    condition_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    delivered_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    source: Mapped[DeliverySource] = mapped_column(
        Enum(DeliverySource), nullable=False
    )
    recipient_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    schedule_entry_id: Mapped[Optional[uuid.UUID]] = mapped_column(Uuid)
    note: Mapped[Optional[str]] = mapped_column(String(255))

    __table_args__ = (
        Index("idx_delivery_message_delivered", "message_id", "delivered_at"),
    )
