"""
SQLAlchemy ORM models (scheduling, stage pipeline, deadlines, notifications)
"""
from datetime import date as date_type, datetime, time as time_type, timezone
from sqlalchemy import (
    String, DateTime, Integer, Text, Date, Time, func, Boolean,
    UniqueConstraint, Index, ForeignKey,
)
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from estatecrm.infrastructure.db.session import Base


class UTCDateTime(TypeDecorator):
    """Timezone-aware instant stored as UTC; always read back with tzinfo=UTC."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None or value.utcoffset() is None:
            raise ValueError("naive datetimes are not accepted; pass an aware instant")
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)


class User(Base):
    """Agent account (authentication lives outside this service)"""
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(primary_key=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(32), nullable=True)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, server_default="UTC")

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )


class ClientModel(Base):
    """Client record (only the stage-tracking fields matter here)"""
    __tablename__ = "clients"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    assigned_agent_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    stage: Mapped[str] = mapped_column(String(16), nullable=False, server_default="Lead")  # Lead/Prospect/Client/Closed
    previous_stage: Mapped[str | None] = mapped_column(String(16), nullable=True)
    stage_changed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    stage_deadline: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    stage_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )


class StageHistoryModel(Base):
    """Append-only stage transitions (never updated)"""
    __tablename__ = "client_stage_history"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    client_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True
    )
    from_stage: Mapped[str | None] = mapped_column(String(16), nullable=True)
    to_stage: Mapped[str] = mapped_column(String(16), nullable=False)
    changed_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    changed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    deadline: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    is_regression: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")


class AppointmentModel(Base):
    """Appointments, recurring series anchors and detached occurrences"""
    __tablename__ = "appointments"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    location: Mapped[str | None] = mapped_column(String(255), nullable=True)

    start_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    end_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, server_default="UTC")

    type: Mapped[str] = mapped_column(String(16), nullable=False, server_default="Meeting")  # Showing/Meeting/Call/Deadline
    status: Mapped[str] = mapped_column(String(16), nullable=False, server_default="Scheduled")  # Scheduled/Completed/Cancelled

    client_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)  # -> clients
    parent_appointment_id: Mapped[int | None] = mapped_column(
        Integer, ForeignKey("appointments.id", ondelete="CASCADE"), nullable=True, index=True
    )
    occurrence_index: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_by: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_appointments_owner_range", "created_by", "start_at", "end_at"),
    )


class RecurrenceRuleModel(Base):
    """Recurrence rule of a series anchor (one per appointment)"""
    __tablename__ = "recurrence_rules"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    appointment_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, unique=True
    )
    frequency: Mapped[str] = mapped_column(String(16), nullable=False)  # DAILY/WEEKLY/MONTHLY
    interval: Mapped[int] = mapped_column(Integer, nullable=False, server_default="1")
    weekdays: Mapped[str | None] = mapped_column(String(32), nullable=True)  # "MO,WE,FR"
    end_date: Mapped[date_type | None] = mapped_column(Date, nullable=True)
    max_count: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )


class RecurrenceExceptionModel(Base):
    """Occurrence removed from its series (detached into its own row or cancelled)"""
    __tablename__ = "recurrence_exceptions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    appointment_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sequence_index: Mapped[int] = mapped_column(Integer, nullable=False)
    kind: Mapped[str] = mapped_column(String(16), nullable=False)  # 'detached' | 'cancelled'
    detached_appointment_id: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("appointment_id", "sequence_index", name="uq_recurrence_exception"),
    )


class DeadlineModel(Base):
    """Open or cleared deadline owned by a client stage or a Deadline appointment"""
    __tablename__ = "deadlines"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    owner_type: Mapped[str] = mapped_column(String(32), nullable=False)  # 'client_stage' | 'appointment'
    owner_id: Mapped[int] = mapped_column(Integer, nullable=False)
    stage: Mapped[str | None] = mapped_column(String(16), nullable=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)

    due_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, index=True)
    recipient_user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)

    last_notified_tier: Mapped[str | None] = mapped_column(String(16), nullable=True)
    last_notified_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    cleared_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    clear_reason: Mapped[str | None] = mapped_column(String(32), nullable=True)

    created_by: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        Index("ix_deadlines_owner", "owner_type", "owner_id"),
        Index("ix_deadlines_open", "cleared_at", "due_at"),
    )


class NotificationPreferenceModel(Base):
    """Per user, per category channel flags + quiet hours"""
    __tablename__ = "notification_preferences"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False)  # deadline / appointment_reminder

    email_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    sms_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    inapp_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default="true")
    frequency: Mapped[str] = mapped_column(String(16), nullable=False, server_default="immediate")

    quiet_hours_start: Mapped[time_type | None] = mapped_column(Time, nullable=True)
    quiet_hours_end: Mapped[time_type | None] = mapped_column(Time, nullable=True)
    quiet_hours_enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")
    timezone: Mapped[str] = mapped_column(String(64), nullable=False, server_default="UTC")

    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, server_default=func.now(), nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "category", name="uq_notification_pref_user_category"),
    )


class NotificationModel(Base):
    """One escalation notification (per deadline and tier)"""
    __tablename__ = "notifications"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    category: Mapped[str] = mapped_column(String(32), nullable=False)
    deadline_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    tier: Mapped[str | None] = mapped_column(String(16), nullable=True)

    severity: Mapped[str] = mapped_column(String(16), nullable=False, server_default="info")
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    body: Mapped[str] = mapped_column(Text, nullable=False)
    is_read: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default="false")

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    __table_args__ = (
        UniqueConstraint("deadline_id", "tier", name="uq_notification_deadline_tier"),
    )


class NotificationDelivery(Base):
    """Per-channel delivery status log"""
    __tablename__ = "notification_deliveries"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)
    notification_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False, index=True
    )
    channel: Mapped[str] = mapped_column(String(16), nullable=False)  # email / sms / inapp
    status: Mapped[str] = mapped_column(String(16), nullable=False, server_default="pending")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, server_default="0")
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        UniqueConstraint("notification_id", "channel", name="uq_delivery_channel"),
    )
