"""create users, clients, stage history, appointments, recurrence, deadlines and notification tables

Revision ID: 3f9a1c2e7b40
Revises:
Create Date: 2026-10-19

"""
from alembic import op
import sqlalchemy as sa

revision = "3f9a1c2e7b40"
down_revision = None
branch_labels = None
depends_on = None


def _ts(name: str, nullable: bool = False, default: bool = False) -> sa.Column:
    if default:
        return sa.Column(name, sa.TIMESTAMP(timezone=True), nullable=nullable, server_default=sa.text("now()"))
    return sa.Column(name, sa.TIMESTAMP(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("email", sa.String(255), nullable=False, unique=True),
        sa.Column("name", sa.String(255), nullable=True),
        sa.Column("phone_number", sa.String(32), nullable=True),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        _ts("created_at", default=True),
    )

    # clients: only the stage-tracking columns are owned here
    op.create_table(
        "clients",
        sa.Column("id", sa.Integer, primary_key=True),
        sa.Column("name", sa.String(255), nullable=False),
        sa.Column("email", sa.String(255), nullable=True),
        sa.Column("assigned_agent_id", sa.Integer, nullable=True, index=True),
        sa.Column("stage", sa.String(16), nullable=False, server_default="Lead"),
        sa.Column("previous_stage", sa.String(16), nullable=True),
        _ts("stage_changed_at", nullable=True),
        _ts("stage_deadline", nullable=True),
        sa.Column("stage_notes", sa.Text, nullable=True),
        _ts("created_at", default=True),
        _ts("updated_at", default=True),
    )

    op.create_table(
        "client_stage_history",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("client_id", sa.Integer,
                  sa.ForeignKey("clients.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("from_stage", sa.String(16), nullable=True),
        sa.Column("to_stage", sa.String(16), nullable=False),
        sa.Column("changed_by", sa.Integer, nullable=True),
        _ts("changed_at"),
        sa.Column("notes", sa.Text, nullable=True),
        _ts("deadline", nullable=True),
        sa.Column("is_regression", sa.Boolean, nullable=False, server_default="false"),
    )
    op.create_index("ix_client_stage_history_changed_at", "client_stage_history", ["changed_at"])

    op.create_table(
        "appointments",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("description", sa.Text, nullable=True),
        sa.Column("location", sa.String(255), nullable=True),
        _ts("start_at"),
        _ts("end_at"),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        sa.Column("type", sa.String(16), nullable=False, server_default="Meeting"),
        sa.Column("status", sa.String(16), nullable=False, server_default="Scheduled"),
        sa.Column("client_id", sa.Integer, nullable=True, index=True),
        sa.Column("parent_appointment_id", sa.Integer,
                  sa.ForeignKey("appointments.id", ondelete="CASCADE"), nullable=True, index=True),
        sa.Column("occurrence_index", sa.Integer, nullable=True),
        sa.Column("created_by", sa.Integer, nullable=False, index=True),
        _ts("created_at", default=True),
        _ts("updated_at", default=True),
        sa.CheckConstraint("end_at > start_at", name="ck_appointments_end_after_start"),
    )
    op.create_index(
        "ix_appointments_owner_range",
        "appointments",
        ["created_by", "start_at", "end_at"],
    )

    op.create_table(
        "recurrence_rules",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("appointment_id", sa.Integer,
                  sa.ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, unique=True),
        sa.Column("frequency", sa.String(16), nullable=False),
        sa.Column("interval", sa.Integer, nullable=False, server_default="1"),
        sa.Column("weekdays", sa.String(32), nullable=True),
        sa.Column("end_date", sa.Date, nullable=True),
        sa.Column("max_count", sa.Integer, nullable=True),
        _ts("created_at", default=True),
        sa.CheckConstraint("end_date IS NULL OR max_count IS NULL", name="ck_recurrence_single_termination"),
    )

    # recurrence_exceptions: sequence indexes removed from a series (detached or cancelled)
    op.create_table(
        "recurrence_exceptions",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("appointment_id", sa.Integer,
                  sa.ForeignKey("appointments.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("sequence_index", sa.Integer, nullable=False),
        sa.Column("kind", sa.String(16), nullable=False),
        sa.Column("detached_appointment_id", sa.Integer, nullable=True),
        _ts("created_at", default=True),
        sa.UniqueConstraint("appointment_id", "sequence_index", name="uq_recurrence_exception"),
    )

    op.create_table(
        "deadlines",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("owner_type", sa.String(32), nullable=False),
        sa.Column("owner_id", sa.Integer, nullable=False),
        sa.Column("stage", sa.String(16), nullable=True),
        sa.Column("title", sa.String(255), nullable=False),
        _ts("due_at"),
        sa.Column("recipient_user_id", sa.Integer, nullable=True, index=True),
        sa.Column("last_notified_tier", sa.String(16), nullable=True),
        _ts("last_notified_at", nullable=True),
        _ts("cleared_at", nullable=True),
        sa.Column("clear_reason", sa.String(32), nullable=True),
        sa.Column("created_by", sa.Integer, nullable=True),
        _ts("created_at", default=True),
    )
    op.create_index("ix_deadlines_due_at", "deadlines", ["due_at"])
    op.create_index("ix_deadlines_owner", "deadlines", ["owner_type", "owner_id"])
    op.create_index("ix_deadlines_open", "deadlines", ["cleared_at", "due_at"])

    op.create_table(
        "notification_preferences",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, nullable=False, index=True),
        sa.Column("category", sa.String(32), nullable=False),
        sa.Column("email_enabled", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("sms_enabled", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("inapp_enabled", sa.Boolean, nullable=False, server_default="true"),
        sa.Column("frequency", sa.String(16), nullable=False, server_default="immediate"),
        sa.Column("quiet_hours_start", sa.Time, nullable=True),
        sa.Column("quiet_hours_end", sa.Time, nullable=True),
        sa.Column("quiet_hours_enabled", sa.Boolean, nullable=False, server_default="false"),
        sa.Column("timezone", sa.String(64), nullable=False, server_default="UTC"),
        _ts("updated_at", default=True),
        sa.UniqueConstraint("user_id", "category", name="uq_notification_pref_user_category"),
    )

    # notifications: one per deadline and tier (the unique key backs the at-most-once claim)
    op.create_table(
        "notifications",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("user_id", sa.Integer, nullable=False, index=True),
        sa.Column("category", sa.String(32), nullable=False),
        sa.Column("deadline_id", sa.Integer, nullable=True, index=True),
        sa.Column("tier", sa.String(16), nullable=True),
        sa.Column("severity", sa.String(16), nullable=False, server_default="info"),
        sa.Column("title", sa.String(255), nullable=False),
        sa.Column("body", sa.Text, nullable=False),
        sa.Column("is_read", sa.Boolean, nullable=False, server_default="false"),
        _ts("created_at"),
        sa.UniqueConstraint("deadline_id", "tier", name="uq_notification_deadline_tier"),
    )

    op.create_table(
        "notification_deliveries",
        sa.Column("id", sa.Integer, primary_key=True, autoincrement=True),
        sa.Column("notification_id", sa.Integer,
                  sa.ForeignKey("notifications.id", ondelete="CASCADE"), nullable=False, index=True),
        sa.Column("channel", sa.String(16), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer, nullable=False, server_default="0"),
        _ts("sent_at", nullable=True),
        sa.Column("error", sa.Text, nullable=True),
        sa.UniqueConstraint("notification_id", "channel", name="uq_delivery_channel"),
    )


def downgrade() -> None:
    op.drop_table("notification_deliveries")
    op.drop_table("notifications")
    op.drop_table("notification_preferences")
    op.drop_index("ix_deadlines_open", table_name="deadlines")
    op.drop_index("ix_deadlines_owner", table_name="deadlines")
    op.drop_index("ix_deadlines_due_at", table_name="deadlines")
    op.drop_table("deadlines")
    op.drop_table("recurrence_exceptions")
    op.drop_table("recurrence_rules")
    op.drop_index("ix_appointments_owner_range", table_name="appointments")
    op.drop_table("appointments")
    op.drop_index("ix_client_stage_history_changed_at", table_name="client_stage_history")
    op.drop_table("client_stage_history")
    op.drop_table("clients")
    op.drop_table("users")
