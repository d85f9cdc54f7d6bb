"""
Appointment store: CRUD, range queries, recurrence rules and exceptions.

start/end updates go through update_times(), which only the reschedule
coordinator calls.
"""
from datetime import datetime
from sqlalchemy.orm import Session

from estatecrm.domain.appointment import AppointmentStatus
from estatecrm.domain.recurrence import RecurrenceRule, format_weekdays, rule_from_db
from estatecrm.infrastructure.db.models import (
    AppointmentModel, RecurrenceRuleModel, RecurrenceExceptionModel,
)


class AppointmentRepository:
    def __init__(self, db: Session):
        self.db = db

    # --- reads ---

    def get(self, appointment_id: int) -> AppointmentModel | None:
        return self.db.get(AppointmentModel, appointment_id)

    def reload(self, appointment_id: int) -> AppointmentModel | None:
        """Re-read the row from the database, overwriting loaded state. None if it was deleted."""
        return self.db.get(AppointmentModel, appointment_id, populate_existing=True)

    def list_in_range(
        self,
        created_by: int,
        start: datetime,
        end: datetime,
        include_cancelled: bool = False,
    ) -> list[AppointmentModel]:
        """Non-recurring appointments of an agent overlapping [start, end)."""
        query = (
            self.db.query(AppointmentModel)
            .outerjoin(RecurrenceRuleModel, RecurrenceRuleModel.appointment_id == AppointmentModel.id)
            .filter(
                AppointmentModel.created_by == created_by,
                RecurrenceRuleModel.id.is_(None),
                AppointmentModel.start_at < end,
                AppointmentModel.end_at > start,
            )
        )
        if not include_cancelled:
            query = query.filter(AppointmentModel.status != AppointmentStatus.CANCELLED.value)
        return query.order_by(AppointmentModel.start_at.asc(), AppointmentModel.id.asc()).all()

    def list_scheduled_concrete(self, created_by: int) -> list[AppointmentModel]:
        """Scheduled, non-recurring appointments of an agent (conflict index seed)."""
        return (
            self.db.query(AppointmentModel)
            .outerjoin(RecurrenceRuleModel, RecurrenceRuleModel.appointment_id == AppointmentModel.id)
            .filter(
                AppointmentModel.created_by == created_by,
                AppointmentModel.status == AppointmentStatus.SCHEDULED.value,
                RecurrenceRuleModel.id.is_(None),
            )
            .all()
        )

    def list_series(self, created_by: int, scheduled_only: bool = True) -> list[tuple[AppointmentModel, RecurrenceRuleModel]]:
        """Recurring anchors with their rule rows. Cancelled series are never returned."""
        query = (
            self.db.query(AppointmentModel, RecurrenceRuleModel)
            .join(RecurrenceRuleModel, RecurrenceRuleModel.appointment_id == AppointmentModel.id)
            .filter(AppointmentModel.created_by == created_by)
        )
        if scheduled_only:
            query = query.filter(AppointmentModel.status == AppointmentStatus.SCHEDULED.value)
        else:
            query = query.filter(AppointmentModel.status != AppointmentStatus.CANCELLED.value)
        return query.order_by(AppointmentModel.id.asc()).all()

    def get_rule(self, appointment_id: int) -> RecurrenceRule | None:
        row = (
            self.db.query(RecurrenceRuleModel)
            .filter(RecurrenceRuleModel.appointment_id == appointment_id)
            .first()
        )
        return rule_from_db(row) if row else None

    def get_exceptions(self, appointment_id: int) -> frozenset[int]:
        rows = (
            self.db.query(RecurrenceExceptionModel.sequence_index)
            .filter(RecurrenceExceptionModel.appointment_id == appointment_id)
            .all()
        )
        return frozenset(r.sequence_index for r in rows)

    def list_detached(self, parent_id: int) -> list[AppointmentModel]:
        return (
            self.db.query(AppointmentModel)
            .filter(AppointmentModel.parent_appointment_id == parent_id)
            .all()
        )

    # --- writes ---

    def add(self, appt: AppointmentModel, rule: RecurrenceRule | None = None) -> AppointmentModel:
        self.db.add(appt)
        self.db.flush()
        if rule is not None:
            self.db.add(RecurrenceRuleModel(
                appointment_id=appt.id,
                frequency=rule.frequency.value,
                interval=rule.interval,
                weekdays=format_weekdays(rule.weekdays),
                end_date=rule.end_date,
                max_count=rule.max_count,
            ))
            self.db.flush()
        return appt

    def add_exception(
        self,
        appointment_id: int,
        sequence_index: int,
        kind: str,
        detached_appointment_id: int | None = None,
    ) -> RecurrenceExceptionModel:
        row = RecurrenceExceptionModel(
            appointment_id=appointment_id,
            sequence_index=sequence_index,
            kind=kind,
            detached_appointment_id=detached_appointment_id,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def update_times(self, appt: AppointmentModel, start: datetime, end: datetime, now: datetime) -> None:
        appt.start_at = start
        appt.end_at = end
        appt.updated_at = now
        self.db.flush()

    def set_status(self, appt: AppointmentModel, status: AppointmentStatus, now: datetime) -> None:
        appt.status = status.value
        appt.updated_at = now
        self.db.flush()

    def delete(self, appt: AppointmentModel) -> list[int]:
        """Hard delete with its detached occurrences, rule and exceptions. Returns removed ids."""
        children = self.list_detached(appt.id)
        removed = [c.id for c in children] + [appt.id]
        # a deleted detached occurrence keeps its exception row, so it does not reappear in the series
        self.db.query(RecurrenceExceptionModel).filter(
            RecurrenceExceptionModel.appointment_id == appt.id
        ).delete(synchronize_session=False)
        self.db.query(RecurrenceRuleModel).filter(
            RecurrenceRuleModel.appointment_id == appt.id
        ).delete(synchronize_session=False)
        for child in children:
            self.db.delete(child)
        self.db.delete(appt)
        self.db.flush()
        return removed
