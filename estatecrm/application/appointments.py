"""
Appointment use cases: create, read, status changes, occurrence cancel, delete.

Start/end changes of existing appointments go through RescheduleCoordinator.
"""
import logging
from datetime import datetime, timedelta
from types import SimpleNamespace
from zoneinfo import ZoneInfo

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from estatecrm.application.conflicts import ConflictIndexRegistry, lock_extent
from estatecrm.application.deadlines import sync_appointment_deadline
from estatecrm.domain.appointment import (
    AppointmentStatus, AppointmentType, validate_appointment_fields, validate_status_change,
)
from estatecrm.domain.deadline import DeadlineOwner
from estatecrm.domain.errors import ConflictError, NotFoundError, ValidationError
from estatecrm.domain.recurrence import RecurrenceRule, expand, occurrence_at
from estatecrm.infrastructure.db.models import AppointmentModel
from estatecrm.infrastructure.repositories.appointments import AppointmentRepository
from estatecrm.infrastructure.repositories.deadlines import DeadlineRepository
from estatecrm.utils.clock import utcnow, validate_timezone

logger = logging.getLogger(__name__)

# How far ahead a new series is checked against the calendar
SERIES_CHECK_HORIZON = timedelta(days=366)


def get_appointment(db: Session, appointment_id: int, created_by: int | None = None) -> AppointmentModel:
    appt = AppointmentRepository(db).get(appointment_id)
    if appt is None or (created_by is not None and appt.created_by != created_by):
        raise NotFoundError("Appointment", appointment_id)
    return appt


def _conflict_error(conflicts: list[int]) -> ConflictError:
    return ConflictError(
        f"Time slot conflicts with appointment(s) {', '.join(map(str, conflicts))}",
        conflicts,
    )


class CreateAppointmentUseCase:
    def __init__(self, db: Session, registry: ConflictIndexRegistry, clock=utcnow):
        self.db = db
        self.registry = registry
        self.clock = clock

    def execute(
        self,
        created_by: int,
        title: str,
        start_at: datetime,
        end_at: datetime,
        type: AppointmentType = AppointmentType.MEETING,
        timezone: str = "UTC",
        description: str | None = None,
        location: str | None = None,
        client_id: int | None = None,
        recurrence: RecurrenceRule | None = None,
    ) -> AppointmentModel:
        title = validate_appointment_fields(title, start_at, end_at, description, location)
        validate_timezone(timezone)
        type = AppointmentType(type)
        now = self.clock()

        candidate = SimpleNamespace(id=None, start_at=start_at, end_at=end_at, timezone=timezone)
        if recurrence is not None:
            local_start_date = start_at.astimezone(ZoneInfo(timezone)).date()
            if recurrence.end_date is not None and recurrence.end_date <= local_start_date:
                raise ValidationError("Recurrence end date must be after the start date")
            slots = [
                (occ.start, occ.end)
                for occ in expand(candidate, recurrence, start_at, start_at + SERIES_CHECK_HORIZON,
                                  safety_limit=self.registry.safety_limit)
            ]
        else:
            slots = [(start_at, end_at)]

        lock_start = min(s for s, _ in slots)
        lock_end = max(e for _, e in slots)
        with self.registry.lock_window(created_by, lock_start, lock_end):
            conflicts: set[int] = set()
            for slot_start, slot_end in slots:
                conflicts.update(self.registry.find_conflicts(self.db, created_by, slot_start, slot_end))
            if conflicts:
                raise _conflict_error(sorted(conflicts))

            appt = AppointmentModel(
                title=title,
                description=description,
                location=location,
                start_at=start_at,
                end_at=end_at,
                timezone=timezone,
                type=type.value,
                status=AppointmentStatus.SCHEDULED.value,
                client_id=client_id,
                created_by=created_by,
                created_at=now,
                updated_at=now,
            )
            try:
                AppointmentRepository(self.db).add(appt, recurrence)
                sync_appointment_deadline(self.db, appt, now)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise

            if recurrence is None:
                self.registry.index_for(self.db, created_by).insert(appt.id, appt.start_at, appt.end_at)

        logger.info(
            "Appointment created: appointment_id=%s created_by=%s recurring=%s",
            appt.id, created_by, recurrence is not None,
        )
        return appt


class SetAppointmentStatusUseCase:
    """Complete or cancel an appointment (whole series for a recurring anchor)."""

    def __init__(self, db: Session, registry: ConflictIndexRegistry, clock=utcnow):
        self.db = db
        self.registry = registry
        self.clock = clock

    def execute(self, appointment_id: int, status: AppointmentStatus, created_by: int | None = None) -> AppointmentModel:
        appt = get_appointment(self.db, appointment_id, created_by)
        target = AppointmentStatus(status)
        repo = AppointmentRepository(self.db)
        lock_start, lock_end = lock_extent(appt, repo.get_rule(appt.id) is not None)

        with self.registry.lock_window(appt.created_by, lock_start, lock_end):
            appt = repo.reload(appointment_id)
            if appt is None:
                raise NotFoundError("Appointment", appointment_id)
            validate_status_change(AppointmentStatus(appt.status), target)
            now = self.clock()
            try:
                repo.set_status(appt, target, now)
                sync_appointment_deadline(self.db, appt, now)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            self.registry.index_for(self.db, appt.created_by).remove(appt.id)
        logger.info("Appointment status changed: appointment_id=%s status=%s", appt.id, target.value)
        return appt


class CancelOccurrenceUseCase:
    """Cancel one occurrence of a recurring series; the rest of the series stays."""

    def __init__(self, db: Session, registry: ConflictIndexRegistry):
        self.db = db
        self.registry = registry

    def execute(self, appointment_id: int, sequence_index: int, created_by: int | None = None) -> None:
        appt = get_appointment(self.db, appointment_id, created_by)
        repo = AppointmentRepository(self.db)
        rule = repo.get_rule(appt.id)
        if rule is None:
            raise ValidationError("Only occurrences of recurring appointments can be cancelled individually")
        occ = occurrence_at(appt, rule, sequence_index, self.registry.safety_limit)
        if occ is None:
            raise NotFoundError("Occurrence", f"{appt.id}:{sequence_index}")

        with self.registry.lock_window(appt.created_by, occ.start, occ.end):
            appt = repo.reload(appointment_id)
            if appt is None or sequence_index in repo.get_exceptions(appointment_id):
                raise NotFoundError("Occurrence", f"{appointment_id}:{sequence_index}")
            try:
                repo.add_exception(appt.id, sequence_index, "cancelled")
                self.db.commit()
            except IntegrityError:
                self.db.rollback()
                raise NotFoundError("Occurrence", f"{appointment_id}:{sequence_index}")
            except Exception:
                self.db.rollback()
                raise


class DeleteAppointmentUseCase:
    """Hard delete; cascades to detached occurrences and their deadlines."""

    def __init__(self, db: Session, registry: ConflictIndexRegistry, clock=utcnow):
        self.db = db
        self.registry = registry
        self.clock = clock

    def execute(self, appointment_id: int, created_by: int | None = None) -> list[int]:
        appt = get_appointment(self.db, appointment_id, created_by)
        owner = appt.created_by
        repo = AppointmentRepository(self.db)
        deadlines = DeadlineRepository(self.db)
        lock_start, lock_end = lock_extent(appt, repo.get_rule(appt.id) is not None)

        with self.registry.lock_window(owner, lock_start, lock_end):
            appt = repo.reload(appointment_id)
            if appt is None:
                raise NotFoundError("Appointment", appointment_id)
            now = self.clock()
            try:
                for child in [appt, *repo.list_detached(appt.id)]:
                    deadlines.clear_for_owner(DeadlineOwner.APPOINTMENT, child.id, "deleted", now)
                removed = repo.delete(appt)
                self.db.commit()
            except Exception:
                self.db.rollback()
                raise
            index = self.registry.index_for(self.db, owner)
            for removed_id in removed:
                index.remove(removed_id)
        logger.info("Appointment deleted: appointment_id=%s removed=%s", appointment_id, removed)
        return removed


class ListAppointmentsUseCase:
    def __init__(self, db: Session):
        self.db = db

    def execute(self, created_by: int, start: datetime, end: datetime, include_cancelled: bool = False) -> list[AppointmentModel]:
        """Concrete appointments in [start, end); series occurrences come from CalendarQuery."""
        if end <= start:
            raise ValidationError("Range end must be after range start")
        return AppointmentRepository(self.db).list_in_range(created_by, start, end, include_cancelled)
