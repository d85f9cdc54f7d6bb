"""
Reschedule coordinator: the only path that changes an appointment's start/end.

move() validates the target slot against the agent's calendar and commits
atomically. Duration is preserved in absolute time. Moving an occurrence of a
recurring series detaches it: the series gets a 'detached' exception for that
sequence index and the occurrence becomes its own appointment row; the rest
of the series is untouched.

The conflict check and the commit run under a window lock covering both the
old and the new interval, so two overlapping moves on the same calendar can
never both succeed into a conflicting state.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from estatecrm.application.conflicts import ConflictIndexRegistry
from estatecrm.application.deadlines import sync_appointment_deadline
from estatecrm.domain.appointment import (
    AppointmentStatus, ensure_aware, validate_time_range,
)
from estatecrm.domain.errors import ConflictError, NotFoundError, ValidationError
from estatecrm.domain.recurrence import occurrence_at
from estatecrm.infrastructure.db.models import AppointmentModel
from estatecrm.infrastructure.repositories.appointments import AppointmentRepository
from estatecrm.utils.clock import utcnow

logger = logging.getLogger(__name__)

MAX_LOCK_ATTEMPTS = 3


@dataclass
class MoveCommand:
    appointment_id: int
    new_start: datetime
    sequence_index: int | None = None  # required for occurrences of a recurring series
    allow_backfill: bool = False


@dataclass
class MovePreview:
    appointment_id: int
    sequence_index: int | None
    old_start: datetime
    old_end: datetime
    new_start: datetime
    new_end: datetime
    conflicting_ids: list[int] = field(default_factory=list)
    detaches: bool = False

    @property
    def ok(self) -> bool:
        return not self.conflicting_ids


@dataclass
class MoveResult:
    appointment: AppointmentModel
    detached_from: int | None = None
    sequence_index: int | None = None


class RescheduleCoordinator:
    def __init__(self, db: Session, registry: ConflictIndexRegistry, clock=utcnow):
        self.db = db
        self.registry = registry
        self.clock = clock
        self.repo = AppointmentRepository(db)

    def _resolve(self, cmd: MoveCommand, now: datetime, reload: bool = False):
        """Load and validate; returns (appointment, detaches, old_start, old_end, new_end)."""
        ensure_aware(cmd.new_start, "new_start")
        if reload:
            appt = self.repo.reload(cmd.appointment_id)
        else:
            appt = self.repo.get(cmd.appointment_id)
        if appt is None:
            raise NotFoundError("Appointment", cmd.appointment_id)
        status = AppointmentStatus(appt.status)
        if status.is_terminal:
            raise ValidationError(f"{status.value} appointments cannot be rescheduled")

        rule = self.repo.get_rule(appt.id)
        if rule is None:
            if cmd.sequence_index is not None:
                raise ValidationError("sequence_index is only valid for recurring appointments")
            old_start, old_end = appt.start_at, appt.end_at
        else:
            if cmd.sequence_index is None:
                raise ValidationError("Recurring appointments are moved one occurrence at a time")
            if cmd.sequence_index in self.repo.get_exceptions(appt.id):
                raise NotFoundError("Occurrence", f"{appt.id}:{cmd.sequence_index}")
            occ = occurrence_at(appt, rule, cmd.sequence_index, self.registry.safety_limit)
            if occ is None:
                raise NotFoundError("Occurrence", f"{appt.id}:{cmd.sequence_index}")
            old_start, old_end = occ.start, occ.end

        if cmd.new_start < now and not cmd.allow_backfill:
            raise ValidationError("Cannot move an appointment into the past")
        new_end = cmd.new_start + (old_end - old_start)
        validate_time_range(cmd.new_start, new_end)
        return appt, rule is not None, old_start, old_end, new_end

    def _conflicts(self, appt: AppointmentModel, cmd: MoveCommand, detaches: bool, new_end: datetime) -> list[int]:
        if detaches:
            return self.registry.find_conflicts(
                self.db, appt.created_by, cmd.new_start, new_end,
                exclude_occurrence=(appt.id, cmd.sequence_index),
            )
        return self.registry.find_conflicts(
            self.db, appt.created_by, cmd.new_start, new_end, exclude_id=appt.id,
        )

    def preview(self, cmd: MoveCommand) -> MovePreview:
        """Validate a move and report conflicts without changing anything."""
        now = self.clock()
        appt, detaches, old_start, old_end, new_end = self._resolve(cmd, now)
        return MovePreview(
            appointment_id=appt.id,
            sequence_index=cmd.sequence_index,
            old_start=old_start,
            old_end=old_end,
            new_start=cmd.new_start,
            new_end=new_end,
            conflicting_ids=self._conflicts(appt, cmd, detaches, new_end),
            detaches=detaches,
        )

    def move(self, cmd: MoveCommand) -> MoveResult:
        """
        Validate and commit a move.

        The appointment is re-read once the window lock is held, so a status
        change, cancel or detach that committed in the meantime is seen
        before anything is written.

        Raises:
            NotFoundError: unknown appointment or occurrence
            ValidationError: past-dated target, terminal status, bad input
            ConflictError: target overlaps another Scheduled appointment
        """
        now = self.clock()
        appt, _, old_start, old_end, new_end = self._resolve(cmd, now)
        created_by = appt.created_by

        for _ in range(MAX_LOCK_ATTEMPTS):
            lock_start = min(old_start, cmd.new_start)
            lock_end = max(old_end, new_end)
            with self.registry.lock_window(created_by, lock_start, lock_end):
                appt, detaches, old_start, old_end, new_end = self._resolve(cmd, now, reload=True)
                if old_start < lock_start or max(old_end, new_end) > lock_end:
                    # moved by another writer since the first read; lock the new extent
                    continue
                result = self._apply(appt, cmd, detaches, new_end, now)
                index = self.registry.index_for(self.db, created_by)
                index.replace(result.appointment.id, result.appointment.start_at, result.appointment.end_at)
                break
        else:
            raise ConflictError("Appointment is being changed concurrently, try again", [])

        logger.info(
            "Appointment moved: appointment_id=%s sequence_index=%s new_start=%s",
            result.appointment.id, cmd.sequence_index, cmd.new_start.isoformat(),
        )
        return result

    def _apply(self, appt: AppointmentModel, cmd: MoveCommand, detaches: bool, new_end: datetime, now: datetime) -> MoveResult:
        conflicts = self._conflicts(appt, cmd, detaches, new_end)
        if conflicts:
            logger.info(
                "Move of appointment_id=%s rejected: conflicts with %s",
                appt.id, conflicts,
            )
            raise ConflictError(
                f"Time slot conflicts with appointment(s) {', '.join(map(str, conflicts))}",
                conflicts,
            )
        try:
            if detaches:
                result = self._detach(appt, cmd.sequence_index, cmd.new_start, new_end, now)
            else:
                self.repo.update_times(appt, cmd.new_start, new_end, now)
                sync_appointment_deadline(self.db, appt, now)
                result = MoveResult(appointment=appt)
            self.db.commit()
        except IntegrityError:
            # the occurrence got an exception row from another writer
            self.db.rollback()
            raise NotFoundError("Occurrence", f"{appt.id}:{cmd.sequence_index}")
        except Exception:
            self.db.rollback()
            raise
        return result

    def commit(self, cmd: MoveCommand) -> MoveResult:
        """Second phase after preview(); re-validates, since the calendar may have changed."""
        return self.move(cmd)

    def _detach(
        self,
        series: AppointmentModel,
        sequence_index: int,
        start: datetime,
        end: datetime,
        now: datetime,
    ) -> MoveResult:
        detached = AppointmentModel(
            title=series.title,
            description=series.description,
            location=series.location,
            start_at=start,
            end_at=end,
            timezone=series.timezone,
            type=series.type,
            status=AppointmentStatus.SCHEDULED.value,
            client_id=series.client_id,
            parent_appointment_id=series.id,
            occurrence_index=sequence_index,
            created_by=series.created_by,
            created_at=now,
            updated_at=now,
        )
        self.repo.add(detached)
        self.repo.add_exception(series.id, sequence_index, "detached", detached.id)
        sync_appointment_deadline(self.db, detached, now)
        return MoveResult(appointment=detached, detached_from=series.id, sequence_index=sequence_index)
