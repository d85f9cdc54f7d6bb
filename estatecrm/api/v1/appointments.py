"""
Appointment API endpoints
"""
from datetime import date, datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.orm import Session

from estatecrm.api.deps import get_current_user, get_db, get_registry
from estatecrm.application.appointments import (
    CancelOccurrenceUseCase, CreateAppointmentUseCase, DeleteAppointmentUseCase,
    ListAppointmentsUseCase, SetAppointmentStatusUseCase, get_appointment,
)
from estatecrm.application.conflicts import ConflictIndexRegistry
from estatecrm.application.reschedule import MoveCommand, RescheduleCoordinator
from estatecrm.domain.appointment import AppointmentStatus, AppointmentType
from estatecrm.domain.recurrence import Frequency, RecurrenceRule, parse_weekdays
from estatecrm.infrastructure.db.models import AppointmentModel, User
from estatecrm.infrastructure.repositories.appointments import AppointmentRepository


router = APIRouter(prefix="/api/v1/appointments", tags=["appointments"])


# === Request/Response models ===

class RecurrenceIn(BaseModel):
    frequency: Frequency
    interval: int = 1
    weekdays: list[int] | str | None = None  # [0, 2] or "MO,WE"
    end_date: date | None = None
    max_count: int | None = None

    def to_rule(self) -> RecurrenceRule:
        if isinstance(self.weekdays, str):
            weekdays = parse_weekdays(self.weekdays)
        else:
            weekdays = frozenset(self.weekdays) if self.weekdays is not None else None
        return RecurrenceRule(
            frequency=self.frequency,
            interval=self.interval,
            weekdays=weekdays,
            end_date=self.end_date,
            max_count=self.max_count,
        )


class CreateAppointmentRequest(BaseModel):
    title: str
    start_at: datetime
    end_at: datetime
    type: AppointmentType = AppointmentType.MEETING
    timezone: str = "UTC"
    description: str | None = None
    location: str | None = None
    client_id: int | None = None
    recurrence: RecurrenceIn | None = None


class MoveRequest(BaseModel):
    new_start: datetime
    sequence_index: int | None = Field(default=None, ge=0)
    allow_backfill: bool = False


class StatusRequest(BaseModel):
    status: AppointmentStatus

    @field_validator("status")
    @classmethod
    def validate_terminal(cls, v: AppointmentStatus) -> AppointmentStatus:
        """Only Completed/Cancelled can be requested"""
        if not v.is_terminal:
            raise ValueError("status must be Completed or Cancelled")
        return v


class AppointmentResponse(BaseModel):
    id: int
    title: str
    description: str | None
    location: str | None
    start_at: datetime
    end_at: datetime
    timezone: str
    type: str
    status: str
    client_id: int | None
    parent_appointment_id: int | None
    occurrence_index: int | None
    created_by: int
    recurrence: dict | None = None
    exceptions: list[int] = []


class MovePreviewResponse(BaseModel):
    appointment_id: int
    sequence_index: int | None
    old_start: datetime
    old_end: datetime
    new_start: datetime
    new_end: datetime
    conflicting_ids: list[int]
    detaches: bool
    ok: bool


class MoveResponse(BaseModel):
    appointment: AppointmentResponse
    detached_from: int | None
    sequence_index: int | None


class DeleteResponse(BaseModel):
    removed_ids: list[int]


# === Helper function ===

def _to_response(db: Session, appt: AppointmentModel) -> AppointmentResponse:
    repo = AppointmentRepository(db)
    rule = repo.get_rule(appt.id)
    return AppointmentResponse(
        id=appt.id,
        title=appt.title,
        description=appt.description,
        location=appt.location,
        start_at=appt.start_at,
        end_at=appt.end_at,
        timezone=appt.timezone,
        type=appt.type,
        status=appt.status,
        client_id=appt.client_id,
        parent_appointment_id=appt.parent_appointment_id,
        occurrence_index=appt.occurrence_index,
        created_by=appt.created_by,
        recurrence=rule.to_dict() if rule else None,
        exceptions=sorted(repo.get_exceptions(appt.id)) if rule else [],
    )


# === Endpoints ===

@router.post("/", response_model=AppointmentResponse, status_code=201)
def create_appointment(
    req: CreateAppointmentRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    registry: ConflictIndexRegistry = Depends(get_registry),
):
    """Create an appointment (optionally recurring); 409 when the slot is taken"""
    appt = CreateAppointmentUseCase(db, registry).execute(
        created_by=user.id,
        title=req.title,
        start_at=req.start_at,
        end_at=req.end_at,
        type=req.type,
        timezone=req.timezone,
        description=req.description,
        location=req.location,
        client_id=req.client_id,
        recurrence=req.recurrence.to_rule() if req.recurrence else None,
    )
    return _to_response(db, appt)


@router.get("/", response_model=list[AppointmentResponse])
def list_appointments(
    start: datetime,
    end: datetime,
    include_cancelled: bool = False,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Concrete appointments overlapping [start, end); use /calendar for series occurrences"""
    rows = ListAppointmentsUseCase(db).execute(user.id, start, end, include_cancelled)
    return [_to_response(db, appt) for appt in rows]


@router.get("/{appointment_id}", response_model=AppointmentResponse)
def get_appointment_detail(
    appointment_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _to_response(db, get_appointment(db, appointment_id, user.id))


@router.post("/{appointment_id}/move/preview", response_model=MovePreviewResponse)
def preview_move(
    appointment_id: int,
    req: MoveRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    registry: ConflictIndexRegistry = Depends(get_registry),
):
    """Report the target slot and its conflicts without changing anything"""
    get_appointment(db, appointment_id, user.id)
    preview = RescheduleCoordinator(db, registry).preview(MoveCommand(
        appointment_id=appointment_id,
        new_start=req.new_start,
        sequence_index=req.sequence_index,
        allow_backfill=req.allow_backfill,
    ))
    return MovePreviewResponse(
        appointment_id=preview.appointment_id,
        sequence_index=preview.sequence_index,
        old_start=preview.old_start,
        old_end=preview.old_end,
        new_start=preview.new_start,
        new_end=preview.new_end,
        conflicting_ids=preview.conflicting_ids,
        detaches=preview.detaches,
        ok=preview.ok,
    )


@router.post("/{appointment_id}/move", response_model=MoveResponse)
def commit_move(
    appointment_id: int,
    req: MoveRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    registry: ConflictIndexRegistry = Depends(get_registry),
):
    """Commit a move; 409 with the conflicting ids when the slot is taken"""
    get_appointment(db, appointment_id, user.id)
    result = RescheduleCoordinator(db, registry).commit(MoveCommand(
        appointment_id=appointment_id,
        new_start=req.new_start,
        sequence_index=req.sequence_index,
        allow_backfill=req.allow_backfill,
    ))
    return MoveResponse(
        appointment=_to_response(db, result.appointment),
        detached_from=result.detached_from,
        sequence_index=result.sequence_index,
    )


@router.post("/{appointment_id}/status", response_model=AppointmentResponse)
def set_status(
    appointment_id: int,
    req: StatusRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    registry: ConflictIndexRegistry = Depends(get_registry),
):
    appt = SetAppointmentStatusUseCase(db, registry).execute(appointment_id, req.status, user.id)
    return _to_response(db, appt)


@router.post("/{appointment_id}/occurrences/{sequence_index}/cancel", status_code=204)
def cancel_occurrence(
    appointment_id: int,
    sequence_index: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    registry: ConflictIndexRegistry = Depends(get_registry),
):
    CancelOccurrenceUseCase(db, registry).execute(appointment_id, sequence_index, user.id)


@router.delete("/{appointment_id}", response_model=DeleteResponse)
def delete_appointment(
    appointment_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    registry: ConflictIndexRegistry = Depends(get_registry),
):
    """Hard delete (cascades to detached occurrences)"""
    removed = DeleteAppointmentUseCase(db, registry).execute(appointment_id, user.id)
    return DeleteResponse(removed_ids=removed)
