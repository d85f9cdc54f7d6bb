"""
Deadline read side and appointment-owned deadline upkeep.

A Deadline-type appointment owns one open deadline due at its start. The
deadline follows the appointment when it moves and is cleared when the
appointment is completed, cancelled or deleted.
"""
from datetime import datetime

from sqlalchemy.orm import Session

from estatecrm.domain.appointment import AppointmentStatus, AppointmentType
from estatecrm.domain.deadline import BADGE_SEVERITY, DeadlineOwner, classify
from estatecrm.infrastructure.db.models import AppointmentModel, DeadlineModel
from estatecrm.infrastructure.repositories.deadlines import DeadlineRepository


def sync_appointment_deadline(db: Session, appt: AppointmentModel, now: datetime) -> DeadlineModel | None:
    """Bring the appointment's deadline in line with its type, status and start. Flushes only."""
    repo = DeadlineRepository(db)
    if appt.type != AppointmentType.DEADLINE.value:
        return None
    if appt.status != AppointmentStatus.SCHEDULED.value:
        repo.clear_for_owner(DeadlineOwner.APPOINTMENT, appt.id, appt.status.lower(), now)
        return None
    return repo.replace(
        DeadlineOwner.APPOINTMENT,
        appt.id,
        due_at=appt.start_at,
        title=appt.title,
        now=now,
        recipient_user_id=appt.created_by,
        created_by=appt.created_by,
    )


def deadline_badge(deadline: DeadlineModel, now: datetime) -> dict:
    tier = classify(deadline.due_at, now)
    return {
        "id": deadline.id,
        "owner_type": deadline.owner_type,
        "owner_id": deadline.owner_id,
        "stage": deadline.stage,
        "title": deadline.title,
        "due_at": deadline.due_at,
        "tier": tier.value,
        "severity": BADGE_SEVERITY[tier],
        "last_notified_tier": deadline.last_notified_tier,
    }


class ListOpenDeadlinesUseCase:
    def __init__(self, db: Session):
        self.db = db

    def execute(self, recipient_user_id: int, now: datetime) -> list[dict]:
        """Open deadlines of the user, soonest first, each with its tier badge."""
        rows = DeadlineRepository(self.db).list_open(recipient_user_id)
        return [deadline_badge(row, now) for row in rows]
