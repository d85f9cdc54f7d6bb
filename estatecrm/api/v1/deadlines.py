"""
Deadline API endpoints (open deadlines with urgency badge)
"""
from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from estatecrm.api.deps import get_current_user, get_db
from estatecrm.application.deadlines import ListOpenDeadlinesUseCase
from estatecrm.infrastructure.db.models import User
from estatecrm.utils.clock import utcnow


router = APIRouter(prefix="/api/v1/deadlines", tags=["deadlines"])


class DeadlineResponse(BaseModel):
    id: int
    owner_type: str
    owner_id: int
    stage: str | None
    title: str
    due_at: datetime
    tier: str  # Normal / Upcoming / Urgent / Overdue
    severity: str  # info / warn / danger
    last_notified_tier: str | None


@router.get("/", response_model=list[DeadlineResponse])
def list_open_deadlines(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Open deadlines of the current user, soonest first"""
    return [DeadlineResponse(**row) for row in ListOpenDeadlinesUseCase(db).execute(user.id, utcnow())]
