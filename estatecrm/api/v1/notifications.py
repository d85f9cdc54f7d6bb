"""
Notification API endpoints: preferences and the in-app inbox with delivery log
"""
from datetime import datetime, time

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from estatecrm.api.deps import get_current_user, get_db
from estatecrm.application.notifications import (
    GetPreferenceUseCase, NotificationInbox, UpdatePreferenceUseCase,
)
from estatecrm.domain.notification import Category, FrequencyMode, Preference
from estatecrm.infrastructure.db.models import User


router = APIRouter(prefix="/api/v1/notifications", tags=["notifications"])


# === Request/Response models ===

class PreferenceResponse(BaseModel):
    category: Category
    email: bool
    sms: bool
    inapp: bool
    frequency: FrequencyMode
    quiet_hours_start: time | None
    quiet_hours_end: time | None
    quiet_hours_enabled: bool
    timezone: str


class MarkAllReadResponse(BaseModel):
    updated: int


class UpdatePreferenceRequest(BaseModel):
    email: bool | None = None
    sms: bool | None = None
    inapp: bool | None = None
    frequency: FrequencyMode | None = None
    quiet_hours_start: time | None = None
    quiet_hours_end: time | None = None
    quiet_hours_enabled: bool | None = None
    timezone: str | None = None


class DeliveryResponse(BaseModel):
    channel: str
    status: str
    attempts: int
    sent_at: datetime | None
    error: str | None


class NotificationResponse(BaseModel):
    id: int
    category: str
    deadline_id: int | None
    tier: str | None
    severity: str
    title: str
    body: str
    is_read: bool
    created_at: datetime
    deliveries: list[DeliveryResponse]


def _preference_response(pref: Preference) -> PreferenceResponse:
    quiet = pref.quiet_hours
    return PreferenceResponse(
        category=pref.category,
        email=pref.email,
        sms=pref.sms,
        inapp=pref.inapp,
        frequency=pref.frequency,
        quiet_hours_start=quiet.start if quiet else None,
        quiet_hours_end=quiet.end if quiet else None,
        quiet_hours_enabled=bool(quiet and quiet.enabled),
        timezone=pref.timezone,
    )


# === Endpoints ===

@router.get("/", response_model=list[NotificationResponse])
def list_notifications(
    unread_only: bool = False,
    limit: int = 50,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """In-app notifications, newest first, with per-channel delivery status"""
    return [
        NotificationResponse(
            id=n.id,
            category=n.category,
            deadline_id=n.deadline_id,
            tier=n.tier,
            severity=n.severity,
            title=n.title,
            body=n.body,
            is_read=n.is_read,
            created_at=n.created_at,
            deliveries=[
                DeliveryResponse(
                    channel=d.channel,
                    status=d.status,
                    attempts=d.attempts,
                    sent_at=d.sent_at,
                    error=d.error,
                )
                for d in deliveries
            ],
        )
        for n, deliveries in NotificationInbox(db).list(user.id, unread_only, limit)
    ]


@router.post("/read-all", response_model=MarkAllReadResponse)
def mark_all_read(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return MarkAllReadResponse(updated=NotificationInbox(db).mark_all_read(user.id))


@router.post("/{notification_id}/read", status_code=204)
def mark_read(
    notification_id: int,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    NotificationInbox(db).mark_read(user.id, notification_id)


@router.get("/preferences/{category}", response_model=PreferenceResponse)
def get_preference(
    category: Category,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return _preference_response(GetPreferenceUseCase(db).execute(user.id, category))


@router.put("/preferences/{category}", response_model=PreferenceResponse)
def update_preference(
    category: Category,
    req: UpdatePreferenceRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Partial update: omitted fields keep their stored value"""
    pref = UpdatePreferenceUseCase(db).execute(user.id, category, **req.model_dump())
    return _preference_response(pref)
