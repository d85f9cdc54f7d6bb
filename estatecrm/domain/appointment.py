"""Appointment vocabulary: closed type/status sets and field validation."""
import enum
from datetime import datetime

from estatecrm.domain.errors import ValidationError


class AppointmentType(str, enum.Enum):
    SHOWING = "Showing"
    MEETING = "Meeting"
    CALL = "Call"
    DEADLINE = "Deadline"


class AppointmentStatus(str, enum.Enum):
    SCHEDULED = "Scheduled"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"

    @property
    def is_terminal(self) -> bool:
        return self is not AppointmentStatus.SCHEDULED


TITLE_MAX = 255
DESCRIPTION_MAX = 1000
LOCATION_MAX = 255


def ensure_aware(value: datetime, field: str) -> datetime:
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValidationError(f"{field} must be timezone-aware")
    return value


def validate_time_range(start: datetime, end: datetime) -> None:
    ensure_aware(start, "start")
    ensure_aware(end, "end")
    if end <= start:
        raise ValidationError("End time must be after start time")


def validate_appointment_fields(
    title: str,
    start: datetime,
    end: datetime,
    description: str | None = None,
    location: str | None = None,
) -> str:
    """Validate create/update input. Returns the normalized title."""
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title is required")
    if len(title) > TITLE_MAX:
        raise ValidationError(f"Title must be less than {TITLE_MAX} characters")
    if description is not None and len(description) > DESCRIPTION_MAX:
        raise ValidationError(f"Description must be less than {DESCRIPTION_MAX} characters")
    if location is not None and len(location) > LOCATION_MAX:
        raise ValidationError(f"Location must be less than {LOCATION_MAX} characters")
    validate_time_range(start, end)
    return title


def validate_status_change(current: AppointmentStatus, target: AppointmentStatus) -> None:
    """Terminal states do not revert; Scheduled may move to either terminal state."""
    if current == target:
        raise ValidationError(f"Appointment is already {current.value}")
    if current.is_terminal:
        raise ValidationError(f"{current.value} appointments cannot change status")


def resource_key(created_by: int) -> str:
    """Conflict resource: the owning agent's calendar."""
    return f"agent:{created_by}"
