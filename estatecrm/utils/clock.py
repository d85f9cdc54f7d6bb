"""Time helpers shared by use cases and background jobs."""
from datetime import date, datetime, time, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from estatecrm.domain.errors import ValidationError


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def validate_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationError(f"Unknown timezone: {name}") from None
    return name


def local_midnight(d: date, tz_name: str) -> datetime:
    """Aware instant of 00:00 on `d` in the given zone."""
    return datetime.combine(d, time.min, tzinfo=ZoneInfo(tz_name))
