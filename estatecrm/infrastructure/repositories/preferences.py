"""NotificationPreference store: read by recipient + category, upsert from the settings page."""
from datetime import datetime, time
from sqlalchemy.orm import Session

from estatecrm.domain.notification import Category, FrequencyMode, Preference, QuietHours
from estatecrm.infrastructure.db.models import NotificationPreferenceModel


def to_preference(row: NotificationPreferenceModel) -> Preference:
    quiet = None
    if row.quiet_hours_start is not None and row.quiet_hours_end is not None:
        quiet = QuietHours(
            start=row.quiet_hours_start,
            end=row.quiet_hours_end,
            enabled=bool(row.quiet_hours_enabled),
            timezone=row.timezone or "UTC",
        )
    return Preference(
        user_id=row.user_id,
        category=Category(row.category),
        email=bool(row.email_enabled),
        sms=bool(row.sms_enabled),
        inapp=bool(row.inapp_enabled),
        frequency=FrequencyMode(row.frequency),
        quiet_hours=quiet,
        timezone=row.timezone or "UTC",
    )


class PreferenceRepository:
    def __init__(self, db: Session):
        self.db = db

    def get_row(self, user_id: int, category: Category) -> NotificationPreferenceModel | None:
        return (
            self.db.query(NotificationPreferenceModel)
            .filter_by(user_id=user_id, category=category.value)
            .first()
        )

    def get(self, user_id: int, category: Category) -> Preference:
        """Stored preference, or the defaults (all channels on, immediate, no quiet hours)."""
        row = self.get_row(user_id, category)
        if row is None:
            return Preference(user_id=user_id, category=category)
        return to_preference(row)

    def upsert(
        self,
        user_id: int,
        category: Category,
        now: datetime,
        email: bool | None = None,
        sms: bool | None = None,
        inapp: bool | None = None,
        frequency: FrequencyMode | None = None,
        quiet_hours_start: time | None = None,
        quiet_hours_end: time | None = None,
        quiet_hours_enabled: bool | None = None,
        timezone: str | None = None,
    ) -> NotificationPreferenceModel:
        row = self.get_row(user_id, category)
        if row is None:
            row = NotificationPreferenceModel(user_id=user_id, category=category.value)
            self.db.add(row)
        changes = {
            "email_enabled": email,
            "sms_enabled": sms,
            "inapp_enabled": inapp,
            "frequency": frequency.value if frequency is not None else None,
            "quiet_hours_start": quiet_hours_start,
            "quiet_hours_end": quiet_hours_end,
            "quiet_hours_enabled": quiet_hours_enabled,
            "timezone": timezone,
        }
        for key, value in changes.items():
            if value is not None:
                setattr(row, key, value)
        if row.frequency is None:
            row.frequency = FrequencyMode.IMMEDIATE.value
        if row.timezone is None:
            row.timezone = "UTC"
        row.updated_at = now
        self.db.flush()
        return row
