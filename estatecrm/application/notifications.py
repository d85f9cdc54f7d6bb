"""
Notification preferences, the in-app notification inbox and retention cleanup.
"""
import logging
from datetime import datetime, time, timedelta

from sqlalchemy.orm import Session

from estatecrm.config import Settings
from estatecrm.domain.errors import NotFoundError, ValidationError
from estatecrm.domain.notification import Category, FrequencyMode, Preference
from estatecrm.infrastructure.db.models import NotificationModel
from estatecrm.infrastructure.repositories.notifications import NotificationRepository
from estatecrm.infrastructure.repositories.preferences import PreferenceRepository
from estatecrm.utils.clock import utcnow, validate_timezone

logger = logging.getLogger(__name__)


def _parse_category(value) -> Category:
    try:
        return Category(value)
    except ValueError:
        raise ValidationError(f"Unknown notification category: {value}") from None


class GetPreferenceUseCase:
    def __init__(self, db: Session):
        self.db = db

    def execute(self, user_id: int, category: Category | str) -> Preference:
        return PreferenceRepository(self.db).get(user_id, _parse_category(category))


class UpdatePreferenceUseCase:
    def __init__(self, db: Session, clock=utcnow):
        self.db = db
        self.clock = clock

    def execute(
        self,
        user_id: int,
        category: Category | str,
        email: bool | None = None,
        sms: bool | None = None,
        inapp: bool | None = None,
        frequency: FrequencyMode | None = None,
        quiet_hours_start: time | None = None,
        quiet_hours_end: time | None = None,
        quiet_hours_enabled: bool | None = None,
        timezone: str | None = None,
    ) -> Preference:
        category = _parse_category(category)
        if (quiet_hours_start is None) != (quiet_hours_end is None):
            raise ValidationError("Quiet hours need both a start and an end time")
        if timezone is not None:
            validate_timezone(timezone)

        repo = PreferenceRepository(self.db)
        row = repo.upsert(
            user_id,
            category,
            now=self.clock(),
            email=email,
            sms=sms,
            inapp=inapp,
            frequency=FrequencyMode(frequency) if frequency is not None else None,
            quiet_hours_start=quiet_hours_start,
            quiet_hours_end=quiet_hours_end,
            quiet_hours_enabled=quiet_hours_enabled,
            timezone=timezone,
        )
        if row.quiet_hours_enabled and (row.quiet_hours_start is None or row.quiet_hours_end is None):
            self.db.rollback()
            raise ValidationError("Quiet hours cannot be enabled without a start and an end time")
        self.db.commit()
        return repo.get(user_id, category)


class NotificationInbox:
    def __init__(self, db: Session):
        self.db = db

    def list(self, user_id: int, unread_only: bool = False, limit: int = 50) -> list[tuple[NotificationModel, list]]:
        """Notifications with their per-channel delivery rows, newest first."""
        repo = NotificationRepository(self.db)
        return [(n, repo.deliveries_for(n.id)) for n in repo.list_for_user(user_id, unread_only, limit)]

    def mark_read(self, user_id: int, notification_id: int) -> None:
        notif = self.db.get(NotificationModel, notification_id)
        if notif is None or notif.user_id != user_id:
            raise NotFoundError("Notification", notification_id)
        notif.is_read = True
        self.db.commit()

    def mark_all_read(self, user_id: int) -> int:
        updated = NotificationRepository(self.db).mark_all_read(user_id)
        self.db.commit()
        return updated


def cleanup_notifications(db: Session, settings: Settings, now: datetime | None = None) -> int:
    """
    Delete read notifications older than NOTIFICATION_READ_RETENTION_DAYS and
    any notification older than NOTIFICATION_UNREAD_RETENTION_DAYS.
    Returns the number of notifications removed.
    """
    now = now or utcnow()
    repo = NotificationRepository(db)
    try:
        read = repo.delete_created_before(now - timedelta(days=settings.NOTIFICATION_READ_RETENTION_DAYS), read_only=True)
        unread = repo.delete_created_before(now - timedelta(days=settings.NOTIFICATION_UNREAD_RETENTION_DAYS), read_only=False)
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info("Notification cleanup: removed %d read, %d expired", read, unread)
    return read + unread
