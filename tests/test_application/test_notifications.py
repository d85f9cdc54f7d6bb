"""
Tests for notification preferences and the in-app inbox.

Covers:
  - Defaults for a user without stored preferences
  - Partial updates keep earlier values
  - Quiet hours validation (both ends, known timezone)
  - Inbox listing with delivery rows (in-app only), mark-as-read ownership, mark-all-read
  - Retention cleanup of read and expired notifications
"""
from datetime import datetime, time, timedelta, timezone

import pytest

from estatecrm.application.notifications import (
    GetPreferenceUseCase, NotificationInbox, UpdatePreferenceUseCase, cleanup_notifications,
)
from estatecrm.domain.errors import NotFoundError, ValidationError
from estatecrm.domain.notification import Category, Channel, DeliveryStatus, FrequencyMode
from estatecrm.infrastructure.db.models import NotificationDelivery, NotificationModel
from estatecrm.infrastructure.repositories.notifications import NotificationRepository

NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
USER_ID = 1


def _update(db, **kw):
    return UpdatePreferenceUseCase(db, clock=lambda: NOW).execute(USER_ID, Category.DEADLINE, **kw)


class TestPreferences:
    def test_defaults(self, db_session, agent):
        pref = GetPreferenceUseCase(db_session).execute(USER_ID, "deadline")
        assert pref.email and pref.sms and pref.inapp
        assert pref.frequency is FrequencyMode.IMMEDIATE
        assert pref.quiet_hours is None

    def test_partial_update_keeps_other_fields(self, db_session, agent):
        _update(db_session, sms=False)
        pref = _update(db_session, frequency=FrequencyMode.DIGEST)
        assert pref.sms is False
        assert pref.email is True
        assert pref.frequency is FrequencyMode.DIGEST

    def test_quiet_hours(self, db_session, agent):
        pref = _update(
            db_session,
            quiet_hours_start=time(22, 0),
            quiet_hours_end=time(7, 30),
            quiet_hours_enabled=True,
            timezone="Europe/Berlin",
        )
        assert pref.quiet_hours.start == time(22, 0)
        assert pref.quiet_hours.end == time(7, 30)
        assert pref.quiet_hours.timezone == "Europe/Berlin"
        assert pref.quiet_hours.enabled

    def test_quiet_hours_need_both_ends(self, db_session, agent):
        with pytest.raises(ValidationError, match="start and an end"):
            _update(db_session, quiet_hours_start=time(22, 0))

    def test_cannot_enable_without_times(self, db_session, agent):
        with pytest.raises(ValidationError):
            _update(db_session, quiet_hours_enabled=True)

    def test_unknown_timezone(self, db_session, agent):
        with pytest.raises(ValidationError, match="Unknown timezone"):
            _update(db_session, timezone="Nowhere/Town")

    def test_unknown_category(self, db_session, agent):
        with pytest.raises(ValidationError):
            GetPreferenceUseCase(db_session).execute(USER_ID, "marketing")

    def test_categories_are_independent(self, db_session, agent):
        _update(db_session, email=False)
        other = GetPreferenceUseCase(db_session).execute(USER_ID, Category.APPOINTMENT_REMINDER)
        assert other.email is True


def _notify(db, title, user_id=USER_ID, deliveries=None, now=NOW, is_read=False):
    notif = NotificationRepository(db).create(
        user_id=user_id,
        category=Category.DEADLINE.value,
        title=title,
        body=f"{title} body",
        severity="warn",
        now=now,
        deliveries=deliveries or {Channel.INAPP: DeliveryStatus.SENT, Channel.EMAIL: DeliveryStatus.DEFERRED},
    )
    notif.is_read = is_read
    db.commit()
    return notif


class TestInbox:
    def test_list_with_deliveries(self, db_session, agent):
        _notify(db_session, "First")
        items = NotificationInbox(db_session).list(USER_ID)
        assert len(items) == 1
        notif, deliveries = items[0]
        assert notif.title == "First"
        assert [(d.channel, d.status) for d in deliveries] == [("email", "deferred"), ("inapp", "sent")]

    def test_mark_read(self, db_session, agent):
        notif = _notify(db_session, "First")
        inbox = NotificationInbox(db_session)
        inbox.mark_read(USER_ID, notif.id)
        assert inbox.list(USER_ID, unread_only=True) == []
        assert len(inbox.list(USER_ID)) == 1

    def test_cannot_read_someone_elses(self, db_session, agent):
        notif = _notify(db_session, "Private", user_id=2)
        with pytest.raises(NotFoundError):
            NotificationInbox(db_session).mark_read(USER_ID, notif.id)

    def test_inapp_off_keeps_it_out_of_the_inbox(self, db_session, agent):
        _notify(db_session, "Email only", deliveries={Channel.EMAIL: DeliveryStatus.SENT})
        _notify(db_session, "Both")
        assert [n.title for n, _ in NotificationInbox(db_session).list(USER_ID)] == ["Both"]

    def test_mark_all_read(self, db_session, agent):
        _notify(db_session, "First")
        _notify(db_session, "Second")
        _notify(db_session, "Already read", is_read=True)
        _notify(db_session, "Someone else's", user_id=2)
        inbox = NotificationInbox(db_session)
        assert inbox.mark_all_read(USER_ID) == 2
        assert inbox.list(USER_ID, unread_only=True) == []
        db_session.expire_all()
        assert [n.is_read for n, _ in inbox.list(2)] == [False]
        assert inbox.mark_all_read(USER_ID) == 0


# ---------------------------------------------------------------------------
# Retention
# ---------------------------------------------------------------------------

class TestCleanup:
    def test_read_and_expired_are_removed(self, db_session, agent, settings):
        inapp = {Channel.INAPP: DeliveryStatus.SENT}
        _notify(db_session, "Old read", now=NOW - timedelta(days=40), is_read=True, deliveries=inapp)
        _notify(db_session, "Old unread", now=NOW - timedelta(days=40), deliveries=inapp)
        _notify(
            db_session, "Expired", now=NOW - timedelta(days=100),
            deliveries={Channel.INAPP: DeliveryStatus.SENT, Channel.EMAIL: DeliveryStatus.SENT},
        )
        _notify(db_session, "Recent read", now=NOW - timedelta(days=5), is_read=True, deliveries=inapp)
        _notify(
            db_session, "Still waiting", now=NOW - timedelta(days=100), is_read=True,
            deliveries={Channel.INAPP: DeliveryStatus.SENT, Channel.EMAIL: DeliveryStatus.DIGEST},
        )

        assert cleanup_notifications(db_session, settings, now=NOW) == 2

        db_session.expire_all()
        remaining = db_session.query(NotificationModel).order_by(NotificationModel.title).all()
        assert [n.title for n in remaining] == ["Old unread", "Recent read", "Still waiting"]
        kept_ids = {n.id for n in remaining}
        orphans = db_session.query(NotificationDelivery).filter(
            NotificationDelivery.notification_id.notin_(kept_ids)
        ).count()
        assert orphans == 0

    def test_nothing_to_remove(self, db_session, agent, settings):
        _notify(db_session, "Fresh")
        assert cleanup_notifications(db_session, settings, now=NOW) == 0
