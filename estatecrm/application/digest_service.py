"""
Daily email digest for recipients whose deadline emails are set to "digest".

Escalation stores those email deliveries with status 'digest'; this job sends
one email per recipient listing them and marks every included delivery.
Recipients inside their quiet hours are skipped; their queue stays 'digest'
until the first run after quiet hours end.
"""
import logging
from datetime import datetime
from itertools import groupby

from sqlalchemy.orm import Session

from estatecrm.application.dispatcher import NotificationDispatcher
from estatecrm.domain.errors import DispatchError
from estatecrm.domain.notification import Category, Channel, DeliveryStatus, is_quiet
from estatecrm.infrastructure.db.models import User
from estatecrm.infrastructure.repositories.notifications import NotificationRepository
from estatecrm.infrastructure.repositories.preferences import PreferenceRepository
from estatecrm.utils.clock import utcnow

logger = logging.getLogger(__name__)


def build_digest_message(notifications) -> dict:
    lines = [f"- {n.title}: {n.body}" for n in notifications]
    count = len(lines)
    return {
        "severity": "info",
        "title": f"Deadline digest: {count} update{'s' if count != 1 else ''}",
        "body": "\n".join(lines),
    }


def send_email_digests(db: Session, dispatcher: NotificationDispatcher, now: datetime | None = None) -> int:
    """
    Send queued digest emails.
    Returns the number of recipients whose digest was sent.
    """
    now = now or utcnow()
    repo = NotificationRepository(db)
    preferences = PreferenceRepository(db)
    queue = repo.digest_queue()
    if not queue:
        logger.info("Email digest: nothing queued")
        return 0

    sent = 0
    for user_id, rows in groupby(queue, key=lambda row: row[1].user_id):
        rows = list(rows)
        user = db.get(User, user_id)
        if user is None:
            continue
        if is_quiet(preferences.get(user_id, Category.DEADLINE), now):
            logger.info("Email digest held for user_id=%s: inside quiet hours", user_id)
            continue
        message = build_digest_message([notif for _, notif in rows])
        try:
            attempts = dispatcher.send(Channel.EMAIL, user, message)
        except DispatchError as exc:
            logger.error("Email digest failed for user_id=%s: %s", user_id, exc)
            for delivery, _ in rows:
                repo.mark(delivery, DeliveryStatus.FAILED, exc.attempts, now, str(exc))
        else:
            for delivery, _ in rows:
                repo.mark(delivery, DeliveryStatus.SENT, attempts, now)
            sent += 1
        db.commit()

    logger.info("Email digest: sent to %d recipient(s)", sent)
    return sent
