"""
Background scheduler: runs periodic jobs inside the FastAPI process.

Jobs:
  - Deadline escalation (every ESCALATION_INTERVAL_SECONDS, single instance)
  - Email digest (daily at DIGEST_HOUR_UTC)
  - Notification cleanup (daily at CLEANUP_HOUR_UTC)
"""
import logging

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from estatecrm.application.escalation import EscalationScheduler

logger = logging.getLogger(__name__)

scheduler = BackgroundScheduler(daemon=True, timezone="UTC")
_escalation: EscalationScheduler | None = None


def _run_escalation_tick():
    if _escalation is None:
        return
    try:
        _escalation.tick()
    except Exception:
        logger.exception("Escalation job failed")


def _run_email_digest():
    from estatecrm.infrastructure.db.session import get_session_factory
    from estatecrm.application.digest_service import send_email_digests

    Session = get_session_factory()
    db = Session()
    try:
        send_email_digests(db, _escalation.dispatcher)
    except Exception:
        logger.exception("Email digest job failed")
    finally:
        db.close()


def _run_notification_cleanup():
    from estatecrm.infrastructure.db.session import get_session_factory
    from estatecrm.application.notifications import cleanup_notifications

    Session = get_session_factory()
    db = Session()
    try:
        cleanup_notifications(db, _escalation.settings)
    except Exception:
        logger.exception("Notification cleanup job failed")
    finally:
        db.close()


def build_escalation() -> EscalationScheduler:
    from estatecrm.application.dispatcher import NotificationDispatcher
    from estatecrm.config import get_settings
    from estatecrm.infrastructure.db.session import get_session_factory

    settings = get_settings()
    return EscalationScheduler(
        get_session_factory(),
        NotificationDispatcher.from_settings(settings),
        settings,
    )


def start_scheduler(escalation: EscalationScheduler | None = None):
    """Start the background scheduler with all periodic jobs."""
    global _escalation
    _escalation = escalation or build_escalation()
    settings = _escalation.settings

    # Overlapping ticks are skipped (max_instances=1), missed runs collapse into one
    scheduler.add_job(
        _run_escalation_tick,
        "interval",
        seconds=settings.ESCALATION_INTERVAL_SECONDS,
        id="deadline_escalation",
        max_instances=1,
        coalesce=True,
        replace_existing=True,
    )

    scheduler.add_job(
        _run_email_digest,
        CronTrigger(hour=settings.DIGEST_HOUR_UTC, minute=0),
        id="email_digest",
        replace_existing=True,
    )

    scheduler.add_job(
        _run_notification_cleanup,
        CronTrigger(hour=settings.CLEANUP_HOUR_UTC, minute=30),
        id="notification_cleanup",
        replace_existing=True,
    )

    scheduler.start()
    logger.info(
        "Scheduler started: deadline_escalation (every %ss), email_digest (%02d:00 UTC), "
        "notification_cleanup (%02d:30 UTC)",
        settings.ESCALATION_INTERVAL_SECONDS, settings.DIGEST_HOUR_UTC, settings.CLEANUP_HOUR_UTC,
    )


def shutdown_scheduler():
    """Stop scheduling new ticks and wait for the running one to finish."""
    if _escalation is not None:
        _escalation.shutdown(wait=True)
    if scheduler.running:
        scheduler.shutdown(wait=True)
        logger.info("Scheduler stopped")
