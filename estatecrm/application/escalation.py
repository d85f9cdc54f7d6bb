"""
Deadline escalation: the periodic tick behind deadline notifications.

Each tick loads every open deadline, classifies it against "now" and, when
the tier is strictly more urgent than the last one notified, claims the new
tier with a compare-and-set before anything is sent. Only the evaluation
that wins the claim notifies, so a tier is announced at most once even when
ticks or workers race. Normal never notifies.

Inside the recipient's quiet hours email and SMS deliveries are stored as
'deferred' (in-app goes out immediately). The first tick after quiet hours
end claims each deferred delivery and sends it once. A newer tier supersedes
deferred deliveries of an older one.

Ticks are single-flight: a tick that starts while another is running is
skipped, not queued. Deadlines are evaluated independently (one session
each), optionally on a thread pool; one failing deadline never stops the
others.
"""
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy.orm import Session

from estatecrm.application.dispatcher import NotificationDispatcher
from estatecrm.config import Settings, get_settings
from estatecrm.domain.deadline import Tier, classify, should_escalate
from estatecrm.domain.notification import (
    QUIET_CHANNELS, Category, Channel, DeliveryStatus, FrequencyMode, NotificationRequest,
    Preference, is_quiet, render_deadline_message, select_channels,
)
from estatecrm.infrastructure.db.models import DeadlineModel, NotificationDelivery, NotificationModel, User
from estatecrm.infrastructure.repositories.deadlines import DeadlineRepository
from estatecrm.infrastructure.repositories.notifications import NotificationRepository
from estatecrm.infrastructure.repositories.preferences import PreferenceRepository
from estatecrm.utils.clock import utcnow

logger = logging.getLogger(__name__)


@dataclass
class TickReport:
    started_at: datetime
    evaluated: int = 0
    notified: int = 0
    deferred: int = 0
    flushed: int = 0
    sent: int = 0
    failed_channels: int = 0
    errors: int = 0

    def merge(self, other: "TickReport") -> None:
        for name in ("evaluated", "notified", "deferred", "flushed", "sent", "failed_channels", "errors"):
            setattr(self, name, getattr(self, name) + getattr(other, name))


class EscalationScheduler:
    def __init__(
        self,
        session_factory,
        dispatcher: NotificationDispatcher,
        settings: Settings | None = None,
        clock=utcnow,
    ):
        self.session_factory = session_factory
        self.dispatcher = dispatcher
        self.settings = settings or get_settings()
        self.clock = clock
        self._tick_lock = threading.Lock()
        self._stopping = threading.Event()

    @property
    def stopped(self) -> bool:
        return self._stopping.is_set()

    def tick(self, now: datetime | None = None) -> TickReport | None:
        """Run one evaluation pass. Returns None when the tick was skipped."""
        if self._stopping.is_set():
            logger.info("Escalation tick ignored: scheduler is shutting down")
            return None
        if not self._tick_lock.acquire(blocking=False):
            logger.warning("Escalation tick skipped: previous tick still running")
            return None
        try:
            now = now or self.clock()
            report = TickReport(started_at=now)
            db = self.session_factory()
            try:
                deadline_ids = DeadlineRepository(db).list_open_ids()
            finally:
                db.close()

            workers = max(1, self.settings.ESCALATION_WORKERS)
            if workers == 1 or len(deadline_ids) <= 1:
                results = [self._evaluate_safely(deadline_id, now) for deadline_id in deadline_ids]
            else:
                with ThreadPoolExecutor(
                    max_workers=min(workers, len(deadline_ids)),
                    thread_name_prefix="escalation",
                ) as pool:
                    results = list(pool.map(lambda i: self._evaluate_safely(i, now), deadline_ids))
            for result in results:
                report.merge(result)

            logger.info(
                "Escalation tick: evaluated=%d notified=%d deferred=%d flushed=%d sent=%d failed=%d errors=%d",
                report.evaluated, report.notified, report.deferred, report.flushed,
                report.sent, report.failed_channels, report.errors,
            )
            return report
        finally:
            self._tick_lock.release()

    def shutdown(self, wait: bool = True) -> None:
        """Stop accepting ticks; with wait=True block until the running tick ends."""
        self._stopping.set()
        if wait:
            with self._tick_lock:
                pass
        logger.info("Escalation scheduler stopped")

    # --- per deadline ---

    def _evaluate_safely(self, deadline_id: int, now: datetime) -> TickReport:
        try:
            return self.evaluate(deadline_id, now)
        except Exception:
            logger.exception("Escalation failed for deadline_id=%s", deadline_id)
            report = TickReport(started_at=now)
            report.errors = 1
            return report

    def evaluate(self, deadline_id: int, now: datetime) -> TickReport:
        report = TickReport(started_at=now)
        db = self.session_factory()
        try:
            deadline = DeadlineRepository(db).get(deadline_id)
            if deadline is None or deadline.cleared_at is not None:
                return report
            report.evaluated = 1

            tier = classify(deadline.due_at, now)
            last = Tier(deadline.last_notified_tier) if deadline.last_notified_tier else None
            recipient = db.get(User, deadline.recipient_user_id) if deadline.recipient_user_id else None
            pref = (
                PreferenceRepository(db).get(recipient.id, Category.DEADLINE)
                if recipient is not None else None
            )

            if should_escalate(tier, last):
                self._escalate(db, deadline, tier, last, recipient, pref, now, report)
            elif recipient is not None and not is_quiet(pref, now):
                self._flush_deferred(db, deadline, recipient, pref, now, report)
            return report
        finally:
            db.close()

    def _escalate(
        self,
        db: Session,
        deadline: DeadlineModel,
        tier: Tier,
        last: Tier | None,
        recipient: User | None,
        pref: Preference | None,
        now: datetime,
        report: TickReport,
    ) -> None:
        if not DeadlineRepository(db).compare_and_set_tier(deadline.id, last, tier, now):
            db.rollback()
            logger.info("deadline_id=%s tier %s already claimed", deadline.id, tier.value)
            return

        notifications = NotificationRepository(db)
        notifications.supersede_deferred(deadline.id)
        if recipient is None:
            db.commit()
            logger.warning("deadline_id=%s reached %s but has no recipient", deadline.id, tier.value)
            return

        channels = select_channels(tier, pref)
        if not channels:
            db.commit()
            return

        quiet = is_quiet(pref, now)
        statuses: dict[Channel, DeliveryStatus] = {}
        for channel in channels:
            if quiet and channel in QUIET_CHANNELS:
                statuses[channel] = DeliveryStatus.DEFERRED
            elif channel is Channel.EMAIL and pref.frequency is FrequencyMode.DIGEST:
                statuses[channel] = DeliveryStatus.DIGEST
            else:
                statuses[channel] = DeliveryStatus.PENDING

        message = render_deadline_message(tier, deadline.title, deadline.due_at, recipient.timezone or "UTC")
        notif = notifications.create(
            user_id=recipient.id,
            category=Category.DEADLINE.value,
            title=message["title"],
            body=message["body"],
            severity=message["severity"],
            now=now,
            deliveries=statuses,
            deadline_id=deadline.id,
            tier=tier.value,
        )
        # claim and delivery log are durable before anything leaves the process
        db.commit()
        report.notified = 1
        report.deferred += sum(1 for s in statuses.values() if s is DeliveryStatus.DEFERRED)

        pending = notifications.deliveries_for(notif.id, DeliveryStatus.PENDING)
        self._send(db, notif, pending, recipient, tier, now, report)

    def _flush_deferred(
        self,
        db: Session,
        deadline: DeadlineModel,
        recipient: User,
        pref: Preference,
        now: datetime,
        report: TickReport,
    ) -> None:
        notifications = NotificationRepository(db)
        claimed: dict[int, tuple[NotificationModel, list[NotificationDelivery]]] = {}
        for delivery, notif in notifications.deferred_for_deadline(deadline.id):
            if not notifications.claim_deferred(delivery.id):
                continue
            db.commit()
            if delivery.channel == Channel.EMAIL.value and pref.frequency is FrequencyMode.DIGEST:
                notifications.mark(delivery, DeliveryStatus.DIGEST, 0, now)
                db.commit()
                continue
            claimed.setdefault(notif.id, (notif, []))[1].append(delivery)

        for notif, deliveries in claimed.values():
            report.flushed += len(deliveries)
            self._send(db, notif, deliveries, recipient, Tier(notif.tier), now, report)

    def _send(
        self,
        db: Session,
        notif: NotificationModel,
        deliveries: list[NotificationDelivery],
        recipient: User,
        tier: Tier,
        now: datetime,
        report: TickReport,
    ) -> None:
        if not deliveries:
            return
        request = NotificationRequest(
            recipient_id=recipient.id,
            category=Category.DEADLINE,
            tier=tier,
            channels={Channel(d.channel) for d in deliveries},
            payload={"title": notif.title, "body": notif.body, "severity": notif.severity},
            deadline_id=notif.deadline_id,
        )
        outcomes = self.dispatcher.dispatch(request, recipient, request.payload)
        notifications = NotificationRepository(db)
        for delivery in deliveries:
            outcome = outcomes[Channel(delivery.channel)]
            if outcome.ok:
                notifications.mark(delivery, DeliveryStatus.SENT, outcome.attempts, now)
                report.sent += 1
            else:
                notifications.mark(delivery, DeliveryStatus.FAILED, outcome.attempts, now, outcome.error)
                report.failed_channels += 1
        db.commit()
