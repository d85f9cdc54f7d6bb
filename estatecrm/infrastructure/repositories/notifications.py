"""Notification records and the per-channel delivery status log."""
from datetime import datetime

from sqlalchemy import and_, exists
from sqlalchemy.orm import Session

from estatecrm.domain.notification import Channel, DeliveryStatus
from estatecrm.infrastructure.db.models import NotificationModel, NotificationDelivery

# deliveries that still have to leave the process
OUTSTANDING_STATUSES = (
    DeliveryStatus.PENDING.value,
    DeliveryStatus.DEFERRED.value,
    DeliveryStatus.DIGEST.value,
)


class NotificationRepository:
    def __init__(self, db: Session):
        self.db = db

    def create(
        self,
        user_id: int,
        category: str,
        title: str,
        body: str,
        severity: str,
        now: datetime,
        deliveries: dict[Channel, DeliveryStatus],
        deadline_id: int | None = None,
        tier: str | None = None,
    ) -> NotificationModel:
        notif = NotificationModel(
            user_id=user_id,
            category=category,
            deadline_id=deadline_id,
            tier=tier,
            severity=severity,
            title=title,
            body=body,
            created_at=now,
        )
        self.db.add(notif)
        self.db.flush()
        for channel, status in sorted(deliveries.items(), key=lambda kv: kv[0].value):
            self.db.add(NotificationDelivery(
                notification_id=notif.id,
                channel=channel.value,
                status=status.value,
            ))
        self.db.flush()
        return notif

    def deliveries_for(self, notification_id: int, status: DeliveryStatus | None = None) -> list[NotificationDelivery]:
        query = self.db.query(NotificationDelivery).filter(
            NotificationDelivery.notification_id == notification_id
        )
        if status is not None:
            query = query.filter(NotificationDelivery.status == status.value)
        return query.order_by(NotificationDelivery.channel.asc()).all()

    def deferred_for_deadline(self, deadline_id: int) -> list[tuple[NotificationDelivery, NotificationModel]]:
        return (
            self.db.query(NotificationDelivery, NotificationModel)
            .join(NotificationModel, NotificationModel.id == NotificationDelivery.notification_id)
            .filter(
                NotificationModel.deadline_id == deadline_id,
                NotificationDelivery.status == DeliveryStatus.DEFERRED.value,
            )
            .order_by(NotificationDelivery.id.asc())
            .all()
        )

    def supersede_deferred(self, deadline_id: int) -> int:
        """Deferred deliveries of an older tier are dropped once a newer tier fires."""
        ids = [d.id for d, _ in self.deferred_for_deadline(deadline_id)]
        if not ids:
            return 0
        return (
            self.db.query(NotificationDelivery)
            .filter(NotificationDelivery.id.in_(ids))
            .update({"status": DeliveryStatus.SUPERSEDED.value}, synchronize_session=False)
        )

    def claim_deferred(self, delivery_id: int) -> bool:
        """Atomically take a deferred delivery for sending (pending) so it is flushed only once."""
        updated = (
            self.db.query(NotificationDelivery)
            .filter(
                NotificationDelivery.id == delivery_id,
                NotificationDelivery.status == DeliveryStatus.DEFERRED.value,
            )
            .update({"status": DeliveryStatus.PENDING.value}, synchronize_session=False)
        )
        return updated == 1

    def mark(
        self,
        delivery: NotificationDelivery,
        status: DeliveryStatus,
        attempts: int,
        now: datetime,
        error: str | None = None,
    ) -> None:
        delivery.status = status.value
        delivery.attempts = attempts
        delivery.error = error
        if status is DeliveryStatus.SENT:
            delivery.sent_at = now
        self.db.flush()

    def digest_queue(self) -> list[tuple[NotificationDelivery, NotificationModel]]:
        return (
            self.db.query(NotificationDelivery, NotificationModel)
            .join(NotificationModel, NotificationModel.id == NotificationDelivery.notification_id)
            .filter(
                NotificationDelivery.status == DeliveryStatus.DIGEST.value,
                NotificationDelivery.channel == Channel.EMAIL.value,
            )
            .order_by(NotificationModel.user_id.asc(), NotificationModel.created_at.asc())
            .all()
        )

    def list_for_user(self, user_id: int, unread_only: bool = False, limit: int = 50) -> list[NotificationModel]:
        """In-app inbox: only notifications that were routed to the in-app channel."""
        query = self.db.query(NotificationModel).filter(
            NotificationModel.user_id == user_id,
            self._has_delivery(channel=Channel.INAPP.value),
        )
        if unread_only:
            query = query.filter(NotificationModel.is_read.is_(False))
        return query.order_by(NotificationModel.created_at.desc(), NotificationModel.id.desc()).limit(limit).all()

    def mark_all_read(self, user_id: int) -> int:
        return (
            self.db.query(NotificationModel)
            .filter(
                NotificationModel.user_id == user_id,
                NotificationModel.is_read.is_(False),
                self._has_delivery(channel=Channel.INAPP.value),
            )
            .update({"is_read": True}, synchronize_session=False)
        )

    def delete_created_before(self, cutoff: datetime, read_only: bool) -> int:
        """Delete old notifications with their delivery rows. Ones still waiting to be sent are kept."""
        query = self.db.query(NotificationModel.id).filter(
            NotificationModel.created_at < cutoff,
            ~self._has_delivery(statuses=OUTSTANDING_STATUSES),
        )
        if read_only:
            query = query.filter(NotificationModel.is_read.is_(True))
        ids = [row.id for row in query.all()]
        if not ids:
            return 0
        self.db.query(NotificationDelivery).filter(
            NotificationDelivery.notification_id.in_(ids)
        ).delete(synchronize_session=False)
        self.db.query(NotificationModel).filter(
            NotificationModel.id.in_(ids)
        ).delete(synchronize_session=False)
        return len(ids)

    @staticmethod
    def _has_delivery(channel: str | None = None, statuses: tuple[str, ...] | None = None):
        clauses = [NotificationDelivery.notification_id == NotificationModel.id]
        if channel is not None:
            clauses.append(NotificationDelivery.channel == channel)
        if statuses is not None:
            clauses.append(NotificationDelivery.status.in_(statuses))
        return exists().where(and_(*clauses))
