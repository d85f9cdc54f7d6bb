"""
Deadline store.

At most one open deadline exists per owner. Replacing a deadline clears the
old row and creates a new one, so last_notified_tier starts over at null only
for a new due instant.
"""
from datetime import datetime
from sqlalchemy.orm import Session

from estatecrm.domain.deadline import DeadlineOwner, Tier
from estatecrm.infrastructure.db.models import DeadlineModel


class DeadlineRepository:
    def __init__(self, db: Session):
        self.db = db

    def get(self, deadline_id: int) -> DeadlineModel | None:
        return self.db.get(DeadlineModel, deadline_id)

    def get_open_for_owner(self, owner_type: DeadlineOwner, owner_id: int) -> DeadlineModel | None:
        return (
            self.db.query(DeadlineModel)
            .filter(
                DeadlineModel.owner_type == owner_type.value,
                DeadlineModel.owner_id == owner_id,
                DeadlineModel.cleared_at.is_(None),
            )
            .order_by(DeadlineModel.id.desc())
            .first()
        )

    def list_open(self, recipient_user_id: int | None = None) -> list[DeadlineModel]:
        query = self.db.query(DeadlineModel).filter(DeadlineModel.cleared_at.is_(None))
        if recipient_user_id is not None:
            query = query.filter(DeadlineModel.recipient_user_id == recipient_user_id)
        return query.order_by(DeadlineModel.due_at.asc(), DeadlineModel.id.asc()).all()

    def list_open_ids(self) -> list[int]:
        rows = (
            self.db.query(DeadlineModel.id)
            .filter(DeadlineModel.cleared_at.is_(None))
            .order_by(DeadlineModel.due_at.asc(), DeadlineModel.id.asc())
            .all()
        )
        return [r.id for r in rows]

    def replace(
        self,
        owner_type: DeadlineOwner,
        owner_id: int,
        due_at: datetime,
        title: str,
        now: datetime,
        recipient_user_id: int | None = None,
        stage: str | None = None,
        created_by: int | None = None,
    ) -> DeadlineModel:
        """Create the owner's deadline, clearing any open one. Same due instant keeps the row."""
        current = self.get_open_for_owner(owner_type, owner_id)
        if current is not None:
            if current.due_at == due_at and current.stage == stage:
                current.title = title
                current.recipient_user_id = recipient_user_id
                self.db.flush()
                return current
            self._clear(current, "replaced", now)

        row = DeadlineModel(
            owner_type=owner_type.value,
            owner_id=owner_id,
            stage=stage,
            title=title,
            due_at=due_at,
            recipient_user_id=recipient_user_id,
            last_notified_tier=None,
            created_by=created_by,
            created_at=now,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def clear_for_owner(self, owner_type: DeadlineOwner, owner_id: int, reason: str, now: datetime) -> DeadlineModel | None:
        current = self.get_open_for_owner(owner_type, owner_id)
        if current is not None:
            self._clear(current, reason, now)
        return current

    def _clear(self, row: DeadlineModel, reason: str, now: datetime) -> None:
        row.cleared_at = now
        row.clear_reason = reason
        self.db.flush()

    def compare_and_set_tier(
        self,
        deadline_id: int,
        expected: Tier | None,
        new: Tier,
        now: datetime,
    ) -> bool:
        """
        Atomically move last_notified_tier from `expected` to `new`.

        UPDATE deadlines SET last_notified_tier = :new
        WHERE id = :id AND last_notified_tier IS :expected AND cleared_at IS NULL

        Returns False when another evaluation got there first.
        """
        query = self.db.query(DeadlineModel).filter(
            DeadlineModel.id == deadline_id,
            DeadlineModel.cleared_at.is_(None),
        )
        if expected is None:
            query = query.filter(DeadlineModel.last_notified_tier.is_(None))
        else:
            query = query.filter(DeadlineModel.last_notified_tier == expected.value)
        updated = query.update(
            {"last_notified_tier": new.value, "last_notified_at": now},
            synchronize_session=False,
        )
        return updated == 1
