"""
Stage history repository - audit trail of client stage transitions

Rows are immutable: the repository only appends and reads.
"""
from datetime import datetime
from typing import Optional, List
from sqlalchemy.orm import Session

from estatecrm.infrastructure.db.models import StageHistoryModel


class StageHistoryRepository:
    """
    Repository for the client_stage_history table
    """

    def __init__(self, db: Session):
        self.db = db

    def append(
        self,
        client_id: int,
        from_stage: Optional[str],
        to_stage: str,
        changed_at: datetime,
        changed_by: Optional[int] = None,
        notes: Optional[str] = None,
        deadline: Optional[datetime] = None,
        is_regression: bool = False,
    ) -> StageHistoryModel:
        """
        Append a history record

        Args:
            client_id: client whose stage changed
            from_stage: previous stage (None for the initial record)
            to_stage: new stage
            changed_at: when the transition happened
            changed_by: acting user (optional)
            notes: free-text audit note (optional)
            deadline: deadline attached to the new stage (optional)
            is_regression: True for a corrective backward move

        Returns:
            The flushed StageHistoryModel (id assigned, not committed)

        Example:
            >>> repo = StageHistoryRepository(db)
            >>> row = repo.append(
            ...     client_id=7,
            ...     from_stage="Lead",
            ...     to_stage="Prospect",
            ...     changed_at=now,
            ...     changed_by=1,
            ... )
        """
        row = StageHistoryModel(
            client_id=client_id,
            from_stage=from_stage,
            to_stage=to_stage,
            changed_by=changed_by,
            changed_at=changed_at,
            notes=notes,
            deadline=deadline,
            is_regression=is_regression,
        )
        self.db.add(row)
        self.db.flush()
        return row

    def list_for_client(self, client_id: int, limit: int = 200) -> List[StageHistoryModel]:
        """
        History of one client, newest first

        Args:
            client_id: client ID
            limit: max rows (default: 200)
        """
        return (
            self.db.query(StageHistoryModel)
            .filter(StageHistoryModel.client_id == client_id)
            .order_by(StageHistoryModel.changed_at.desc(), StageHistoryModel.id.desc())
            .limit(limit)
            .all()
        )

    def count(self, client_id: int, regressions_only: bool = False) -> int:
        query = self.db.query(StageHistoryModel).filter(StageHistoryModel.client_id == client_id)
        if regressions_only:
            query = query.filter(StageHistoryModel.is_regression.is_(True))
        return query.count()
