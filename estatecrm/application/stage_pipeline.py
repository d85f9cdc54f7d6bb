"""
Client stage pipeline: Lead -> Prospect -> Client -> Closed.

Transitions are always triggered by a user. Each one appends an immutable
history row and keeps the client's single open stage deadline in step:
an explicit deadline replaces it (tier tracking starts over), otherwise the
stage default applies when enabled, and Closed clears it.
"""
import logging
from datetime import datetime

from sqlalchemy.orm import Session

from estatecrm.config import Settings, get_settings
from estatecrm.domain.appointment import ensure_aware
from estatecrm.domain.deadline import DeadlineOwner
from estatecrm.domain.errors import NotFoundError, ValidationError
from estatecrm.domain.stage import ClientStage, check_transition, default_deadline
from estatecrm.infrastructure.db.models import ClientModel, StageHistoryModel
from estatecrm.infrastructure.repositories.deadlines import DeadlineRepository
from estatecrm.infrastructure.repositories.stage_history import StageHistoryRepository
from estatecrm.utils.clock import utcnow

logger = logging.getLogger(__name__)


def _parse_stage(value) -> ClientStage:
    try:
        return ClientStage(value)
    except ValueError:
        raise ValidationError(f"Unknown stage: {value}") from None


def _deadline_title(client: ClientModel, stage: ClientStage) -> str:
    return f"{client.name}: {stage.value} follow-up"


class StagePipeline:
    def __init__(self, db: Session, settings: Settings | None = None, clock=utcnow):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

    def apply_deadline(
        self,
        client: ClientModel,
        stage: ClientStage,
        explicit: datetime | None,
        actor_id: int | None,
        now: datetime,
    ) -> datetime | None:
        repo = DeadlineRepository(self.db)
        if stage is ClientStage.CLOSED:
            repo.clear_for_owner(DeadlineOwner.CLIENT_STAGE, client.id, "closed", now)
            return None

        due = explicit
        if due is None and self.settings.STAGE_DEFAULT_DEADLINES_ENABLED:
            due = default_deadline(stage, now)
        if due is None:
            repo.clear_for_owner(DeadlineOwner.CLIENT_STAGE, client.id, "stage_changed", now)
            return None

        repo.replace(
            DeadlineOwner.CLIENT_STAGE,
            client.id,
            due_at=due,
            title=_deadline_title(client, stage),
            now=now,
            recipient_user_id=client.assigned_agent_id or actor_id,
            stage=stage.value,
            created_by=actor_id,
        )
        return due

    def transition(
        self,
        client_id: int,
        to_stage: ClientStage | str,
        actor_id: int | None = None,
        notes: str | None = None,
        deadline: datetime | None = None,
        correction: bool = False,
    ) -> StageHistoryModel:
        """
        Move a client to another stage.

        Args:
            deadline: explicit follow-up deadline for the new stage
            correction: required for backward moves; recorded as a regression

        Raises:
            NotFoundError: unknown client
            StageTransitionError: no-op or unflagged backward move
            ValidationError: unknown stage, naive deadline
        """
        client = self.db.get(ClientModel, client_id)
        if client is None:
            raise NotFoundError("Client", client_id)
        target = _parse_stage(to_stage)
        current = _parse_stage(client.stage)
        regression = check_transition(current, target, correction)
        if deadline is not None:
            ensure_aware(deadline, "deadline")
        notes = (notes or "").strip() or None

        now = self.clock()
        try:
            due = self.apply_deadline(client, target, deadline, actor_id, now)
            row = StageHistoryRepository(self.db).append(
                client_id=client.id,
                from_stage=current.value,
                to_stage=target.value,
                changed_at=now,
                changed_by=actor_id,
                notes=notes,
                deadline=due,
                is_regression=regression,
            )
            client.previous_stage = current.value
            client.stage = target.value
            client.stage_changed_at = now
            client.stage_deadline = due
            client.stage_notes = notes
            client.updated_at = now
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        logger.info(
            "Client stage changed: client_id=%s %s -> %s regression=%s",
            client.id, current.value, target.value, regression,
        )
        return row


class CreateClientUseCase:
    def __init__(self, db: Session, settings: Settings | None = None, clock=utcnow):
        self.db = db
        self.settings = settings or get_settings()
        self.clock = clock

    def execute(
        self,
        name: str,
        assigned_agent_id: int | None,
        email: str | None = None,
        stage: ClientStage | str = ClientStage.LEAD,
    ) -> ClientModel:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Client name is required")
        stage = _parse_stage(stage)
        now = self.clock()
        client = ClientModel(
            name=name,
            email=email,
            assigned_agent_id=assigned_agent_id,
            stage=stage.value,
            stage_changed_at=now,
            created_at=now,
            updated_at=now,
        )
        try:
            self.db.add(client)
            self.db.flush()
            pipeline = StagePipeline(self.db, self.settings, self.clock)
            due = pipeline.apply_deadline(client, stage, None, assigned_agent_id, now)
            client.stage_deadline = due
            StageHistoryRepository(self.db).append(
                client_id=client.id,
                from_stage=None,
                to_stage=stage.value,
                changed_at=now,
                changed_by=assigned_agent_id,
                deadline=due,
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return client


class StageHistoryQuery:
    def __init__(self, db: Session):
        self.db = db

    def execute(self, client_id: int, limit: int = 200) -> list[StageHistoryModel]:
        if self.db.get(ClientModel, client_id) is None:
            raise NotFoundError("Client", client_id)
        return StageHistoryRepository(self.db).list_for_client(client_id, limit)
