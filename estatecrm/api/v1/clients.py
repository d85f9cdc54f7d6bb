"""
Client stage API endpoints
"""
from datetime import datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy.orm import Session

from estatecrm.api.deps import get_app_settings, get_current_user, get_db
from estatecrm.application.stage_pipeline import CreateClientUseCase, StageHistoryQuery, StagePipeline
from estatecrm.config import Settings
from estatecrm.domain.stage import ClientStage
from estatecrm.infrastructure.db.models import ClientModel, StageHistoryModel, User


router = APIRouter(prefix="/api/v1/clients", tags=["clients"])


# === Request/Response models ===

class CreateClientRequest(BaseModel):
    name: str
    email: str | None = None
    stage: ClientStage = ClientStage.LEAD


class StageTransitionRequest(BaseModel):
    to_stage: ClientStage
    notes: str | None = None
    deadline: datetime | None = None
    correction: bool = False


class ClientResponse(BaseModel):
    id: int
    name: str
    email: str | None
    assigned_agent_id: int | None
    stage: str
    previous_stage: str | None
    stage_changed_at: datetime | None
    stage_deadline: datetime | None


class StageHistoryResponse(BaseModel):
    id: int
    client_id: int
    from_stage: str | None
    to_stage: str
    changed_by: int | None
    changed_at: datetime
    notes: str | None
    deadline: datetime | None
    is_regression: bool


def _client_response(client: ClientModel) -> ClientResponse:
    return ClientResponse(
        id=client.id,
        name=client.name,
        email=client.email,
        assigned_agent_id=client.assigned_agent_id,
        stage=client.stage,
        previous_stage=client.previous_stage,
        stage_changed_at=client.stage_changed_at,
        stage_deadline=client.stage_deadline,
    )


def _history_response(row: StageHistoryModel) -> StageHistoryResponse:
    return StageHistoryResponse(
        id=row.id,
        client_id=row.client_id,
        from_stage=row.from_stage,
        to_stage=row.to_stage,
        changed_by=row.changed_by,
        changed_at=row.changed_at,
        notes=row.notes,
        deadline=row.deadline,
        is_regression=row.is_regression,
    )


# === Endpoints ===

@router.post("/", response_model=ClientResponse, status_code=201)
def create_client(
    req: CreateClientRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_app_settings),
):
    """Create a client assigned to the current agent"""
    client = CreateClientUseCase(db, settings).execute(
        name=req.name,
        assigned_agent_id=user.id,
        email=req.email,
        stage=req.stage,
    )
    return _client_response(client)


@router.post("/{client_id}/stage", response_model=StageHistoryResponse)
def transition_stage(
    client_id: int,
    req: StageTransitionRequest,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
    settings: Settings = Depends(get_app_settings),
):
    """Move the client to another stage; backward moves need correction=true"""
    row = StagePipeline(db, settings).transition(
        client_id=client_id,
        to_stage=req.to_stage,
        actor_id=user.id,
        notes=req.notes,
        deadline=req.deadline,
        correction=req.correction,
    )
    return _history_response(row)


@router.get("/{client_id}/stage-history", response_model=list[StageHistoryResponse])
def stage_history(
    client_id: int,
    limit: int = 200,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    """Stage history, newest first"""
    return [_history_response(row) for row in StageHistoryQuery(db).execute(client_id, limit)]
