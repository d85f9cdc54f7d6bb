"""
Tests for StagePipeline.

Covers:
  - New clients start in Lead with the default follow-up deadline
  - Forward transitions append history and move the stage deadline
  - Explicit deadlines replace the open one and restart tier tracking
  - Closed clears the deadline
  - Regressions need the correction flag and are recorded as such
"""
from datetime import datetime, timedelta, timezone

import pytest

from estatecrm.application.stage_pipeline import CreateClientUseCase, StageHistoryQuery, StagePipeline
from estatecrm.domain.deadline import DeadlineOwner, Tier
from estatecrm.domain.errors import NotFoundError, StageTransitionError, ValidationError
from estatecrm.domain.stage import ClientStage
from estatecrm.infrastructure.db.models import ClientModel, DeadlineModel
from estatecrm.infrastructure.repositories.deadlines import DeadlineRepository

UTC = timezone.utc
NOW = datetime(2026, 3, 2, 12, 0, tzinfo=UTC)
AGENT_ID = 1


def _clock():
    return NOW


def _open_deadline(db, client_id):
    return DeadlineRepository(db).get_open_for_owner(DeadlineOwner.CLIENT_STAGE, client_id)


@pytest.fixture
def client(db_session, settings, agent) -> ClientModel:
    return CreateClientUseCase(db_session, settings, _clock).execute("Jane Smith", AGENT_ID, "jane@example.com")


@pytest.fixture
def pipeline(db_session, settings):
    return StagePipeline(db_session, settings, _clock)


class TestCreateClient:
    def test_starts_in_lead_with_default_deadline(self, db_session, client):
        assert client.stage == ClientStage.LEAD.value
        assert client.stage_deadline == NOW + timedelta(days=7)
        deadline = _open_deadline(db_session, client.id)
        assert deadline.due_at == NOW + timedelta(days=7)
        assert deadline.stage == "Lead"
        assert deadline.recipient_user_id == AGENT_ID
        assert deadline.title == "Jane Smith: Lead follow-up"

    def test_initial_history_row(self, db_session, client):
        rows = StageHistoryQuery(db_session).execute(client.id)
        assert len(rows) == 1
        assert rows[0].from_stage is None
        assert rows[0].to_stage == "Lead"

    def test_name_required(self, db_session, settings):
        with pytest.raises(ValidationError):
            CreateClientUseCase(db_session, settings, _clock).execute("  ", AGENT_ID)

    def test_defaults_can_be_disabled(self, db_session, settings):
        settings.STAGE_DEFAULT_DEADLINES_ENABLED = False
        client = CreateClientUseCase(db_session, settings, _clock).execute("No Rush", AGENT_ID)
        assert client.stage_deadline is None
        assert _open_deadline(db_session, client.id) is None


class TestForward:
    def test_transition_records_history(self, db_session, pipeline, client):
        row = pipeline.transition(client.id, ClientStage.PROSPECT, actor_id=AGENT_ID, notes="  Toured 3 homes ")
        assert row.from_stage == "Lead"
        assert row.to_stage == "Prospect"
        assert row.changed_by == AGENT_ID
        assert row.notes == "Toured 3 homes"
        assert row.is_regression is False

        db_session.expire_all()
        stored = db_session.get(ClientModel, client.id)
        assert stored.stage == "Prospect"
        assert stored.previous_stage == "Lead"
        assert stored.stage_changed_at == NOW

    def test_default_deadline_for_new_stage(self, db_session, pipeline, client):
        pipeline.transition(client.id, ClientStage.PROSPECT, actor_id=AGENT_ID)
        deadline = _open_deadline(db_session, client.id)
        assert deadline.due_at == NOW + timedelta(days=14)
        assert deadline.stage == "Prospect"

    def test_explicit_deadline_replaces_and_resets_tier(self, db_session, pipeline, client):
        old = _open_deadline(db_session, client.id)
        old.last_notified_tier = Tier.UPCOMING.value
        db_session.commit()
        old_id = old.id

        due = NOW + timedelta(hours=20)
        row = pipeline.transition(client.id, ClientStage.PROSPECT, actor_id=AGENT_ID, deadline=due)

        assert row.deadline == due
        current = _open_deadline(db_session, client.id)
        assert current.id != old_id
        assert current.due_at == due
        assert current.last_notified_tier is None
        replaced = db_session.get(DeadlineModel, old_id)
        assert replaced.clear_reason == "replaced"

    def test_single_open_deadline_per_client(self, db_session, pipeline, client):
        pipeline.transition(client.id, ClientStage.PROSPECT, actor_id=AGENT_ID)
        pipeline.transition(client.id, ClientStage.CLIENT, actor_id=AGENT_ID)
        open_rows = [
            d for d in DeadlineRepository(db_session).list_open()
            if d.owner_type == DeadlineOwner.CLIENT_STAGE.value and d.owner_id == client.id
        ]
        assert len(open_rows) == 1
        assert open_rows[0].stage == "Client"

    def test_closed_clears_the_deadline(self, db_session, pipeline, client):
        deadline_id = _open_deadline(db_session, client.id).id
        row = pipeline.transition(client.id, ClientStage.CLOSED, actor_id=AGENT_ID)
        assert row.deadline is None
        assert _open_deadline(db_session, client.id) is None
        assert db_session.get(DeadlineModel, deadline_id).clear_reason == "closed"

    def test_no_default_clears_old_deadline(self, db_session, settings, pipeline, client):
        settings.STAGE_DEFAULT_DEADLINES_ENABLED = False
        deadline_id = _open_deadline(db_session, client.id).id
        pipeline.transition(client.id, ClientStage.PROSPECT, actor_id=AGENT_ID)
        assert _open_deadline(db_session, client.id) is None
        assert db_session.get(DeadlineModel, deadline_id).clear_reason == "stage_changed"

    def test_naive_deadline_rejected(self, pipeline, client):
        with pytest.raises(ValidationError):
            pipeline.transition(client.id, ClientStage.PROSPECT, deadline=datetime(2026, 3, 5, 9, 0))


class TestRegression:
    def test_backward_without_correction_is_rejected(self, db_session, pipeline, client):
        pipeline.transition(client.id, ClientStage.PROSPECT, actor_id=AGENT_ID)
        pipeline.transition(client.id, ClientStage.CLIENT, actor_id=AGENT_ID)
        with pytest.raises(StageTransitionError):
            pipeline.transition(client.id, ClientStage.PROSPECT, actor_id=AGENT_ID)
        db_session.expire_all()
        assert db_session.get(ClientModel, client.id).stage == "Client"

    def test_backward_with_correction_is_flagged(self, db_session, pipeline, client):
        pipeline.transition(client.id, ClientStage.PROSPECT, actor_id=AGENT_ID)
        pipeline.transition(client.id, ClientStage.CLIENT, actor_id=AGENT_ID)
        row = pipeline.transition(
            client.id, ClientStage.PROSPECT, actor_id=AGENT_ID, notes="wrong client", correction=True,
        )
        assert row.is_regression is True
        history = StageHistoryQuery(db_session).execute(client.id)
        assert sum(1 for h in history if h.is_regression) == 1

    def test_reopen_closed_client(self, db_session, pipeline, client):
        pipeline.transition(client.id, ClientStage.CLOSED, actor_id=AGENT_ID)
        row = pipeline.transition(client.id, ClientStage.CLIENT, actor_id=AGENT_ID, correction=True)
        assert row.is_regression is True
        assert _open_deadline(db_session, client.id).due_at == NOW + timedelta(days=30)

    def test_same_stage_is_rejected(self, pipeline, client):
        with pytest.raises(StageTransitionError):
            pipeline.transition(client.id, ClientStage.LEAD, actor_id=AGENT_ID)


def test_unknown_client(pipeline):
    with pytest.raises(NotFoundError):
        pipeline.transition(404, ClientStage.PROSPECT)


def test_unknown_stage(pipeline, client):
    with pytest.raises(ValidationError, match="Unknown stage"):
        pipeline.transition(client.id, "Archived")
