"""Client lifecycle stages: Lead -> Prospect -> Client -> Closed."""
import enum
from datetime import datetime, timedelta

from estatecrm.domain.errors import StageTransitionError


class ClientStage(str, enum.Enum):
    LEAD = "Lead"
    PROSPECT = "Prospect"
    CLIENT = "Client"
    CLOSED = "Closed"

    @property
    def order(self) -> int:
        return _ORDER[self]


_ORDER = {
    ClientStage.LEAD: 0,
    ClientStage.PROSPECT: 1,
    ClientStage.CLIENT: 2,
    ClientStage.CLOSED: 3,
}

# Follow-up windows applied when a transition carries no explicit deadline
DEFAULT_DEADLINE_DAYS: dict[ClientStage, int | None] = {
    ClientStage.LEAD: 7,
    ClientStage.PROSPECT: 14,
    ClientStage.CLIENT: 30,
    ClientStage.CLOSED: None,
}


def check_transition(current: ClientStage, target: ClientStage, correction: bool) -> bool:
    """Validate a stage change. Returns True when it is a regression."""
    if current == target:
        raise StageTransitionError(f"Client is already in stage {target.value}")
    regression = target.order < current.order
    if regression and not correction:
        raise StageTransitionError(
            f"Moving back from {current.value} to {target.value} requires the correction flag"
        )
    return regression


def default_deadline(stage: ClientStage, changed_at: datetime) -> datetime | None:
    days = DEFAULT_DEADLINE_DAYS[stage]
    if days is None:
        return None
    return changed_at + timedelta(days=days)
