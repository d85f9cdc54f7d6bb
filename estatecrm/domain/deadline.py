"""
Deadline urgency tiers.

classify() is the single source of truth for both UI badges and escalation.
Boundaries are half-open: exactly 24h left is Upcoming, exactly 72h is Normal,
and exactly zero left is still Urgent.
"""
import enum
from datetime import datetime, timedelta

URGENT_WINDOW = timedelta(hours=24)
UPCOMING_WINDOW = timedelta(hours=72)


class Tier(str, enum.Enum):
    NORMAL = "Normal"
    UPCOMING = "Upcoming"
    URGENT = "Urgent"
    OVERDUE = "Overdue"

    @property
    def rank(self) -> int:
        return _RANK[self]

    def is_more_urgent_than(self, other: "Tier | None") -> bool:
        if other is None:
            return self is not Tier.NORMAL
        return self.rank > other.rank


_RANK = {
    Tier.NORMAL: 0,
    Tier.UPCOMING: 1,
    Tier.URGENT: 2,
    Tier.OVERDUE: 3,
}

BADGE_SEVERITY = {
    Tier.NORMAL: "info",
    Tier.UPCOMING: "info",
    Tier.URGENT: "warn",
    Tier.OVERDUE: "danger",
}


def classify(due: datetime, now: datetime) -> Tier:
    remaining = due - now
    if remaining < timedelta(0):
        return Tier.OVERDUE
    if remaining < URGENT_WINDOW:
        return Tier.URGENT
    if remaining < UPCOMING_WINDOW:
        return Tier.UPCOMING
    return Tier.NORMAL


def should_escalate(tier: Tier, last_notified: Tier | None) -> bool:
    """Normal never notifies; otherwise only strictly more urgent tiers do."""
    if tier is Tier.NORMAL:
        return False
    return tier.is_more_urgent_than(last_notified)


class DeadlineOwner(str, enum.Enum):
    CLIENT_STAGE = "client_stage"
    APPOINTMENT = "appointment"
