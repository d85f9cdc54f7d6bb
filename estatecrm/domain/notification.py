"""
Notification routing rules: which channels a tier earns, quiet hours, and the
request handed to the dispatcher.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime, time
from zoneinfo import ZoneInfo

from estatecrm.domain.deadline import Tier


class Channel(str, enum.Enum):
    EMAIL = "email"
    SMS = "sms"
    INAPP = "inapp"


class Category(str, enum.Enum):
    DEADLINE = "deadline"
    APPOINTMENT_REMINDER = "appointment_reminder"


class FrequencyMode(str, enum.Enum):
    IMMEDIATE = "immediate"
    DIGEST = "digest"


class DeliveryStatus(str, enum.Enum):
    PENDING = "pending"
    DEFERRED = "deferred"
    DIGEST = "digest"
    SENT = "sent"
    FAILED = "failed"
    SUPERSEDED = "superseded"


# Channels each tier may use before preferences are applied
TIER_CHANNELS: dict[Tier, frozenset[Channel]] = {
    Tier.OVERDUE: frozenset({Channel.EMAIL, Channel.SMS, Channel.INAPP}),
    Tier.URGENT: frozenset({Channel.EMAIL, Channel.SMS, Channel.INAPP}),
    Tier.UPCOMING: frozenset({Channel.EMAIL}),
    Tier.NORMAL: frozenset(),
}

QUIET_CHANNELS = frozenset({Channel.EMAIL, Channel.SMS})


@dataclass(frozen=True)
class QuietHours:
    start: time
    end: time
    enabled: bool = True
    timezone: str = "UTC"

    def contains(self, now: datetime) -> bool:
        """True when `now` falls in [start, end) in the recipient's timezone."""
        if not self.enabled or self.start == self.end:
            return False
        local = now.astimezone(ZoneInfo(self.timezone)).time().replace(tzinfo=None)
        s, e = self.start, self.end
        if s < e:
            return s <= local < e
        # Overnight range (e.g. 22:00-08:00)
        return local >= s or local < e


@dataclass(frozen=True)
class Preference:
    user_id: int
    category: Category
    email: bool = True
    sms: bool = True
    inapp: bool = True
    frequency: FrequencyMode = FrequencyMode.IMMEDIATE
    quiet_hours: QuietHours | None = None
    timezone: str = "UTC"

    def allows(self, channel: Channel) -> bool:
        return {
            Channel.EMAIL: self.email,
            Channel.SMS: self.sms,
            Channel.INAPP: self.inapp,
        }[channel]


def select_channels(tier: Tier, pref: Preference) -> set[Channel]:
    return {ch for ch in TIER_CHANNELS[tier] if pref.allows(ch)}


def is_quiet(pref: Preference, now: datetime) -> bool:
    return pref.quiet_hours is not None and pref.quiet_hours.contains(now)


@dataclass
class NotificationRequest:
    recipient_id: int
    category: Category
    tier: Tier
    channels: set[Channel]
    payload: dict = field(default_factory=dict)
    deadline_id: int | None = None


_TEMPLATES: dict[Tier, dict] = {
    Tier.OVERDUE: {
        "severity": "danger",
        "title": "Deadline overdue",
        "body": "{subject} was due {due} and is now overdue.",
    },
    Tier.URGENT: {
        "severity": "warn",
        "title": "Deadline within 24 hours",
        "body": "{subject} is due {due}.",
    },
    Tier.UPCOMING: {
        "severity": "info",
        "title": "Deadline in the next 3 days",
        "body": "{subject} is due {due}.",
    },
}


def render_deadline_message(tier: Tier, subject: str, due: datetime, tz_name: str = "UTC") -> dict:
    tmpl = _TEMPLATES[tier]
    local_due = due.astimezone(ZoneInfo(tz_name))
    return {
        "severity": tmpl["severity"],
        "title": tmpl["title"],
        "body": tmpl["body"].format(subject=subject, due=local_due.strftime("%m/%d/%Y at %I:%M %p")),
    }
