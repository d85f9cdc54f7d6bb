"""
Deterministic recurrence expansion for appointments.

Occurrences are generated in the appointment's local wall-clock time
(zoneinfo), so a weekly 09:00-10:00 series stays at 09:00-10:00 local time on
both sides of a DST change even though its UTC offset moves.

Frequencies:
- DAILY: every N days
- WEEKLY: every N weeks, optionally on specific weekdays
- MONTHLY: every N months on the start's day of month (clipped to month end)

Termination is an inclusive end date or a maximum occurrence count, never
both. A rule with neither is cut at the safety limit.
"""
import calendar
import enum
import logging
import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from typing import Iterator
from zoneinfo import ZoneInfo

from estatecrm.domain.errors import QueryCancelled, ValidationError

logger = logging.getLogger(__name__)

WEEKDAY_MAP = {"MO": 0, "TU": 1, "WE": 2, "TH": 3, "FR": 4, "SA": 5, "SU": 6}
WEEKDAY_CODES = {v: k for k, v in WEEKDAY_MAP.items()}
DEFAULT_SAFETY_LIMIT = 500
MAX_INTERVAL = 365


class Frequency(str, enum.Enum):
    DAILY = "DAILY"
    WEEKLY = "WEEKLY"
    MONTHLY = "MONTHLY"


@dataclass(frozen=True)
class RecurrenceRule:
    frequency: Frequency
    interval: int = 1
    weekdays: frozenset[int] | None = None  # WEEKLY only (MO=0..SU=6)
    end_date: date | None = None  # inclusive, local date of the occurrence start
    max_count: int | None = None

    def __post_init__(self):
        try:
            object.__setattr__(self, "frequency", Frequency(self.frequency))
        except ValueError:
            raise ValidationError(f"invalid frequency: {self.frequency}") from None
        if not isinstance(self.interval, int) or self.interval < 1:
            raise ValidationError("interval must be >= 1")
        if self.interval > MAX_INTERVAL:
            raise ValidationError(f"interval must be <= {MAX_INTERVAL}")
        if self.end_date is not None and self.max_count is not None:
            raise ValidationError("end_date and max_count are mutually exclusive")
        if self.max_count is not None and self.max_count < 1:
            raise ValidationError("max_count must be >= 1 when set")
        if self.weekdays is not None:
            if self.frequency is not Frequency.WEEKLY:
                raise ValidationError("weekdays are only allowed for WEEKLY rules")
            days = frozenset(self.weekdays)
            if not days:
                raise ValidationError("weekdays must not be empty")
            if any(d not in WEEKDAY_CODES for d in days):
                raise ValidationError("weekdays must be in 0..6")
            object.__setattr__(self, "weekdays", days)

    @property
    def is_terminated(self) -> bool:
        return self.end_date is not None or self.max_count is not None

    def to_dict(self) -> dict:
        data = {"frequency": self.frequency.value, "interval": self.interval}
        if self.weekdays:
            data["weekdays"] = sorted(self.weekdays)
        if self.end_date is not None:
            data["end_date"] = self.end_date.isoformat()
        if self.max_count is not None:
            data["max_count"] = self.max_count
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "RecurrenceRule":
        end_date = data.get("end_date")
        weekdays = data.get("weekdays")
        return cls(
            frequency=data["frequency"],
            interval=data.get("interval", 1),
            weekdays=frozenset(weekdays) if weekdays else None,
            end_date=date.fromisoformat(end_date) if isinstance(end_date, str) else end_date,
            max_count=data.get("max_count"),
        )


@dataclass(frozen=True)
class Occurrence:
    appointment_id: int
    sequence_index: int
    start: datetime
    end: datetime

    @property
    def key(self) -> str:
        return f"{self.appointment_id}:{self.sequence_index}"


@dataclass
class ExpansionResult:
    occurrences: list[Occurrence] = field(default_factory=list)
    truncated: bool = False


class CancellationToken:
    """Cooperative cancellation for long calendar queries."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise QueryCancelled("calendar query cancelled")


def add_months(d: date, n: int) -> date:
    month = d.month - 1 + n
    year = d.year + month // 12
    month = month % 12 + 1
    last = calendar.monthrange(year, month)[1]
    return date(year, month, min(d.day, last))


def _local_starts(rule: RecurrenceRule, first: datetime) -> Iterator[datetime]:
    """Infinite, ascending naive local start times; the series start comes first."""
    if rule.frequency is Frequency.DAILY:
        k = 0
        while True:
            yield first + timedelta(days=k * rule.interval)
            k += 1

    if rule.frequency is Frequency.MONTHLY:
        k = 0
        while True:
            # always offset from the original date so a 31st never drifts to the 28th
            d = add_months(first.date(), k * rule.interval)
            yield datetime.combine(d, first.time())
            k += 1

    if not rule.weekdays:
        k = 0
        while True:
            yield first + timedelta(weeks=k * rule.interval)
            k += 1

    yield first
    first_day = first.date()
    monday0 = first_day - timedelta(days=first_day.weekday())
    days = sorted(rule.weekdays)
    k = 0
    while True:
        week_monday = monday0 + timedelta(days=k * 7 * rule.interval)
        for dow in days:
            d = week_monday + timedelta(days=dow)
            if d <= first_day:
                continue
            yield datetime.combine(d, first.time())
        k += 1


def _iter_slots(
    appointment,
    rule: RecurrenceRule,
    window_start: datetime,
    window_end: datetime,
    exceptions: frozenset[int],
    safety_limit: int,
    token: CancellationToken | None,
):
    """Yield occurrences intersecting the window; the return value is the stop reason."""
    tz = ZoneInfo(appointment.timezone)
    local_start = appointment.start_at.astimezone(tz).replace(tzinfo=None)
    local_end = appointment.end_at.astimezone(tz).replace(tzinfo=None)
    wall_duration = local_end - local_start

    for index, candidate in enumerate(_local_starts(rule, local_start)):
        if token is not None:
            token.raise_if_cancelled()
        if rule.max_count is not None and index >= rule.max_count:
            return "count"
        if rule.end_date is not None and candidate.date() > rule.end_date:
            return "end_date"
        start = candidate.replace(tzinfo=tz)
        if start >= window_end:
            return "window"
        if not rule.is_terminated and index >= safety_limit:
            return "safety_limit"

        end = (candidate + wall_duration).replace(tzinfo=tz)
        if end <= window_start or index in exceptions:
            continue
        yield Occurrence(
            appointment_id=appointment.id,
            sequence_index=index,
            start=start,
            end=end,
        )


def expand(
    appointment,
    rule: RecurrenceRule,
    window_start: datetime,
    window_end: datetime,
    exceptions: frozenset[int] | set[int] = frozenset(),
    safety_limit: int = DEFAULT_SAFETY_LIMIT,
    token: CancellationToken | None = None,
) -> Iterator[Occurrence]:
    """Lazily generate occurrences overlapping [window_start, window_end).

    `appointment` is any object with id, start_at, end_at and timezone
    attributes. Every call starts a fresh generator, so identical inputs give
    identical sequences.
    """
    if window_start >= window_end:
        return iter(())
    gen = _iter_slots(appointment, rule, window_start, window_end,
                      frozenset(exceptions), safety_limit, token)
    return (occ for occ in gen)


def expand_window(
    appointment,
    rule: RecurrenceRule,
    window_start: datetime,
    window_end: datetime,
    exceptions: frozenset[int] | set[int] = frozenset(),
    safety_limit: int = DEFAULT_SAFETY_LIMIT,
    token: CancellationToken | None = None,
) -> ExpansionResult:
    """Materialize an expansion and report whether the safety limit cut it."""
    result = ExpansionResult()
    if window_start >= window_end:
        return result
    gen = _iter_slots(appointment, rule, window_start, window_end,
                      frozenset(exceptions), safety_limit, token)
    while True:
        try:
            result.occurrences.append(next(gen))
        except StopIteration as stop:
            result.truncated = stop.value == "safety_limit"
            break
    if result.truncated:
        logger.warning(
            "Recurrence for appointment_id=%s truncated at %d occurrences",
            appointment.id, safety_limit,
        )
    return result


def occurrence_at(
    appointment,
    rule: RecurrenceRule,
    sequence_index: int,
    safety_limit: int = DEFAULT_SAFETY_LIMIT,
) -> Occurrence | None:
    """The occurrence with the given sequence index, or None if the rule never reaches it."""
    if sequence_index < 0:
        return None
    if rule.max_count is not None and sequence_index >= rule.max_count:
        return None
    if not rule.is_terminated and sequence_index >= safety_limit:
        return None

    tz = ZoneInfo(appointment.timezone)
    local_start = appointment.start_at.astimezone(tz).replace(tzinfo=None)
    wall_duration = appointment.end_at.astimezone(tz).replace(tzinfo=None) - local_start
    for index, candidate in enumerate(_local_starts(rule, local_start)):
        if rule.end_date is not None and candidate.date() > rule.end_date:
            return None
        if index == sequence_index:
            return Occurrence(
                appointment_id=appointment.id,
                sequence_index=index,
                start=candidate.replace(tzinfo=tz),
                end=(candidate + wall_duration).replace(tzinfo=tz),
            )
    return None


# --- Helpers for converting DB rows to RecurrenceRule ---

def parse_weekdays(s: str | None) -> frozenset[int] | None:
    """Parse comma-separated weekday string (e.g. 'MO,TU,FR' or '0,1,4') to a set of ints."""
    if not s or not s.strip():
        return None
    out: set[int] = set()
    for part in s.strip().upper().split(","):
        part = part.strip()
        if part in WEEKDAY_MAP:
            out.add(WEEKDAY_MAP[part])
        elif part.isdigit() and int(part) in WEEKDAY_CODES:
            out.add(int(part))
    return frozenset(out) if out else None


def format_weekdays(days: frozenset[int] | None) -> str | None:
    if not days:
        return None
    return ",".join(WEEKDAY_CODES[d] for d in sorted(days))


def rule_from_db(row) -> RecurrenceRule:
    """Build RecurrenceRule from a RecurrenceRuleModel row (any object with matching attributes)."""
    return RecurrenceRule(
        frequency=row.frequency,
        interval=row.interval,
        weekdays=parse_weekdays(row.weekdays),
        end_date=row.end_date,
        max_count=row.max_count,
    )
