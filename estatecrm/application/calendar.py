"""
Calendar view: a month/week grid with each day's appointments and expanded
series occurrences, bucketed by local date in the viewer's timezone.
"""
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta
from zoneinfo import ZoneInfo

from sqlalchemy.orm import Session

from estatecrm.domain.recurrence import (
    DEFAULT_SAFETY_LIMIT, CancellationToken, expand_window, rule_from_db,
)
from estatecrm.domain.time_grid import ViewKind, build_grid, grid_bounds
from estatecrm.infrastructure.repositories.appointments import AppointmentRepository
from estatecrm.utils.clock import local_midnight, validate_timezone

logger = logging.getLogger(__name__)


@dataclass
class CalendarItem:
    appointment_id: int
    sequence_index: int | None
    title: str
    type: str
    status: str
    start: datetime
    end: datetime
    parent_appointment_id: int | None = None

    @property
    def is_occurrence(self) -> bool:
        return self.sequence_index is not None


@dataclass
class CalendarDay:
    date: date
    in_month: bool
    items: list[CalendarItem] = field(default_factory=list)


@dataclass
class CalendarView:
    view: ViewKind
    reference: date
    timezone: str
    days: list[CalendarDay]
    truncated_series: list[int] = field(default_factory=list)


class CalendarQuery:
    def __init__(self, db: Session, week_start: int = 0, safety_limit: int = DEFAULT_SAFETY_LIMIT):
        self.db = db
        self.week_start = week_start
        self.safety_limit = safety_limit

    def execute(
        self,
        created_by: int,
        reference: date,
        view: ViewKind = ViewKind.MONTH,
        tz_name: str = "UTC",
        token: CancellationToken | None = None,
    ) -> CalendarView:
        """
        Build the grid and fill it.

        Raises:
            QueryCancelled: token was cancelled while expanding
        """
        validate_timezone(tz_name)
        view = ViewKind(view)
        tz = ZoneInfo(tz_name)
        cells = build_grid(reference, view, self.week_start)
        first, after_last = grid_bounds(cells)
        window_start = local_midnight(first, tz_name)
        window_end = local_midnight(after_last, tz_name)

        repo = AppointmentRepository(self.db)
        items: list[CalendarItem] = []
        for appt in repo.list_in_range(created_by, window_start, window_end):
            items.append(CalendarItem(
                appointment_id=appt.id,
                sequence_index=None,
                title=appt.title,
                type=appt.type,
                status=appt.status,
                start=appt.start_at,
                end=appt.end_at,
                parent_appointment_id=appt.parent_appointment_id,
            ))

        truncated: list[int] = []
        for series, rule_row in repo.list_series(created_by, scheduled_only=False):
            if token is not None:
                token.raise_if_cancelled()
            result = expand_window(
                series, rule_from_db(rule_row), window_start, window_end,
                repo.get_exceptions(series.id), self.safety_limit, token,
            )
            if result.truncated:
                truncated.append(series.id)
            for occ in result.occurrences:
                items.append(CalendarItem(
                    appointment_id=series.id,
                    sequence_index=occ.sequence_index,
                    title=series.title,
                    type=series.type,
                    status=series.status,
                    start=occ.start,
                    end=occ.end,
                ))

        items.sort(key=lambda it: (it.start, it.appointment_id, it.sequence_index or 0))
        days = {d: CalendarDay(date=d, in_month=(view is ViewKind.WEEK or d.month == reference.month)) for d in cells}
        for item in items:
            # an item spanning midnight shows on every day it touches
            start_day = item.start.astimezone(tz).date()
            last_day = max(start_day, (item.end - timedelta(microseconds=1)).astimezone(tz).date())
            day = max(start_day, first)
            while day <= last_day and day in days:
                days[day].items.append(item)
                day += timedelta(days=1)

        logger.debug(
            "Calendar %s %s for user_id=%s: %d items, truncated=%s",
            view.value, reference.isoformat(), created_by, len(items), truncated,
        )
        return CalendarView(
            view=view,
            reference=reference,
            timezone=tz_name,
            days=[days[d] for d in cells],
            truncated_series=truncated,
        )
