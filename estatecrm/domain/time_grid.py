"""
Calendar grid math for month and week views.

Pure date arithmetic, no appointment data. A month grid always covers whole
weeks: it starts on the week boundary on or before the 1st and ends on the
last day of the week containing the month's last day.
"""
import calendar
import enum
from datetime import date, timedelta


class ViewKind(str, enum.Enum):
    MONTH = "month"
    WEEK = "week"


def last_day_of_month(year: int, month: int) -> int:
    return calendar.monthrange(year, month)[1]


def week_start_of(d: date, week_start: int = 0) -> date:
    """First day of the week containing d (week_start: MO=0..SU=6)."""
    if not 0 <= week_start <= 6:
        raise ValueError("week_start must be in 0..6")
    offset = (d.weekday() - week_start) % 7
    return d - timedelta(days=offset)


def week_grid(reference: date, week_start: int = 0) -> list[date]:
    first = week_start_of(reference, week_start)
    return [first + timedelta(days=i) for i in range(7)]


def month_grid(reference: date, week_start: int = 0) -> list[date]:
    first_of_month = reference.replace(day=1)
    last_of_month = reference.replace(day=last_day_of_month(reference.year, reference.month))

    grid_start = week_start_of(first_of_month, week_start)
    grid_end = week_start_of(last_of_month, week_start) + timedelta(days=6)

    days = (grid_end - grid_start).days + 1
    return [grid_start + timedelta(days=i) for i in range(days)]


def build_grid(reference: date, view: ViewKind, week_start: int = 0) -> list[date]:
    """Ordered, duplicate-free calendar cells for the given view."""
    if view is ViewKind.MONTH:
        return month_grid(reference, week_start)
    if view is ViewKind.WEEK:
        return week_grid(reference, week_start)
    raise ValueError(f"unhandled view: {view}")


def grid_bounds(cells: list[date]) -> tuple[date, date]:
    """First cell and the day after the last cell (half-open range)."""
    return cells[0], cells[-1] + timedelta(days=1)
