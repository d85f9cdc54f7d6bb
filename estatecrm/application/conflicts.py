"""
Process-wide conflict indexes and per-resource window locks.

One ConflictIndex per agent calendar, seeded lazily from the database with
the agent's Scheduled non-recurring appointments (detached occurrences
included). Recurring series are not stored in the index: their occurrences
are expanded on demand over the window being checked.

Window locks serialize writers whose time windows overlap on the same
resource. Writers touching disjoint windows proceed in parallel, so a
check-then-commit sequence can never interleave with another write that
could create a conflict with it.
"""
import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from sqlalchemy.orm import Session

from estatecrm.domain.appointment import resource_key
from estatecrm.domain.conflict_index import ConflictIndex
from estatecrm.domain.recurrence import DEFAULT_SAFETY_LIMIT, expand, rule_from_db
from estatecrm.infrastructure.repositories.appointments import AppointmentRepository

logger = logging.getLogger(__name__)

# Upper bound of the lock held for a whole recurring series
SERIES_LOCK_END = datetime.max.replace(tzinfo=timezone.utc)
_MIN_LOCK = timedelta(microseconds=1)


def lock_extent(appt, recurring: bool) -> tuple[datetime, datetime]:
    """Window to lock when changing an appointment as a whole (a series covers all its occurrences)."""
    if recurring:
        return appt.start_at, SERIES_LOCK_END
    return appt.start_at, appt.end_at


class _WindowLockTable:
    def __init__(self):
        self._cond = threading.Condition()
        self._held: list[tuple[datetime, datetime]] = []

    def _blocked(self, start: datetime, end: datetime) -> bool:
        return any(start < h_end and end > h_start for h_start, h_end in self._held)

    def acquire(self, start: datetime, end: datetime) -> tuple[datetime, datetime]:
        window = (start, end)
        with self._cond:
            while self._blocked(start, end):
                self._cond.wait()
            self._held.append(window)
        return window

    def release(self, window: tuple[datetime, datetime]) -> None:
        with self._cond:
            self._held.remove(window)
            self._cond.notify_all()


class ConflictIndexRegistry:
    def __init__(self, safety_limit: int = DEFAULT_SAFETY_LIMIT):
        self.safety_limit = safety_limit
        self._lock = threading.Lock()
        self._indexes: dict[str, ConflictIndex] = {}
        self._window_locks: dict[str, _WindowLockTable] = {}

    def index_for(self, db: Session, created_by: int) -> ConflictIndex:
        resource = resource_key(created_by)
        with self._lock:
            index = self._indexes.get(resource)
            if index is not None:
                return index
            index = ConflictIndex(resource)
            for appt in AppointmentRepository(db).list_scheduled_concrete(created_by):
                index.insert(appt.id, appt.start_at, appt.end_at)
            self._indexes[resource] = index
            logger.debug("Conflict index for %s loaded with %d entries", resource, len(index))
            return index

    def invalidate(self, created_by: int) -> None:
        with self._lock:
            self._indexes.pop(resource_key(created_by), None)

    @contextmanager
    def lock_window(self, created_by: int, start: datetime, end: datetime):
        """Hold [start, end) on the agent's calendar for the duration of the block."""
        resource = resource_key(created_by)
        # a zero-length window would never exclude anyone
        end = max(end, start + _MIN_LOCK)
        with self._lock:
            table = self._window_locks.setdefault(resource, _WindowLockTable())
        window = table.acquire(start, end)
        try:
            yield
        finally:
            table.release(window)

    def find_conflicts(
        self,
        db: Session,
        created_by: int,
        start: datetime,
        end: datetime,
        exclude_id: int | None = None,
        exclude_occurrence: tuple[int, int] | None = None,
    ) -> list[int]:
        """
        Ids of Scheduled appointments on the agent's calendar overlapping [start, end).

        Args:
            exclude_id: concrete appointment being moved (ignored as a conflict)
            exclude_occurrence: (series_id, sequence_index) being detached

        A recurring series is reported under its anchor id.
        """
        hits = self.index_for(db, created_by).overlapping(start, end, exclude=exclude_id)
        repo = AppointmentRepository(db)
        for series, rule_row in repo.list_series(created_by):
            if series.id in hits:
                continue
            rule = rule_from_db(rule_row)
            exceptions = set(repo.get_exceptions(series.id))
            if exclude_occurrence is not None and exclude_occurrence[0] == series.id:
                exceptions.add(exclude_occurrence[1])
            for occ in expand(series, rule, start, end, exceptions, self.safety_limit):
                if occ.end > occ.start:
                    hits.add(series.id)
                    break
        return sorted(hits)


_registry: ConflictIndexRegistry | None = None
_registry_lock = threading.Lock()


def get_conflict_registry() -> ConflictIndexRegistry:
    """Process-wide registry (singleton), like the engine and session factory."""
    global _registry
    with _registry_lock:
        if _registry is None:
            from estatecrm.config import get_settings
            _registry = ConflictIndexRegistry(get_settings().RECURRENCE_SAFETY_LIMIT)
        return _registry
