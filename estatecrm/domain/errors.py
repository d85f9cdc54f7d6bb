"""Scheduling error taxonomy shared by use cases, the API and background jobs."""


class SchedulingError(Exception):
    pass


class ValidationError(SchedulingError, ValueError):
    """Malformed input: bad recurrence rule, end <= start, past-dated move."""


class StageTransitionError(ValidationError):
    pass


class ConflictError(SchedulingError):
    def __init__(self, message: str, conflicting_ids: list[int] | None = None):
        super().__init__(message)
        self.conflicting_ids = sorted(conflicting_ids or [])


class NotFoundError(SchedulingError, LookupError):
    def __init__(self, entity: str, entity_id):
        super().__init__(f"{entity} {entity_id} not found")
        self.entity = entity
        self.entity_id = entity_id


class DispatchError(SchedulingError):
    """A notification channel still failed after the retry budget was spent."""

    def __init__(self, channel: str, attempts: int, reason: str = ""):
        super().__init__(f"{channel} delivery failed after {attempts} attempt(s): {reason}".rstrip(": "))
        self.channel = channel
        self.attempts = attempts
        self.reason = reason


class QueryCancelled(SchedulingError):
    pass
