from enum import Enum


class ConflictKind(str, Enum):
    VALIDATION = 'VALIDATION'
    NOT_AVAILABLE = 'NOT_AVAILABLE'
    DOUBLE_BOOKED = 'DOUBLE_BOOKED'
    STALE_AVAILABILITY = 'STALE_AVAILABILITY'
    STORE_UNAVAILABLE = 'STORE_UNAVAILABLE'


class SchedulingError(Exception):
    """Base error for the scheduling core; carries the taxonomy kind."""

    kind = ConflictKind.VALIDATION

    def __init__(self, message: str, kind: ConflictKind | None = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    def as_detail(self) -> dict:
        return {'kind': self.kind.value, 'message': self.message}


class BookingValidationError(SchedulingError):
    """Malformed input, rejected before touching the store."""

    kind = ConflictKind.VALIDATION


class BookingConflictError(SchedulingError):
    """The candidate cannot be honored; re-resolve and re-prompt."""

    def __init__(self, verdict):
        super().__init__(verdict.message, verdict.kind)
        self.verdict = verdict


class StoreUnavailableError(SchedulingError):
    """The transaction layer could not be reached. Retryable by the caller."""

    kind = ConflictKind.STORE_UNAVAILABLE
