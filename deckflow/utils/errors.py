from __future__ import annotations


class DeckflowError(Exception):
    """Base class for every error raised by the scheduling and job engines."""


class InvalidRating(DeckflowError, ValueError):
    pass


class InvalidOutcome(DeckflowError, ValueError):
    pass


class InvalidState(DeckflowError, ValueError):
    pass


class NotFound(DeckflowError, LookupError):
    pass


class Forbidden(DeckflowError):
    """Ownership mismatch. The message never names the other owner's resource."""

    def __init__(self, message: str = "Forbidden") -> None:
        super().__init__(message)


class CapacityExceeded(DeckflowError):
    def __init__(self, current: int, capacity: int, requested: int) -> None:
        self.current = current
        self.capacity = capacity
        self.requested = requested
        super().__init__(
            f"Collection limit reached ({capacity} items maximum). "
            f"Current: {current}, attempting to add: {requested}, available: {self.available}"
        )

    @property
    def available(self) -> int:
        return max(0, self.capacity - self.current)


class CollectionLimitReached(DeckflowError):
    def __init__(self, current: int, limit: int) -> None:
        self.current = current
        self.limit = limit
        super().__init__(f"Maximum collection limit reached ({limit} collections)")


class NoHandler(DeckflowError):
    def __init__(self, job_type: str) -> None:
        self.job_type = job_type
        super().__init__(f"No handler registered for job type '{job_type}'")


class Unavailable(DeckflowError):
    """A claim lost the race for a job; try another one."""


class StaleMemoryState(DeckflowError):
    """The item's memory state changed between read and write."""


class InvalidTransition(DeckflowError):
    """A job status change was requested from a status that does not allow it."""


class RateLimited(DeckflowError):
    def __init__(self, limit: int, retry_after: int) -> None:
        self.limit = limit
        self.retry_after = retry_after
        super().__init__(f"Rate limit exceeded. Maximum {limit} jobs per hour per type.")


__all__ = [
    "DeckflowError",
    "InvalidRating",
    "InvalidOutcome",
    "InvalidState",
    "NotFound",
    "Forbidden",
    "CapacityExceeded",
    "CollectionLimitReached",
    "NoHandler",
    "Unavailable",
    "StaleMemoryState",
    "InvalidTransition",
    "RateLimited",
]
