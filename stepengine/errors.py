"""Error taxonomy for the step engine."""

from __future__ import annotations


class StepEngineError(Exception):
    """Base class for all step engine errors."""


class NotFoundError(StepEngineError):
    """A referenced entity does not exist."""


class ConflictError(StepEngineError):
    """A precondition of the requested operation is not met."""


class ConcurrencyConflictError(ConflictError):
    """A staged write was based on data another writer has since changed."""


class UnexpectedConditionError(StepEngineError):
    """An internal invariant is broken. Never expected during normal operation."""


class ServiceError(StepEngineError):
    """Failure reported by a remote collaborator.

    ``recoverable`` marks transient failures (timeouts, 5xx) that a later
    cycle may retry without operator intervention.
    """

    def __init__(
        self,
        message: str,
        recoverable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.recoverable = recoverable
        self.status_code = status_code
