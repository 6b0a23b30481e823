"""Exceptions raised by the scheduling engine."""


class SchedulerError(Exception):
    """Base exception for scheduling engine errors."""

    def __init__(self, message: str, job_id: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.job_id = job_id

    def __str__(self) -> str:
        if self.job_id:
            return f"{self.message} (job: {self.job_id})"
        return self.message


class ValidationError(SchedulerError):
    """Raised when a definition, configuration or payload is rejected.

    Validation errors are surfaced synchronously to the caller and
    never result in a job being enqueued.
    """

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or []

    def __str__(self) -> str:
        if self.errors:
            return f"{self.message}: {'; '.join(self.errors)}"
        return self.message


class InvalidScheduleError(ValidationError):
    """Raised when a cron expression or timezone cannot be evaluated."""

    def __init__(
        self,
        message: str,
        cron_expression: str | None = None,
        timezone: str | None = None,
    ) -> None:
        super().__init__(message)
        self.cron_expression = cron_expression
        self.timezone = timezone


class UnknownJobTypeError(ValidationError):
    """Raised when a job type is not present in the registry."""

    def __init__(self, job_type: str) -> None:
        super().__init__(f"Unknown job type: {job_type}")
        self.job_type = job_type


class HandlerError(SchedulerError):
    """Base class for errors raised from inside job handlers."""
    pass


class TransientHandlerError(HandlerError):
    """A handler failure that may succeed on a later attempt."""
    pass


class PermanentHandlerError(HandlerError):
    """A handler failure that must not be retried."""
    pass


class JobTimeoutError(TransientHandlerError):
    """Raised when a job exceeds its deadline."""

    def __init__(self, message: str, job_id: str | None = None, timeout: float | None = None) -> None:
        super().__init__(message, job_id)
        self.timeout = timeout


class JobCancelledError(PermanentHandlerError):
    """Raised at a cancellation checkpoint once a running job is cancelled."""
    pass


class ClaimConflict(SchedulerError):
    """Lost race for a job. Not a failure; the caller moves on."""
    pass


class NotFoundError(SchedulerError):
    """Raised when a definition or job does not exist."""
    pass


class InvalidStateError(SchedulerError):
    """Raised when an operation is not allowed in the current state."""

    def __init__(self, message: str, state: str | None = None) -> None:
        super().__init__(message)
        self.state = state
