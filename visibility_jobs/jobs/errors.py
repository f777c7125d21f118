class JobError(Exception):
    """Base job orchestration error."""


class InvalidJobError(JobError, ValueError):
    """Raised when a job type or payload is rejected at enqueue time."""


class HandlerNotFoundError(JobError):
    """Raised when no handler is registered for a job type. Never retried."""


class HandlerExecutionError(JobError):
    """Raised by or on behalf of a handler; retried up to the job's max attempts."""


class HandlerTimeoutError(HandlerExecutionError):
    """Raised when a handler exceeds its execution deadline."""


class ChainingError(JobError):
    """Raised when the next pipeline stage could not be enqueued."""


class RegistryFrozenError(JobError):
    """Raised when registering a handler after dispatch has started."""
