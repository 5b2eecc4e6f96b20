"""
Exception hierarchy for the job dispatcher.
"""


class DispatcherError(Exception):
    """Base exception for job dispatcher errors."""


class ValidationError(DispatcherError):
    """Raised when a payload or job options are rejected before enqueue."""


class BrokerUnavailable(DispatcherError):
    """Raised when the durable job store cannot be reached."""


class HandlerFailure(DispatcherError):
    """
    Raised by a job handler to fail the current attempt.

    Handlers may also return a ``Failure`` result; raising is a shortcut
    for code paths that are deep inside helper functions.
    """

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable


class StalledJob(DispatcherError):
    """Raised when an active job's lease expired without a heartbeat."""

    def __init__(self, job_id, stalled_count: int):
        super().__init__(f"Job {job_id} stalled ({stalled_count} times)")
        self.job_id = job_id
        self.stalled_count = stalled_count


class MailDeliveryError(DispatcherError):
    """Raised by a mail transport when a message could not be handed off."""

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.retryable = retryable
