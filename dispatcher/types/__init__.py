"""
Type definitions for the job dispatcher.
Contains input/output type definitions for all functions, grouped by module.
"""

from dispatcher.types.events import JobEvent
from dispatcher.types.job import (
    BackoffPolicy,
    EmailContent,
    EmailJob,
    Failure,
    HandlerResult,
    JobContext,
    JobOptions,
    JobSnapshot,
    NotificationJob,
    Retention,
    Success,
    WorkerConfig,
)

__all__ = [
    # Job types
    "BackoffPolicy",
    "Retention",
    "JobOptions",
    "WorkerConfig",
    "JobContext",
    "JobSnapshot",
    "Success",
    "Failure",
    "HandlerResult",
    # Payload types
    "EmailContent",
    "EmailJob",
    "NotificationJob",
    # Event types
    "JobEvent",
]
