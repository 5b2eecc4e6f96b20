"""
Application constants.
Centralized location for all constant values used across the application.
"""

from enum import StrEnum


class JobState(StrEnum):
    """
    Job lifecycle states.

    State transitions:
    - WAITING -> ACTIVE (lease acquired)
    - ACTIVE -> COMPLETED (success)
    - ACTIVE -> RETRYING (retryable failure, attempts left)
    - ACTIVE -> FAILED (permanent failure or attempts exhausted)
    - ACTIVE -> WAITING (stalled lease reclaimed)
    - RETRYING -> WAITING (backoff delay elapsed)
    """

    WAITING = "waiting"
    ACTIVE = "active"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES: frozenset[JobState] = frozenset({JobState.COMPLETED, JobState.FAILED})


class BackoffType(StrEnum):
    """Delay strategies applied between retry attempts."""

    NONE = "none"
    FIXED = "fixed"
    EXPONENTIAL = "exponential"


class LifecycleState(StrEnum):
    """Process-wide states of the queue system."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    DRAINING = "draining"


# Queue names
EMAIL_QUEUE = "email processing"
NOTIFICATION_QUEUE = "notification processing"

# Default values
DEFAULT_MAX_ATTEMPTS = 1
DEFAULT_LEASE_DURATION_SECONDS = 30.0
STALLED_JOB_ERROR = "job stalled more than allowable limit"

# Metrics names
METRIC_JOBS_ENQUEUED = "dispatcher_jobs_enqueued_total"
METRIC_JOBS_FINISHED = "dispatcher_jobs_finished_total"
METRIC_JOB_DURATION = "dispatcher_job_duration_seconds"
METRIC_LEASE_ACQUIRED = "dispatcher_lease_acquired_total"
METRIC_JOBS_STALLED = "dispatcher_jobs_stalled_total"
METRIC_JOBS_CLEANED = "dispatcher_jobs_cleaned_total"
METRIC_ACTIVE_JOBS = "dispatcher_active_jobs"

# Trace span names
SPAN_ENQUEUE_JOB = "enqueue_job"
SPAN_ACQUIRE_LEASE = "acquire_lease"
SPAN_EXECUTE_JOB = "execute_job"

# Worker pool event types
EVENT_COMPLETED = "completed"
EVENT_FAILED = "failed"
EVENT_RETRYING = "retrying"
EVENT_STALLED = "stalled"
POOL_EVENTS: frozenset[str] = frozenset(
    {EVENT_COMPLETED, EVENT_FAILED, EVENT_RETRYING, EVENT_STALLED}
)
