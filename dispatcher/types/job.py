"""
Job-related type definitions for internal use.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, EmailStr, Field, model_validator

from dispatcher.constants import DEFAULT_LEASE_DURATION_SECONDS, DEFAULT_MAX_ATTEMPTS, BackoffType, JobState


class BackoffPolicy(BaseModel):
    """
    Delay applied before a failed job becomes available again.

    - none: retry immediately
    - fixed: wait ``delay`` seconds before every retry
    - exponential: wait ``delay * 2 ** (attempt - 1)`` seconds
    """

    model_config = ConfigDict(extra="forbid")

    type: BackoffType = BackoffType.NONE
    delay: float = Field(default=0.0, ge=0)

    @classmethod
    def fixed(cls, delay: float) -> "BackoffPolicy":
        return cls(type=BackoffType.FIXED, delay=delay)

    @classmethod
    def exponential(cls, base: float) -> "BackoffPolicy":
        return cls(type=BackoffType.EXPONENTIAL, delay=base)

    def delay_for(self, attempt: int) -> float:
        """
        Get the delay in seconds before the retry that follows ``attempt``.

        Args:
            attempt: Number of attempts made so far (1 after the first failure).

        Returns:
            Delay in seconds.
        """
        if self.type == BackoffType.FIXED:
            return self.delay
        if self.type == BackoffType.EXPONENTIAL:
            return self.delay * (2 ** (max(attempt, 1) - 1))
        return 0.0


class Retention(BaseModel):
    """
    Bound on how many terminal job records a queue keeps.

    ``count`` keeps the newest N records (0 removes the job as soon as it
    finishes); ``age_seconds`` drops records older than that.
    """

    model_config = ConfigDict(extra="forbid")

    count: int | None = Field(default=None, ge=0)
    age_seconds: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _require_bound(self) -> "Retention":
        if self.count is None and self.age_seconds is None:
            raise ValueError("retention needs a count or an age")
        return self

    @classmethod
    def remove(cls) -> "Retention":
        """Remove records immediately."""
        return cls(count=0)


class JobOptions(BaseModel):
    """Per-job (or per-queue default) processing options."""

    model_config = ConfigDict(extra="forbid")

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    backoff: BackoffPolicy = Field(default_factory=BackoffPolicy)
    retain_completed: Retention | None = None
    retain_failed: Retention | None = None


class WorkerConfig(BaseModel):
    """Tunables for one worker pool."""

    concurrency: int = Field(default=1, ge=1)
    stalled_check_interval: float = Field(default=60.0, gt=0)
    max_stalled_retries: int = Field(default=1, ge=0)
    lease_duration: float = Field(default=DEFAULT_LEASE_DURATION_SECONDS, gt=0)
    heartbeat_interval: float = Field(default=10.0, gt=0)
    poll_interval: float = Field(default=1.0, gt=0)
    job_timeout: float | None = Field(default=None, gt=0)

    @model_validator(mode="after")
    def _heartbeat_within_lease(self) -> "WorkerConfig":
        if self.heartbeat_interval >= self.lease_duration:
            raise ValueError("heartbeat_interval must be shorter than lease_duration")
        return self


class EmailContent(BaseModel):
    """Rendered email body supplied by the application."""

    subject: str = Field(min_length=1)
    html: str


class EmailJob(BaseModel):
    """Payload of the email queue."""

    kind: str = Field(min_length=1)
    to: EmailStr
    subject: str = Field(min_length=1)
    html: str


class NotificationJob(BaseModel):
    """Payload of the notification queue."""

    kind: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    message: str


class JobSnapshot(BaseModel):
    """
    Detached, read-only view of a job record.
    Returned by status queries.
    """

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    queue: str
    kind: str
    state: JobState
    payload: dict[str, Any]
    attempt: int
    max_attempts: int
    stalled_count: int
    scheduled_at: datetime | None = None
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None
    last_error: str | None = None
    result: dict[str, Any] | None = None


@dataclass(frozen=True)
class Success:
    """Handler outcome: the job is done."""

    output: dict[str, Any] | None = None


@dataclass(frozen=True)
class Failure:
    """Handler outcome: the attempt failed; ``retryable`` decides what happens next."""

    error: str
    retryable: bool = True


HandlerResult = Success | Failure


@dataclass
class JobContext:
    """
    Context passed to job handlers during execution.
    Contains job metadata and utilities for the handler.
    """

    job_id: UUID
    queue: str
    kind: str
    attempt: int
    max_attempts: int
    payload: dict[str, Any]
    lease_token: str
    lease_expires_at: datetime

    @property
    def is_last_attempt(self) -> bool:
        """Check if this is the last retry attempt."""
        return self.attempt >= self.max_attempts

    @property
    def remaining_attempts(self) -> int:
        """Get remaining retry attempts."""
        return max(0, self.max_attempts - self.attempt)
