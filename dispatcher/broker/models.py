"""
SQLAlchemy models for the durable job store.
Defines the Job table backing every queue.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import JSON, DateTime, Enum, Index, Integer, String, Text, Uuid
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from dispatcher.constants import JobState
from dispatcher.types.job import JobOptions

JsonType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    """Current UTC time as a naive datetime, the form stored in the jobs table."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """
    Job model representing a unit of work in a named queue.

    This is the authoritative source of truth for job state.
    All job lifecycle transitions are managed through this table.

    Key constraints:
    - a job is leased by at most one worker; lease_token fences acknowledgements
    - waiting jobs are leased in (scheduled_at, created_at) order
    - terminal jobs carry finished_at, which retention and cleanup key on
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    queue: Mapped[str] = mapped_column(String(255), nullable=False)
    kind: Mapped[str] = mapped_column(String(255), nullable=False)

    payload: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)
    options: Mapped[dict[str, Any]] = mapped_column(JsonType, nullable=False, default=dict)

    state: Mapped[JobState] = mapped_column(
        Enum(JobState, name="job_state", create_constraint=True, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=JobState.WAITING,
    )

    # Retry tracking
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    stalled_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Lease management
    lease_owner: Mapped[str | None] = mapped_column(String(255), nullable=True)
    lease_token: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    # Scheduling
    scheduled_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)

    # Timestamps
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    result: Mapped[dict[str, Any] | None] = mapped_column(JsonType, nullable=True)

    __table_args__ = (
        # Queue polling: due waiting/retrying jobs in order
        Index("ix_jobs_queue_poll", "queue", "state", "scheduled_at", "created_at"),
        # Stalled checks: active jobs by lease expiry
        Index("ix_jobs_lease_expiry", "queue", "state", "lease_expires_at"),
        # Retention and cleanup: terminal jobs by finish time
        Index("ix_jobs_finished", "queue", "state", "finished_at"),
    )

    @property
    def job_options(self) -> JobOptions:
        """Get the parsed job options."""
        return JobOptions.model_validate(self.options or {})

    @property
    def is_retryable(self) -> bool:
        """Check if the job has attempts left."""
        return self.attempt < self.max_attempts

    def __repr__(self) -> str:
        return (
            f"Job(id={self.id}, queue={self.queue!r}, "
            f"state={self.state}, attempt={self.attempt}/{self.max_attempts})"
        )
