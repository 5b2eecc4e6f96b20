"""
Event type definitions emitted by worker pools.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from pydantic import BaseModel

from dispatcher.constants import (
    EVENT_COMPLETED,
    EVENT_FAILED,
    EVENT_RETRYING,
    EVENT_STALLED,
    JobState,
)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class JobEvent(BaseModel):
    """
    Event emitted when job state changes.
    Consumed by logging and metrics listeners; never required for correctness.
    """

    event_type: str
    job_id: UUID
    queue: str
    kind: str
    state: JobState
    timestamp: datetime
    data: dict[str, Any] | None = None

    @classmethod
    def job_completed(
        cls,
        job_id: UUID,
        queue: str,
        kind: str,
        result: dict[str, Any] | None = None,
    ) -> "JobEvent":
        """Create a job completed event."""
        return cls(
            event_type=EVENT_COMPLETED,
            job_id=job_id,
            queue=queue,
            kind=kind,
            state=JobState.COMPLETED,
            timestamp=_now(),
            data={"result": result},
        )

    @classmethod
    def job_failed(
        cls,
        job_id: UUID,
        queue: str,
        kind: str,
        error: str,
        attempts: int,
    ) -> "JobEvent":
        """Create a job failed (permanently) event."""
        return cls(
            event_type=EVENT_FAILED,
            job_id=job_id,
            queue=queue,
            kind=kind,
            state=JobState.FAILED,
            timestamp=_now(),
            data={"error": error, "attempts": attempts},
        )

    @classmethod
    def job_retrying(
        cls,
        job_id: UUID,
        queue: str,
        kind: str,
        error: str,
        attempt: int,
        delay_seconds: float,
    ) -> "JobEvent":
        """Create a job scheduled-for-retry event."""
        return cls(
            event_type=EVENT_RETRYING,
            job_id=job_id,
            queue=queue,
            kind=kind,
            state=JobState.RETRYING,
            timestamp=_now(),
            data={"error": error, "attempt": attempt, "delay_seconds": delay_seconds},
        )

    @classmethod
    def job_stalled(
        cls,
        job_id: UUID,
        queue: str,
        kind: str,
        stalled_count: int,
    ) -> "JobEvent":
        """Create a stalled-job-reclaimed event."""
        return cls(
            event_type=EVENT_STALLED,
            job_id=job_id,
            queue=queue,
            kind=kind,
            state=JobState.WAITING,
            timestamp=_now(),
            data={"stalled_count": stalled_count},
        )
