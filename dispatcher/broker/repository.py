"""
Job repository for broker operations.
Implements the core data access patterns for queue management.
"""

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from dispatcher.broker.models import Job, utcnow
from dispatcher.constants import STALLED_JOB_ERROR, TERMINAL_STATES, JobState
from dispatcher.types.job import JobOptions, Retention

logger = logging.getLogger(__name__)


class JobRepository:
    """
    Repository for job store operations.

    Implements atomic operations for:
    - Job creation
    - Lease acquisition with FOR UPDATE SKIP LOCKED
    - Lease-fenced acknowledgements (complete, fail, release)
    - Stalled lease reclamation
    - Retention trimming and cleanup of terminal jobs

    Every method accepts an optional ``now`` so callers and tests can pin
    the clock.
    """

    def __init__(self, session: AsyncSession):
        """
        Initialize the repository with a broker session.

        Args:
            session: The async database session.
        """
        self._session = session

    async def create_job(
        self,
        queue: str,
        payload: dict[str, Any],
        options: JobOptions,
        now: datetime | None = None,
    ) -> Job:
        """
        Create a new waiting job.

        Args:
            queue: The queue name.
            payload: JSON-serializable payload carrying a ``kind`` field.
            options: Processing options for this job.
            now: Override for the current time.

        Returns:
            The created Job.
        """
        now = now or utcnow()
        job = Job(
            id=uuid4(),
            queue=queue,
            kind=str(payload.get("kind", "")),
            payload=payload,
            options=options.model_dump(mode="json"),
            state=JobState.WAITING,
            attempt=0,
            max_attempts=options.max_attempts,
            stalled_count=0,
            scheduled_at=now,
            created_at=now,
            updated_at=now,
        )
        self._session.add(job)
        await self._session.flush()

        logger.debug(
            "Created new job",
            extra={"job_id": str(job.id), "queue": queue, "kind": job.kind}
        )
        return job

    async def get_job(self, job_id: UUID) -> Job | None:
        """
        Get a job by ID.

        Args:
            job_id: The job UUID.

        Returns:
            The Job or None if not found.
        """
        stmt = select(Job).where(Job.id == job_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def count_jobs(self, queue: str) -> dict[JobState, int]:
        """
        Count jobs per state for a queue.

        Args:
            queue: The queue name.

        Returns:
            Mapping of every state to its job count.
        """
        stmt = (
            select(Job.state, func.count())
            .where(Job.queue == queue)
            .group_by(Job.state)
        )
        result = await self._session.execute(stmt)
        counts = {state: 0 for state in JobState}
        for state, count in result.all():
            counts[JobState(state)] = count
        return counts

    async def promote_delayed(self, queue: str, now: datetime | None = None) -> int:
        """
        Move retrying jobs whose backoff elapsed back to waiting.

        Args:
            queue: The queue name.
            now: Override for the current time.

        Returns:
            Number of promoted jobs.
        """
        now = now or utcnow()
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.queue == queue,
                    Job.state == JobState.RETRYING,
                    Job.scheduled_at <= now,
                )
            )
            .values(state=JobState.WAITING, updated_at=now)
        )
        result = await self._session.execute(stmt)
        return result.rowcount or 0

    async def lease_job(
        self,
        queue: str,
        worker_id: str,
        lease_duration: float,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Atomically lease the oldest due waiting job of a queue.

        This is the critical path for job distribution. FOR UPDATE SKIP LOCKED
        lets concurrent workers pick different rows without blocking.

        Args:
            queue: The queue name.
            worker_id: The worker identifier.
            lease_duration: Seconds until the lease expires without a heartbeat.
            now: Override for the current time.

        Returns:
            The leased Job, or None if the queue has nothing due.
        """
        now = now or utcnow()
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.queue == queue,
                    Job.state == JobState.WAITING,
                    Job.scheduled_at <= now,
                )
            )
            .order_by(Job.scheduled_at.asc(), Job.created_at.asc())
            .limit(1)
            .with_for_update(skip_locked=True)
        )
        result = await self._session.execute(stmt)
        job = result.scalar_one_or_none()
        if job is None:
            return None

        job.state = JobState.ACTIVE
        job.attempt += 1
        job.lease_owner = worker_id
        job.lease_token = uuid4().hex
        job.lease_expires_at = now + timedelta(seconds=lease_duration)
        job.started_at = now
        job.updated_at = now
        await self._session.flush()

        logger.debug(
            "Acquired lease",
            extra={"job_id": str(job.id), "worker_id": worker_id, "attempt": job.attempt}
        )
        return job

    async def extend_lease(
        self,
        job_id: UUID,
        lease_token: str,
        lease_duration: float,
        now: datetime | None = None,
    ) -> bool:
        """
        Extend the lease on an active job (heartbeat).

        Args:
            job_id: The job UUID.
            lease_token: Token issued with the lease.
            lease_duration: Seconds to extend the lease by, from now.
            now: Override for the current time.

        Returns:
            True if the lease was extended, False if it is no longer held.
        """
        now = now or utcnow()
        stmt = (
            update(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.state == JobState.ACTIVE,
                    Job.lease_token == lease_token,
                )
            )
            .values(
                lease_expires_at=now + timedelta(seconds=lease_duration),
                updated_at=now,
            )
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) > 0

    async def _get_leased(self, job_id: UUID, lease_token: str) -> Job | None:
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.id == job_id,
                    Job.state == JobState.ACTIVE,
                    Job.lease_token == lease_token,
                )
            )
            .with_for_update()
        )
        result = await self._session.execute(stmt)
        job = result.scalar_one_or_none()
        if job is None:
            logger.warning(
                "Worker no longer holds job lease",
                extra={"job_id": str(job_id)}
            )
        return job

    @staticmethod
    def _clear_lease(job: Job) -> None:
        job.lease_owner = None
        job.lease_token = None
        job.lease_expires_at = None

    async def complete_job(
        self,
        job_id: UUID,
        lease_token: str,
        result: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Mark job as successfully completed.

        Args:
            job_id: The job UUID.
            lease_token: Token issued with the lease.
            result: Optional job result data.
            now: Override for the current time.

        Returns:
            Updated Job or None if the lease was lost.
        """
        now = now or utcnow()
        job = await self._get_leased(job_id, lease_token)
        if job is None:
            return None

        job.state = JobState.COMPLETED
        job.result = result
        job.finished_at = now
        job.updated_at = now
        self._clear_lease(job)
        await self._session.flush()
        return job

    async def fail_job(
        self,
        job_id: UUID,
        lease_token: str,
        error: str,
        retryable: bool = True,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Handle a failed attempt. Either schedule a retry or fail permanently.

        A retry is scheduled only when the failure is retryable and the job
        has attempts left; the delay comes from the job's backoff policy.

        Args:
            job_id: The job UUID.
            lease_token: Token issued with the lease.
            error: Error message.
            retryable: Whether the handler allows another attempt.
            now: Override for the current time.

        Returns:
            Updated Job or None if the lease was lost.
        """
        now = now or utcnow()
        job = await self._get_leased(job_id, lease_token)
        if job is None:
            return None

        job.last_error = error
        job.updated_at = now
        self._clear_lease(job)

        if retryable and job.is_retryable:
            delay = job.job_options.backoff.delay_for(job.attempt)
            job.state = JobState.RETRYING
            job.scheduled_at = now + timedelta(seconds=delay)
            logger.info(
                "Job scheduled for retry",
                extra={"job_id": str(job_id), "attempt": job.attempt, "delay": delay}
            )
        else:
            job.state = JobState.FAILED
            job.finished_at = now
            logger.warning(
                f"Job failed after {job.attempt} attempts",
                extra={"job_id": str(job_id), "error": error, "retryable": retryable}
            )

        await self._session.flush()
        return job

    async def release_job(
        self,
        job_id: UUID,
        lease_token: str,
        now: datetime | None = None,
    ) -> Job | None:
        """
        Give a lease back without an outcome (shutdown cancellation).

        The job returns to waiting and the attempt is refunded.

        Args:
            job_id: The job UUID.
            lease_token: Token issued with the lease.
            now: Override for the current time.

        Returns:
            Updated Job or None if the lease was lost.
        """
        now = now or utcnow()
        job = await self._get_leased(job_id, lease_token)
        if job is None:
            return None

        job.state = JobState.WAITING
        job.attempt = max(0, job.attempt - 1)
        job.updated_at = now
        self._clear_lease(job)
        await self._session.flush()
        return job

    async def reclaim_stalled(
        self,
        queue: str,
        max_stalled: int,
        now: datetime | None = None,
        limit: int = 100,
    ) -> tuple[list[Job], list[Job]]:
        """
        Recover active jobs whose lease expired without a heartbeat.

        A stalled job goes back to waiting (its attempt refunded) while its
        stalled count is below ``max_stalled``; after that it fails.

        Args:
            queue: The queue name.
            max_stalled: Reclaims allowed before the job fails.
            now: Override for the current time.
            limit: Maximum jobs examined per call.

        Returns:
            Tuple of (reclaimed jobs, failed jobs).
        """
        now = now or utcnow()
        stmt = (
            select(Job)
            .where(
                and_(
                    Job.queue == queue,
                    Job.state == JobState.ACTIVE,
                    Job.lease_expires_at < now,
                )
            )
            .order_by(Job.lease_expires_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        result = await self._session.execute(stmt)
        stalled = result.scalars().all()

        reclaimed: list[Job] = []
        failed: list[Job] = []
        for job in stalled:
            self._clear_lease(job)
            job.updated_at = now
            if job.stalled_count < max_stalled:
                job.stalled_count += 1
                job.attempt = max(0, job.attempt - 1)
                job.state = JobState.WAITING
                reclaimed.append(job)
            else:
                job.state = JobState.FAILED
                job.last_error = STALLED_JOB_ERROR
                job.finished_at = now
                failed.append(job)

        await self._session.flush()

        if stalled:
            logger.info(
                f"Recovered {len(reclaimed)} stalled jobs, failed {len(failed)}",
                extra={"queue": queue}
            )
        return reclaimed, failed

    async def apply_retention(
        self,
        queue: str,
        state: JobState,
        retention: Retention,
        now: datetime | None = None,
    ) -> int:
        """
        Trim terminal jobs of one state down to a retention bound.

        Args:
            queue: The queue name.
            state: COMPLETED or FAILED.
            retention: Count and/or age bound.
            now: Override for the current time.

        Returns:
            Number of removed jobs.
        """
        now = now or utcnow()
        removed = 0

        if retention.age_seconds is not None:
            cutoff = now - timedelta(seconds=retention.age_seconds)
            stmt = delete(Job).where(
                and_(
                    Job.queue == queue,
                    Job.state == state,
                    Job.finished_at < cutoff,
                )
            )
            result = await self._session.execute(stmt)
            removed += result.rowcount or 0

        if retention.count is not None:
            surplus = (
                select(Job.id)
                .where(and_(Job.queue == queue, Job.state == state))
                .order_by(Job.finished_at.desc(), Job.created_at.desc())
                .offset(retention.count)
            )
            ids = list((await self._session.execute(surplus)).scalars().all())
            if ids:
                result = await self._session.execute(delete(Job).where(Job.id.in_(ids)))
                removed += result.rowcount or 0

        return removed

    async def clean(
        self,
        queue: str,
        state: JobState,
        older_than: float,
        limit: int,
        now: datetime | None = None,
    ) -> int:
        """
        Remove terminal jobs that finished more than ``older_than`` seconds ago.

        Oldest jobs go first; at most ``limit`` are removed per call.

        Args:
            queue: The queue name.
            state: COMPLETED or FAILED.
            older_than: Minimum age in seconds.
            limit: Maximum jobs removed.
            now: Override for the current time.

        Returns:
            Number of removed jobs.
        """
        if state not in TERMINAL_STATES:
            raise ValueError(f"Cannot clean jobs in state {state}")

        now = now or utcnow()
        cutoff = now - timedelta(seconds=older_than)
        stmt = (
            select(Job.id)
            .where(
                and_(
                    Job.queue == queue,
                    Job.state == state,
                    Job.finished_at < cutoff,
                )
            )
            .order_by(Job.finished_at.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        ids = list((await self._session.execute(stmt)).scalars().all())
        if not ids:
            return 0

        result = await self._session.execute(delete(Job).where(Job.id.in_(ids)))
        count = result.rowcount or 0
        logger.debug(
            f"Cleaned {count} {state} jobs",
            extra={"queue": queue}
        )
        return count
