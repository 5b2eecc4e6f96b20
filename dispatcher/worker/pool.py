"""
Worker pool for executing jobs from one queue.

The pool leases jobs from the queue, executes them, and reconciles each
handler outcome with the broker according to the job lifecycle.
"""

import asyncio
import inspect
import logging
import os
import time
from collections.abc import Awaitable, Callable
from typing import Any

from dispatcher.broker import JobRepository
from dispatcher.constants import (
    POOL_EVENTS,
    SPAN_ACQUIRE_LEASE,
    SPAN_EXECUTE_JOB,
    JobState,
)
from dispatcher.errors import StalledJob
from dispatcher.observability.logging import bind_context, clear_context
from dispatcher.observability.metrics import MetricsCollector, get_metrics
from dispatcher.observability.tracing import get_tracer
from dispatcher.queue import Queue
from dispatcher.types.events import JobEvent
from dispatcher.types.job import HandlerResult, JobContext, Success, WorkerConfig
from dispatcher.worker.handlers import JobHandler, execute_handler

logger = logging.getLogger(__name__)

EventListener = Callable[[JobEvent], Awaitable[Any] | Any]


class WorkerPool:
    """
    Bounded pool of concurrent job executions for one queue.

    Features:
    - Atomic lease acquisition, never more than ``concurrency`` jobs in flight
    - Heartbeat to extend leases for long-running jobs
    - Retry with backoff, permanent failure when attempts run out
    - Periodic stalled-job reclamation
    - Graceful drain: stop leasing, let in-flight jobs finish
    """

    def __init__(
        self,
        queue: Queue,
        handler: JobHandler,
        config: WorkerConfig | None = None,
        worker_id: str | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the pool.

        Args:
            queue: Queue to drain.
            handler: Coroutine function run once per lease.
            config: Concurrency, lease and stall settings.
            worker_id: Lease owner name. Defaults to hostname + PID.
            metrics: Metrics collector. Defaults to the process collector.
        """
        self.queue = queue
        self.handler = handler
        self.config = config or WorkerConfig()
        self.worker_id = worker_id or f"{os.uname().nodename}-{os.getpid()}"

        self._metrics = metrics or get_metrics()
        self._listeners: dict[str, list[EventListener]] = {name: [] for name in POOL_EVENTS}
        self._in_flight: dict[str, tuple[asyncio.Task, JobContext]] = {}
        self._closing = asyncio.Event()
        self._wakeup = asyncio.Event()
        self._lease_task: asyncio.Task | None = None
        self._heartbeat_task: asyncio.Task | None = None
        self._stalled_task: asyncio.Task | None = None

    @property
    def active_count(self) -> int:
        """Number of jobs this pool is executing right now."""
        return len(self._in_flight)

    @property
    def is_running(self) -> bool:
        return self._lease_task is not None and not self._lease_task.done()

    def on(self, event: str, listener: EventListener) -> EventListener:
        """
        Register a listener for a pool event.

        Args:
            event: One of completed, failed, retrying, stalled.
            listener: Callable (sync or async) receiving a JobEvent.

        Returns:
            The listener, so this can be used as a decorator helper.
        """
        if event not in self._listeners:
            raise ValueError(f"Unknown worker pool event: {event}")
        self._listeners[event].append(listener)
        return listener

    async def start(self) -> None:
        """Start leasing, heartbeating and stalled checks."""
        if self.is_running:
            return

        logger.info(
            "Worker pool starting",
            extra={
                "worker_id": self.worker_id,
                "queue": self.queue.name,
                "concurrency": self.config.concurrency,
            }
        )

        self._closing.clear()
        name = self.queue.name
        self._lease_task = asyncio.create_task(self._lease_loop(), name=f"lease:{name}")
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name=f"heartbeat:{name}")
        self._stalled_task = asyncio.create_task(self._stalled_loop(), name=f"stalled:{name}")

    def close(self) -> None:
        """Stop leasing new jobs. In-flight jobs keep running."""
        if not self._closing.is_set():
            logger.info("Worker pool closing", extra={"queue": self.queue.name})
        self._closing.set()
        self._wakeup.set()

    async def drain(self, timeout: float | None = None) -> bool:
        """
        Stop leasing and wait for in-flight jobs to finish.

        Jobs still running after ``timeout`` are cancelled and their leases
        handed back to the queue.

        Args:
            timeout: Seconds to wait, or None to wait indefinitely.

        Returns:
            True if every in-flight job finished on its own.
        """
        self.close()

        if self._lease_task is not None:
            await asyncio.gather(self._lease_task, return_exceptions=True)

        finished = True
        pending = [task for task, _ in self._in_flight.values()]
        if pending:
            logger.info(
                f"Waiting for {len(pending)} jobs to complete",
                extra={"queue": self.queue.name}
            )
            _, not_done = await asyncio.wait(pending, timeout=timeout)
            if not_done:
                finished = False
                logger.warning(
                    f"Drain timeout; cancelling {len(not_done)} jobs",
                    extra={"queue": self.queue.name, "timeout": timeout}
                )
                for task in not_done:
                    task.cancel()
                await asyncio.gather(*not_done, return_exceptions=True)

        for task in (self._heartbeat_task, self._stalled_task):
            if task is not None:
                task.cancel()
        await asyncio.gather(
            *(t for t in (self._heartbeat_task, self._stalled_task) if t is not None),
            return_exceptions=True,
        )

        logger.info("Worker pool stopped", extra={"queue": self.queue.name})
        return finished

    async def _idle(self, timeout: float) -> None:
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout)
        except TimeoutError:
            pass
        self._wakeup.clear()

    async def _lease_loop(self) -> None:
        while not self._closing.is_set():
            if len(self._in_flight) >= self.config.concurrency:
                await self._idle(self.config.poll_interval)
                continue

            try:
                context = await self._acquire()
            except Exception as e:
                logger.exception(
                    f"Error in lease loop: {e}",
                    extra={"queue": self.queue.name}
                )
                await self._idle(self.config.poll_interval)
                continue

            if context is None:
                await self._idle(self.config.poll_interval)
                continue

            if self._closing.is_set():
                # Leased while closing; hand it straight back
                await self._release(context)
                break

            self._spawn(context)

    async def _acquire(self) -> JobContext | None:
        with get_tracer().start_as_current_span(SPAN_ACQUIRE_LEASE) as span:
            span.set_attribute("queue", self.queue.name)

            async with self.queue.broker.session() as session:
                repo = JobRepository(session)
                await repo.promote_delayed(self.queue.name)
                job = await repo.lease_job(
                    queue=self.queue.name,
                    worker_id=self.worker_id,
                    lease_duration=self.config.lease_duration,
                )
                if job is None:
                    return None

                context = JobContext(
                    job_id=job.id,
                    queue=job.queue,
                    kind=job.kind,
                    attempt=job.attempt,
                    max_attempts=job.max_attempts,
                    payload=dict(job.payload),
                    lease_token=job.lease_token,
                    lease_expires_at=job.lease_expires_at,
                )

        self._metrics.record_lease_acquired(self.queue.name, self.worker_id)
        return context

    def _spawn(self, context: JobContext) -> None:
        task = asyncio.create_task(self._process(context), name=f"job:{context.job_id}")
        self._in_flight[context.lease_token] = (task, context)
        self._metrics.set_active_jobs(self.queue.name, len(self._in_flight))
        task.add_done_callback(lambda _t, token=context.lease_token: self._on_done(token))

    def _on_done(self, lease_token: str) -> None:
        self._in_flight.pop(lease_token, None)
        self._metrics.set_active_jobs(self.queue.name, len(self._in_flight))
        self._wakeup.set()

    async def _process(self, context: JobContext) -> None:
        """
        Execute a single leased job.

        Handles the full lifecycle:
        1. Run the handler under the job timeout
        2. Mark COMPLETED, RETRYING or FAILED
        3. Emit the matching event
        """
        start_time = time.monotonic()
        bind_context(job_id=str(context.job_id), queue=context.queue)

        try:
            logger.info(
                "Executing job",
                extra={"kind": context.kind, "attempt": context.attempt}
            )

            with get_tracer().start_as_current_span(SPAN_EXECUTE_JOB) as span:
                span.set_attribute("job_id", str(context.job_id))
                span.set_attribute("queue", context.queue)
                span.set_attribute("attempt", context.attempt)

                result = await execute_handler(self.handler, context, self.config.job_timeout)

            await self._settle(context, result, time.monotonic() - start_time)

        except asyncio.CancelledError:
            await self._release(context)
            raise

        except Exception as e:
            # The lease expires and the stalled check picks the job up
            logger.exception(
                "Failed to record job outcome",
                extra={"error": str(e)}
            )

        finally:
            clear_context()

    async def _settle(self, context: JobContext, result: HandlerResult, duration: float) -> None:
        queue = self.queue.name

        async with self.queue.broker.session() as session:
            repo = JobRepository(session)

            if isinstance(result, Success):
                job = await repo.complete_job(context.job_id, context.lease_token, result.output)
            else:
                job = await repo.fail_job(
                    context.job_id,
                    context.lease_token,
                    error=result.error,
                    retryable=result.retryable,
                )

            if job is None:
                logger.warning("Lease lost before the outcome was recorded")
                self._metrics.record_job_finished(queue, "lost", duration)
                return

            state = job.state
            attempt = job.attempt
            options = job.job_options

            retention = None
            if state == JobState.COMPLETED:
                retention = options.retain_completed
            elif state == JobState.FAILED:
                retention = options.retain_failed
            if retention is not None:
                await repo.apply_retention(queue, state, retention)

        self._metrics.record_job_finished(queue, state.value, duration)

        if isinstance(result, Success):
            logger.info(
                "Job completed successfully",
                extra={"duration": f"{duration:.2f}s"}
            )
            await self._emit(JobEvent.job_completed(context.job_id, queue, context.kind, result.output))
        elif state == JobState.RETRYING:
            delay = options.backoff.delay_for(attempt)
            await self._emit(
                JobEvent.job_retrying(context.job_id, queue, context.kind, result.error, attempt, delay)
            )
        else:
            logger.warning(
                "Job failed",
                extra={"error": result.error, "attempt": attempt}
            )
            await self._emit(JobEvent.job_failed(context.job_id, queue, context.kind, result.error, attempt))

    async def _release(self, context: JobContext) -> None:
        try:
            async with self.queue.broker.session() as session:
                await JobRepository(session).release_job(context.job_id, context.lease_token)
        except Exception:
            logger.exception(
                "Failed to release job lease",
                extra={"job_id": str(context.job_id)}
            )
        else:
            logger.info("Released job lease", extra={"job_id": str(context.job_id)})

    async def _heartbeat_loop(self) -> None:
        """
        Periodically extend leases on running jobs.

        This prevents in-flight jobs from being reclaimed as stalled.
        """
        while True:
            try:
                await asyncio.sleep(self.config.heartbeat_interval)

                if not self._in_flight:
                    continue

                async with self.queue.broker.session() as session:
                    repo = JobRepository(session)
                    for _, context in list(self._in_flight.values()):
                        extended = await repo.extend_lease(
                            context.job_id, context.lease_token, self.config.lease_duration
                        )
                        if not extended:
                            logger.warning("Lease lost during heartbeat", extra={"job_id": str(context.job_id)})

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in heartbeat loop: {e}")

    async def _stalled_loop(self) -> None:
        while True:
            try:
                await self.check_stalled()
                await asyncio.sleep(self.config.stalled_check_interval)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.exception(f"Error in stalled check: {e}")
                try:
                    await asyncio.sleep(self.config.stalled_check_interval)
                except asyncio.CancelledError:
                    break

    async def check_stalled(self) -> tuple[int, int]:
        """
        Reclaim or fail active jobs whose lease expired.

        Returns:
            Tuple of (reclaimed, failed) job counts.
        """
        queue = self.queue.name
        events: list[JobEvent] = []

        async with self.queue.broker.session() as session:
            reclaimed, failed = await JobRepository(session).reclaim_stalled(
                queue, self.config.max_stalled_retries
            )
            for job in reclaimed:
                logger.warning(str(StalledJob(job.id, job.stalled_count)), extra={"queue": queue})
                events.append(JobEvent.job_stalled(job.id, queue, job.kind, job.stalled_count))
            for job in failed:
                logger.error(
                    "Stalled job failed",
                    extra={"job_id": str(job.id), "queue": queue, "attempts": job.attempt}
                )
                events.append(JobEvent.job_failed(job.id, queue, job.kind, job.last_error or "", job.attempt))

        self._metrics.record_stalled(queue, "reclaimed", len(reclaimed))
        self._metrics.record_stalled(queue, "failed", len(failed))

        for event in events:
            await self._emit(event)
        return len(reclaimed), len(failed)

    async def _emit(self, event: JobEvent) -> None:
        for listener in list(self._listeners.get(event.event_type, ())):
            try:
                outcome = listener(event)
                if inspect.isawaitable(outcome):
                    await outcome
            except Exception:
                logger.exception(
                    "Event listener failed",
                    extra={"event": event.event_type, "job_id": str(event.job_id)}
                )
