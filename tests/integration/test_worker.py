"""
Integration tests for worker pool functionality.
"""

import asyncio
from collections.abc import AsyncGenerator, Callable

import pytest
import pytest_asyncio

from dispatcher.broker import BrokerClient, JobRepository
from dispatcher.constants import (
    EVENT_COMPLETED,
    EVENT_FAILED,
    EVENT_RETRYING,
    EVENT_STALLED,
    JobState,
)
from dispatcher.observability.metrics import MetricsCollector
from dispatcher.queue import Queue
from dispatcher.types.events import JobEvent
from dispatcher.types.job import Failure, JobContext, Retention, Success, WorkerConfig
from dispatcher.worker import WorkerPool


def fast_config(**overrides) -> WorkerConfig:
    values = {
        "concurrency": 1,
        "stalled_check_interval": 0.1,
        "max_stalled_retries": 1,
        "lease_duration": 5,
        "heartbeat_interval": 1,
        "poll_interval": 0.02,
        "job_timeout": 5,
    }
    values.update(overrides)
    return WorkerConfig(**values)


def record_events(pool: WorkerPool) -> dict[str, list[JobEvent]]:
    events: dict[str, list[JobEvent]] = {}
    for name in (EVENT_COMPLETED, EVENT_FAILED, EVENT_RETRYING, EVENT_STALLED):
        events[name] = []
        pool.on(name, events[name].append)
    return events


class TestWorkerPool:
    """Integration tests for worker pool job processing."""

    @pytest_asyncio.fixture
    async def make_pool(
        self,
        broker: BrokerClient,
        metrics: MetricsCollector,
    ) -> AsyncGenerator[Callable[..., WorkerPool]]:
        """Factory for pools that are drained at teardown."""
        pools: list[WorkerPool] = []

        def factory(queue: Queue, handler, **config) -> WorkerPool:
            pool = WorkerPool(queue, handler, config=fast_config(**config), worker_id="test-worker", metrics=metrics)
            pools.append(pool)
            return pool

        yield factory

        for pool in pools:
            await pool.drain(timeout=1)

    async def test_success_is_processed_once(self, make_queue, make_pool, wait_until):
        """Test a successful job completes and is never run again."""
        queue = make_queue(max_attempts=3)
        calls: list[JobContext] = []

        async def handler(ctx: JobContext):
            calls.append(ctx)
            return Success(output={"echo": ctx.payload["message"]})

        pool = make_pool(queue, handler)
        events = record_events(pool)
        job_id = await queue.enqueue({"kind": "echo", "message": "hello"})
        await pool.start()

        await wait_until(lambda: len(events[EVENT_COMPLETED]) == 1)
        await asyncio.sleep(0.2)

        job = await queue.get_job(job_id)
        assert job.state == JobState.COMPLETED
        assert job.attempt == 1
        assert job.result == {"echo": "hello"}
        assert len(calls) == 1
        assert calls[0].attempt == 1
        assert events[EVENT_COMPLETED][0].job_id == job_id
        assert events[EVENT_RETRYING] == []

    async def test_failing_job_uses_every_attempt(self, make_queue, make_pool, wait_until):
        """Test a job failing every time runs exactly max_attempts times, then fails."""
        queue = make_queue(max_attempts=3)
        attempts: list[int] = []

        async def handler(ctx: JobContext):
            attempts.append(ctx.attempt)
            return Failure(error=f"attempt {ctx.attempt} failed")

        pool = make_pool(queue, handler)
        events = record_events(pool)
        job_id = await queue.enqueue({"kind": "flaky"})
        await pool.start()

        await wait_until(lambda: len(events[EVENT_FAILED]) == 1)
        await asyncio.sleep(0.2)

        job = await queue.get_job(job_id)
        assert job.state == JobState.FAILED
        assert job.last_error == "attempt 3 failed"
        assert attempts == [1, 2, 3]
        assert len(events[EVENT_RETRYING]) == 2
        assert events[EVENT_FAILED][0].data["attempts"] == 3

    async def test_non_retryable_failure_stops_early(self, make_queue, make_pool, wait_until):
        queue = make_queue(max_attempts=5)
        attempts: list[int] = []

        async def handler(ctx: JobContext):
            attempts.append(ctx.attempt)
            return Failure(error="invalid recipient", retryable=False)

        pool = make_pool(queue, handler)
        events = record_events(pool)
        job_id = await queue.enqueue({"kind": "welcome"})
        await pool.start()

        await wait_until(lambda: len(events[EVENT_FAILED]) == 1)

        assert attempts == [1]
        assert (await queue.get_job(job_id)).state == JobState.FAILED

    async def test_retry_then_success(self, make_queue, make_pool, wait_until):
        """Test a transient failure is retried and the job completes."""
        queue = make_queue(max_attempts=3)

        async def handler(ctx: JobContext):
            if ctx.attempt == 1:
                raise ConnectionError("relay unavailable")
            return Success()

        pool = make_pool(queue, handler)
        events = record_events(pool)
        job_id = await queue.enqueue({"kind": "echo"})
        await pool.start()

        await wait_until(lambda: len(events[EVENT_COMPLETED]) == 1)

        job = await queue.get_job(job_id)
        assert job.state == JobState.COMPLETED
        assert job.attempt == 2
        assert len(events[EVENT_RETRYING]) == 1

    async def test_concurrency_bound(self, broker: BrokerClient, make_queue, make_pool, wait_until):
        """Test no more than ``concurrency`` jobs are ever active at once."""
        queue = make_queue()
        running = 0
        peak = 0
        active_in_broker: list[int] = []

        async def handler(ctx: JobContext):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.1)
            running -= 1
            return Success()

        pool = make_pool(queue, handler, concurrency=2)
        events = record_events(pool)
        for i in range(6):
            await queue.enqueue({"kind": "echo", "n": i})
        await pool.start()

        async def all_done() -> bool:
            counts = await queue.counts()
            active_in_broker.append(counts[JobState.ACTIVE])
            return counts[JobState.COMPLETED] == 6

        await wait_until(all_done, timeout=10)

        assert peak == 2
        assert max(active_in_broker) <= 2
        assert len(events[EVENT_COMPLETED]) == 6

    async def test_stalled_job_is_reclaimed(self, broker: BrokerClient, make_queue, make_pool, wait_until):
        """Test a job leased by a dead worker is reclaimed and processed."""
        queue = make_queue(max_attempts=1)
        job_id = await queue.enqueue({"kind": "echo"})

        # A worker leases the job and dies without acknowledging it
        async with broker.session() as session:
            await JobRepository(session).lease_job(queue.name, "dead-worker", lease_duration=0.1)

        async def handler(ctx: JobContext):
            return Success()

        pool = make_pool(queue, handler)
        events = record_events(pool)
        await pool.start()

        await wait_until(lambda: len(events[EVENT_COMPLETED]) == 1)

        job = await queue.get_job(job_id)
        assert job.state == JobState.COMPLETED
        assert job.stalled_count == 1
        assert job.attempt == 1
        assert [e.job_id for e in events[EVENT_STALLED]] == [job_id]

    async def test_stalled_too_often_fails(self, broker: BrokerClient, make_queue, make_pool, wait_until):
        """Test a job exceeding the stall limit fails without running."""
        queue = make_queue()
        job_id = await queue.enqueue({"kind": "echo"})
        async with broker.session() as session:
            await JobRepository(session).lease_job(queue.name, "dead-worker", lease_duration=0.1)

        calls = 0

        async def handler(ctx: JobContext):
            nonlocal calls
            calls += 1
            return Success()

        pool = make_pool(queue, handler, max_stalled_retries=0)
        events = record_events(pool)
        await pool.start()

        await wait_until(lambda: len(events[EVENT_FAILED]) == 1)

        job = await queue.get_job(job_id)
        assert job.state == JobState.FAILED
        assert job.last_error == "job stalled more than allowable limit"
        assert calls == 0

    async def test_heartbeat_keeps_long_job(self, make_queue, make_pool, wait_until):
        """Test a job outliving its lease is kept alive by heartbeats."""
        queue = make_queue()

        async def handler(ctx: JobContext):
            await asyncio.sleep(1.0)
            return Success()

        pool = make_pool(queue, handler, lease_duration=0.4, heartbeat_interval=0.1)
        events = record_events(pool)
        job_id = await queue.enqueue({"kind": "slow"})
        await pool.start()

        await wait_until(lambda: len(events[EVENT_COMPLETED]) == 1)

        job = await queue.get_job(job_id)
        assert job.state == JobState.COMPLETED
        assert job.stalled_count == 0
        assert events[EVENT_STALLED] == []

    async def test_retention_removes_completed(self, make_queue, make_pool, wait_until):
        """Test a zero completed retention removes the job when it finishes."""
        queue = make_queue(retain_completed=Retention(count=0))

        async def handler(ctx: JobContext):
            return Success()

        pool = make_pool(queue, handler)
        events = record_events(pool)
        job_id = await queue.enqueue({"kind": "echo"})
        await pool.start()

        await wait_until(lambda: len(events[EVENT_COMPLETED]) == 1)

        assert await queue.get_job(job_id) is None

    async def test_drain_waits_for_in_flight(self, make_queue, make_pool, wait_until):
        """Test draining lets a running job finish and leases nothing new."""
        queue = make_queue()
        started = asyncio.Event()

        async def handler(ctx: JobContext):
            started.set()
            await asyncio.sleep(0.3)
            return Success()

        pool = make_pool(queue, handler)
        first = await queue.enqueue({"kind": "slow"})
        second = await queue.enqueue({"kind": "slow"})
        await pool.start()
        await asyncio.wait_for(started.wait(), 5)

        assert await pool.drain(timeout=5) is True

        assert (await queue.get_job(first)).state == JobState.COMPLETED
        assert (await queue.get_job(second)).state == JobState.WAITING
        assert pool.active_count == 0
        assert not pool.is_running

    async def test_drain_timeout_hands_job_back(self, make_queue, make_pool):
        """Test a job still running at the drain timeout returns to waiting."""
        queue = make_queue()
        started = asyncio.Event()

        async def handler(ctx: JobContext):
            started.set()
            await asyncio.sleep(30)
            return Success()

        pool = make_pool(queue, handler, job_timeout=None)
        job_id = await queue.enqueue({"kind": "stuck"})
        await pool.start()
        await asyncio.wait_for(started.wait(), 5)

        assert await pool.drain(timeout=0.1) is False

        job = await queue.get_job(job_id)
        assert job.state == JobState.WAITING
        assert job.attempt == 0

    async def test_failing_listener_does_not_affect_job(self, make_queue, make_pool, wait_until):
        queue = make_queue()
        seen: list[JobEvent] = []

        def broken(event: JobEvent):
            raise RuntimeError("listener bug")

        async def handler(ctx: JobContext):
            return Success()

        pool = make_pool(queue, handler)
        pool.on(EVENT_COMPLETED, broken)
        pool.on(EVENT_COMPLETED, seen.append)
        job_id = await queue.enqueue({"kind": "echo"})
        await pool.start()

        await wait_until(lambda: len(seen) == 1)

        assert (await queue.get_job(job_id)).state == JobState.COMPLETED

    async def test_unknown_event_rejected(self, make_queue, make_pool):
        pool = make_pool(make_queue(), lambda ctx: Success())

        with pytest.raises(ValueError):
            pool.on("exploded", print)
