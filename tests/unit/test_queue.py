"""
Unit tests for the Queue handle.
"""

from uuid import uuid4

import pytest
from prometheus_client import CollectorRegistry

from dispatcher.broker import BrokerClient
from dispatcher.constants import JobState
from dispatcher.errors import BrokerUnavailable, ValidationError
from dispatcher.observability.metrics import MetricsCollector
from dispatcher.queue import Queue
from dispatcher.types.job import EmailJob, JobOptions, Retention


class TestEnqueue:
    """Tests for Queue.enqueue."""

    async def test_enqueue_creates_waiting_job(self, make_queue):
        """Test an enqueued job is stored as waiting with queue defaults."""
        queue = make_queue(max_attempts=3)

        job_id = await queue.enqueue({"kind": "echo", "message": "hi"})

        snapshot = await queue.get_job(job_id)
        assert snapshot is not None
        assert snapshot.id == job_id
        assert snapshot.state == JobState.WAITING
        assert snapshot.kind == "echo"
        assert snapshot.max_attempts == 3
        assert snapshot.attempt == 0
        assert snapshot.payload == {"kind": "echo", "message": "hi"}

    async def test_enqueue_ids_are_unique(self, make_queue):
        queue = make_queue()

        ids = {await queue.enqueue({"kind": "echo"}) for _ in range(5)}

        assert len(ids) == 5

    async def test_enqueue_option_overrides(self, make_queue):
        """Test per-job options override the queue defaults."""
        queue = make_queue(max_attempts=1)

        job_id = await queue.enqueue({"kind": "echo"}, {"max_attempts": 4})

        assert (await queue.get_job(job_id)).max_attempts == 4

    async def test_enqueue_accepts_options_model(self, make_queue):
        queue = make_queue()

        job_id = await queue.enqueue({"kind": "echo"}, JobOptions(max_attempts=2, retain_failed=Retention(count=1)))

        assert (await queue.get_job(job_id)).max_attempts == 2

    async def test_enqueue_records_metric(self, broker: BrokerClient):
        registry = CollectorRegistry()
        queue = Queue("test queue", broker, metrics=MetricsCollector(registry=registry))

        await queue.enqueue({"kind": "echo"})

        assert registry.get_sample_value(
            "dispatcher_jobs_enqueued_total", {"queue": "test queue", "kind": "echo"}
        ) == 1.0

    @pytest.mark.parametrize(
        "payload",
        [
            {"message": "no kind"},
            {"kind": ""},
            {"kind": 42},
            ["not", "an", "object"],
            {"kind": "echo", "when": object()},
        ],
    )
    async def test_enqueue_rejects_bad_payload(self, make_queue, payload):
        """Test malformed payloads never reach the broker."""
        queue = make_queue()

        with pytest.raises(ValidationError):
            await queue.enqueue(payload)

        assert (await queue.counts())[JobState.WAITING] == 0

    async def test_enqueue_rejects_zero_attempts(self, make_queue):
        queue = make_queue()

        with pytest.raises(ValidationError):
            await queue.enqueue({"kind": "echo"}, {"max_attempts": 0})

    @pytest.mark.parametrize(
        "options",
        [
            {"attempts": 3},
            {"backoff": {"type": "fixed", "delay": 1, "jitter": 0.5}},
            {"retain_completed": {"count": 1, "max": 5}},
        ],
    )
    async def test_enqueue_rejects_unknown_option(self, make_queue, options):
        """Test a misspelled option key is rejected instead of ignored."""
        queue = make_queue()

        with pytest.raises(ValidationError):
            await queue.enqueue({"kind": "echo"}, options)

        assert (await queue.counts())[JobState.WAITING] == 0

    async def test_enqueue_validates_payload_model(self, broker: BrokerClient, metrics: MetricsCollector):
        """Test a queue with a payload model rejects payloads that do not fit it."""
        queue = Queue("mail", broker, payload_model=EmailJob, metrics=metrics)

        with pytest.raises(ValidationError):
            await queue.enqueue({"kind": "welcome", "to": "nobody", "subject": "Hi", "html": ""})

        job_id = await queue.enqueue(
            EmailJob(kind="welcome", to="user@example.com", subject="Hi", html="<p>Hi</p>")
        )
        assert (await queue.get_job(job_id)).payload["to"] == "user@example.com"

    async def test_enqueue_on_closed_queue(self, make_queue):
        queue = make_queue()
        queue.close()

        assert queue.closed
        with pytest.raises(BrokerUnavailable):
            await queue.enqueue({"kind": "echo"})

    async def test_enqueue_without_connection(self, metrics: MetricsCollector):
        """Test enqueue on an unconnected broker raises BrokerUnavailable."""
        queue = Queue("q", BrokerClient("sqlite+aiosqlite:///unused.db"), metrics=metrics)

        with pytest.raises(BrokerUnavailable):
            await queue.enqueue({"kind": "echo"})


class TestQueueQueries:
    """Tests for status queries and cleanup."""

    async def test_get_job_unknown(self, make_queue):
        assert await make_queue().get_job(uuid4()) is None

    async def test_get_job_other_queue(self, make_queue):
        """Test a queue only reports its own jobs."""
        job_id = await make_queue("first").enqueue({"kind": "echo"})

        assert await make_queue("second").get_job(job_id) is None

    async def test_counts(self, make_queue):
        queue = make_queue()
        await queue.enqueue({"kind": "echo"})
        await queue.enqueue({"kind": "echo"})

        counts = await queue.counts()

        assert counts[JobState.WAITING] == 2
        assert set(counts) == set(JobState)

    @pytest.mark.parametrize(
        ("older_than", "limit", "state"),
        [
            (0, 0, JobState.COMPLETED),
            (-1, 10, JobState.FAILED),
            (0, 10, JobState.WAITING),
            (0, 10, JobState.ACTIVE),
            (0, 10, "bogus"),
        ],
    )
    async def test_clean_validation(self, make_queue, older_than, limit, state):
        with pytest.raises(ValidationError):
            await make_queue().clean(older_than, limit, state)

    async def test_clean_empty_queue(self, make_queue):
        assert await make_queue().clean(0, 100, JobState.COMPLETED) == 0
