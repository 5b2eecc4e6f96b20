"""
Pytest configuration and shared fixtures.
"""

import asyncio
from collections.abc import AsyncGenerator, Awaitable, Callable
from pathlib import Path
from typing import Any

import pytest
import pytest_asyncio
from prometheus_client import CollectorRegistry

from dispatcher.broker import BrokerClient
from dispatcher.config import Settings
from dispatcher.observability.metrics import MetricsCollector
from dispatcher.queue import Queue
from dispatcher.transport.mail import MailMessage
from dispatcher.types.job import JobOptions


@pytest.fixture
def broker_url(tmp_path: Path) -> str:
    """A file-backed SQLite broker, fresh for every test."""
    return f"sqlite+aiosqlite:///{tmp_path / 'broker.db'}"


@pytest_asyncio.fixture
async def broker(broker_url: str) -> AsyncGenerator[BrokerClient]:
    """Create a connected broker client with the jobs table in place."""
    client = BrokerClient(broker_url)
    await client.connect()

    yield client

    await client.close()


@pytest.fixture
def metrics() -> MetricsCollector:
    """Metrics collector on a private registry."""
    return MetricsCollector(registry=CollectorRegistry())


@pytest.fixture
def make_queue(broker: BrokerClient, metrics: MetricsCollector) -> Callable[..., Queue]:
    """Factory for queues on the test broker."""

    def factory(name: str = "test queue", **options: Any) -> Queue:
        return Queue(
            name,
            broker,
            default_options=JobOptions(**options) if options else None,
            metrics=metrics,
        )

    return factory


@pytest.fixture
def test_settings(broker_url: str) -> Settings:
    """Create test settings with short intervals."""
    return Settings(
        broker_url=broker_url,
        log_level="DEBUG",
        log_format="console",
        worker_lease_duration_seconds=5,
        worker_heartbeat_interval_seconds=1,
        worker_poll_interval_seconds=0.05,
        worker_job_timeout_seconds=5,
        email_stalled_interval_seconds=0.2,
        notification_stalled_interval_seconds=0.2,
        sweeper_interval_seconds=60,
        drain_timeout_seconds=5,
        email_user="clinic@example.com",
        email_pass="secret",
        metrics_enabled=False,
    )


class FakeMailTransport:
    """In-memory mail relay recording every message it accepts."""

    def __init__(self, delay: float = 0.0, error: Exception | None = None):
        self.delay = delay
        self.error = error
        self.sent: list[MailMessage] = []
        self.calls = 0

    async def send_mail(self, message: MailMessage) -> None:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.sent.append(message)


class FakeNotificationDelivery:
    """Records delivered notifications."""

    def __init__(self):
        self.delivered: list[tuple[str, str, str]] = []

    async def deliver(self, user_id: str, message: str, kind: str) -> None:
        self.delivered.append((user_id, message, kind))


@pytest.fixture
def mail_transport() -> FakeMailTransport:
    return FakeMailTransport()


@pytest.fixture
def notification_delivery() -> FakeNotificationDelivery:
    return FakeNotificationDelivery()


async def _wait_until(
    predicate: Callable[[], Awaitable[bool] | bool],
    timeout: float = 5.0,
    interval: float = 0.02,
) -> None:
    """Poll ``predicate`` until it holds, failing the test after ``timeout``."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        outcome = predicate()
        if asyncio.iscoroutine(outcome):
            outcome = await outcome
        if outcome:
            return
        if loop.time() > deadline:
            pytest.fail(f"Condition not met within {timeout}s")
        await asyncio.sleep(interval)


@pytest.fixture
def wait_until() -> Callable[..., Awaitable[None]]:
    return _wait_until
