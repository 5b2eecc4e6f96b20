"""
Queue system lifecycle.

QueueSystem owns the broker connection, both queues, their worker pools and
the retention sweeper. It is built once at startup and passed to whatever
needs to enqueue work.
"""

import asyncio
import logging
from typing import Any
from uuid import UUID

from pydantic import ValidationError as PydanticValidationError

from dispatcher.broker import BrokerClient
from dispatcher.config import Settings, get_settings
from dispatcher.constants import (
    EMAIL_QUEUE,
    EVENT_COMPLETED,
    EVENT_FAILED,
    NOTIFICATION_QUEUE,
    LifecycleState,
)
from dispatcher.errors import BrokerUnavailable, ValidationError
from dispatcher.observability.metrics import MetricsCollector, get_metrics
from dispatcher.queue import Queue
from dispatcher.sweeper import RetentionSweeper
from dispatcher.transport.mail import MailTransport, format_sender
from dispatcher.transport.notification import LoggingNotificationDelivery, NotificationDelivery
from dispatcher.types.events import JobEvent
from dispatcher.types.job import (
    BackoffPolicy,
    EmailContent,
    EmailJob,
    JobOptions,
    NotificationJob,
    Retention,
    WorkerConfig,
)
from dispatcher.worker import WorkerPool, make_email_handler, make_notification_handler

logger = logging.getLogger(__name__)


def _retention(count: int | None) -> Retention | None:
    return None if count is None else Retention(count=count)


def email_job_options(settings: Settings) -> JobOptions:
    """Default options for the email queue."""
    return JobOptions(
        max_attempts=settings.email_max_attempts,
        backoff=BackoffPolicy(type=settings.email_backoff_type, delay=settings.email_backoff_delay_seconds),
        retain_completed=_retention(settings.email_keep_completed),
        retain_failed=_retention(settings.email_keep_failed),
    )


def notification_job_options(settings: Settings) -> JobOptions:
    """Default options for the notification queue."""
    return JobOptions(
        max_attempts=settings.notification_max_attempts,
        backoff=BackoffPolicy(
            type=settings.notification_backoff_type,
            delay=settings.notification_backoff_delay_seconds,
        ),
        retain_completed=_retention(settings.notification_keep_completed),
        retain_failed=_retention(settings.notification_keep_failed),
    )


def _worker_config(settings: Settings, concurrency: int, stalled_interval: float, max_stalled: int) -> WorkerConfig:
    return WorkerConfig(
        concurrency=concurrency,
        stalled_check_interval=stalled_interval,
        max_stalled_retries=max_stalled,
        lease_duration=settings.worker_lease_duration_seconds,
        heartbeat_interval=settings.worker_heartbeat_interval_seconds,
        poll_interval=settings.worker_poll_interval_seconds,
        job_timeout=settings.worker_job_timeout_seconds,
    )


class QueueSystem:
    """
    Process-wide orchestration of queues, pools and the sweeper.

    States: stopped -> starting -> running -> draining -> stopped.
    """

    def __init__(
        self,
        broker: BrokerClient,
        mail_transport: MailTransport,
        notification_delivery: NotificationDelivery | None = None,
        settings: Settings | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the system. Nothing connects until ``start``.

        Args:
            broker: Broker client (not yet connected).
            mail_transport: Mail relay used by the email handler.
            notification_delivery: Notification collaborator. Defaults to logging.
            settings: Tunables. Defaults to the process settings.
            metrics: Metrics collector. Defaults to the process collector.
        """
        self.broker = broker
        self.settings = settings or get_settings()
        self.mail_transport = mail_transport
        self.notification_delivery = notification_delivery or LoggingNotificationDelivery()
        self._metrics = metrics or get_metrics()

        self.state = LifecycleState.STOPPED
        self.email_queue: Queue | None = None
        self.notification_queue: Queue | None = None
        self.email_pool: WorkerPool | None = None
        self.notification_pool: WorkerPool | None = None
        self.sweeper: RetentionSweeper | None = None

        self._stopped = asyncio.Event()
        self._stopped.set()
        self._shutdown_requested = False

    @property
    def queues(self) -> list[Queue]:
        return [q for q in (self.email_queue, self.notification_queue) if q is not None]

    @property
    def pools(self) -> list[WorkerPool]:
        return [p for p in (self.email_pool, self.notification_pool) if p is not None]

    async def start(self) -> None:
        """
        Connect the broker and start pools and the sweeper.

        Raises:
            BrokerUnavailable: If the broker cannot be reached.
        """
        if self.state != LifecycleState.STOPPED:
            logger.warning(f"Start ignored; queue system is {self.state}")
            return

        self.state = LifecycleState.STARTING
        self._stopped.clear()
        self._shutdown_requested = False
        settings = self.settings

        try:
            await self.broker.connect(create_schema=settings.broker_create_schema)
        except BrokerUnavailable:
            self.state = LifecycleState.STOPPED
            self._stopped.set()
            raise

        self.email_queue = Queue(
            EMAIL_QUEUE,
            self.broker,
            default_options=email_job_options(settings),
            payload_model=EmailJob,
            metrics=self._metrics,
        )
        self.notification_queue = Queue(
            NOTIFICATION_QUEUE,
            self.broker,
            default_options=notification_job_options(settings),
            payload_model=NotificationJob,
            metrics=self._metrics,
        )

        sender = format_sender(settings.mail_from_name, settings.email_user)
        self.email_pool = WorkerPool(
            self.email_queue,
            make_email_handler(self.mail_transport, sender),
            config=_worker_config(
                settings,
                settings.email_concurrency,
                settings.email_stalled_interval_seconds,
                settings.email_max_stalled_count,
            ),
            worker_id=settings.worker_id,
            metrics=self._metrics,
        )
        self.notification_pool = WorkerPool(
            self.notification_queue,
            make_notification_handler(self.notification_delivery),
            config=_worker_config(
                settings,
                settings.notification_concurrency,
                settings.notification_stalled_interval_seconds,
                settings.notification_max_stalled_count,
            ),
            worker_id=settings.worker_id,
            metrics=self._metrics,
        )
        self._wire_logging()

        self.sweeper = RetentionSweeper(self.queues, settings=settings)

        for pool in self.pools:
            await pool.start()
        await self.sweeper.start()

        self.state = LifecycleState.RUNNING
        logger.info("Queue server started successfully")
        logger.info(f"Email queue processing with {settings.email_concurrency} concurrent job(s)")
        logger.info(f"Notification queue processing with {settings.notification_concurrency} concurrent job(s)")

        if self._shutdown_requested:
            await self.shutdown()

    def _wire_logging(self) -> None:
        def email_completed(event: JobEvent) -> None:
            logger.info(f"Email job {event.job_id} completed", extra={"kind": event.kind})

        def email_failed(event: JobEvent) -> None:
            error = (event.data or {}).get("error")
            logger.error(f"Email job {event.job_id} failed: {error}", extra={"kind": event.kind})

        def notification_completed(event: JobEvent) -> None:
            logger.info(f"Notification job {event.job_id} completed", extra={"kind": event.kind})

        def notification_failed(event: JobEvent) -> None:
            error = (event.data or {}).get("error")
            logger.error(f"Notification job {event.job_id} failed: {error}", extra={"kind": event.kind})

        self.email_pool.on(EVENT_COMPLETED, email_completed)
        self.email_pool.on(EVENT_FAILED, email_failed)
        self.notification_pool.on(EVENT_COMPLETED, notification_completed)
        self.notification_pool.on(EVENT_FAILED, notification_failed)

    async def shutdown(self) -> None:
        """
        Drain and stop everything.

        Pools stop leasing first, in-flight jobs finish (bounded by the drain
        timeout), then the sweeper, the queues and finally the broker are
        closed. The system ends up stopped even if one of those steps raises;
        the error is re-raised. Calling this while draining or stopped does
        nothing.
        """
        if self.state == LifecycleState.STARTING:
            self._shutdown_requested = True
            return
        if self.state != LifecycleState.RUNNING:
            return

        self.state = LifecycleState.DRAINING
        logger.info("Shutting down queue server...")

        try:
            for pool in self.pools:
                pool.close()

            drained = await asyncio.gather(
                *(pool.drain(self.settings.drain_timeout_seconds) for pool in self.pools)
            )
            if not all(drained):
                logger.warning("Some jobs were still running at the drain timeout and were handed back")

            if self.sweeper is not None:
                await self.sweeper.stop()

            for queue in self.queues:
                queue.close()

            await self.broker.close()
        finally:
            self.state = LifecycleState.STOPPED
            self._stopped.set()
            logger.info("Queue server stopped")

    async def wait_stopped(self) -> None:
        """Wait until the system reaches the stopped state."""
        await self._stopped.wait()

    def _require_running(self, queue: Queue | None) -> Queue:
        if queue is None or self.state != LifecycleState.RUNNING:
            raise BrokerUnavailable(f"Queue system is {self.state}")
        return queue

    async def enqueue_email(
        self,
        kind: str,
        to: str,
        data: EmailContent | dict[str, Any],
        options: JobOptions | dict[str, Any] | None = None,
    ) -> UUID:
        """
        Queue an email for delivery.

        Args:
            kind: Email type, e.g. ``appointment_confirmation``.
            to: Recipient address.
            data: ``{subject, html}``.
            options: Job options overriding the email queue defaults.

        Returns:
            The job id.
        """
        queue = self._require_running(self.email_queue)
        try:
            content = data if isinstance(data, EmailContent) else EmailContent.model_validate(data)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid email data: {e}") from e

        payload = {"kind": kind, "to": to, "subject": content.subject, "html": content.html}
        return await queue.enqueue(payload, options)

    async def enqueue_notification(
        self,
        user_id: str,
        message: str,
        kind: str,
        options: JobOptions | dict[str, Any] | None = None,
    ) -> UUID:
        """
        Queue a notification for a user.

        Args:
            user_id: Recipient user id.
            message: Notification text.
            kind: Notification type, e.g. ``approval``.
            options: Job options overriding the notification queue defaults.

        Returns:
            The job id.
        """
        queue = self._require_running(self.notification_queue)
        payload = {"kind": kind, "user_id": str(user_id), "message": message}
        return await queue.enqueue(payload, options)
