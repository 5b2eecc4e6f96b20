"""
Queue server process.

Starts the queue system, serves until SIGTERM/SIGINT, then drains and exits.
"""

import asyncio
import logging
import signal

from dispatcher.broker import BrokerClient
from dispatcher.config import get_settings
from dispatcher.errors import BrokerUnavailable
from dispatcher.observability.logging import setup_logging
from dispatcher.observability.metrics import setup_metrics
from dispatcher.observability.tracing import instrument_sqlalchemy, setup_tracing, shutdown_tracing
from dispatcher.system import QueueSystem
from dispatcher.transport.mail import SmtpMailTransport
from dispatcher.transport.notification import LoggingNotificationDelivery

logger = logging.getLogger(__name__)


def _loaded(value: str | None) -> str:
    return "Loaded" if value else "Missing"


async def run_async() -> int:
    """Run the queue server until a shutdown signal arrives."""
    settings = get_settings()
    setup_logging(settings)

    logger.info("Environment variables check:")
    logger.info(f"EMAIL_USER: {_loaded(settings.email_user)}")
    logger.info(f"EMAIL_PASS: {_loaded(settings.email_pass)}")
    logger.info(f"BROKER_URL: {_loaded(settings.broker_url)}")

    metrics = setup_metrics(settings.prometheus_port if settings.metrics_enabled else None)
    if settings.otel_enabled:
        setup_tracing(settings)

    broker = BrokerClient(
        settings.broker_url,
        pool_size=settings.broker_pool_size,
        max_overflow=settings.broker_max_overflow,
    )
    mail = SmtpMailTransport(
        host=settings.smtp_host,
        port=settings.smtp_port,
        username=settings.email_user,
        password=settings.email_pass,
        use_tls=settings.smtp_use_tls,
        timeout=settings.smtp_timeout_seconds,
    )
    system = QueueSystem(
        broker,
        mail,
        LoggingNotificationDelivery(),
        settings=settings,
        metrics=metrics,
    )

    try:
        await system.start()
    except BrokerUnavailable as e:
        logger.error(f"Failed to start queue server: {e}")
        shutdown_tracing()
        return 1

    if settings.otel_enabled:
        instrument_sqlalchemy(broker.engine)

    # Handle shutdown signals
    loop = asyncio.get_running_loop()
    shutdown_tasks: list[asyncio.Task[None]] = []

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(
            sig,
            lambda s=sig: shutdown_tasks.append(asyncio.create_task(_shutdown(system, s)))
        )

    await system.wait_stopped()
    results = await asyncio.gather(*shutdown_tasks, return_exceptions=True)
    shutdown_tracing()
    return 1 if any(isinstance(r, Exception) for r in results) else 0


async def _shutdown(system: QueueSystem, sig: signal.Signals) -> None:
    logger.info(f"Received {sig.name}, shutting down gracefully...")
    try:
        await system.shutdown()
    except Exception:
        logger.exception("Error during shutdown")
        raise


def run() -> None:
    """Run the queue server."""
    raise SystemExit(asyncio.run(run_async()))


if __name__ == "__main__":
    run()
