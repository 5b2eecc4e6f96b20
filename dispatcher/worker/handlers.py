"""
Job handler implementations and the execution wrapper.

Job handlers must be idempotent in intent - they may be executed multiple
times for the same job after a stall or a retry.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable

from dispatcher.errors import HandlerFailure, MailDeliveryError
from dispatcher.transport.mail import MailMessage, MailTransport
from dispatcher.transport.notification import NotificationDelivery
from dispatcher.types.job import Failure, HandlerResult, JobContext, Success

logger = logging.getLogger(__name__)

# Type alias for job handler functions
JobHandler = Callable[[JobContext], Awaitable[HandlerResult]]


def make_email_handler(transport: MailTransport, sender: str) -> JobHandler:
    """
    Build the email queue handler.

    Payload: ``{kind, to, subject, html}``. ``kind`` only labels logs.

    Args:
        transport: Mail relay client.
        sender: From header for every message.

    Returns:
        The handler coroutine function.
    """

    async def handle_email(context: JobContext) -> HandlerResult:
        payload = context.payload
        kind = context.kind
        to = payload["to"]

        try:
            await transport.send_mail(
                MailMessage(
                    sender=sender,
                    to=to,
                    subject=payload["subject"],
                    html=payload["html"],
                )
            )
        except MailDeliveryError as e:
            logger.error(
                f"Failed to send email: {kind} to {to}",
                extra={"job_id": str(context.job_id), "error": str(e), "attempt": context.attempt}
            )
            return Failure(error=str(e), retryable=e.retryable)

        logger.info(
            f"Email sent successfully: {kind} to {to}",
            extra={"job_id": str(context.job_id)}
        )
        return Success(output={"kind": kind, "to": to})

    return handle_email


def make_notification_handler(delivery: NotificationDelivery) -> JobHandler:
    """
    Build the notification queue handler.

    Payload: ``{kind, user_id, message}``.

    Args:
        delivery: Notification delivery collaborator.

    Returns:
        The handler coroutine function.
    """

    async def handle_notification(context: JobContext) -> HandlerResult:
        payload = context.payload
        user_id = payload["user_id"]
        message = payload["message"]

        await delivery.deliver(user_id, message, context.kind)

        return Success(
            output={"user_id": user_id, "message": message, "kind": context.kind}
        )

    return handle_notification


async def execute_handler(
    handler: JobHandler,
    context: JobContext,
    timeout: float | None = None,
) -> HandlerResult:
    """
    Run a handler once and turn every outcome into a HandlerResult.

    Exceptions never escape: HandlerFailure keeps its retry classification,
    anything else (including a timeout) is a retryable failure.

    Args:
        handler: The handler to run.
        context: The job context.
        timeout: Seconds before the attempt is abandoned.

    Returns:
        HandlerResult from the handler.
    """
    try:
        result = await asyncio.wait_for(handler(context), timeout=timeout)
    except HandlerFailure as e:
        return Failure(error=str(e), retryable=e.retryable)
    except TimeoutError:
        logger.warning(
            "Handler timed out",
            extra={"job_id": str(context.job_id), "timeout": timeout}
        )
        return Failure(error=f"Handler timed out after {timeout}s", retryable=True)
    except Exception as e:
        logger.exception(
            "Handler raised exception",
            extra={"job_id": str(context.job_id), "error": str(e)}
        )
        return Failure(error=f"Handler exception: {e}", retryable=True)

    if not isinstance(result, (Success, Failure)):
        logger.error(
            f"Handler returned {type(result).__name__}, expected Success or Failure",
            extra={"job_id": str(context.job_id)}
        )
        return Failure(error="Handler returned an invalid result", retryable=False)

    return result
