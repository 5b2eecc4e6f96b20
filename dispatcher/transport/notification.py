"""
Notification delivery collaborator.
"""

import logging
from typing import Protocol

logger = logging.getLogger(__name__)


class NotificationDelivery(Protocol):
    async def deliver(self, user_id: str, message: str, kind: str) -> None: ...


class LoggingNotificationDelivery:
    """Records notifications in the log; a push service can replace it."""

    async def deliver(self, user_id: str, message: str, kind: str) -> None:
        logger.info(
            f"Processing notification for user {user_id}: {message}",
            extra={"user_id": user_id, "kind": kind}
        )
