"""
Worker module.
Contains the worker pool and the job handlers it runs.
"""

from dispatcher.worker.handlers import (
    JobHandler,
    execute_handler,
    make_email_handler,
    make_notification_handler,
)
from dispatcher.worker.pool import WorkerPool

__all__ = [
    "WorkerPool",
    "JobHandler",
    "execute_handler",
    "make_email_handler",
    "make_notification_handler",
]
