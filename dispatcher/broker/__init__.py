"""
Broker module.
Contains the broker connection, the job model, and the repository implementation.
"""

from dispatcher.broker.connection import BrokerClient
from dispatcher.broker.models import Base, Job, utcnow
from dispatcher.broker.repository import JobRepository

__all__ = [
    "BrokerClient",
    "JobRepository",
    "Job",
    "Base",
    "utcnow",
]
