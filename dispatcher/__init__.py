"""
Background Job Dispatcher

Durable email and notification queues drained by bounded worker pools,
with at-least-once delivery, retry backoff, stalled-job reclamation and
retention-based cleanup.
"""

__version__ = "1.0.0"
