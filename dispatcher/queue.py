"""
Named queue handle over the broker.

A Queue holds no job state of its own: producers and worker pools share
one instance and every operation goes straight to the broker.
"""

import json
import logging
from typing import Any
from uuid import UUID

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from dispatcher.broker import BrokerClient, JobRepository
from dispatcher.constants import SPAN_ENQUEUE_JOB, TERMINAL_STATES, JobState
from dispatcher.errors import BrokerUnavailable, ValidationError
from dispatcher.observability.metrics import MetricsCollector, get_metrics
from dispatcher.observability.tracing import get_tracer
from dispatcher.types.job import JobOptions, JobSnapshot

logger = logging.getLogger(__name__)


class Queue:
    """
    Named channel of typed job payloads.

    Payloads are JSON objects discriminated by a ``kind`` field. When a
    payload model is configured, payloads are validated against it before
    anything is written.
    """

    def __init__(
        self,
        name: str,
        broker: BrokerClient,
        default_options: JobOptions | None = None,
        payload_model: type[BaseModel] | None = None,
        metrics: MetricsCollector | None = None,
    ):
        """
        Initialize the queue handle.

        Args:
            name: Queue name shared with worker pools.
            broker: Connected broker client.
            default_options: Options applied when enqueue gets none.
            payload_model: Optional pydantic model payloads must satisfy.
            metrics: Metrics collector. Defaults to the process collector.
        """
        self.name = name
        self.broker = broker
        self.default_options = default_options or JobOptions()
        self.payload_model = payload_model
        self._metrics = metrics or get_metrics()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        """Stop accepting new jobs through this handle."""
        self._closed = True

    def _normalize_payload(self, payload: Any) -> dict[str, Any]:
        if isinstance(payload, BaseModel):
            payload = payload.model_dump(mode="json")

        if not isinstance(payload, dict):
            raise ValidationError("Job payload must be a JSON object")

        if self.payload_model is not None:
            try:
                payload = self.payload_model.model_validate(payload).model_dump(mode="json")
            except PydanticValidationError as e:
                raise ValidationError(f"Invalid {self.name} payload: {e}") from e

        kind = payload.get("kind")
        if not isinstance(kind, str) or not kind:
            raise ValidationError("Job payload requires a non-empty string 'kind'")

        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"Job payload is not JSON serializable: {e}") from e

        return payload

    def _normalize_options(self, options: JobOptions | dict[str, Any] | None) -> JobOptions:
        if options is None:
            return self.default_options
        if isinstance(options, JobOptions):
            if options.max_attempts < 1:
                raise ValidationError("max_attempts must be at least 1")
            return options
        try:
            merged = {**self.default_options.model_dump(), **options}
            return JobOptions.model_validate(merged)
        except PydanticValidationError as e:
            raise ValidationError(f"Invalid job options: {e}") from e

    async def enqueue(
        self,
        payload: BaseModel | dict[str, Any],
        options: JobOptions | dict[str, Any] | None = None,
    ) -> UUID:
        """
        Write a new waiting job.

        Args:
            payload: Job payload (dict or pydantic model) with a ``kind``.
            options: Job options, or a dict overriding the queue defaults.

        Returns:
            The new job's id.

        Raises:
            ValidationError: Payload or options are malformed.
            BrokerUnavailable: The broker cannot be reached.
        """
        if self._closed:
            raise BrokerUnavailable(f"Queue {self.name!r} is closed")

        data = self._normalize_payload(payload)
        opts = self._normalize_options(options)

        with get_tracer().start_as_current_span(SPAN_ENQUEUE_JOB) as span:
            span.set_attribute("queue", self.name)
            span.set_attribute("kind", data["kind"])

            async with self.broker.session() as session:
                job = await JobRepository(session).create_job(
                    queue=self.name,
                    payload=data,
                    options=opts,
                )
                job_id = job.id

        self._metrics.record_job_enqueued(self.name, data["kind"])
        logger.info(
            "Job enqueued",
            extra={"job_id": str(job_id), "queue": self.name, "kind": data["kind"]}
        )
        return job_id

    async def clean(self, older_than: float, limit: int, state: JobState) -> int:
        """
        Remove terminal jobs that finished more than ``older_than`` seconds ago.

        Args:
            older_than: Minimum age in seconds.
            limit: Maximum number of jobs removed by this call.
            state: COMPLETED or FAILED.

        Returns:
            Number of removed jobs.

        Raises:
            ValidationError: Unknown or non-terminal state, or non-positive limit.
            BrokerUnavailable: The broker cannot be reached.
        """
        try:
            state = JobState(state)
        except ValueError as e:
            raise ValidationError(f"Unknown job state: {state!r}") from e
        if state not in TERMINAL_STATES:
            raise ValidationError(f"Only completed or failed jobs can be cleaned, not {state}")
        if limit < 1:
            raise ValidationError("Clean limit must be at least 1")
        if older_than < 0:
            raise ValidationError("Clean age must not be negative")

        async with self.broker.session() as session:
            count = await JobRepository(session).clean(
                queue=self.name,
                state=state,
                older_than=older_than,
                limit=limit,
            )

        self._metrics.record_cleaned(self.name, state.value, count)
        return count

    async def get_job(self, job_id: UUID) -> JobSnapshot | None:
        """
        Look up the current state of a job.

        Args:
            job_id: The job id returned by enqueue.

        Returns:
            A snapshot of the job, or None if it does not exist (or was removed).
        """
        async with self.broker.session() as session:
            job = await JobRepository(session).get_job(job_id)
            if job is None or job.queue != self.name:
                return None
            return JobSnapshot.model_validate(job)

    async def counts(self) -> dict[JobState, int]:
        """Get the number of jobs in each state."""
        async with self.broker.session() as session:
            return await JobRepository(session).count_jobs(self.name)

    def __repr__(self) -> str:
        return f"Queue(name={self.name!r})"
