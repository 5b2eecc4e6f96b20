"""
Unit tests for job option and payload types.
"""

from datetime import datetime, timedelta
from uuid import uuid4

import pytest
from pydantic import ValidationError

from dispatcher.constants import BackoffType
from dispatcher.types.job import (
    BackoffPolicy,
    EmailJob,
    JobContext,
    JobOptions,
    Retention,
    WorkerConfig,
)


class TestBackoffPolicy:
    """Tests for retry delay computation."""

    def test_none_has_no_delay(self):
        """Test the default policy retries immediately."""
        policy = BackoffPolicy()

        assert policy.type == BackoffType.NONE
        assert policy.delay_for(1) == 0.0
        assert policy.delay_for(5) == 0.0

    def test_fixed_delay(self):
        """Test fixed backoff uses the same delay for every retry."""
        policy = BackoffPolicy.fixed(2.5)

        assert policy.delay_for(1) == 2.5
        assert policy.delay_for(4) == 2.5

    def test_exponential_delay(self):
        """Test exponential backoff doubles per attempt."""
        policy = BackoffPolicy.exponential(1.0)

        assert [policy.delay_for(n) for n in (1, 2, 3, 4)] == [1.0, 2.0, 4.0, 8.0]

    def test_negative_delay_rejected(self):
        """Test a negative delay is invalid."""
        with pytest.raises(ValidationError):
            BackoffPolicy(type=BackoffType.FIXED, delay=-1)


class TestRetention:
    """Tests for retention bounds."""

    def test_remove_keeps_nothing(self):
        assert Retention.remove().count == 0

    def test_requires_a_bound(self):
        """Test retention without count or age is rejected."""
        with pytest.raises(ValidationError):
            Retention()

    def test_age_must_be_positive(self):
        with pytest.raises(ValidationError):
            Retention(age_seconds=0)


class TestJobOptions:
    """Tests for job options."""

    def test_defaults(self):
        """Test a job defaults to a single attempt and no retention."""
        options = JobOptions()

        assert options.max_attempts == 1
        assert options.backoff.type == BackoffType.NONE
        assert options.retain_completed is None
        assert options.retain_failed is None

    def test_zero_attempts_rejected(self):
        with pytest.raises(ValidationError):
            JobOptions(max_attempts=0)

    def test_unknown_option_rejected(self):
        with pytest.raises(ValidationError):
            JobOptions(attempts=3)

    def test_json_roundtrip_keeps_policy(self):
        """Test options survive the JSON form stored with the job."""
        options = JobOptions(
            max_attempts=3,
            backoff=BackoffPolicy.exponential(0.5),
            retain_failed=Retention(count=2),
        )

        restored = JobOptions.model_validate(options.model_dump(mode="json"))

        assert restored == options


class TestWorkerConfig:
    """Tests for worker pool tunables."""

    def test_concurrency_must_be_positive(self):
        with pytest.raises(ValidationError):
            WorkerConfig(concurrency=0)

    def test_zero_stalled_retries_allowed(self):
        """Test a pool may fail stalled jobs on first detection."""
        assert WorkerConfig(max_stalled_retries=0).max_stalled_retries == 0

    @pytest.mark.parametrize("heartbeat", [30.0, 45.0])
    def test_heartbeat_must_beat_lease(self, heartbeat):
        """Test a heartbeat that cannot renew the lease in time is rejected."""
        with pytest.raises(ValidationError):
            WorkerConfig(lease_duration=30, heartbeat_interval=heartbeat)


class TestEmailJob:
    """Tests for the email payload model."""

    def test_valid_payload(self):
        job = EmailJob(kind="welcome", to="user@example.com", subject="Hi", html="<p>Hi</p>")
        assert job.to == "user@example.com"

    def test_invalid_address_rejected(self):
        with pytest.raises(ValidationError):
            EmailJob(kind="welcome", to="not-an-address", subject="Hi", html="")

    def test_empty_subject_rejected(self):
        with pytest.raises(ValidationError):
            EmailJob(kind="welcome", to="user@example.com", subject="", html="")


class TestJobContext:
    """Tests for the handler context helpers."""

    def test_attempt_helpers(self):
        context = JobContext(
            job_id=uuid4(),
            queue="q",
            kind="k",
            attempt=2,
            max_attempts=3,
            payload={},
            lease_token="token",
            lease_expires_at=datetime.now() + timedelta(seconds=30),
        )

        assert context.is_last_attempt is False
        assert context.remaining_attempts == 1
