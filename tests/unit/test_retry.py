"""Unit tests for the job retry schedule and retry controller."""

import sqlite3
from unittest.mock import AsyncMock

import pytest
from pydantic import ValidationError

from slipworker.config import PipelineSettings
from slipworker.models import JobStatus
from slipworker.retry import MAX_RETRIES_EXCEEDED, RETRY_FAILED, RetryPolicy

pytestmark = pytest.mark.unit


class TestRetryPolicy:
    def test_default_schedule(self):
        policy = RetryPolicy()
        assert [policy.delay_for(n) for n in range(3)] == [1.0, 5.0, 15.0]

    def test_delay_past_schedule_reuses_last(self):
        assert RetryPolicy().delay_for(7) == 15.0

    def test_ceiling(self):
        policy = RetryPolicy(max_retry_count=3)
        assert policy.can_retry(2) is True
        assert policy.can_retry(3) is False

    def test_from_settings(self):
        settings = PipelineSettings(
            _env_file=None, max_retry_count=1, retry_delays_seconds=(2.0,)
        )
        policy = RetryPolicy.from_settings(settings)
        assert policy.max_retry_count == 1
        assert policy.delay_for(0) == 2.0

    def test_empty_schedule_rejected(self):
        with pytest.raises(ValidationError):
            RetryPolicy(delays=())

    def test_policy_is_frozen(self):
        with pytest.raises(ValidationError):
            RetryPolicy().max_retry_count = 5


class TestRetryFailedProcessing:
    @pytest.mark.asyncio
    async def test_retry_ceiling_does_not_rerun_pipeline(
        self, processor, repository, image_store, sleep, job
    ):
        await repository.create_job(job)

        result = await processor.retry_failed_processing(job.id, 3)

        assert result.success is False
        assert result.requires_manual_review is True
        assert result.errors[0].code == MAX_RETRIES_EXCEEDED
        image_store.get.assert_not_called()
        sleep.assert_not_called()

        stored = await repository.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error_message == "Maximum retry count (3) exceeded"

    @pytest.mark.asyncio
    async def test_ceiling_message_keeps_the_last_error_id(
        self, processor, repository, job
    ):
        await repository.create_job(job)

        result = await processor.retry_failed_processing(job.id, 3, "err-42")

        assert result.errors[0].message == (
            "Maximum retry count (3) exceeded (Error ID: err-42)"
        )
        stored = await repository.get_job(job.id)
        assert stored.error_message == result.errors[0].message

    @pytest.mark.asyncio
    async def test_third_retry_persists_count_before_backoff(
        self, processor, repository, image_store, sleep, job, mocker
    ):
        await repository.create_job(job)
        await repository.set_retry_count(job.id, 2)
        mocker.patch.object(
            repository,
            "store_receipt",
            AsyncMock(
                side_effect=[sqlite3.OperationalError("database is locked"), "receipt-1"]
            ),
        )

        first = await processor.process(job.to_message(), retry_count=2)
        assert first.success is False

        seen_before_sleep = []

        async def record_state(delay):
            stored = await repository.get_job(job.id)
            seen_before_sleep.append((delay, stored.retry_count, stored.status))

        sleep.side_effect = record_state
        image_store.get.reset_mock()

        result = await processor.retry_failed_processing(job.id, 2)

        assert seen_before_sleep == [(15.0, 3, JobStatus.PROCESSING)]
        # Full rerun from the first stage
        image_store.get.assert_awaited_once_with(job.image_key)
        assert result.success is True
        assert result.receipt_id == "receipt-1"
        assert result.stats.retry_count == 3

    @pytest.mark.asyncio
    async def test_missing_job_reports_retry_failure(self, processor, sleep):
        result = await processor.retry_failed_processing("no-such-job", 0)

        assert result.success is False
        assert result.errors[0].code == RETRY_FAILED
        sleep.assert_not_called()


class TestRunWithRetries:
    @pytest.mark.asyncio
    async def test_persistent_failure_exhausts_retries(
        self, processor, repository, recognizer, sleep, events, job
    ):
        await repository.create_job(job)
        recognizer.extract_text.side_effect = ValueError("unreadable image")

        result = await processor.run_with_retries(job.to_message())

        assert result.success is False
        assert recognizer.extract_text.await_count == 4
        assert [c.args[0] for c in sleep.await_args_list] == [1.0, 5.0, 15.0]
        assert result.errors[-1].code == MAX_RETRIES_EXCEEDED

        stored = await repository.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.retry_count == 3
        error_id = result.errors[-2].error_id
        assert error_id
        assert stored.error_message == (
            f"Maximum retry count (3) exceeded (Error ID: {error_id})"
        )
        assert "retries_exhausted" in [event_type for event_type, _ in events]

    @pytest.mark.asyncio
    async def test_success_after_one_retry(
        self, processor, repository, recognizer, recognition_result, sleep, job
    ):
        await repository.create_job(job)
        recognizer.extract_text.side_effect = [
            ValueError("unreadable image"),
            recognition_result,
        ]

        result = await processor.run_with_retries(job.to_message())

        assert result.success is True
        assert result.stats.retry_count == 1
        sleep.assert_awaited_once_with(1.0)
        assert (await repository.get_job(job.id)).status == JobStatus.COMPLETED
