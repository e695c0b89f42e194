"""Receipt processing orchestrator.

Runs the five stages of one job in strict sequence:

    image retrieval -> text recognition -> parsing (+ validation)
        -> product matching -> storage

Recognition, parsing and storage failures abort the run; matching failures
degrade to unmatched line items; validation findings only add penalties and
review flags.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable, Iterator, Sequence
from contextlib import contextmanager
from typing import Any

import structlog

from slipworker.config import PipelineSettings, get_settings
from slipworker.errors import (
    ErrorLoggingFailed,
    ImageRetrievalError,
    JobNotFoundError,
    ParsingError,
    RecognitionError,
    ReviewFlaggingFailed,
    StageError,
    StorageError,
    TenantIsolationError,
)
from slipworker.integrations.base import (
    ImageStore,
    MatchingAdapter,
    ParsingAdapter,
    PersistenceAdapter,
    RecognitionAdapter,
)
from slipworker.integrations.ocr import recognize_with_retry
from slipworker.log_setup import EventCallback, emit
from slipworker.models import (
    ErrorCategory,
    ErrorSeverity,
    JobMessage,
    JobStatus,
    ManualReviewReason,
    MatchingOptions,
    MatchResult,
    ProcessingContext,
    ProcessingResult,
    ProcessingStage,
    ProcessingStatistics,
    RecognitionOptions,
    RecognitionResult,
    StageFailure,
    StructuredReceiptData,
    utcnow,
)
from slipworker.privacy import ensure_in_memory_only
from slipworker.retry import (
    MAX_RETRIES_EXCEEDED,
    RETRY_FAILED,
    RetryPolicy,
    last_error_id,
)
from slipworker.validation import ErrorHandlingService, classify_exception

logger = structlog.get_logger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


@contextmanager
def _timed(stats: ProcessingStatistics, field: str) -> Iterator[None]:
    """Record the elapsed milliseconds of a block on ``stats``, even on failure."""
    start = time.perf_counter()
    try:
        yield
    finally:
        setattr(stats, field, (time.perf_counter() - start) * 1000)


class ReceiptProcessor:
    """
    Drives one receipt job through the pipeline and owns its retry loop.

    Args:
        image_store: Object store holding the uploaded images
        recognizer: Text recognition adapter
        parser: Parsing adapter
        matcher: Product matching adapter
        repository: Persistence adapter
        error_service: Error logging, validation and review escalation
        settings: Thresholds; defaults to the process-wide settings
        on_event: Optional callback for progress updates (event_type, message)
        sleep: Coroutine used for retry backoff
    """

    def __init__(
        self,
        image_store: ImageStore,
        recognizer: RecognitionAdapter,
        parser: ParsingAdapter,
        matcher: MatchingAdapter,
        repository: PersistenceAdapter,
        error_service: ErrorHandlingService,
        settings: PipelineSettings | None = None,
        on_event: EventCallback | None = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.image_store = image_store
        self.recognizer = recognizer
        self.parser = parser
        self.matcher = matcher
        self.repository = repository
        self.error_service = error_service
        self.settings = settings or get_settings()
        self.retry_policy = RetryPolicy.from_settings(self.settings)
        self.on_event = on_event
        self._sleep = sleep

    # ------------------------------------------------------------------
    # Main flow
    # ------------------------------------------------------------------

    async def process(self, job: JobMessage, retry_count: int = 0) -> ProcessingResult:
        """Run every stage for ``job`` and report the outcome.

        Never raises: aborting failures come back as ``success=False`` with
        one ``StageFailure`` and ``requires_manual_review=True``.
        """
        stats = ProcessingStatistics(started_at=utcnow(), retry_count=retry_count)
        context = ProcessingContext(
            user_id=job.user_id,
            image_key=job.image_key,
            file_name=job.upload_metadata.file_name,
            file_size=job.upload_metadata.file_size,
            processing_options=job.processing_options,
            retry_count=retry_count,
            ocr_model=job.processing_options.ocr_model,
            parsing_strategy=job.processing_options.parsing_strategy,
        )
        log = logger.bind(job_id=job.job_id, tenant_id=job.tenant_id)
        log.info("processing_started", retry_count=retry_count)
        emit(self.on_event, "job_started", f"Processing job {job.job_id}")
        await self.update_processing_status(job.job_id, JobStatus.PROCESSING)

        start = time.perf_counter()
        try:
            image = await self._retrieve_image(job, context)

            with _timed(stats, "ocr_time_ms"):
                recognition = await self._recognize(job, context, image)

            with _timed(stats, "parsing_time_ms"):
                data = await self._parse(job, context, recognition)
            flagged = await self._validate(job, context, data)

            with _timed(stats, "matching_time_ms"):
                match_results = await self._match(job, context, data)
            flagged = await self._flag_unmatched(job, data, match_results) or flagged

            with _timed(stats, "storage_time_ms"):
                receipt_id = await self._store(job, context, data, match_results)

            requires_review = await self._complete(job, data, receipt_id, flagged)
        except StageError as e:
            return await self._fail(job, stats, start, e)
        except Exception as e:
            error_id = await self._log_error(
                job,
                context,
                stage=ProcessingStage.PROCESSING,
                code="PROCESSING_FAILED",
                message=str(e) or type(e).__name__,
                exc=e,
            )
            failure = StageError("Receipt processing failed", error_id)
            return await self._fail(job, stats, start, failure)

        self._finish_stats(stats, start)
        log.info(
            "processing_completed",
            receipt_id=receipt_id,
            confidence=data.confidence.overall,
            requires_manual_review=requires_review,
            processing_time_ms=round(stats.processing_time_ms, 1),
        )
        emit(
            self.on_event,
            "job_completed",
            f"Job {job.job_id} completed: receipt {receipt_id}, "
            f"{len(data.line_items)} line items, "
            f"confidence {data.confidence.overall:.2f}",
        )
        return ProcessingResult(
            success=True,
            receipt_data=data,
            stats=stats,
            requires_manual_review=requires_review,
            receipt_id=receipt_id,
        )

    async def update_processing_status(
        self, job_id: str, status: JobStatus, error_message: str | None = None
    ) -> None:
        """Best-effort job status write; failures are logged, never raised."""
        try:
            await self.repository.update_job_status(job_id, status, error_message)
        except Exception as e:
            logger.warning(
                "job_status_update_failed",
                job_id=job_id,
                status=status.value,
                error=str(e),
            )
            emit(
                self.on_event,
                "status_update_failed",
                f"Could not set job {job_id} to {status}: {e}",
            )

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _retrieve_image(self, job: JobMessage, context: ProcessingContext) -> bytes:
        try:
            image = await self.image_store.get(job.image_key)
        except Exception as e:
            raise await self._stage_failure(
                ImageRetrievalError("Failed to retrieve receipt image"),
                job,
                context,
                f"Image retrieval failed for {job.image_key}: {e}",
                exc=e,
            ) from e
        if not image:
            raise await self._stage_failure(
                ImageRetrievalError("Receipt image not found", code="IMAGE_NOT_FOUND"),
                job,
                context,
                f"Image not found: {job.image_key}",
            )
        return image

    async def _recognize(
        self, job: JobMessage, context: ProcessingContext, image: bytes
    ) -> RecognitionResult:
        s = self.settings
        options = RecognitionOptions(model=job.processing_options.ocr_model)
        try:
            recognition = await recognize_with_retry(
                self.recognizer,
                image,
                options,
                attempts=s.recognition_attempts,
                min_wait=s.recognition_min_wait_seconds,
                max_wait=s.recognition_max_wait_seconds,
            )
        except Exception as e:
            raise await self._stage_failure(
                RecognitionError("OCR processing failed"),
                job,
                context,
                f"OCR processing failed: {e}",
                exc=e,
            ) from e

        ensure_in_memory_only(recognition.text, job_id=job.job_id)
        blocks = len(recognition.text_blocks or [])
        emit(
            self.on_event,
            "stage_success",
            f"Recognized {len(recognition.text)} characters in {blocks} blocks "
            f"(confidence {recognition.confidence:.2f})",
        )
        return recognition

    async def _parse(
        self,
        job: JobMessage,
        context: ProcessingContext,
        recognition: RecognitionResult,
    ) -> StructuredReceiptData:
        strategy = job.processing_options.parsing_strategy
        try:
            data = await self.parser.parse(
                recognition.text, strategy, recognition.coordinates
            )
        except Exception as e:
            raise await self._stage_failure(
                ParsingError("Text parsing failed"),
                job,
                context,
                f"Text parsing failed: {e}",
                exc=e,
            ) from e

        vendor = data.vendor.name if data.vendor else "unknown vendor"
        emit(
            self.on_event,
            "stage_success",
            f"Parsed {vendor}: {len(data.line_items)} line items "
            f"(confidence {data.confidence.overall:.2f})",
        )
        return data

    async def _validate(
        self, job: JobMessage, context: ProcessingContext, data: StructuredReceiptData
    ) -> bool:
        """Log validation findings and flag the job when review is needed.

        Returns:
            True if a review flag was raised
        """
        result = self.error_service.validate_receipt_data(data, context)
        for error in result.errors:
            await self._log_error(
                job,
                context,
                stage=ProcessingStage.DATA_VALIDATION,
                code=error.code,
                message=error.message,
                category=ErrorCategory.VALIDATION,
                severity=error.severity,
                details={"field": error.field, "suggested_fix": error.suggested_fix},
            )
        for warning in result.warnings:
            logger.info(
                "validation_warning",
                job_id=job.job_id,
                field=warning.field,
                code=warning.code,
                impact=warning.impact,
            )

        reasonableness = self.error_service.check_data_reasonableness(data)
        for finding in reasonableness.errors:
            logger.warning(
                "reasonableness_check_failed",
                job_id=job.job_id,
                rule=finding.field,
                severity=finding.severity.value,
                message=finding.message,
            )

        if not result.requires_manual_review:
            return False

        low = result.confidence < self.settings.low_confidence_flag_threshold
        return await self._flag(
            job,
            reason=(
                ManualReviewReason.LOW_CONFIDENCE
                if low
                else ManualReviewReason.DATA_INCONSISTENCY
            ),
            description=(
                f"Validation confidence {result.confidence:.2f} with "
                f"{len(result.errors)} errors and {len(result.warnings)} warnings"
            ),
            severity=ErrorSeverity.HIGH if result.errors else ErrorSeverity.MEDIUM,
        )

    async def _match(
        self, job: JobMessage, context: ProcessingContext, data: StructuredReceiptData
    ) -> list[MatchResult]:
        if not data.line_items:
            return []

        options = MatchingOptions(
            similarity_threshold=job.processing_options.product_matching_threshold,
            max_matches=self.settings.max_match_candidates,
        )
        try:
            catalog = await self.repository.get_catalog(job.tenant_id)
            if not catalog:
                logger.info("catalog_empty", job_id=job.job_id, tenant_id=job.tenant_id)
                return []
            results = await self.matcher.match(data.line_items, catalog, options)
        except Exception as e:
            # Unmatched receipts are still useful to a reviewer
            await self._log_error(
                job,
                context,
                stage=ProcessingStage.PRODUCT_MATCHING,
                code="MATCHING_FAILED",
                message=f"Product matching failed: {e}",
                category=ErrorCategory.MATCHING,
                severity=ErrorSeverity.MEDIUM,
                exc=e,
            )
            emit(
                self.on_event,
                "matching_degraded",
                f"Product matching failed, continuing unmatched: {e}",
            )
            return []

        for item, result in zip(data.line_items, results):
            item.requires_manual_review = result.requires_manual_review
            if result.best_match is not None:
                item.matched_product_id = result.best_match.product.id
                item.match_confidence = result.best_match.confidence

        matched = sum(1 for item in data.line_items if item.matched_product_id)
        emit(
            self.on_event,
            "stage_success",
            f"Matched {matched} of {len(data.line_items)} line items",
        )
        return results

    async def _flag_unmatched(
        self,
        job: JobMessage,
        data: StructuredReceiptData,
        match_results: Sequence[MatchResult],
    ) -> bool:
        if not match_results:
            return False
        unmatched = sum(1 for item in data.line_items if not item.matched_product_id)
        if not unmatched:
            return False
        total = len(data.line_items)
        return await self._flag(
            job,
            reason=ManualReviewReason.NO_PRODUCT_MATCH,
            description=f"{unmatched} of {total} line items have no product match",
            severity=(
                ErrorSeverity.HIGH if unmatched > total / 2 else ErrorSeverity.MEDIUM
            ),
        )

    async def _store(
        self,
        job: JobMessage,
        context: ProcessingContext,
        data: StructuredReceiptData,
        match_results: Sequence[MatchResult],
    ) -> str:
        try:
            await self._check_tenant_isolation(job, data)
            receipt_id = await self.repository.store_receipt(
                job,
                data,
                match_results,
                review_threshold=self.settings.review_confidence_threshold,
            )
        except TenantIsolationError as e:
            raise await self._stage_failure(
                e, job, context, str(e), details={"violations": e.violations}
            ) from e
        except Exception as e:
            raise await self._stage_failure(
                StorageError("Data storage failed"),
                job,
                context,
                f"Data storage failed: {e}",
                exc=e,
            ) from e

        await self.error_service.record_audit(
            "receipt_stored", job.tenant_id, f"job={job.job_id} receipt={receipt_id}"
        )
        emit(self.on_event, "stage_success", f"Stored receipt {receipt_id}")
        return receipt_id

    async def _check_tenant_isolation(
        self, job: JobMessage, data: StructuredReceiptData
    ) -> None:
        checks = [("image_object", job.image_key)]
        product_ids = {i.matched_product_id for i in data.line_items} - {None}
        checks.extend(("product", pid) for pid in sorted(product_ids))

        violations: list[str] = []
        for resource_type, resource_id in checks:
            result = await self.repository.validate_tenant_isolation(
                job.tenant_id, resource_type, resource_id
            )
            violations.extend(result.violations)
        if violations:
            raise TenantIsolationError(violations)

    async def _complete(
        self,
        job: JobMessage,
        data: StructuredReceiptData,
        receipt_id: str,
        flagged: bool,
    ) -> bool:
        await self.update_processing_status(job.job_id, JobStatus.COMPLETED)

        forced = job.processing_options.require_manual_review
        overall = data.confidence.overall
        if not (forced or overall < self.settings.review_confidence_threshold):
            return False

        if forced:
            await self._flag(
                job,
                reason=ManualReviewReason.USER_REQUESTED,
                description="Manual review requested on upload",
                receipt_id=receipt_id,
            )
        elif flagged:
            await self.update_processing_status(job.job_id, JobStatus.REQUIRES_REVIEW)
        else:
            await self._flag(
                job,
                reason=ManualReviewReason.LOW_CONFIDENCE,
                description=f"Overall parsing confidence {overall:.2f} is below "
                f"{self.settings.review_confidence_threshold:.2f}",
                receipt_id=receipt_id,
            )
        return True

    # ------------------------------------------------------------------
    # Failure handling
    # ------------------------------------------------------------------

    async def _log_error(
        self,
        job: JobMessage,
        context: ProcessingContext,
        *,
        stage: ProcessingStage,
        code: str,
        message: str,
        category: ErrorCategory | None = None,
        severity: ErrorSeverity | None = None,
        details: dict[str, Any] | None = None,
        exc: BaseException | None = None,
    ) -> str:
        """Write an error record without touching the job's terminal status."""
        if exc is not None and (category is None or severity is None):
            guessed_category, guessed_severity = classify_exception(exc)
            category = category or guessed_category
            severity = severity or guessed_severity
        details = dict(details or {})
        if exc is not None:
            details.setdefault("exception_type", type(exc).__name__)
        try:
            return await self.error_service.log_processing_error(
                job_id=job.job_id,
                tenant_id=job.tenant_id,
                category=category or ErrorCategory.SYSTEM,
                severity=severity or ErrorSeverity.HIGH,
                stage=stage.value,
                code=code,
                message=message,
                details=details,
                context=context,
                fail_job=False,
            )
        except ErrorLoggingFailed as e:
            return e.error_id

    async def _stage_failure(
        self,
        error: StageError,
        job: JobMessage,
        context: ProcessingContext,
        message: str,
        exc: BaseException | None = None,
        details: dict[str, Any] | None = None,
    ) -> StageError:
        """Log an aborting stage failure and attach its error id."""
        category, severity = classify_exception(error)
        error.error_id = await self._log_error(
            job,
            context,
            stage=error.stage,
            code=error.code,
            message=message,
            category=category,
            severity=severity,
            details=details,
            exc=exc,
        )
        emit(self.on_event, "stage_error", f"{error.stage}: {error}")
        return error

    async def _flag(
        self,
        job: JobMessage,
        *,
        reason: ManualReviewReason,
        description: str,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        receipt_id: str | None = None,
    ) -> bool:
        try:
            await self.error_service.flag_for_manual_review(
                job_id=job.job_id,
                tenant_id=job.tenant_id,
                receipt_id=receipt_id,
                reason=reason,
                description=description,
                severity=severity,
            )
        except ReviewFlaggingFailed:
            logger.warning("review_flag_skipped", job_id=job.job_id, reason=reason.value)
            return False
        return True

    async def _fail(
        self,
        job: JobMessage,
        stats: ProcessingStatistics,
        start: float,
        error: StageError,
    ) -> ProcessingResult:
        self._finish_stats(stats, start)
        await self.update_processing_status(job.job_id, JobStatus.FAILED, str(error))
        logger.error(
            "processing_failed",
            job_id=job.job_id,
            tenant_id=job.tenant_id,
            stage=error.stage.value,
            code=error.code,
            error_id=error.error_id,
        )
        emit(self.on_event, "job_failed", f"Job {job.job_id} failed: {error}")
        return ProcessingResult(
            success=False,
            errors=[
                StageFailure(
                    stage=error.stage.value,
                    code=error.code,
                    message=error.message,
                    error_id=error.error_id,
                )
            ],
            stats=stats,
            requires_manual_review=True,
        )

    @staticmethod
    def _finish_stats(stats: ProcessingStatistics, start: float) -> None:
        stats.ended_at = utcnow()
        stats.processing_time_ms = (time.perf_counter() - start) * 1000

    # ------------------------------------------------------------------
    # Retry
    # ------------------------------------------------------------------

    async def retry_failed_processing(
        self,
        job_id: str,
        current_retry_count: int,
        error_id: str | None = None,
    ) -> ProcessingResult:
        """Re-run a failed job from the first stage after its backoff delay.

        The incremented retry count and PROCESSING status are persisted before
        sleeping. At the retry ceiling the job is marked FAILED for good and
        no stage runs; the final status message keeps ``error_id`` so the
        submitter can still quote it.
        """
        policy = self.retry_policy
        if not policy.can_retry(current_retry_count):
            message = f"Maximum retry count ({policy.max_retry_count}) exceeded"
            if error_id:
                message += f" (Error ID: {error_id})"
            await self.update_processing_status(job_id, JobStatus.FAILED, message)
            logger.error(
                "retries_exhausted", job_id=job_id, retry_count=current_retry_count
            )
            emit(self.on_event, "retries_exhausted", f"Job {job_id}: {message}")
            return ProcessingResult(
                success=False,
                errors=[
                    StageFailure(
                        stage="RETRY", code=MAX_RETRIES_EXCEEDED, message=message
                    )
                ],
                stats=ProcessingStatistics(retry_count=current_retry_count),
                requires_manual_review=True,
            )

        next_count = current_retry_count + 1
        try:
            job = await self.repository.get_job(job_id)
            if job is None:
                raise JobNotFoundError(f"Job not found: {job_id}")
            await self.repository.set_retry_count(job_id, next_count)
        except Exception as e:
            logger.exception("retry_failed", job_id=job_id)
            return ProcessingResult(
                success=False,
                errors=[
                    StageFailure(
                        stage="RETRY",
                        code=RETRY_FAILED,
                        message=f"Retry processing failed: {e}",
                    )
                ],
                stats=ProcessingStatistics(retry_count=current_retry_count),
                requires_manual_review=True,
            )

        delay = policy.delay_for(current_retry_count)
        logger.info(
            "retry_scheduled", job_id=job_id, retry_count=next_count, delay_s=delay
        )
        emit(
            self.on_event,
            "retry_scheduled",
            f"Retrying job {job_id} (attempt {next_count}) in {delay:g}s",
        )
        await self._sleep(delay)

        return await self.process(job.to_message(), retry_count=next_count)

    async def run_with_retries(self, job: JobMessage) -> ProcessingResult:
        """Process a job, retrying failures until success or the retry ceiling.

        The job must already exist in the repository.
        """
        retry_count = 0
        result = await self.process(job, retry_count=retry_count)
        while not result.success and self.retry_policy.can_retry(retry_count):
            result = await self.retry_failed_processing(job.job_id, retry_count)
            if any(f.code == RETRY_FAILED for f in result.errors):
                return result
            retry_count += 1

        if not result.success:
            exhausted = await self.retry_failed_processing(
                job.job_id, retry_count, last_error_id(result.errors)
            )
            result.errors.extend(exhausted.errors)
        return result
