"""Error classification, data validation and manual review escalation."""

import uuid
from collections import Counter
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog

from slipworker.config import PipelineSettings, get_settings
from slipworker.errors import (
    ErrorLoggingFailed,
    RecordNotFoundError,
    ReviewFlaggingFailed,
    StageError,
)
from slipworker.integrations.base import ErrorLog, PersistenceAdapter
from slipworker.log_setup import EventCallback, emit
from slipworker.models import (
    ErrorCategory,
    ErrorFilters,
    ErrorSeverity,
    FailureReasonCount,
    JobStatus,
    ManualReviewFlag,
    ManualReviewReason,
    ProcessingContext,
    ProcessingErrorRecord,
    ProcessingStage,
    QualityMetrics,
    ReviewFilters,
    StructuredReceiptData,
    ValidationError,
    ValidationResult,
    ValidationWarning,
    utcnow,
)

logger = structlog.get_logger(__name__)

# Confidence debits per finding
PENALTIES: dict[str, float] = {
    "VENDOR_MISSING": 0.3,
    "VENDOR_LOW_CONFIDENCE": 0.1,
    "DATE_MISSING": 0.2,
    "DATE_UNREASONABLE": 0.1,
    "TOTAL_INVALID": 0.4,
    "TOTAL_HIGH": 0.1,
    "LINE_ITEMS_MISSING": 0.4,
    "ITEM_DESCRIPTION_MISSING": 0.1,
    "ITEM_LOW_CONFIDENCE": 0.05,
    "TOTAL_MISMATCH": 0.2,
    "OVERALL_LOW_CONFIDENCE": 0.1,
}

RULE_PENALTIES: dict[ErrorSeverity, float] = {
    ErrorSeverity.CRITICAL: 0.3,
    ErrorSeverity.HIGH: 0.3,
    ErrorSeverity.MEDIUM: 0.2,
    ErrorSeverity.LOW: 0.1,
}

# Warnings that force review regardless of the confidence score
REVIEW_WARNINGS = frozenset({"TOTAL_MISMATCH", "DATE_UNREASONABLE"})

_REVIEW_REASONS: dict[ErrorCategory, ManualReviewReason] = {
    ErrorCategory.OCR: ManualReviewReason.OCR_QUALITY_POOR,
    ErrorCategory.PARSING: ManualReviewReason.PARSING_FAILED,
    ErrorCategory.MATCHING: ManualReviewReason.NO_PRODUCT_MATCH,
    ErrorCategory.VALIDATION: ManualReviewReason.DATA_INCONSISTENCY,
}

_CATEGORY_KEYWORDS: list[tuple[ErrorCategory, tuple[str, ...]]] = [
    (ErrorCategory.OCR, ("ocr", "vision", "recognition")),
    (ErrorCategory.UPLOAD, ("upload", "object storage", "image retrieval")),
    (ErrorCategory.PARSING, ("parsing", "parse", "text")),
    (ErrorCategory.MATCHING, ("matching", "product")),
    (ErrorCategory.STORAGE, ("database", "storage", "sqlite")),
    (ErrorCategory.VALIDATION, ("validation",)),
]


def new_id() -> str:
    return uuid.uuid4().hex


def _aware(value: datetime) -> datetime:
    return value if value.tzinfo else value.replace(tzinfo=UTC)


def _format_cents(cents: int) -> str:
    return f"${cents / 100:.2f}"


def review_reason_for(category: ErrorCategory) -> ManualReviewReason:
    """Map an error category to the manual review reason it escalates to."""
    return _REVIEW_REASONS.get(category, ManualReviewReason.LOW_CONFIDENCE)


def categorize_message(message: str) -> ErrorCategory:
    """Guess an error category from a free-text error message."""
    lowered = message.lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in lowered for keyword in keywords):
            return category
    return ErrorCategory.SYSTEM


def determine_severity(message: str, retry_count: int) -> ErrorSeverity:
    """Derive the severity of a stored failure from its message and retries."""
    lowered = message.lower()
    if retry_count >= 3 or "critical" in lowered or "fatal" in lowered:
        return ErrorSeverity.CRITICAL
    if "failed" in lowered or retry_count >= 1:
        return ErrorSeverity.HIGH
    if "warning" in lowered or "low confidence" in lowered:
        return ErrorSeverity.MEDIUM
    return ErrorSeverity.LOW


def classify_exception(exc: BaseException) -> tuple[ErrorCategory, ErrorSeverity]:
    """Classify an exception into an error category and severity.

    Typed stage errors carry their own category; storage failures are
    CRITICAL because the job's work is lost. Anything else is classified by
    its message and treated as HIGH.
    """
    if isinstance(exc, StageError):
        if exc.stage == ProcessingStage.DATA_STORAGE:
            return exc.category, ErrorSeverity.CRITICAL
        return exc.category, ErrorSeverity.HIGH
    return categorize_message(str(exc)), ErrorSeverity.HIGH


class _Findings:
    """Accumulates validation errors, warnings and confidence debits."""

    def __init__(self) -> None:
        self.errors: list[ValidationError] = []
        self.warnings: list[ValidationWarning] = []
        self.confidence = 1.0

    def error(
        self,
        field: str,
        code: str,
        message: str,
        severity: ErrorSeverity,
        suggested_fix: str | None = None,
        penalty: float | None = None,
    ) -> None:
        self.errors.append(
            ValidationError(
                field=field,
                code=code,
                message=message,
                severity=severity,
                suggested_fix=suggested_fix,
            )
        )
        self.confidence -= PENALTIES[code] if penalty is None else penalty

    def warning(
        self,
        field: str,
        code: str,
        message: str,
        impact: str,
        penalty: float | None = None,
    ) -> None:
        self.warnings.append(
            ValidationWarning(field=field, code=code, message=message, impact=impact)
        )
        self.confidence -= PENALTIES.get(code, 0.0) if penalty is None else penalty

    def clamped_confidence(self) -> float:
        return round(max(0.0, min(1.0, self.confidence)), 4)


class ErrorHandlingService:
    """Error logging, manual review flagging and receipt data validation.

    Args:
        error_log: Append-only store for error records, review flags and audit
        repository: Persistence adapter used to update job and receipt state
        settings: Thresholds; defaults to the process-wide settings
        on_event: Optional host callback for (event_type, message) events
        clock: Source of "now", injectable for deterministic validation
    """

    def __init__(
        self,
        error_log: ErrorLog,
        repository: PersistenceAdapter,
        settings: PipelineSettings | None = None,
        on_event: EventCallback | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.error_log = error_log
        self.repository = repository
        self.settings = settings or get_settings()
        self.on_event = on_event
        self.clock = clock

    # ------------------------------------------------------------------
    # Error logging and escalation
    # ------------------------------------------------------------------

    async def log_processing_error(
        self,
        *,
        job_id: str = "",
        tenant_id: str = "",
        category: ErrorCategory = ErrorCategory.SYSTEM,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        stage: str = "UNKNOWN",
        code: str = "UNKNOWN_ERROR",
        message: str = "An unknown error occurred",
        details: dict[str, Any] | None = None,
        context: ProcessingContext | None = None,
        fail_job: bool = True,
    ) -> str:
        """Record an error and escalate it to manual review when severe.

        When a job id is given and ``fail_job`` is set, the job is marked
        FAILED with ``CATEGORY:CODE - message``. HIGH and CRITICAL errors are
        always flagged for manual review.

        Returns:
            The id of the new error record

        Raises:
            ErrorLoggingFailed: If the record could not be appended
        """
        record = ProcessingErrorRecord(
            id=new_id(),
            job_id=job_id,
            tenant_id=tenant_id,
            category=category,
            severity=severity,
            stage=stage,
            code=code,
            message=message,
            details=details or {},
            context=context or ProcessingContext(),
            timestamp=self.clock(),
        )

        logger.error(
            "receipt_processing_error",
            error_id=record.id,
            job_id=record.job_id,
            tenant_id=record.tenant_id,
            category=record.category.value,
            severity=record.severity.value,
            stage=record.stage,
            code=record.code,
            message=record.message,
            context=record.context.model_dump(mode="json"),
        )

        try:
            await self.error_log.append_error(record)
        except Exception as e:
            logger.exception("error_log_write_failed", error_id=record.id)
            raise ErrorLoggingFailed("Error logging failed", record.id) from e

        if job_id and fail_job:
            await self._set_job_status(
                job_id,
                JobStatus.FAILED,
                f"{record.category}:{record.code} - {record.message}",
            )

        if severity in (ErrorSeverity.HIGH, ErrorSeverity.CRITICAL):
            try:
                await self.flag_for_manual_review(
                    job_id=job_id or None,
                    tenant_id=tenant_id,
                    reason=review_reason_for(category),
                    description=f"{category} error: {message}",
                    severity=severity,
                )
            except ReviewFlaggingFailed:
                logger.warning("auto_escalation_failed", error_id=record.id)

        return record.id

    async def flag_for_manual_review(
        self,
        *,
        job_id: str | None = None,
        tenant_id: str = "",
        receipt_id: str | None = None,
        line_item_id: str | None = None,
        reason: ManualReviewReason = ManualReviewReason.USER_REQUESTED,
        description: str = "Manual review requested",
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        flagged_by: str = "SYSTEM",
    ) -> str:
        """Raise a manual review flag and move the job to REQUIRES_REVIEW.

        Raises:
            ReviewFlaggingFailed: If the flag or the receipt markers could
                not be written
        """
        flag = ManualReviewFlag(
            id=new_id(),
            tenant_id=tenant_id,
            job_id=job_id,
            receipt_id=receipt_id,
            line_item_id=line_item_id,
            reason=reason,
            description=description,
            severity=severity,
            flagged_by=flagged_by,
            flagged_at=self.clock(),
        )

        try:
            await self.error_log.append_flag(flag)
            if receipt_id:
                await self.repository.mark_receipt_for_review(receipt_id)
            if line_item_id:
                await self.repository.mark_line_item_for_review(line_item_id)
        except Exception as e:
            logger.exception("review_flag_failed", flag_id=flag.id, job_id=job_id)
            raise ReviewFlaggingFailed("Manual review flagging failed") from e

        if job_id:
            await self._set_job_status(job_id, JobStatus.REQUIRES_REVIEW)

        logger.warning(
            "manual_review_flagged",
            flag_id=flag.id,
            job_id=job_id,
            receipt_id=receipt_id,
            line_item_id=line_item_id,
            reason=reason.value,
            severity=severity.value,
            flagged_by=flagged_by,
        )
        emit(self.on_event, "review_flagged", f"{reason}: {description}")
        return flag.id

    async def _set_job_status(
        self, job_id: str, status: JobStatus, error_message: str | None = None
    ) -> None:
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

    async def record_audit(self, action: str, tenant_id: str, detail: str) -> None:
        """Append to the audit trail. Audit is best-effort and never raises."""
        try:
            await self.error_log.append_audit(action, tenant_id, detail)
        except Exception as e:
            logger.warning("audit_write_failed", action=action, error=str(e))
            emit(self.on_event, "audit_failed", f"Audit write failed for {action}: {e}")

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    def validate_receipt_data(
        self,
        data: StructuredReceiptData,
        context: ProcessingContext | None = None,
        now: datetime | None = None,
    ) -> ValidationResult:
        """Validate parsed receipt data for completeness and consistency.

        Field-presence problems are errors; a line item sum that disagrees
        with the declared total is only a warning.
        """
        s = self.settings
        now = _aware(now or self.clock())
        findings = _Findings()

        try:
            self._check_vendor(data, findings)
            self._check_date(data, findings, now)
            self._check_total(data, findings)
            self._check_line_items(data, findings)

            if data.confidence.overall < 0.5:
                findings.warning(
                    "confidence.overall",
                    "OVERALL_LOW_CONFIDENCE",
                    f"Overall parsing confidence is low: {data.confidence.overall}",
                    "Receipt may require manual review",
                )
        except Exception:
            logger.exception(
                "data_validation_failed",
                image_key=context.image_key if context else None,
            )
            return ValidationResult(
                is_valid=False,
                errors=(
                    ValidationError(
                        field="validation",
                        code="VALIDATION_FAILED",
                        message="Data validation process failed",
                        severity=ErrorSeverity.CRITICAL,
                    ),
                ),
                confidence=0.0,
                requires_manual_review=True,
            )

        confidence = findings.clamped_confidence()
        requires_review = (
            bool(findings.errors)
            or confidence < s.validation_review_threshold
            or any(w.code in REVIEW_WARNINGS for w in findings.warnings)
        )
        return ValidationResult(
            is_valid=not findings.errors,
            errors=tuple(findings.errors),
            warnings=tuple(findings.warnings),
            confidence=confidence,
            requires_manual_review=requires_review,
        )

    def _check_vendor(self, data: StructuredReceiptData, findings: _Findings) -> None:
        if data.vendor is None or not data.vendor.name.strip():
            findings.error(
                "vendor.name",
                "VENDOR_MISSING",
                "Vendor name is required but was not found",
                ErrorSeverity.HIGH,
                "Review OCR text for vendor information",
            )
        elif data.vendor.confidence < 0.5:
            findings.warning(
                "vendor.name",
                "VENDOR_LOW_CONFIDENCE",
                f"Vendor name confidence is low: {data.vendor.confidence}",
                "May require manual verification",
            )

    def _check_date(
        self, data: StructuredReceiptData, findings: _Findings, now: datetime
    ) -> None:
        if data.transaction_date is None:
            findings.error(
                "transaction_date",
                "DATE_MISSING",
                "Transaction date is required but was not found",
                ErrorSeverity.MEDIUM,
                "Review OCR text for date patterns",
            )
            return

        date = _aware(data.transaction_date)
        earliest = now - timedelta(days=self.settings.max_past_days)
        latest = now + timedelta(days=self.settings.max_future_days)
        if date < earliest or date > latest:
            findings.warning(
                "transaction_date",
                "DATE_UNREASONABLE",
                f"Transaction date seems unreasonable: {date.isoformat()}",
                "Date may be incorrectly parsed",
            )

    def _check_total(self, data: StructuredReceiptData, findings: _Findings) -> None:
        total = data.total_amount
        if total is None or total <= 0:
            findings.error(
                "total_amount",
                "TOTAL_INVALID",
                "Total amount must be greater than zero",
                ErrorSeverity.HIGH,
                "Review OCR text for total amount",
            )
        elif total > self.settings.high_total_warning_cents:
            findings.warning(
                "total_amount",
                "TOTAL_HIGH",
                f"Total amount seems unusually high: {_format_cents(total)}",
                "May indicate parsing error",
            )

    def _check_line_items(
        self, data: StructuredReceiptData, findings: _Findings
    ) -> None:
        if not data.line_items:
            findings.error(
                "line_items",
                "LINE_ITEMS_MISSING",
                "Receipt must contain at least one line item",
                ErrorSeverity.HIGH,
                "Review parsing logic for line item detection",
            )
            return

        line_total = 0
        for i, item in enumerate(data.line_items):
            if not item.description.strip():
                findings.error(
                    f"line_items[{i}].description",
                    "ITEM_DESCRIPTION_MISSING",
                    f"Line item {i + 1} is missing description",
                    ErrorSeverity.MEDIUM,
                )
            if item.total_price and item.total_price > 0:
                line_total += item.total_price
            if item.confidence < 0.3:
                findings.warning(
                    f"line_items[{i}].confidence",
                    "ITEM_LOW_CONFIDENCE",
                    f"Line item {i + 1} has low parsing confidence: {item.confidence}",
                    "May require manual verification",
                )

        total = data.total_amount
        if total and total > 0 and line_total > 0:
            difference = abs(total - line_total) / total
            if difference > self.settings.total_mismatch_tolerance:
                findings.warning(
                    "total_amount",
                    "TOTAL_MISMATCH",
                    f"Line items total ({_format_cents(line_total)}) doesn't match "
                    f"receipt total ({_format_cents(total)})",
                    "May indicate parsing errors or missing items",
                )

    def check_data_reasonableness(
        self, data: StructuredReceiptData, now: datetime | None = None
    ) -> ValidationResult:
        """Coarse business sanity rules, independent of field validation."""
        s = self.settings
        now = _aware(now or self.clock())

        def reasonable_total() -> bool:
            total = data.total_amount
            return total is not None and 0 < total < s.reasonable_max_total_cents

        def reasonable_item_count() -> bool:
            return 0 < len(data.line_items) < s.reasonable_max_line_items

        def reasonable_date() -> bool:
            if data.transaction_date is None:
                return False
            date = _aware(data.transaction_date)
            return now - timedelta(days=s.reasonable_max_age_days) <= date <= now

        rules: list[tuple[str, Callable[[], bool], str, ErrorSeverity]] = [
            (
                "reasonable_total",
                reasonable_total,
                "Total amount is outside reasonable range",
                ErrorSeverity.MEDIUM,
            ),
            (
                "reasonable_item_count",
                reasonable_item_count,
                "Line item count is outside reasonable range",
                ErrorSeverity.MEDIUM,
            ),
            (
                "reasonable_date",
                reasonable_date,
                "Transaction date is outside reasonable range "
                f"({s.reasonable_max_age_days} days ago to now)",
                ErrorSeverity.LOW,
            ),
        ]

        findings = _Findings()
        for name, check, message, severity in rules:
            try:
                passed = check()
            except Exception:
                findings.warning(
                    name,
                    "RULE_CHECK_FAILED",
                    f"Business rule check failed: {name}",
                    "Unable to validate business rule",
                )
                continue
            if not passed:
                findings.error(
                    name, name.upper(), message, severity, penalty=RULE_PENALTIES[severity]
                )

        confidence = findings.clamped_confidence()
        return ValidationResult(
            is_valid=not findings.errors,
            errors=tuple(findings.errors),
            warnings=tuple(findings.warnings),
            confidence=confidence,
            requires_manual_review=bool(findings.errors)
            or confidence < s.review_confidence_threshold,
        )

    # ------------------------------------------------------------------
    # Operator queries
    # ------------------------------------------------------------------

    async def get_processing_errors(
        self, tenant_id: str, filters: ErrorFilters | None = None
    ) -> list[ProcessingErrorRecord]:
        return await self.error_log.list_errors(tenant_id, filters or ErrorFilters())

    async def get_manual_review_items(
        self, tenant_id: str, filters: ReviewFilters | None = None
    ) -> list[ManualReviewFlag]:
        return await self.error_log.list_flags(tenant_id, filters or ReviewFilters())

    async def get_quality_metrics(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> QualityMetrics:
        """Summarise a tenant's processing outcomes over an optional window."""
        jobs = await self.repository.list_jobs(tenant_id, start, end)
        confidences = await self.repository.completed_receipt_confidences(
            tenant_id, start, end
        )

        metrics = QualityMetrics(
            total_processed=len(jobs),
            successful_processed=sum(j.status == JobStatus.COMPLETED for j in jobs),
            failed_processed=sum(j.status == JobStatus.FAILED for j in jobs),
            manual_review_required=sum(
                j.status == JobStatus.REQUIRES_REVIEW for j in jobs
            ),
        )
        if confidences:
            metrics.avg_confidence_score = sum(confidences) / len(confidences)

        durations = [
            (j.completed_at - j.started_at).total_seconds() * 1000
            for j in jobs
            if j.started_at and j.completed_at
        ]
        if durations:
            metrics.avg_processing_time_ms = sum(durations) / len(durations)

        reasons: Counter[str] = Counter()
        for job in jobs:
            if not job.error_message:
                continue
            metrics.errors_by_category[categorize_message(job.error_message)] += 1
            metrics.errors_by_severity[
                determine_severity(job.error_message, job.retry_count)
            ] += 1
            reasons[job.error_message] += 1

        metrics.common_failure_reasons = [
            FailureReasonCount(reason=reason, count=count)
            for reason, count in reasons.most_common(10)
        ]
        return metrics

    async def resolve_error(
        self, error_id: str, resolved_by: str, resolution: str | None = None
    ) -> None:
        if not await self.error_log.resolve_error(error_id, resolved_by, resolution):
            raise RecordNotFoundError(f"Error record not found: {error_id}")
        logger.info("error_resolved", error_id=error_id, resolved_by=resolved_by)

    async def resolve_manual_review(
        self, flag_id: str, resolved_by: str, resolution: str
    ) -> None:
        if not await self.error_log.resolve_flag(flag_id, resolved_by, resolution):
            raise RecordNotFoundError(f"Review flag not found: {flag_id}")
        logger.info("manual_review_resolved", flag_id=flag_id, resolved_by=resolved_by)
