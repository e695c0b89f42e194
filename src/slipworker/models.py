"""Data models for receipt processing jobs, parsed receipt data and results."""

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(UTC)


class JobStatus(StrEnum):
    QUEUED = "QUEUED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    REQUIRES_REVIEW = "REQUIRES_REVIEW"


class ParsingStrategy(StrEnum):
    AGGRESSIVE = "AGGRESSIVE"
    CONSERVATIVE = "CONSERVATIVE"
    ADAPTIVE = "ADAPTIVE"


class ErrorCategory(StrEnum):
    UPLOAD = "UPLOAD"
    OCR = "OCR"
    PARSING = "PARSING"
    MATCHING = "MATCHING"
    STORAGE = "STORAGE"
    VALIDATION = "VALIDATION"
    SYSTEM = "SYSTEM"


class ErrorSeverity(StrEnum):
    LOW = "LOW"
    MEDIUM = "MEDIUM"
    HIGH = "HIGH"
    CRITICAL = "CRITICAL"


class ManualReviewReason(StrEnum):
    LOW_CONFIDENCE = "LOW_CONFIDENCE"
    PARSING_FAILED = "PARSING_FAILED"
    NO_PRODUCT_MATCH = "NO_PRODUCT_MATCH"
    DATA_INCONSISTENCY = "DATA_INCONSISTENCY"
    OCR_QUALITY_POOR = "OCR_QUALITY_POOR"
    VENDOR_UNKNOWN = "VENDOR_UNKNOWN"
    AMOUNT_MISMATCH = "AMOUNT_MISMATCH"
    USER_REQUESTED = "USER_REQUESTED"


class ProcessingStage(StrEnum):
    IMAGE_RETRIEVAL = "IMAGE_RETRIEVAL"
    OCR_PROCESSING = "OCR_PROCESSING"
    TEXT_PARSING = "TEXT_PARSING"
    DATA_VALIDATION = "DATA_VALIDATION"
    PRODUCT_MATCHING = "PRODUCT_MATCHING"
    DATA_STORAGE = "DATA_STORAGE"
    PROCESSING = "PROCESSING"


class MatchType(StrEnum):
    EXACT = "EXACT"
    ALIAS = "ALIAS"
    FUZZY = "FUZZY"


# ---------------------------------------------------------------------------
# Job message and persisted job
# ---------------------------------------------------------------------------


class _MessageModel(BaseModel):
    """Frozen model that also accepts the camelCase keys used on the queue."""

    model_config = ConfigDict(
        frozen=True, alias_generator=to_camel, populate_by_name=True
    )


class UploadMetadata(_MessageModel):
    file_name: str
    file_size: int = Field(ge=0)
    content_type: str
    checksum: str | None = None


class ProcessingOptions(_MessageModel):
    """Every option a submitter can set on a job.

    Attributes:
        ocr_model: Recognition model to request from the OCR adapter
        parsing_strategy: Heuristic strategy handed to the parsing adapter
        product_matching_threshold: Minimum similarity for a catalog match
        require_manual_review: Force review even when confidence is high
    """

    ocr_model: str = "llama-vision"
    parsing_strategy: ParsingStrategy = ParsingStrategy.ADAPTIVE
    product_matching_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    require_manual_review: bool = False


class JobMessage(_MessageModel):
    """Payload of one queue message; one message is one unit of work."""

    job_id: str
    tenant_id: str
    user_id: str
    image_key: str
    upload_metadata: UploadMetadata
    processing_options: ProcessingOptions = Field(default_factory=ProcessingOptions)


class ProcessingJob(BaseModel):
    """Job record as kept by the persistence layer."""

    id: str
    tenant_id: str
    user_id: str
    image_key: str
    upload_metadata: UploadMetadata
    processing_options: ProcessingOptions = Field(default_factory=ProcessingOptions)
    status: JobStatus = JobStatus.QUEUED
    retry_count: int = 0
    error_message: str | None = None
    created_at: datetime = Field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_message(self) -> JobMessage:
        return JobMessage(
            job_id=self.id,
            tenant_id=self.tenant_id,
            user_id=self.user_id,
            image_key=self.image_key,
            upload_metadata=self.upload_metadata,
            processing_options=self.processing_options,
        )


# ---------------------------------------------------------------------------
# Recognition payloads
# ---------------------------------------------------------------------------


class BoundingBox(BaseModel):
    x: float
    y: float
    width: float
    height: float


class TextBlock(BaseModel):
    text: str
    bounding_box: BoundingBox


class RecognitionOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    model: str = "llama-vision"
    language: str = "en"
    enhance_quality: bool = True
    extract_coordinates: bool = True


class RecognitionResult(BaseModel):
    text: str
    confidence: float = Field(ge=0.0, le=1.0)
    text_blocks: list[TextBlock] | None = None

    @property
    def coordinates(self) -> list[BoundingBox] | None:
        if not self.text_blocks:
            return None
        return [block.bounding_box for block in self.text_blocks]


# ---------------------------------------------------------------------------
# Parsed receipt data
# ---------------------------------------------------------------------------


class VendorInfo(BaseModel):
    name: str
    confidence: float = Field(ge=0.0, le=1.0)
    coordinates: BoundingBox | None = None


class LineItemCandidate(BaseModel):
    """One parsed line item.

    Amounts are integer minor-currency units (cents). ``raw_text`` exists only
    in memory and is excluded from every dump of the model.
    """

    description: str
    quantity: float | None = None
    unit_price: int | None = None
    total_price: int | None = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    raw_text: str = Field(default="", exclude=True, repr=False)
    coordinates: BoundingBox | None = None
    matched_product_id: str | None = None
    match_confidence: float | None = None
    requires_manual_review: bool = False


class ParseConfidence(BaseModel):
    overall: float = Field(default=0.0, ge=0.0, le=1.0)
    vendor: float = Field(default=0.0, ge=0.0, le=1.0)
    date: float = Field(default=0.0, ge=0.0, le=1.0)
    total: float = Field(default=0.0, ge=0.0, le=1.0)
    line_items: float = Field(default=0.0, ge=0.0, le=1.0)


class ParsingMetadata(BaseModel):
    processing_time_ms: float = 0.0
    ocr_model: str = ""
    parsing_strategy: ParsingStrategy = ParsingStrategy.ADAPTIVE
    text_blocks: int = 0
    coordinates_available: bool = False


class StructuredReceiptData(BaseModel):
    """Working value of the pipeline, produced by parsing and enriched by matching."""

    vendor: VendorInfo | None = None
    transaction_date: datetime | None = None
    total_amount: int | None = None
    subtotal: int | None = None
    tax: int | None = None
    line_items: list[LineItemCandidate] = Field(default_factory=list)
    confidence: ParseConfidence = Field(default_factory=ParseConfidence)
    parsing_metadata: ParsingMetadata = Field(default_factory=ParsingMetadata)


# ---------------------------------------------------------------------------
# Catalog matching payloads
# ---------------------------------------------------------------------------


class CatalogProduct(BaseModel):
    id: str
    tenant_id: str
    name: str
    aliases: list[str] = Field(default_factory=list)


class MatchingOptions(BaseModel):
    model_config = ConfigDict(frozen=True)

    similarity_threshold: float = Field(default=0.7, ge=0.0, le=1.0)
    max_matches: int = Field(default=5, ge=1)
    use_aliases: bool = True


class ProductMatch(BaseModel):
    product: CatalogProduct
    similarity: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(ge=0.0, le=1.0)
    match_type: MatchType


class MatchResult(BaseModel):
    line_item: LineItemCandidate
    matches: list[ProductMatch] = Field(default_factory=list)
    best_match: ProductMatch | None = None
    requires_manual_review: bool = False

    @property
    def needs_candidates(self) -> bool:
        """Whether candidate rows are worth storing for a reviewer."""
        return len(self.matches) > 1 or self.requires_manual_review


# ---------------------------------------------------------------------------
# Errors, review flags and validation
# ---------------------------------------------------------------------------


class ProcessingContext(BaseModel):
    """Snapshot of the job attached to every logged error."""

    user_id: str = ""
    image_key: str = ""
    file_name: str | None = None
    file_size: int | None = None
    processing_options: ProcessingOptions | None = None
    retry_count: int = 0
    processing_time_ms: float | None = None
    ocr_model: str | None = None
    parsing_strategy: ParsingStrategy | None = None


class ProcessingErrorRecord(BaseModel):
    """Append-only error log entry.

    Only ``resolved``, ``resolved_by``, ``resolved_at`` and ``resolution``
    change after the record is written.
    """

    id: str
    job_id: str = ""
    tenant_id: str = ""
    category: ErrorCategory = ErrorCategory.SYSTEM
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    stage: str = "UNKNOWN"
    code: str = "UNKNOWN_ERROR"
    message: str = "An unknown error occurred"
    details: dict[str, Any] = Field(default_factory=dict)
    context: ProcessingContext = Field(default_factory=ProcessingContext)
    timestamp: datetime = Field(default_factory=utcnow)
    resolved: bool = False
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    resolution: str | None = None


class ManualReviewFlag(BaseModel):
    id: str
    tenant_id: str = ""
    job_id: str | None = None
    receipt_id: str | None = None
    line_item_id: str | None = None
    reason: ManualReviewReason = ManualReviewReason.USER_REQUESTED
    description: str = "Manual review requested"
    severity: ErrorSeverity = ErrorSeverity.MEDIUM
    flagged_by: str = "SYSTEM"
    flagged_at: datetime = Field(default_factory=utcnow)
    resolved: bool = False
    resolved_by: str | None = None
    resolved_at: datetime | None = None
    resolution: str | None = None


class ValidationError(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    code: str
    message: str
    severity: ErrorSeverity
    suggested_fix: str | None = None


class ValidationWarning(BaseModel):
    model_config = ConfigDict(frozen=True)

    field: str
    code: str
    message: str
    impact: str


class ValidationResult(BaseModel):
    """Outcome of one validation pass. Computed fresh, never persisted."""

    model_config = ConfigDict(frozen=True)

    is_valid: bool
    errors: tuple[ValidationError, ...] = ()
    warnings: tuple[ValidationWarning, ...] = ()
    confidence: float = Field(ge=0.0, le=1.0)
    requires_manual_review: bool

    def has_warning(self, code: str) -> bool:
        return any(w.code == code for w in self.warnings)


class TenantIsolationCheck(BaseModel):
    is_valid: bool = True
    tenant_id: str
    resource_type: str
    resource_id: str
    violations: list[str] = Field(default_factory=list)


# ---------------------------------------------------------------------------
# Pipeline results
# ---------------------------------------------------------------------------


class StageFailure(BaseModel):
    """User-facing summary of why a run failed."""

    stage: str
    code: str
    message: str
    error_id: str | None = None


class ProcessingStatistics(BaseModel):
    started_at: datetime = Field(default_factory=utcnow)
    ended_at: datetime | None = None
    processing_time_ms: float = 0.0
    ocr_time_ms: float = 0.0
    parsing_time_ms: float = 0.0
    matching_time_ms: float = 0.0
    storage_time_ms: float = 0.0
    retry_count: int = 0


class ProcessingResult(BaseModel):
    success: bool
    receipt_data: StructuredReceiptData | None = None
    errors: list[StageFailure] = Field(default_factory=list)
    stats: ProcessingStatistics = Field(default_factory=ProcessingStatistics)
    requires_manual_review: bool = False
    receipt_id: str | None = None


# ---------------------------------------------------------------------------
# Operator queries
# ---------------------------------------------------------------------------


class ErrorFilters(BaseModel):
    category: ErrorCategory | None = None
    severity: ErrorSeverity | None = None
    resolved: bool | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int = 50


class ReviewFilters(BaseModel):
    reason: ManualReviewReason | None = None
    severity: ErrorSeverity | None = None
    resolved: bool | None = None
    start_date: datetime | None = None
    end_date: datetime | None = None
    limit: int = 50


class FailureReasonCount(BaseModel):
    reason: str
    count: int


class QualityMetrics(BaseModel):
    total_processed: int = 0
    successful_processed: int = 0
    failed_processed: int = 0
    manual_review_required: int = 0
    avg_confidence_score: float = 0.0
    avg_processing_time_ms: float = 0.0
    errors_by_category: dict[ErrorCategory, int] = Field(
        default_factory=lambda: {c: 0 for c in ErrorCategory}
    )
    errors_by_severity: dict[ErrorSeverity, int] = Field(
        default_factory=lambda: {s: 0 for s in ErrorSeverity}
    )
    common_failure_reasons: list[FailureReasonCount] = Field(default_factory=list)
