"""Exception hierarchy for the receipt pipeline."""

from slipworker.models import ErrorCategory, ProcessingStage


class PipelineError(Exception):
    """Base exception for receipt pipeline errors."""


class StageError(PipelineError):
    """Raised when a pipeline stage fails and the remaining stages must not run.

    Attributes:
        stage: Stage that failed
        category: Error category the failure was logged under
        code: Stable error code for the failure
        error_id: Id of the logged error record, for support traceability
    """

    stage = ProcessingStage.PROCESSING
    category = ErrorCategory.SYSTEM
    default_code = "PROCESSING_FAILED"

    def __init__(
        self, message: str, error_id: str | None = None, code: str | None = None
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_id = error_id
        self.code = code or self.default_code

    def __str__(self) -> str:
        if self.error_id:
            return f"{self.message} (Error ID: {self.error_id})"
        return self.message


class ImageRetrievalError(StageError):
    """Raised when the source image cannot be read from object storage."""

    stage = ProcessingStage.IMAGE_RETRIEVAL
    category = ErrorCategory.UPLOAD
    default_code = "IMAGE_RETRIEVAL_FAILED"


class RecognitionError(StageError):
    """Raised when text recognition fails."""

    stage = ProcessingStage.OCR_PROCESSING
    category = ErrorCategory.OCR
    default_code = "OCR_FAILED"


class ParsingError(StageError):
    """Raised when the parsing adapter fails internally."""

    stage = ProcessingStage.TEXT_PARSING
    category = ErrorCategory.PARSING
    default_code = "PARSING_FAILED"


class StorageError(StageError):
    """Raised when the receipt cannot be persisted."""

    stage = ProcessingStage.DATA_STORAGE
    category = ErrorCategory.STORAGE
    default_code = "STORAGE_FAILED"


class TenantIsolationError(StorageError):
    """Raised when a write would cross a tenant boundary."""

    default_code = "TENANT_ISOLATION_VIOLATION"

    def __init__(self, violations: list[str], error_id: str | None = None) -> None:
        super().__init__(
            f"Tenant isolation violation: {', '.join(violations)}", error_id
        )
        self.violations = violations


class PrivacyViolationError(PipelineError):
    """Raised when raw OCR text is about to be persisted."""


class JobNotFoundError(PipelineError):
    """Raised when a processing job does not exist."""


class RecordNotFoundError(PipelineError):
    """Raised when an error record or review flag does not exist."""


class ErrorLoggingFailed(PipelineError):
    """Raised when an error record could not be written to the error log.

    The id that was assigned is kept so callers can still reference it.
    """

    def __init__(self, message: str, error_id: str) -> None:
        super().__init__(message)
        self.error_id = error_id


class ReviewFlaggingFailed(PipelineError):
    """Raised when a manual review flag could not be recorded."""
