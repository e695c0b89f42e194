"""Adapter contracts consumed by the pipeline.

These protocols, together with the payload models in ``slipworker.models``,
are the whole contract surface between the pipeline and its collaborators.
Bump ``ADAPTER_CONTRACT_VERSION`` whenever a signature or payload changes.
"""

from collections.abc import Sequence
from datetime import datetime
from typing import Protocol, runtime_checkable

from slipworker.models import (
    BoundingBox,
    CatalogProduct,
    ErrorFilters,
    JobMessage,
    JobStatus,
    LineItemCandidate,
    ManualReviewFlag,
    MatchingOptions,
    MatchResult,
    ParsingStrategy,
    ProcessingErrorRecord,
    ProcessingJob,
    RecognitionOptions,
    RecognitionResult,
    ReviewFilters,
    StructuredReceiptData,
    TenantIsolationCheck,
)

ADAPTER_CONTRACT_VERSION = "2"


@runtime_checkable
class ImageStore(Protocol):
    async def get(self, key: str) -> bytes | None:
        """Return the object's bytes, or None if it does not exist."""
        ...


@runtime_checkable
class RecognitionAdapter(Protocol):
    async def extract_text(
        self, image: bytes, options: RecognitionOptions
    ) -> RecognitionResult: ...


@runtime_checkable
class ParsingAdapter(Protocol):
    async def parse(
        self,
        text: str,
        strategy: ParsingStrategy,
        coordinates: Sequence[BoundingBox] | None = None,
    ) -> StructuredReceiptData:
        """Parse text into a receipt candidate.

        Returns low-confidence nulls when nothing is found; raises only on
        genuine internal failure.
        """
        ...


@runtime_checkable
class MatchingAdapter(Protocol):
    async def match(
        self,
        line_items: Sequence[LineItemCandidate],
        catalog: Sequence[CatalogProduct],
        options: MatchingOptions,
    ) -> list[MatchResult]: ...


@runtime_checkable
class PersistenceAdapter(Protocol):
    async def create_job(self, job: ProcessingJob) -> None: ...

    async def get_job(self, job_id: str) -> ProcessingJob | None: ...

    async def update_job_status(
        self, job_id: str, status: JobStatus, error_message: str | None = None
    ) -> None: ...

    async def set_retry_count(self, job_id: str, retry_count: int) -> None:
        """Persist the retry count and move the job back to PROCESSING."""
        ...

    async def list_jobs(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ProcessingJob]: ...

    async def get_catalog(self, tenant_id: str) -> list[CatalogProduct]: ...

    async def validate_tenant_isolation(
        self, tenant_id: str, resource_type: str, resource_id: str
    ) -> TenantIsolationCheck: ...

    async def store_receipt(
        self,
        job: JobMessage,
        data: StructuredReceiptData,
        match_results: Sequence[MatchResult] = (),
        review_threshold: float = 0.7,
    ) -> str:
        """Atomically replace the job's receipt, line items and match candidates.

        ``match_results`` is either empty or has one entry per line item.
        """
        ...

    async def mark_receipt_for_review(self, receipt_id: str) -> None: ...

    async def mark_line_item_for_review(self, line_item_id: str) -> None: ...

    async def completed_receipt_confidences(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[float]: ...


@runtime_checkable
class ErrorLog(Protocol):
    async def append_error(self, record: ProcessingErrorRecord) -> None: ...

    async def append_flag(self, flag: ManualReviewFlag) -> None: ...

    async def resolve_error(
        self, error_id: str, resolved_by: str, resolution: str | None
    ) -> bool: ...

    async def resolve_flag(
        self, flag_id: str, resolved_by: str, resolution: str
    ) -> bool: ...

    async def list_errors(
        self, tenant_id: str, filters: ErrorFilters
    ) -> list[ProcessingErrorRecord]: ...

    async def list_flags(
        self, tenant_id: str, filters: ReviewFilters
    ) -> list[ManualReviewFlag]: ...

    async def append_audit(self, action: str, tenant_id: str, detail: str) -> None: ...
