"""
SQLite persistence for processing jobs, receipts and the error log.

Provides:
- Job records and status transitions
- Receipts, line items and product match candidates
- Tenant product catalog
- Append-only processing errors, manual review flags and audit entries

Raw OCR text is never written: line items are stored without their source
text.
"""

import asyncio
import json
import sqlite3
import threading
import uuid
from collections.abc import Callable, Sequence
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

from slipworker.models import (
    CatalogProduct,
    ErrorFilters,
    JobMessage,
    JobStatus,
    ManualReviewFlag,
    MatchResult,
    ProcessingErrorRecord,
    ProcessingJob,
    ReviewFilters,
    StructuredReceiptData,
    TenantIsolationCheck,
    utcnow,
)
from slipworker.privacy import check_image_key

T = TypeVar("T")

SCHEMA = """
CREATE TABLE IF NOT EXISTS processing_jobs (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    user_id TEXT NOT NULL,
    image_key TEXT NOT NULL,
    upload_metadata TEXT NOT NULL,
    processing_options TEXT NOT NULL,
    status TEXT NOT NULL,
    retry_count INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    created_at TEXT NOT NULL,
    started_at TEXT,
    completed_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_jobs_tenant ON processing_jobs(tenant_id, created_at);

CREATE TABLE IF NOT EXISTS products (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    name TEXT NOT NULL,
    aliases TEXT NOT NULL DEFAULT '[]'
);
CREATE INDEX IF NOT EXISTS idx_products_tenant ON products(tenant_id);

CREATE TABLE IF NOT EXISTS receipts (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    processing_job_id TEXT NOT NULL REFERENCES processing_jobs(id),
    image_key TEXT NOT NULL,
    vendor_name TEXT,
    transaction_date TEXT,
    total_amount_cents INTEGER,
    subtotal_cents INTEGER,
    tax_cents INTEGER,
    currency TEXT NOT NULL DEFAULT 'USD',
    confidence_score REAL NOT NULL,
    requires_manual_review INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS receipt_line_items (
    id TEXT PRIMARY KEY,
    receipt_id TEXT NOT NULL REFERENCES receipts(id) ON DELETE CASCADE,
    position INTEGER NOT NULL,
    description TEXT NOT NULL,
    quantity REAL,
    unit_price_cents INTEGER,
    total_price_cents INTEGER,
    matched_product_id TEXT,
    match_confidence REAL,
    requires_manual_review INTEGER NOT NULL DEFAULT 0,
    coordinates TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS product_match_candidates (
    id TEXT PRIMARY KEY,
    receipt_line_item_id TEXT NOT NULL REFERENCES receipt_line_items(id) ON DELETE CASCADE,
    product_id TEXT NOT NULL,
    similarity_score REAL NOT NULL,
    match_type TEXT NOT NULL,
    confidence REAL NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS processing_errors (
    id TEXT PRIMARY KEY,
    job_id TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    category TEXT NOT NULL,
    severity TEXT NOT NULL,
    stage TEXT NOT NULL,
    code TEXT NOT NULL,
    message TEXT NOT NULL,
    details TEXT NOT NULL,
    context TEXT NOT NULL,
    timestamp TEXT NOT NULL,
    resolved INTEGER NOT NULL DEFAULT 0,
    resolved_by TEXT,
    resolved_at TEXT,
    resolution TEXT
);
CREATE INDEX IF NOT EXISTS idx_errors_tenant ON processing_errors(tenant_id, timestamp);

CREATE TABLE IF NOT EXISTS review_flags (
    id TEXT PRIMARY KEY,
    tenant_id TEXT NOT NULL,
    job_id TEXT,
    receipt_id TEXT,
    line_item_id TEXT,
    reason TEXT NOT NULL,
    description TEXT NOT NULL,
    severity TEXT NOT NULL,
    flagged_by TEXT NOT NULL,
    flagged_at TEXT NOT NULL,
    resolved INTEGER NOT NULL DEFAULT 0,
    resolved_by TEXT,
    resolved_at TEXT,
    resolution TEXT
);
CREATE INDEX IF NOT EXISTS idx_flags_tenant ON review_flags(tenant_id, flagged_at);

CREATE TABLE IF NOT EXISTS audit_log (
    id TEXT PRIMARY KEY,
    action TEXT NOT NULL,
    tenant_id TEXT NOT NULL,
    detail TEXT NOT NULL,
    created_at TEXT NOT NULL
);
"""


def generate_id() -> str:
    return uuid.uuid4().hex


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteRepository:
    """Persistence adapter and error log over a single SQLite database.

    The connection is shared between worker threads and guarded by a lock;
    every public method runs its blocking work via ``asyncio.to_thread``.
    """

    def __init__(self, path: Path | str = "slipworker.db") -> None:
        self.path = str(path)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA foreign_keys = ON")
        self._conn.executescript(SCHEMA)
        self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    async def _run(self, fn: Callable[..., T], *args: Any) -> T:
        def locked() -> T:
            with self._lock:
                try:
                    result = fn(*args)
                    self._conn.commit()
                    return result
                except Exception:
                    self._conn.rollback()
                    raise

        return await asyncio.to_thread(locked)

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> ProcessingJob:
        return ProcessingJob(
            id=row["id"],
            tenant_id=row["tenant_id"],
            user_id=row["user_id"],
            image_key=row["image_key"],
            upload_metadata=json.loads(row["upload_metadata"]),
            processing_options=json.loads(row["processing_options"]),
            status=JobStatus(row["status"]),
            retry_count=row["retry_count"],
            error_message=row["error_message"],
            created_at=_dt(row["created_at"]),
            started_at=_dt(row["started_at"]),
            completed_at=_dt(row["completed_at"]),
        )

    def _create_job(self, job: ProcessingJob) -> None:
        self._conn.execute(
            """
            INSERT INTO processing_jobs
                (id, tenant_id, user_id, image_key, upload_metadata,
                 processing_options, status, retry_count, error_message,
                 created_at, started_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.id,
                job.tenant_id,
                job.user_id,
                job.image_key,
                job.upload_metadata.model_dump_json(),
                job.processing_options.model_dump_json(),
                job.status.value,
                job.retry_count,
                job.error_message,
                _ts(job.created_at),
                _ts(job.started_at),
                _ts(job.completed_at),
            ),
        )

    async def create_job(self, job: ProcessingJob) -> None:
        await self._run(self._create_job, job)

    def _get_job(self, job_id: str) -> ProcessingJob | None:
        row = self._conn.execute(
            "SELECT * FROM processing_jobs WHERE id = ?", (job_id,)
        ).fetchone()
        return self._row_to_job(row) if row else None

    async def get_job(self, job_id: str) -> ProcessingJob | None:
        return await self._run(self._get_job, job_id)

    def _update_job_status(
        self, job_id: str, status: JobStatus, error_message: str | None
    ) -> None:
        now = _ts(utcnow())
        fields = ["status = ?"]
        params: list[Any] = [status.value]
        if error_message:
            fields.append("error_message = ?")
            params.append(error_message)
        if status == JobStatus.PROCESSING:
            fields.append("started_at = ?")
            params.append(now)
        elif status in (JobStatus.COMPLETED, JobStatus.FAILED):
            fields.append("completed_at = ?")
            params.append(now)
        params.append(job_id)
        self._conn.execute(
            f"UPDATE processing_jobs SET {', '.join(fields)} WHERE id = ?", params
        )

    async def update_job_status(
        self, job_id: str, status: JobStatus, error_message: str | None = None
    ) -> None:
        await self._run(self._update_job_status, job_id, status, error_message)

    def _set_retry_count(self, job_id: str, retry_count: int) -> None:
        self._conn.execute(
            "UPDATE processing_jobs SET retry_count = ?, status = ? WHERE id = ?",
            (retry_count, JobStatus.PROCESSING.value, job_id),
        )

    async def set_retry_count(self, job_id: str, retry_count: int) -> None:
        await self._run(self._set_retry_count, job_id, retry_count)

    def _list_jobs(
        self, tenant_id: str, start: datetime | None, end: datetime | None
    ) -> list[ProcessingJob]:
        query = "SELECT * FROM processing_jobs WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if start:
            query += " AND created_at >= ?"
            params.append(_ts(start))
        if end:
            query += " AND created_at <= ?"
            params.append(_ts(end))
        query += " ORDER BY created_at DESC"
        return [self._row_to_job(r) for r in self._conn.execute(query, params)]

    async def list_jobs(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[ProcessingJob]:
        return await self._run(self._list_jobs, tenant_id, start, end)

    # ------------------------------------------------------------------
    # Catalog and tenant isolation
    # ------------------------------------------------------------------

    def _add_product(self, product: CatalogProduct) -> None:
        self._conn.execute(
            "INSERT INTO products (id, tenant_id, name, aliases) VALUES (?, ?, ?, ?)",
            (product.id, product.tenant_id, product.name, json.dumps(product.aliases)),
        )

    async def add_product(self, product: CatalogProduct) -> None:
        await self._run(self._add_product, product)

    def _get_catalog(self, tenant_id: str) -> list[CatalogProduct]:
        rows = self._conn.execute(
            "SELECT * FROM products WHERE tenant_id = ? ORDER BY name", (tenant_id,)
        )
        return [
            CatalogProduct(
                id=r["id"],
                tenant_id=r["tenant_id"],
                name=r["name"],
                aliases=json.loads(r["aliases"]),
            )
            for r in rows
        ]

    async def get_catalog(self, tenant_id: str) -> list[CatalogProduct]:
        return await self._run(self._get_catalog, tenant_id)

    _OWNER_QUERIES = {
        "product": "SELECT tenant_id FROM products WHERE id = ?",
        "processing_job": "SELECT tenant_id FROM processing_jobs WHERE id = ?",
        "receipt": "SELECT tenant_id FROM receipts WHERE id = ?",
    }

    def _validate_tenant_isolation(
        self, tenant_id: str, resource_type: str, resource_id: str
    ) -> TenantIsolationCheck:
        if resource_type == "image_object":
            return check_image_key(tenant_id, resource_id)

        check = TenantIsolationCheck(
            tenant_id=tenant_id, resource_type=resource_type, resource_id=resource_id
        )
        query = self._OWNER_QUERIES.get(resource_type)
        if query is None:
            check.violations.append(f"Unknown resource type: {resource_type}")
            check.is_valid = False
            return check

        row = self._conn.execute(query, (resource_id,)).fetchone()
        if row is None:
            check.violations.append(f"{resource_type} {resource_id} not found")
            check.is_valid = False
        elif row["tenant_id"] != tenant_id:
            check.violations.append(
                f"{resource_type} {resource_id} belongs to tenant "
                f"{row['tenant_id']}, not {tenant_id}"
            )
            check.is_valid = False
        return check

    async def validate_tenant_isolation(
        self, tenant_id: str, resource_type: str, resource_id: str
    ) -> TenantIsolationCheck:
        return await self._run(
            self._validate_tenant_isolation, tenant_id, resource_type, resource_id
        )

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    def _store_receipt(
        self,
        job: JobMessage,
        data: StructuredReceiptData,
        match_results: Sequence[MatchResult],
        review_threshold: float,
    ) -> str:
        now = _ts(utcnow())
        # A rerun of the job replaces whatever an earlier attempt stored
        self._conn.execute(
            "DELETE FROM receipts WHERE processing_job_id = ?", (job.job_id,)
        )
        receipt_id = generate_id()
        self._conn.execute(
            """
            INSERT INTO receipts
                (id, tenant_id, processing_job_id, image_key, vendor_name,
                 transaction_date, total_amount_cents, subtotal_cents, tax_cents,
                 confidence_score, requires_manual_review, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                receipt_id,
                job.tenant_id,
                job.job_id,
                job.image_key,
                data.vendor.name if data.vendor else None,
                _ts(data.transaction_date),
                data.total_amount,
                data.subtotal,
                data.tax,
                data.confidence.overall,
                int(data.confidence.overall < review_threshold),
                now,
                now,
            ),
        )
        line_item_ids = []
        for position, item in enumerate(data.line_items):
            line_item_id = generate_id()
            self._conn.execute(
                """
                INSERT INTO receipt_line_items
                    (id, receipt_id, position, description, quantity,
                     unit_price_cents, total_price_cents, matched_product_id,
                     match_confidence, requires_manual_review, coordinates, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    line_item_id,
                    receipt_id,
                    position,
                    item.description,
                    item.quantity,
                    item.unit_price,
                    item.total_price,
                    item.matched_product_id,
                    item.match_confidence
                    if item.match_confidence is not None
                    else item.confidence,
                    int(item.requires_manual_review or item.confidence < review_threshold),
                    item.coordinates.model_dump_json() if item.coordinates else None,
                    now,
                ),
            )
            line_item_ids.append(line_item_id)
        self._insert_candidates(line_item_ids, match_results, now)
        return receipt_id

    def _insert_candidates(
        self,
        line_item_ids: Sequence[str],
        match_results: Sequence[MatchResult],
        now: str | None,
    ) -> None:
        """Store alternatives for ambiguous or doubtful matches.

        ``match_results`` is positional: entry ``i`` belongs to line item ``i``.
        """
        for line_item_id, result in zip(line_item_ids, match_results):
            if not result.needs_candidates:
                continue
            for match in result.matches:
                self._conn.execute(
                    """
                    INSERT INTO product_match_candidates
                        (id, receipt_line_item_id, product_id, similarity_score,
                         match_type, confidence, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        generate_id(),
                        line_item_id,
                        match.product.id,
                        match.similarity,
                        match.match_type.value,
                        match.confidence,
                        now,
                    ),
                )

    async def store_receipt(
        self,
        job: JobMessage,
        data: StructuredReceiptData,
        match_results: Sequence[MatchResult] = (),
        review_threshold: float = 0.7,
    ) -> str:
        """Write the receipt, its line items and match candidates in one transaction.

        Any receipt stored by an earlier attempt of the same job is replaced.

        Returns:
            Id of the new receipt
        """
        return await self._run(
            self._store_receipt, job, data, match_results, review_threshold
        )

    def _count_receipts(self, job_id: str) -> int:
        row = self._conn.execute(
            "SELECT COUNT(*) FROM receipts WHERE processing_job_id = ?", (job_id,)
        ).fetchone()
        return row[0]

    async def count_receipts(self, job_id: str) -> int:
        return await self._run(self._count_receipts, job_id)

    def _match_candidates_by_position(self, receipt_id: str) -> list[int]:
        rows = self._conn.execute(
            """
            SELECT COUNT(c.id) FROM receipt_line_items li
            LEFT JOIN product_match_candidates c ON c.receipt_line_item_id = li.id
            WHERE li.receipt_id = ?
            GROUP BY li.id ORDER BY li.position
            """,
            (receipt_id,),
        )
        return [row[0] for row in rows]

    async def match_candidates_by_position(self, receipt_id: str) -> list[int]:
        """Number of stored candidates for each line item, in receipt order."""
        return await self._run(self._match_candidates_by_position, receipt_id)

    def _count_match_candidates(self, receipt_id: str) -> int:
        row = self._conn.execute(
            """
            SELECT COUNT(*) FROM product_match_candidates c
            JOIN receipt_line_items li ON li.id = c.receipt_line_item_id
            WHERE li.receipt_id = ?
            """,
            (receipt_id,),
        ).fetchone()
        return row[0]

    async def count_match_candidates(self, receipt_id: str) -> int:
        return await self._run(self._count_match_candidates, receipt_id)

    def _get_receipt(self, receipt_id: str) -> dict[str, Any] | None:
        row = self._conn.execute(
            "SELECT * FROM receipts WHERE id = ?", (receipt_id,)
        ).fetchone()
        if row is None:
            return None
        receipt = dict(row)
        receipt["line_items"] = [
            dict(r)
            for r in self._conn.execute(
                "SELECT * FROM receipt_line_items WHERE receipt_id = ? ORDER BY position",
                (receipt_id,),
            )
        ]
        return receipt

    async def get_receipt(self, receipt_id: str) -> dict[str, Any] | None:
        return await self._run(self._get_receipt, receipt_id)

    def _mark(self, table: str, row_id: str) -> None:
        self._conn.execute(
            f"UPDATE {table} SET requires_manual_review = 1 WHERE id = ?", (row_id,)
        )

    async def mark_receipt_for_review(self, receipt_id: str) -> None:
        await self._run(self._mark, "receipts", receipt_id)

    async def mark_line_item_for_review(self, line_item_id: str) -> None:
        await self._run(self._mark, "receipt_line_items", line_item_id)

    def _completed_receipt_confidences(
        self, tenant_id: str, start: datetime | None, end: datetime | None
    ) -> list[float]:
        query = """
            SELECT r.confidence_score FROM receipts r
            JOIN processing_jobs j ON j.id = r.processing_job_id
            WHERE j.tenant_id = ? AND j.status = ?
        """
        params: list[Any] = [tenant_id, JobStatus.COMPLETED.value]
        if start:
            query += " AND j.created_at >= ?"
            params.append(_ts(start))
        if end:
            query += " AND j.created_at <= ?"
            params.append(_ts(end))
        return [row[0] for row in self._conn.execute(query, params)]

    async def completed_receipt_confidences(
        self,
        tenant_id: str,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[float]:
        return await self._run(self._completed_receipt_confidences, tenant_id, start, end)

    # ------------------------------------------------------------------
    # Error log
    # ------------------------------------------------------------------

    def _append_error(self, record: ProcessingErrorRecord) -> None:
        self._conn.execute(
            """
            INSERT INTO processing_errors
                (id, job_id, tenant_id, category, severity, stage, code, message,
                 details, context, timestamp, resolved)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
            """,
            (
                record.id,
                record.job_id,
                record.tenant_id,
                record.category.value,
                record.severity.value,
                record.stage,
                record.code,
                record.message,
                json.dumps(record.details, default=str),
                record.context.model_dump_json(),
                _ts(record.timestamp),
            ),
        )

    async def append_error(self, record: ProcessingErrorRecord) -> None:
        await self._run(self._append_error, record)

    def _append_flag(self, flag: ManualReviewFlag) -> None:
        self._conn.execute(
            """
            INSERT INTO review_flags
                (id, tenant_id, job_id, receipt_id, line_item_id, reason,
                 description, severity, flagged_by, flagged_at, resolved)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
            """,
            (
                flag.id,
                flag.tenant_id,
                flag.job_id,
                flag.receipt_id,
                flag.line_item_id,
                flag.reason.value,
                flag.description,
                flag.severity.value,
                flag.flagged_by,
                _ts(flag.flagged_at),
            ),
        )

    async def append_flag(self, flag: ManualReviewFlag) -> None:
        await self._run(self._append_flag, flag)

    def _resolve(
        self, table: str, row_id: str, resolved_by: str, resolution: str | None
    ) -> bool:
        cursor = self._conn.execute(
            f"""
            UPDATE {table}
            SET resolved = 1, resolved_by = ?, resolved_at = ?, resolution = ?
            WHERE id = ? AND resolved = 0
            """,
            (resolved_by, _ts(utcnow()), resolution, row_id),
        )
        return cursor.rowcount > 0

    async def resolve_error(
        self, error_id: str, resolved_by: str, resolution: str | None
    ) -> bool:
        return await self._run(
            self._resolve, "processing_errors", error_id, resolved_by, resolution
        )

    async def resolve_flag(self, flag_id: str, resolved_by: str, resolution: str) -> bool:
        return await self._run(
            self._resolve, "review_flags", flag_id, resolved_by, resolution
        )

    @staticmethod
    def _window(
        query: str,
        params: list[Any],
        column: str,
        start: datetime | None,
        end: datetime | None,
    ) -> str:
        if start:
            query += f" AND {column} >= ?"
            params.append(_ts(start))
        if end:
            query += f" AND {column} <= ?"
            params.append(_ts(end))
        return query

    def _list_errors(
        self, tenant_id: str, filters: ErrorFilters
    ) -> list[ProcessingErrorRecord]:
        query = "SELECT * FROM processing_errors WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if filters.category:
            query += " AND category = ?"
            params.append(filters.category.value)
        if filters.severity:
            query += " AND severity = ?"
            params.append(filters.severity.value)
        if filters.resolved is not None:
            query += " AND resolved = ?"
            params.append(int(filters.resolved))
        query = self._window(
            query, params, "timestamp", filters.start_date, filters.end_date
        )
        query += " ORDER BY timestamp DESC LIMIT ?"
        params.append(filters.limit)
        return [
            ProcessingErrorRecord(
                id=r["id"],
                job_id=r["job_id"],
                tenant_id=r["tenant_id"],
                category=r["category"],
                severity=r["severity"],
                stage=r["stage"],
                code=r["code"],
                message=r["message"],
                details=json.loads(r["details"]),
                context=json.loads(r["context"]),
                timestamp=_dt(r["timestamp"]),
                resolved=bool(r["resolved"]),
                resolved_by=r["resolved_by"],
                resolved_at=_dt(r["resolved_at"]),
                resolution=r["resolution"],
            )
            for r in self._conn.execute(query, params)
        ]

    async def list_errors(
        self, tenant_id: str, filters: ErrorFilters
    ) -> list[ProcessingErrorRecord]:
        return await self._run(self._list_errors, tenant_id, filters)

    def _list_flags(
        self, tenant_id: str, filters: ReviewFilters
    ) -> list[ManualReviewFlag]:
        query = "SELECT * FROM review_flags WHERE tenant_id = ?"
        params: list[Any] = [tenant_id]
        if filters.reason:
            query += " AND reason = ?"
            params.append(filters.reason.value)
        if filters.severity:
            query += " AND severity = ?"
            params.append(filters.severity.value)
        if filters.resolved is not None:
            query += " AND resolved = ?"
            params.append(int(filters.resolved))
        query = self._window(
            query, params, "flagged_at", filters.start_date, filters.end_date
        )
        query += " ORDER BY flagged_at DESC LIMIT ?"
        params.append(filters.limit)
        return [
            ManualReviewFlag(
                id=r["id"],
                tenant_id=r["tenant_id"],
                job_id=r["job_id"],
                receipt_id=r["receipt_id"],
                line_item_id=r["line_item_id"],
                reason=r["reason"],
                description=r["description"],
                severity=r["severity"],
                flagged_by=r["flagged_by"],
                flagged_at=_dt(r["flagged_at"]),
                resolved=bool(r["resolved"]),
                resolved_by=r["resolved_by"],
                resolved_at=_dt(r["resolved_at"]),
                resolution=r["resolution"],
            )
            for r in self._conn.execute(query, params)
        ]

    async def list_flags(
        self, tenant_id: str, filters: ReviewFilters
    ) -> list[ManualReviewFlag]:
        return await self._run(self._list_flags, tenant_id, filters)

    def _append_audit(self, action: str, tenant_id: str, detail: str) -> None:
        self._conn.execute(
            "INSERT INTO audit_log (id, action, tenant_id, detail, created_at) "
            "VALUES (?, ?, ?, ?, ?)",
            (generate_id(), action, tenant_id, detail, _ts(utcnow())),
        )

    async def append_audit(self, action: str, tenant_id: str, detail: str) -> None:
        await self._run(self._append_audit, action, tenant_id, detail)
