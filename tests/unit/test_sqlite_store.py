"""Unit tests for the SQLite persistence adapter and error log."""

import sqlite3

import pytest

from slipworker.integrations.base import ErrorLog, PersistenceAdapter
from slipworker.integrations.sqlite_store import SQLiteRepository
from slipworker.models import (
    CatalogProduct,
    ErrorFilters,
    JobStatus,
    LineItemCandidate,
    ManualReviewFlag,
    MatchResult,
    MatchType,
    ProcessingErrorRecord,
    ProductMatch,
    ReviewFilters,
)
from tests.utils import IMAGE_KEY, TENANT, make_job, make_receipt_data

pytestmark = pytest.mark.unit


def product_match(product_id, confidence, tenant_id=TENANT):
    return ProductMatch(
        product=CatalogProduct(id=product_id, tenant_id=tenant_id, name=product_id),
        similarity=confidence,
        confidence=confidence,
        match_type=MatchType.FUZZY,
    )


class TestProtocols:
    def test_repository_satisfies_both_contracts(self, repository):
        assert isinstance(repository, PersistenceAdapter)
        assert isinstance(repository, ErrorLog)


class TestJobs:
    @pytest.mark.asyncio
    async def test_create_and_get_round_trip(self, repository, job):
        await repository.create_job(job)

        stored = await repository.get_job(job.id)

        assert stored == job
        assert await repository.get_job("missing") is None

    @pytest.mark.asyncio
    async def test_status_transitions_stamp_times(self, repository, job):
        await repository.create_job(job)

        await repository.update_job_status(job.id, JobStatus.PROCESSING)
        processing = await repository.get_job(job.id)
        await repository.update_job_status(job.id, JobStatus.FAILED, "OCR failed")
        failed = await repository.get_job(job.id)

        assert processing.started_at is not None
        assert processing.completed_at is None
        assert failed.completed_at is not None
        assert failed.error_message == "OCR failed"

    @pytest.mark.asyncio
    async def test_status_without_message_keeps_previous(self, repository, job):
        await repository.create_job(job)
        await repository.update_job_status(job.id, JobStatus.FAILED, "OCR failed")

        await repository.update_job_status(job.id, JobStatus.REQUIRES_REVIEW)

        stored = await repository.get_job(job.id)
        assert stored.status == JobStatus.REQUIRES_REVIEW
        assert stored.error_message == "OCR failed"

    @pytest.mark.asyncio
    async def test_set_retry_count_moves_back_to_processing(self, repository, job):
        await repository.create_job(job)
        await repository.update_job_status(job.id, JobStatus.FAILED)

        await repository.set_retry_count(job.id, 2)

        stored = await repository.get_job(job.id)
        assert stored.retry_count == 2
        assert stored.status == JobStatus.PROCESSING

    @pytest.mark.asyncio
    async def test_list_jobs_is_tenant_scoped(self, repository):
        await repository.create_job(make_job(id="a1"))
        await repository.create_job(make_job(id="b1", tenant_id="tenant-b"))

        jobs = await repository.list_jobs(TENANT)

        assert [j.id for j in jobs] == ["a1"]

    def test_file_database_persists(self, tmp_path):
        path = tmp_path / "jobs.db"
        SQLiteRepository(path).close()
        assert path.exists()


class TestTenantIsolation:
    @pytest.mark.asyncio
    async def test_image_key_checks(self, repository):
        ok = await repository.validate_tenant_isolation(TENANT, "image_object", IMAGE_KEY)
        foreign = await repository.validate_tenant_isolation(
            "tenant-b", "image_object", IMAGE_KEY
        )
        malformed = await repository.validate_tenant_isolation(
            TENANT, "image_object", "uploads/receipt.jpg"
        )

        assert ok.is_valid is True
        assert foreign.is_valid is False
        assert "tenant-a" in foreign.violations[0]
        assert malformed.is_valid is False

    @pytest.mark.asyncio
    async def test_product_ownership(self, repository):
        await repository.add_product(
            CatalogProduct(id="p-b", tenant_id="tenant-b", name="Milk")
        )

        foreign = await repository.validate_tenant_isolation(TENANT, "product", "p-b")
        missing = await repository.validate_tenant_isolation(TENANT, "product", "p-x")
        own = await repository.validate_tenant_isolation("tenant-b", "product", "p-b")

        assert foreign.is_valid is False
        assert missing.is_valid is False
        assert own.is_valid is True

    @pytest.mark.asyncio
    async def test_unknown_resource_type_is_a_violation(self, repository):
        check = await repository.validate_tenant_isolation(TENANT, "invoice", "i-1")
        assert check.is_valid is False


class TestReceipts:
    @pytest.mark.asyncio
    async def test_store_receipt_without_raw_text(self, repository, job):
        await repository.create_job(job)

        receipt_id = await repository.store_receipt(job.to_message(), make_receipt_data())

        receipt = await repository.get_receipt(receipt_id)
        assert receipt["tenant_id"] == TENANT
        assert receipt["vendor_name"] == "Corner Market"
        assert receipt["total_amount_cents"] == 1250
        assert receipt["requires_manual_review"] == 0
        assert [li["description"] for li in receipt["line_items"]] == ["Milk", "Bread"]
        for row in receipt["line_items"]:
            assert "raw_text" not in row
            assert not any("MILK 1L" in str(value) for value in row.values())

    @pytest.mark.asyncio
    async def test_candidates_only_for_ambiguous_or_doubtful(self, repository, job):
        await repository.create_job(job)
        milk = LineItemCandidate(description="Milk")
        bread = LineItemCandidate(description="Bread")
        exact = product_match("p-milk", 1.0)
        a, b = product_match("p-sour", 0.8), product_match("p-rye", 0.75)

        receipt_id = await repository.store_receipt(
            job.to_message(),
            make_receipt_data(),
            [
                MatchResult(line_item=milk, matches=[exact], best_match=exact),
                MatchResult(line_item=bread, matches=[a, b], best_match=a),
            ],
        )

        assert await repository.count_match_candidates(receipt_id) == 2
        assert await repository.match_candidates_by_position(receipt_id) == [0, 2]

    @pytest.mark.asyncio
    async def test_candidates_follow_line_item_position(self, repository, job):
        await repository.create_job(job)
        first, second = make_receipt_data().line_items
        data = make_receipt_data(
            line_items=[first, second.model_copy(update={"description": "Milk"})]
        )
        milk = LineItemCandidate(description="Milk")
        doubtful = product_match("p-milk", 0.5)
        a, b = product_match("p-oat", 0.8), product_match("p-soy", 0.75)

        receipt_id = await repository.store_receipt(
            job.to_message(),
            data,
            [
                MatchResult(
                    line_item=milk,
                    matches=[doubtful],
                    best_match=doubtful,
                    requires_manual_review=True,
                ),
                MatchResult(line_item=milk, matches=[a, b], best_match=a),
            ],
        )

        assert await repository.match_candidates_by_position(receipt_id) == [1, 2]

    @pytest.mark.asyncio
    async def test_storing_again_replaces_the_earlier_receipt(self, repository, job):
        await repository.create_job(job)
        first_id = await repository.store_receipt(job.to_message(), make_receipt_data())

        second_id = await repository.store_receipt(job.to_message(), make_receipt_data())

        assert second_id != first_id
        assert await repository.get_receipt(first_id) is None
        assert await repository.count_receipts(job.id) == 1
        assert len((await repository.get_receipt(second_id))["line_items"]) == 2

    @pytest.mark.asyncio
    async def test_failed_candidate_insert_leaves_nothing_behind(
        self, repository, job, mocker
    ):
        await repository.create_job(job)
        mocker.patch.object(
            repository,
            "_insert_candidates",
            side_effect=sqlite3.OperationalError("database is locked"),
        )
        milk = LineItemCandidate(description="Milk")
        a, b = product_match("p-oat", 0.8), product_match("p-soy", 0.75)

        with pytest.raises(sqlite3.OperationalError):
            await repository.store_receipt(
                job.to_message(),
                make_receipt_data(),
                [MatchResult(line_item=milk, matches=[a, b], best_match=a)] * 2,
            )

        assert await repository.count_receipts(job.id) == 0

    @pytest.mark.asyncio
    async def test_completed_receipt_confidences(self, repository):
        done, failed = make_job(id="done"), make_job(id="failed")
        for job in (done, failed):
            await repository.create_job(job)
            await repository.store_receipt(job.to_message(), make_receipt_data())
        await repository.update_job_status("done", JobStatus.COMPLETED)
        await repository.update_job_status("failed", JobStatus.FAILED)

        assert await repository.completed_receipt_confidences(TENANT) == [0.9]

    @pytest.mark.asyncio
    async def test_mark_for_review(self, repository, job):
        await repository.create_job(job)
        receipt_id = await repository.store_receipt(job.to_message(), make_receipt_data())
        line_item_id = (await repository.get_receipt(receipt_id))["line_items"][1]["id"]

        await repository.mark_receipt_for_review(receipt_id)
        await repository.mark_line_item_for_review(line_item_id)

        receipt = await repository.get_receipt(receipt_id)
        assert receipt["requires_manual_review"] == 1
        assert receipt["line_items"][1]["requires_manual_review"] == 1


class TestErrorLog:
    @pytest.mark.asyncio
    async def test_error_round_trip_and_single_resolution(self, repository):
        record = ProcessingErrorRecord(
            id="e1", job_id="job-1", tenant_id=TENANT, details={"attempt": 2}
        )
        await repository.append_error(record)

        assert await repository.resolve_error("e1", "operator-1", "done") is True
        assert await repository.resolve_error("e1", "operator-2", "again") is False

        (stored,) = await repository.list_errors(TENANT, ErrorFilters())
        assert stored.details == {"attempt": 2}
        assert stored.resolved_by == "operator-1"
        assert stored.resolved_at is not None

    @pytest.mark.asyncio
    async def test_list_errors_respects_limit_and_tenant(self, repository):
        for n in range(3):
            await repository.append_error(
                ProcessingErrorRecord(id=f"e{n}", tenant_id=TENANT)
            )
        await repository.append_error(ProcessingErrorRecord(id="x", tenant_id="tenant-b"))

        records = await repository.list_errors(TENANT, ErrorFilters(limit=2))

        assert len(records) == 2
        assert all(r.tenant_id == TENANT for r in records)

    @pytest.mark.asyncio
    async def test_flags_round_trip(self, repository):
        await repository.append_flag(ManualReviewFlag(id="f1", tenant_id=TENANT))

        assert await repository.resolve_flag("f1", "reviewer-1", "ok") is True
        assert await repository.list_flags(TENANT, ReviewFilters(resolved=False)) == []
        (flag,) = await repository.list_flags(TENANT, ReviewFilters(resolved=True))
        assert flag.resolution == "ok"
