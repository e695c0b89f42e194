"""Unit tests for the pipeline data models."""

import pytest
from pydantic import ValidationError

from slipworker.models import (
    CatalogProduct,
    ErrorCategory,
    ErrorSeverity,
    JobMessage,
    LineItemCandidate,
    MatchResult,
    MatchType,
    ParsingStrategy,
    ProcessingOptions,
    ProductMatch,
    QualityMetrics,
    RecognitionResult,
    TextBlock,
    BoundingBox,
)
from tests.utils import make_job

pytestmark = pytest.mark.unit


class TestJobMessage:
    def test_accepts_queue_payload_keys(self):
        message = JobMessage.model_validate(
            {
                "jobId": "job-1",
                "tenantId": "tenant-a",
                "userId": "user-1",
                "imageKey": "receipts/tenant-a/user-1/upload-1",
                "uploadMetadata": {
                    "fileName": "receipt.jpg",
                    "fileSize": 2048,
                    "contentType": "image/jpeg",
                },
                "processingOptions": {
                    "ocrModel": "llama-vision",
                    "parsingStrategy": "CONSERVATIVE",
                    "productMatchingThreshold": 0.8,
                    "requireManualReview": True,
                },
            }
        )

        assert message.job_id == "job-1"
        assert message.upload_metadata.checksum is None
        assert message.processing_options.parsing_strategy == ParsingStrategy.CONSERVATIVE
        assert message.processing_options.require_manual_review is True

    def test_dumps_queue_payload_keys(self):
        payload = make_job().to_message().model_dump(by_alias=True)
        assert payload["jobId"] == "job-1"
        assert payload["processingOptions"]["productMatchingThreshold"] == 0.7

    def test_options_are_frozen(self):
        options = ProcessingOptions()
        with pytest.raises(ValidationError):
            options.require_manual_review = True

    def test_threshold_bounds(self):
        with pytest.raises(ValidationError):
            ProcessingOptions(product_matching_threshold=1.5)

    def test_unknown_strategy_rejected(self):
        with pytest.raises(ValidationError):
            ProcessingOptions(parsing_strategy="GREEDY")


class TestLineItemCandidate:
    def test_raw_text_is_excluded_from_dumps(self):
        item = LineItemCandidate(
            description="Milk", total_price=450, raw_text="MILK 1L 4.50"
        )

        assert "raw_text" not in item.model_dump()
        assert "MILK 1L" not in item.model_dump_json()
        assert "MILK 1L" not in repr(item)
        assert item.raw_text == "MILK 1L 4.50"


class TestRecognitionResult:
    def test_coordinates_follow_text_blocks(self):
        box = BoundingBox(x=1, y=2, width=3, height=4)
        result = RecognitionResult(
            text="TOTAL", confidence=0.9, text_blocks=[TextBlock(text="TOTAL", bounding_box=box)]
        )
        assert result.coordinates == [box]
        assert RecognitionResult(text="", confidence=0.0).coordinates is None


class TestMatchResult:
    def product_match(self, product_id, confidence):
        return ProductMatch(
            product=CatalogProduct(id=product_id, tenant_id="tenant-a", name=product_id),
            similarity=confidence,
            confidence=confidence,
            match_type=MatchType.FUZZY,
        )

    def test_single_confident_match_needs_no_candidates(self):
        match = self.product_match("milk", 0.95)
        result = MatchResult(
            line_item=LineItemCandidate(description="Milk"),
            matches=[match],
            best_match=match,
        )
        assert result.needs_candidates is False

    def test_ambiguous_or_doubtful_matches_need_candidates(self):
        a, b = self.product_match("milk", 0.8), self.product_match("oat milk", 0.75)
        ambiguous = MatchResult(
            line_item=LineItemCandidate(description="Milk"), matches=[a, b], best_match=a
        )
        doubtful = MatchResult(
            line_item=LineItemCandidate(description="Milk"),
            matches=[a],
            best_match=a,
            requires_manual_review=True,
        )
        assert ambiguous.needs_candidates is True
        assert doubtful.needs_candidates is True


class TestQualityMetrics:
    def test_counts_default_to_every_member(self):
        metrics = QualityMetrics()
        assert set(metrics.errors_by_category) == set(ErrorCategory)
        assert set(metrics.errors_by_severity) == set(ErrorSeverity)
        assert all(v == 0 for v in metrics.errors_by_category.values())
