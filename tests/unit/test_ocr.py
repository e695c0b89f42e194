"""Unit tests for the Vision recognizer and the recognition retry wrapper."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, Mock, patch

import pytest
from google.api_core import exceptions as gexc

from slipworker.integrations.base import RecognitionAdapter
from slipworker.integrations.ocr import (
    SPARSE_TEXT_MODEL,
    VisionRecognizer,
    recognize_with_retry,
)
from slipworker.models import RecognitionOptions, RecognitionResult

pytestmark = pytest.mark.unit


def vertex(x, y):
    return SimpleNamespace(x=x, y=y)


def block(words, confidence, box):
    return SimpleNamespace(
        confidence=confidence,
        bounding_box=SimpleNamespace(vertices=[vertex(*v) for v in box]),
        paragraphs=[
            SimpleNamespace(
                words=[
                    SimpleNamespace(symbols=[SimpleNamespace(text=c) for c in word])
                    for word in words
                ]
            )
        ],
    )


def vision_response(text, blocks, error=""):
    return SimpleNamespace(
        error=SimpleNamespace(message=error),
        full_text_annotation=SimpleNamespace(
            text=text, pages=[SimpleNamespace(blocks=blocks)]
        ),
    )


@pytest.fixture
def receipt_response():
    return vision_response(
        "CORNER MARKET\nTOTAL 12.50",
        [
            block(["CORNER", "MARKET"], 0.9, [(10, 5), (210, 5), (210, 35), (10, 35)]),
            block(["TOTAL", "12.50"], 0.8, [(10, 300), (150, 300), (150, 320), (10, 320)]),
        ],
    )


class TestVisionRecognizerInitialization:
    def test_creates_default_client_lazily(self):
        with patch("slipworker.integrations.ocr.vision.ImageAnnotatorClient") as cls:
            recognizer = VisionRecognizer()
            cls.assert_not_called()
            assert recognizer.client is cls.return_value
            assert recognizer.client is cls.return_value
            cls.assert_called_once()

    def test_accepts_custom_client(self):
        client = Mock()
        assert VisionRecognizer(client=client).client is client

    def test_satisfies_adapter_protocol(self):
        assert isinstance(VisionRecognizer(client=Mock()), RecognitionAdapter)


class TestTextExtraction:
    @pytest.mark.asyncio
    async def test_document_detection_with_blocks(self, receipt_response):
        client = Mock()
        client.document_text_detection.return_value = receipt_response

        result = await VisionRecognizer(client=client).extract_text(
            b"image", RecognitionOptions()
        )

        client.document_text_detection.assert_called_once()
        assert result.text == "CORNER MARKET\nTOTAL 12.50"
        assert result.confidence == pytest.approx(0.85)
        assert [b.text for b in result.text_blocks] == ["CORNER MARKET", "TOTAL 12.50"]
        box = result.text_blocks[0].bounding_box
        assert (box.x, box.y, box.width, box.height) == (10, 5, 200, 30)

    @pytest.mark.asyncio
    async def test_plain_detection_without_coordinates(self, receipt_response):
        client = Mock()
        client.text_detection.return_value = receipt_response

        result = await VisionRecognizer(client=client).extract_text(
            b"image", RecognitionOptions(enhance_quality=False, extract_coordinates=False)
        )

        client.text_detection.assert_called_once()
        client.document_text_detection.assert_not_called()
        assert result.text_blocks is None

    @pytest.mark.asyncio
    async def test_sparse_text_model_selects_plain_detection(self, receipt_response):
        client = Mock()
        client.text_detection.return_value = receipt_response

        result = await VisionRecognizer(client=client).extract_text(
            b"image", RecognitionOptions(model=SPARSE_TEXT_MODEL)
        )

        client.text_detection.assert_called_once()
        client.document_text_detection.assert_not_called()
        assert result.text == "CORNER MARKET\nTOTAL 12.50"

    @pytest.mark.asyncio
    async def test_blank_image_returns_empty_text(self):
        client = Mock()
        client.document_text_detection.return_value = vision_response("", [])

        result = await VisionRecognizer(client=client).extract_text(
            b"image", RecognitionOptions()
        )

        assert result.text == ""
        assert result.confidence == 0.0
        assert result.text_blocks is None

    @pytest.mark.asyncio
    async def test_api_error_raises(self):
        client = Mock()
        client.document_text_detection.return_value = vision_response(
            "", [], error="Bad image data"
        )

        with pytest.raises(gexc.GoogleAPICallError, match="Bad image data"):
            await VisionRecognizer(client=client).extract_text(
                b"image", RecognitionOptions()
            )

    @pytest.mark.asyncio
    async def test_empty_image_rejected(self):
        with pytest.raises(ValueError, match="empty"):
            await VisionRecognizer(client=Mock()).extract_text(b"", RecognitionOptions())


class TestRecognizeWithRetry:
    @pytest.fixture
    def adapter(self):
        return Mock(spec=RecognitionAdapter)

    @pytest.mark.asyncio
    async def test_transient_error_is_retried(self, adapter):
        expected = RecognitionResult(text="TOTAL 12.50", confidence=0.9)
        adapter.extract_text = AsyncMock(
            side_effect=[gexc.ServiceUnavailable("try again"), expected]
        )

        result = await recognize_with_retry(
            adapter, b"image", RecognitionOptions(), min_wait=0, max_wait=0
        )

        assert result == expected
        assert adapter.extract_text.await_count == 2

    @pytest.mark.asyncio
    async def test_gives_up_after_attempts(self, adapter):
        adapter.extract_text = AsyncMock(side_effect=TimeoutError("slow"))

        with pytest.raises(TimeoutError):
            await recognize_with_retry(
                adapter, b"image", RecognitionOptions(), min_wait=0, max_wait=0
            )

        assert adapter.extract_text.await_count == 2

    @pytest.mark.asyncio
    async def test_permanent_error_is_not_retried(self, adapter):
        adapter.extract_text = AsyncMock(side_effect=gexc.PermissionDenied("no access"))

        with pytest.raises(gexc.PermissionDenied):
            await recognize_with_retry(
                adapter, b"image", RecognitionOptions(), min_wait=0, max_wait=0
            )

        assert adapter.extract_text.await_count == 1
