from unittest.mock import AsyncMock, Mock

import pytest

from slipworker.config import PipelineSettings
from slipworker.integrations.base import (
    ImageStore,
    MatchingAdapter,
    ParsingAdapter,
    RecognitionAdapter,
)
from slipworker.integrations.catalog_matcher import CatalogMatcher
from slipworker.integrations.sqlite_store import SQLiteRepository
from slipworker.models import BoundingBox, RecognitionResult, TextBlock
from slipworker.pipeline import ReceiptProcessor
from slipworker.validation import ErrorHandlingService
from tests.utils import make_job, make_receipt_data


@pytest.fixture
def settings(tmp_path):
    """Default thresholds with instant recognition retries and no .env file."""
    return PipelineSettings(
        _env_file=None,
        recognition_min_wait_seconds=0.0,
        recognition_max_wait_seconds=0.0,
        database_path=tmp_path / "slipworker.db",
        image_root=tmp_path / "images",
    )


@pytest.fixture
def repository():
    repo = SQLiteRepository(":memory:")
    yield repo
    repo.close()


@pytest.fixture
def job():
    return make_job()


@pytest.fixture
def receipt_data():
    return make_receipt_data()


@pytest.fixture
def recognition_result():
    return RecognitionResult(
        text="CORNER MARKET\nMILK 1L 4.50\nBREAD SOURDOUGH 8.00\nTOTAL 12.50",
        confidence=0.93,
        text_blocks=[
            TextBlock(
                text="CORNER MARKET",
                bounding_box=BoundingBox(x=10, y=5, width=200, height=30),
            )
        ],
    )


@pytest.fixture
def image_store():
    store = Mock(spec=ImageStore)
    store.get = AsyncMock(return_value=b"fake image bytes")
    return store


@pytest.fixture
def recognizer(recognition_result):
    adapter = Mock(spec=RecognitionAdapter)
    adapter.extract_text = AsyncMock(return_value=recognition_result)
    return adapter


@pytest.fixture
def parser(receipt_data):
    adapter = Mock(spec=ParsingAdapter)
    adapter.parse = AsyncMock(return_value=receipt_data)
    return adapter


@pytest.fixture
def matcher():
    """Spy around the real difflib matcher so calls can be asserted."""
    adapter = Mock(spec=MatchingAdapter)
    adapter.match = AsyncMock(side_effect=CatalogMatcher().match)
    return adapter


@pytest.fixture
def events():
    return []


@pytest.fixture
def error_service(repository, settings, events):
    return ErrorHandlingService(
        repository,
        repository,
        settings=settings,
        on_event=lambda event_type, message: events.append((event_type, message)),
    )


@pytest.fixture
def sleep():
    return AsyncMock()


@pytest.fixture
def processor(
    image_store, recognizer, parser, matcher, repository, error_service, settings,
    events, sleep,
):
    return ReceiptProcessor(
        image_store=image_store,
        recognizer=recognizer,
        parser=parser,
        matcher=matcher,
        repository=repository,
        error_service=error_service,
        settings=settings,
        on_event=lambda event_type, message: events.append((event_type, message)),
        sleep=sleep,
    )
