"""Slipworker adapter contracts and reference adapters."""

from slipworker.integrations.anthropic_parser import (
    AnthropicReceiptParser,
    ParsingAdapterError,
    ParsingIncompleteError,
    ParsingRefusedError,
)
from slipworker.integrations.base import ADAPTER_CONTRACT_VERSION
from slipworker.integrations.catalog_matcher import CatalogMatcher
from slipworker.integrations.local_store import LocalImageStore
from slipworker.integrations.ocr import VisionRecognizer, recognize_with_retry
from slipworker.integrations.sqlite_store import SQLiteRepository

__all__ = [
    "ADAPTER_CONTRACT_VERSION",
    "AnthropicReceiptParser",
    "CatalogMatcher",
    "LocalImageStore",
    "ParsingAdapterError",
    "ParsingIncompleteError",
    "ParsingRefusedError",
    "SQLiteRepository",
    "VisionRecognizer",
    "recognize_with_retry",
]
