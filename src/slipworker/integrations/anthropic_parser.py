"""Parsing adapter that turns OCR text into receipt fields using Anthropic structured outputs."""

import time
from collections.abc import Sequence
from datetime import UTC, datetime
from pathlib import Path

from anthropic import AsyncAnthropic
from anthropic.types.beta import (
    BetaCacheControlEphemeralParam,
    BetaMessageParam,
    BetaTextBlockParam,
)
from jinja2 import Environment, FileSystemLoader, select_autoescape
from pydantic import BaseModel, Field
from tenacity import (
    retry,
    retry_if_not_exception_type,
    stop_after_attempt,
)

from slipworker.models import (
    BoundingBox,
    LineItemCandidate,
    ParseConfidence,
    ParsingMetadata,
    ParsingStrategy,
    StructuredReceiptData,
    VendorInfo,
)


class ParsingAdapterError(Exception):
    """Base exception for parsing adapter errors."""


class ParsingRefusedError(ParsingAdapterError):
    """Raised when the model refuses to process the request."""


class ParsingIncompleteError(ParsingAdapterError):
    """Raised when the response is truncated due to token limits."""


class ParsedItem(BaseModel):
    """Line item as returned by the model."""

    description: str
    quantity: float | None = None
    unit_price_cents: int | None = None
    total_price_cents: int | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    source_line: str = ""


class ParsedReceipt(BaseModel):
    """Output schema the model must follow."""

    vendor_name: str | None = None
    vendor_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    transaction_date: str | None = None  # YYYY-MM-DD
    date_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    total_cents: int | None = None
    subtotal_cents: int | None = None
    tax_cents: int | None = None
    total_confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    items: list[ParsedItem] = Field(default_factory=list)
    overall_confidence: float = Field(default=0.0, ge=0.0, le=1.0)


def _parse_date(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.strptime(value, "%Y-%m-%d").replace(tzinfo=UTC)
    except ValueError:
        return None


def to_structured(
    parsed: ParsedReceipt,
    strategy: ParsingStrategy,
    model: str,
    block_count: int,
    elapsed_ms: float,
) -> StructuredReceiptData:
    """Convert the model's output into the pipeline's working value."""
    vendor = None
    if parsed.vendor_name and parsed.vendor_name.strip():
        vendor = VendorInfo(
            name=parsed.vendor_name.strip(), confidence=parsed.vendor_confidence
        )

    items = [
        LineItemCandidate(
            description=item.description,
            quantity=item.quantity,
            unit_price=item.unit_price_cents,
            total_price=item.total_price_cents,
            confidence=item.confidence,
            raw_text=item.source_line,
        )
        for item in parsed.items
    ]
    item_confidence = (
        sum(i.confidence for i in items) / len(items) if items else 0.0
    )

    return StructuredReceiptData(
        vendor=vendor,
        transaction_date=_parse_date(parsed.transaction_date),
        total_amount=parsed.total_cents,
        subtotal=parsed.subtotal_cents,
        tax=parsed.tax_cents,
        line_items=items,
        confidence=ParseConfidence(
            overall=parsed.overall_confidence,
            vendor=parsed.vendor_confidence if vendor else 0.0,
            date=parsed.date_confidence if parsed.transaction_date else 0.0,
            total=parsed.total_confidence if parsed.total_cents else 0.0,
            line_items=item_confidence,
        ),
        parsing_metadata=ParsingMetadata(
            processing_time_ms=elapsed_ms,
            ocr_model=model,
            parsing_strategy=strategy,
            text_blocks=block_count,
            coordinates_available=block_count > 0,
        ),
    )


class AnthropicReceiptParser:
    """
    Parsing adapter backed by Claude structured outputs.

    Receipts where the model finds nothing come back as low-confidence nulls;
    only refusals, truncation and API failures raise.
    """

    def __init__(
        self,
        api_key: str,
        model: str = "claude-haiku-4-5",
        max_tokens: int = 2048,
        temperature: float = 0.0,
        prompts_dir: str | None = None,
    ) -> None:
        """
        Initialize the parser.

        Args:
            api_key: Anthropic API key
            model: Model to use (default: claude-haiku-4-5)
            max_tokens: Maximum tokens for response (default: 2048)
            temperature: Sampling temperature (default: 0.0 for deterministic)
            prompts_dir: Directory containing Jinja2 templates
                (default: the package's prompts/ directory)
        """
        self.client = AsyncAnthropic(api_key=api_key)
        self.model = model
        self.max_tokens = max_tokens
        self.temperature = temperature

        if prompts_dir is None:
            prompts_dir = str(Path(__file__).parent.parent / "prompts")

        self.jinja_env = Environment(
            loader=FileSystemLoader(prompts_dir),
            autoescape=select_autoescape(),
            trim_blocks=True,
            lstrip_blocks=True,
        )

    def _render_prompts(
        self, text: str, strategy: ParsingStrategy, block_count: int
    ) -> tuple[str, str]:
        system_template = self.jinja_env.get_template("parser_system.jinja2")
        user_template = self.jinja_env.get_template("parser_user.jinja2")

        system_prompt = system_template.render()
        user_prompt = user_template.render(
            OCR_TEXT=text, STRATEGY=strategy.value, BLOCK_COUNT=block_count
        )
        return system_prompt, user_prompt

    @retry(
        retry=retry_if_not_exception_type(ParsingAdapterError),
        stop=stop_after_attempt(3),
        reraise=True,
    )
    async def parse(
        self,
        text: str,
        strategy: ParsingStrategy,
        coordinates: Sequence[BoundingBox] | None = None,
    ) -> StructuredReceiptData:
        """
        Parse OCR text into structured receipt data.

        Raises:
            ParsingRefusedError: If the model refuses the request
            ParsingIncompleteError: If the response is truncated
            Exception: For other API errors (after retry)
        """
        start_time = time.time()
        block_count = len(coordinates) if coordinates else 0

        if not text.strip():
            return to_structured(ParsedReceipt(), strategy, self.model, block_count, 0.0)

        system_prompt, user_prompt = self._render_prompts(text, strategy, block_count)
        messages: list[BetaMessageParam] = [{"role": "user", "content": user_prompt}]

        response = await self.client.beta.messages.parse(
            model=self.model,
            max_tokens=self.max_tokens,
            temperature=self.temperature,
            betas=["structured-outputs-2025-11-13"],
            system=[
                BetaTextBlockParam(
                    type="text",
                    text=system_prompt,
                    cache_control=BetaCacheControlEphemeralParam(type="ephemeral"),
                )
            ],
            messages=messages,
            output_format=ParsedReceipt,
        )

        if response.stop_reason == "refusal":
            raise ParsingRefusedError("Model refused to process the request")

        if response.stop_reason == "max_tokens":
            raise ParsingIncompleteError(
                "Response truncated due to token limit. Try increasing max_tokens."
            )

        parsed: ParsedReceipt = response.parsed_output  # type: ignore
        elapsed_ms = (time.time() - start_time) * 1000
        return to_structured(parsed, strategy, self.model, block_count, elapsed_ms)
