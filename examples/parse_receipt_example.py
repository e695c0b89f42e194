"""Example usage of the Anthropic parsing adapter on its own.

This example turns a block of OCR text into structured receipt data and
prints the fields the pipeline would validate and match.
"""

import asyncio
import os

from dotenv import load_dotenv

from slipworker.integrations import AnthropicReceiptParser
from slipworker.models import ParsingStrategy

load_dotenv()


async def main():
    """Example of parsing receipt fields from OCR text."""
    api_key = os.getenv("ANTHROPIC_API_KEY", "your-api-key-here")
    parser = AnthropicReceiptParser(api_key=api_key)

    # Sample OCR text from a receipt
    ocr_text = """
    CORNER MARKET & DELI
    2025-06-13 09:31
    MILK 1L              4.50
    BREAD SOURDOUGH      8.00
    SUBTOTAL            12.50
    TOTAL               12.50
    """

    try:
        data = await parser.parse(ocr_text, ParsingStrategy.CONSERVATIVE)

        print(f"Vendor: {data.vendor.name if data.vendor else '-'}")
        print(f"Date: {data.transaction_date}")
        print(f"Total (cents): {data.total_amount}")
        print(f"Confidence: {data.confidence.overall:.2f}")

        print("\nItems:")
        for item in data.line_items:
            print(f"  - {item.description}: {item.total_price} ({item.confidence:.2f})")

        print(f"\nParsing time: {data.parsing_metadata.processing_time_ms:.0f} ms")

    except Exception as e:
        print(f"Error during parsing: {e}")


if __name__ == "__main__":
    asyncio.run(main())
