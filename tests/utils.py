import re
from datetime import timedelta

from slipworker.models import (
    LineItemCandidate,
    ParseConfidence,
    ProcessingJob,
    ProcessingOptions,
    StructuredReceiptData,
    UploadMetadata,
    VendorInfo,
    utcnow,
)

TENANT = "tenant-a"
IMAGE_KEY = "receipts/tenant-a/user-1/upload-1"


def clean_cli_output(output: str) -> str:
    """
    Remove ANSI escape codes, Rich formatting characters, whitespace, and newlines
    from CLI output to make assertions robust against terminal wrapping.
    """
    # 1. Remove ANSI escape codes
    ansi_escape = re.compile(r"\x1B(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~])")
    output = ansi_escape.sub("", output)

    # 2. Remove:
    # \s - all whitespace (space, tab, newline, etc.)
    # │, ╭, ╮, ╰, ╯, ─ - Rich box characters
    return re.sub(r"[\s│╭╮╰╯─]", "", output)


def make_job(**overrides) -> ProcessingJob:
    """Build a persisted-job record for tenant-a with overridable fields."""
    fields = dict(
        id="job-1",
        tenant_id=TENANT,
        user_id="user-1",
        image_key=IMAGE_KEY,
        upload_metadata=UploadMetadata(
            file_name="receipt.jpg", file_size=2048, content_type="image/jpeg"
        ),
        processing_options=ProcessingOptions(),
    )
    fields.update(overrides)
    return ProcessingJob(**fields)


def make_receipt_data(**overrides) -> StructuredReceiptData:
    """Build a clean two-item receipt that passes validation."""
    fields = dict(
        vendor=VendorInfo(name="Corner Market", confidence=0.95),
        transaction_date=utcnow() - timedelta(days=2),
        total_amount=1250,
        line_items=[
            LineItemCandidate(
                description="Milk",
                quantity=1,
                unit_price=450,
                total_price=450,
                confidence=0.9,
                raw_text="MILK 1L        4.50",
            ),
            LineItemCandidate(
                description="Bread",
                quantity=1,
                unit_price=800,
                total_price=800,
                confidence=0.9,
                raw_text="BREAD SOURDOUGH 8.00",
            ),
        ],
        confidence=ParseConfidence(
            overall=0.9, vendor=0.95, date=0.9, total=0.9, line_items=0.9
        ),
    )
    fields.update(overrides)
    return StructuredReceiptData(**fields)
