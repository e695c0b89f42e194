"""Raw-text privacy guard and tenant isolation checks."""

import structlog

from slipworker.errors import PrivacyViolationError
from slipworker.models import TenantIsolationCheck

logger = structlog.get_logger(__name__)

IMAGE_KEY_PREFIX = "receipts"
# Longer OCR text than this is suspicious enough to log
LARGE_TEXT_THRESHOLD = 10_000


def build_image_key(tenant_id: str, user_id: str, upload_id: str) -> str:
    return f"{IMAGE_KEY_PREFIX}/{tenant_id}/{user_id}/{upload_id}"


def ensure_in_memory_only(
    text: str,
    *,
    job_id: str,
    store_raw_text: bool = False,
    persist_to_file: bool = False,
) -> None:
    """Refuse any attempt to persist raw OCR text.

    Raises:
        PrivacyViolationError: If the caller asked to store or write the text
    """
    if store_raw_text or persist_to_file:
        logger.error("ocr_text_persistence_attempt", job_id=job_id)
        raise PrivacyViolationError(
            f"Raw OCR text must not be persisted (job {job_id})"
        )
    if len(text) > LARGE_TEXT_THRESHOLD:
        logger.warning("large_ocr_text", job_id=job_id, length=len(text))


def check_image_key(tenant_id: str, image_key: str) -> TenantIsolationCheck:
    """Check that an object key has the form receipts/{tenant}/{user}/{upload}
    and belongs to ``tenant_id``."""
    check = TenantIsolationCheck(
        tenant_id=tenant_id, resource_type="image_object", resource_id=image_key
    )
    parts = image_key.split("/")
    if len(parts) != 4 or parts[0] != IMAGE_KEY_PREFIX or not all(parts):
        check.violations.append(f"Invalid image key format: {image_key}")
        check.is_valid = False
        return check

    key_tenant = parts[1]
    if key_tenant != tenant_id:
        check.violations.append(
            f"Image object {image_key} belongs to tenant {key_tenant}, not {tenant_id}"
        )
        check.is_valid = False
    return check
