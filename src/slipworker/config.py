"""Runtime settings for the receipt pipeline.

Every threshold used by the validator, the orchestrator and the retry
controller lives here so that it can be tuned per deployment (or per tenant,
by handing a different instance to the services) without touching code.
"""

from functools import lru_cache
from pathlib import Path

from pydantic import Field, SecretStr
from pydantic_settings import BaseSettings, SettingsConfigDict


class PipelineSettings(BaseSettings):
    """Configuration for the receipt processing pipeline."""

    model_config = SettingsConfigDict(
        env_prefix="SLIPWORKER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Review escalation
    review_confidence_threshold: float = Field(
        default=0.7,
        ge=0.0,
        le=1.0,
        description="Overall parse confidence below which a completed job needs review",
    )
    validation_review_threshold: float = Field(
        default=0.6,
        ge=0.0,
        le=1.0,
        description="Validation confidence below which review is required",
    )
    low_confidence_flag_threshold: float = Field(
        default=0.3,
        ge=0.0,
        le=1.0,
        description="Validation confidence below which the review reason is LOW_CONFIDENCE",
    )

    # Field validation
    total_mismatch_tolerance: float = Field(
        default=0.10,
        ge=0.0,
        description="Allowed relative gap between line item sum and receipt total",
    )
    high_total_warning_cents: int = Field(
        default=100_000,
        gt=0,
        description="Totals above this raise a TOTAL_HIGH warning",
    )
    max_past_days: int = Field(default=365, ge=0)
    max_future_days: int = Field(default=7, ge=0)

    # Reasonableness rules
    reasonable_max_total_cents: int = Field(default=1_000_000, gt=0)
    reasonable_max_line_items: int = Field(default=100, gt=0)
    reasonable_max_age_days: int = Field(default=180, ge=0)

    # Job retry
    max_retry_count: int = Field(default=3, ge=0)
    retry_delays_seconds: tuple[float, ...] = Field(default=(1.0, 5.0, 15.0))

    # Recognition adapter retry
    recognition_attempts: int = Field(default=2, ge=1)
    recognition_min_wait_seconds: float = Field(default=0.5, ge=0.0)
    recognition_max_wait_seconds: float = Field(default=2.0, ge=0.0)

    # Matching
    max_match_candidates: int = Field(default=5, ge=1)

    # Storage
    database_path: Path = Field(default=Path("slipworker.db"))
    image_root: Path = Field(default=Path("images"))

    # Parsing adapter
    anthropic_api_key: SecretStr = Field(default=SecretStr(""))
    anthropic_model: str = "claude-haiku-4-5"


@lru_cache
def get_settings() -> PipelineSettings:
    """Get cached settings instance."""
    return PipelineSettings()
