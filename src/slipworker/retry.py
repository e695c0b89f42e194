"""Job-level retry schedule."""

from collections.abc import Sequence

from pydantic import BaseModel, ConfigDict, Field

from slipworker.config import PipelineSettings
from slipworker.models import StageFailure

MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"
RETRY_FAILED = "RETRY_FAILED"


class RetryPolicy(BaseModel):
    """Bounded backoff schedule for failed jobs.

    ``delays`` is indexed by the retry count before the retry; counts past the
    end of the schedule reuse the last delay.
    """

    model_config = ConfigDict(frozen=True)

    max_retry_count: int = Field(default=3, ge=0)
    delays: tuple[float, ...] = Field(default=(1.0, 5.0, 15.0), min_length=1)

    @classmethod
    def from_settings(cls, settings: PipelineSettings) -> "RetryPolicy":
        return cls(
            max_retry_count=settings.max_retry_count,
            delays=settings.retry_delays_seconds,
        )

    def can_retry(self, retry_count: int) -> bool:
        return retry_count < self.max_retry_count

    def delay_for(self, retry_count: int) -> float:
        return self.delays[min(retry_count, len(self.delays) - 1)]


def last_error_id(failures: Sequence[StageFailure]) -> str | None:
    """Id of the most recent logged failure, if any carries one."""
    for failure in reversed(failures):
        if failure.error_id:
            return failure.error_id
    return None
