"""Queue consumer for receipt jobs, plus a local in-memory transport.

The job record, not the queue, is the system of record for failed work: once
a job has used up its retries the message is acknowledged and dropped.
"""

import asyncio
from collections import deque
from collections.abc import Iterable
from typing import Protocol, runtime_checkable

import structlog
from pydantic import BaseModel

from slipworker.integrations.base import PersistenceAdapter
from slipworker.models import JobMessage, JobStatus, ProcessingResult
from slipworker.pipeline import ReceiptProcessor, Sleep
from slipworker.retry import last_error_id

logger = structlog.get_logger(__name__)


@runtime_checkable
class QueueMessage(Protocol):
    body: JobMessage

    def ack(self) -> None: ...

    def retry(self, delay_seconds: float = 0.0) -> None: ...


class MessageOutcome(BaseModel):
    job_id: str
    action: str  # "ack", "retry" or "drop"
    result: ProcessingResult | None = None


async def handle_message(
    processor: ReceiptProcessor,
    repository: PersistenceAdapter,
    message: QueueMessage,
) -> MessageOutcome:
    """Process one delivery and acknowledge or redeliver it.

    On failure with retries left, the incremented retry count is persisted
    (moving the job back to PROCESSING) before the message is redelivered
    with the backoff delay for that attempt.
    """
    job = message.body
    policy = processor.retry_policy
    try:
        record = await repository.get_job(job.job_id)
        retry_count = record.retry_count if record else 0

        result = await processor.process(job, retry_count=retry_count)
        if result.success:
            message.ack()
            return MessageOutcome(job_id=job.job_id, action="ack", result=result)

        if policy.can_retry(retry_count):
            await repository.set_retry_count(job.job_id, retry_count + 1)
            delay = policy.delay_for(retry_count)
            logger.info(
                "message_redelivery",
                job_id=job.job_id,
                retry_count=retry_count + 1,
                delay_s=delay,
            )
            message.retry(delay_seconds=delay)
            return MessageOutcome(job_id=job.job_id, action="retry", result=result)

        # Marks the job FAILED for good without running any stage
        exhausted = await processor.retry_failed_processing(
            job.job_id, retry_count, last_error_id(result.errors)
        )
        result.errors.extend(exhausted.errors)
        message.ack()
        return MessageOutcome(job_id=job.job_id, action="drop", result=result)

    except Exception as e:
        logger.exception("queue_processing_error", job_id=job.job_id)
        await processor.update_processing_status(
            job.job_id, JobStatus.FAILED, f"Queue processing error: {e}"
        )
        message.ack()
        return MessageOutcome(job_id=job.job_id, action="drop")


async def handle_batch(
    processor: ReceiptProcessor,
    repository: PersistenceAdapter,
    messages: Iterable[QueueMessage],
) -> list[MessageOutcome]:
    """Handle a batch of deliveries one after another."""
    return [await handle_message(processor, repository, m) for m in messages]


class InMemoryMessage:
    """One delivery of a job message on an ``InMemoryQueue``."""

    def __init__(self, queue: "InMemoryQueue", body: JobMessage, attempts: int = 1):
        self.queue = queue
        self.body = body
        self.attempts = attempts
        self.acked = False

    def ack(self) -> None:
        self.acked = True

    def retry(self, delay_seconds: float = 0.0) -> None:
        self.queue.redeliver(self, delay_seconds)


class InMemoryQueue:
    """FIFO queue with delayed, bounded redelivery.

    Args:
        max_deliveries: Deliveries per message after which the transport
            stops redelivering on its own
        sleep: Coroutine used to wait out redelivery delays
    """

    def __init__(self, max_deliveries: int = 10, sleep: Sleep = asyncio.sleep):
        self.max_deliveries = max_deliveries
        self._sleep = sleep
        self._pending: deque[tuple[float, InMemoryMessage]] = deque()
        self.dead_letters: list[InMemoryMessage] = []

    def __len__(self) -> int:
        return len(self._pending)

    def send(self, body: JobMessage) -> None:
        self._pending.append((0.0, InMemoryMessage(self, body)))

    def redeliver(self, message: InMemoryMessage, delay_seconds: float) -> None:
        if message.attempts >= self.max_deliveries:
            logger.warning(
                "redelivery_limit_reached",
                job_id=message.body.job_id,
                attempts=message.attempts,
            )
            self.dead_letters.append(message)
            return
        self._pending.append(
            (delay_seconds, InMemoryMessage(self, message.body, message.attempts + 1))
        )

    async def drain(
        self, processor: ReceiptProcessor, repository: PersistenceAdapter
    ) -> list[MessageOutcome]:
        """Deliver messages until the queue is empty."""
        outcomes = []
        while self._pending:
            delay, message = self._pending.popleft()
            if delay:
                await self._sleep(delay)
            outcomes.append(await handle_message(processor, repository, message))
        return outcomes
