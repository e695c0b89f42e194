"""Recognition adapter using Google Cloud Vision API for receipt text extraction."""

import asyncio
import threading
from statistics import mean

from google.api_core import exceptions as gexc
from google.cloud import vision
from tenacity import (
    AsyncRetrying,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from slipworker.integrations.base import RecognitionAdapter
from slipworker.models import (
    BoundingBox,
    RecognitionOptions,
    RecognitionResult,
    TextBlock,
)

# Model name that asks for the sparse text detector instead of the dense one
SPARSE_TEXT_MODEL = "vision-text"

_RETRYABLE_API_ERRORS = (
    gexc.ServiceUnavailable,
    gexc.TooManyRequests,
    gexc.DeadlineExceeded,
    gexc.InternalServerError,
)


def _is_retryable_error(exception: BaseException) -> bool:
    """Determine if a recognition failure is worth another attempt.

    Retries on rate limiting, unavailability, deadlines and network errors.
    Bad requests and permission problems are not retried.
    """
    if isinstance(exception, ConnectionError | TimeoutError):
        return True
    return isinstance(exception, _RETRYABLE_API_ERRORS)


async def recognize_with_retry(
    adapter: RecognitionAdapter,
    image: bytes,
    options: RecognitionOptions,
    attempts: int = 2,
    min_wait: float = 0.5,
    max_wait: float = 2.0,
) -> RecognitionResult:
    """Call the recognition adapter with its own bounded exponential backoff.

    This is independent of the job-level retry: it only smooths over
    transient faults inside a single pipeline run.
    """
    async for attempt in AsyncRetrying(
        retry=retry_if_exception(_is_retryable_error),
        stop=stop_after_attempt(attempts),
        wait=wait_exponential(multiplier=min_wait, min=min_wait, max=max_wait),
        reraise=True,
    ):
        with attempt:
            return await adapter.extract_text(image, options)
    raise AssertionError("unreachable")  # pragma: no cover


def _to_box(vertices) -> BoundingBox:
    xs = [v.x for v in vertices] or [0]
    ys = [v.y for v in vertices] or [0]
    return BoundingBox(
        x=min(xs), y=min(ys), width=max(xs) - min(xs), height=max(ys) - min(ys)
    )


def _block_text(block) -> str:
    words = []
    for paragraph in block.paragraphs:
        for word in paragraph.words:
            words.append("".join(symbol.text for symbol in word.symbols))
    return " ".join(words)


class VisionRecognizer:
    """
    Recognition adapter backed by Google Cloud Vision text detection.

    Returns the full text, the mean block confidence and, when requested,
    one text block with its bounding box per detected block.

    Dense document detection is used when quality enhancement is on, unless
    the requested model is ``SPARSE_TEXT_MODEL``, which always selects plain
    text detection.
    """

    def __init__(self, client: vision.ImageAnnotatorClient | None = None) -> None:
        """
        Initialize the recognizer.

        Args:
            client: Optional pre-configured ImageAnnotatorClient.
                   If None, a default client will be created lazily on first use.
        """
        self._client = client
        self._client_initialized = client is not None
        self._client_lock = threading.Lock()

    @property
    def client(self) -> vision.ImageAnnotatorClient:
        """Lazily initialize and return the Vision API client.

        Uses double-check locking for thread-safe lazy initialization.
        """
        if not self._client_initialized:
            with self._client_lock:
                if not self._client_initialized:
                    self._client = vision.ImageAnnotatorClient()
                    self._client_initialized = True
        return self._client  # type: ignore[return-value]

    def _detect(self, image: bytes, options: RecognitionOptions) -> RecognitionResult:
        request_image = vision.Image(content=image)  # type: ignore
        context = vision.ImageContext(language_hints=[options.language])  # type: ignore

        # document_text_detection uses the dense-text model, better on receipts
        if options.enhance_quality and options.model != SPARSE_TEXT_MODEL:
            response = self.client.document_text_detection(  # type: ignore
                image=request_image, image_context=context
            )
        else:
            response = self.client.text_detection(  # type: ignore
                image=request_image, image_context=context
            )

        if response.error.message:
            raise gexc.GoogleAPICallError(response.error.message)

        annotation = response.full_text_annotation
        text = annotation.text if annotation else ""
        blocks = [block for page in annotation.pages for block in page.blocks]

        confidence = mean(block.confidence for block in blocks) if blocks else 0.0
        text_blocks = None
        if options.extract_coordinates and blocks:
            text_blocks = [
                TextBlock(
                    text=_block_text(block),
                    bounding_box=_to_box(block.bounding_box.vertices),
                )
                for block in blocks
            ]

        return RecognitionResult(
            text=text,
            confidence=min(1.0, max(0.0, confidence)),
            text_blocks=text_blocks,
        )

    async def extract_text(
        self, image: bytes, options: RecognitionOptions
    ) -> RecognitionResult:
        """
        Extract text from image bytes.

        Returns:
            RecognitionResult; text is empty when nothing was found.

        Raises:
            ValueError: If the image is empty.
            google.api_core.exceptions.GoogleAPIError: If the API call fails.
        """
        if not image:
            raise ValueError("Image content is empty")

        # The Vision client is synchronous, so run it in an executor
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._detect, image, options)
