"""Image generation with Gemini (REST ``generateContent`` with image output).

Each call produces one image for one aspect ratio. Transient failures
(503, timeouts, rate limits) are retried with a fixed delay schedule;
safety refusals are not. A circuit breaker pauses all calls after repeated
infrastructure failures.
"""

import base64
import logging
import re
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

import httpx

from static_engine.models.generation import AspectRatio
from static_engine.services.reference_images import ReferenceImage, load_reference_images
from static_engine.utils.retry import APIRateLimitError, NetworkError, retry_async

logger = logging.getLogger(__name__)

GEMINI_API_BASE = "https://generativelanguage.googleapis.com/v1beta"

DEFAULT_RETRY_DELAYS = (5.0, 15.0, 30.0, 45.0)

_SAFETY_PATTERN = re.compile(r"violates|safety|refused|prohibited", re.IGNORECASE)
_RATE_LIMIT_PATTERN = re.compile(
    r"\b429\b|quota|rate limit|rate_limit|resource_exhausted", re.IGNORECASE
)
_UNAVAILABLE_PATTERN = re.compile(
    r"\b50[0234]\b|unavailable|high demand|overloaded|internal error", re.IGNORECASE
)
_TIMEOUT_PATTERN = re.compile(r"timed out|timeout", re.IGNORECASE)
_UNSAFE_WORDS = re.compile(r"\b(nude|naked|topless)\b", re.IGNORECASE)


class ImageGenerationError(Exception):
    """Non-retryable image generation failure (safety block, bad request, no image)."""

    pass


class CircuitOpenError(ImageGenerationError):
    """Raised without calling the API while the circuit breaker is open."""

    pass


def is_safety_error(message: str) -> bool:
    return bool(_SAFETY_PATTERN.search(message))


def is_rate_limit_error(message: str) -> bool:
    return bool(_RATE_LIMIT_PATTERN.search(message))


def classify_error(message: str) -> Exception:
    """Map an upstream error message to the exception type that drives retries.

    Returns:
        ``APIRateLimitError``/``NetworkError`` for retryable failures,
        ``ImageGenerationError`` otherwise
    """
    if is_safety_error(message):
        return ImageGenerationError(message)
    if is_rate_limit_error(message):
        return APIRateLimitError(message)
    if _UNAVAILABLE_PATTERN.search(message) or _TIMEOUT_PATTERN.search(message):
        return NetworkError(message)
    return ImageGenerationError(message)


@dataclass
class ImageResult:
    """Outcome of generating one ratio."""

    ratio: AspectRatio
    data: Optional[bytes] = None
    mime_type: str = "image/png"
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return bool(self.data)


class CircuitBreaker:
    """Closed / open / half-open breaker around the image API.

    Rate limit and safety errors are not infrastructure failures and do not
    count towards the threshold.
    """

    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half-open"

    def __init__(
        self,
        failure_threshold: int = 5,
        recovery_timeout: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.clock = clock
        self.state = self.CLOSED
        self.failure_count = 0
        self.last_failure_time = 0.0

    def check(self) -> None:
        """Raise CircuitOpenError while open; move to half-open after the timeout."""
        if self.state != self.OPEN:
            return
        elapsed = self.clock() - self.last_failure_time
        if elapsed >= self.recovery_timeout:
            self.state = self.HALF_OPEN
            logger.warning("Image circuit breaker half-open, testing API recovery")
            return
        wait = int(self.recovery_timeout - elapsed) + 1
        raise CircuitOpenError(
            f"Image API temporarily unavailable. Circuit breaker open. Retry in {wait}s"
        )

    def record_success(self) -> None:
        if self.state != self.CLOSED:
            logger.info("Image circuit breaker closed, API recovered")
        self.state = self.CLOSED
        self.failure_count = 0

    def record_failure(self, message: str) -> None:
        if is_rate_limit_error(message) or is_safety_error(message):
            return

        self.failure_count += 1
        self.last_failure_time = self.clock()

        if self.failure_count >= self.failure_threshold or self.state == self.HALF_OPEN:
            self.state = self.OPEN
            logger.error(
                f"Image circuit breaker open after {self.failure_count} failures, "
                f"pausing for {self.recovery_timeout:.0f}s"
            )
        else:
            logger.warning(
                f"Image circuit breaker failure count: {self.failure_count}/{self.failure_threshold}"
            )


class ImageGenerator:
    """Gemini image client with per-call bounded retry."""

    def __init__(
        self,
        api_key: str,
        model_name: str = "gemini-2.5-flash-image",
        max_attempts: int = 4,
        retry_delays: Sequence[float] = DEFAULT_RETRY_DELAYS,
        timeout: float = 180.0,
        http_client: Optional[httpx.AsyncClient] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
    ):
        """Initialize the image generator.

        Args:
            api_key: Gemini API key
            model_name: Image-capable Gemini model
            max_attempts: Attempts per ratio (including the first)
            retry_delays: Delay before each retry, in seconds
            timeout: Per-request timeout in seconds
            http_client: Pre-built HTTP client (tests)
            circuit_breaker: Shared breaker (a new one by default)
        """
        self.api_key = api_key
        self.model_name = model_name
        self.max_attempts = max_attempts
        self.retry_delays = list(retry_delays)
        # Long timeout for image generation (can take a while)
        self.client = http_client or httpx.AsyncClient(timeout=timeout)
        self.circuit_breaker = circuit_breaker or CircuitBreaker()

    async def close(self) -> None:
        """Close the HTTP client."""
        await self.client.aclose()

    async def load_references(self, sources: Iterable[Optional[str]]) -> list[ReferenceImage]:
        """Load reference images, skipping missing and unloadable ones."""
        images = await load_reference_images(self.client, sources)
        logger.info(f"Loaded {len(images)} reference image(s)")
        return images

    async def generate(
        self,
        prompt: str,
        references: list[ReferenceImage],
        ratio: AspectRatio,
    ) -> ImageResult:
        """Generate one image for ``ratio``.

        Never raises for upstream failures: the error message is returned in
        the result so sibling ratios are unaffected.
        """
        if not prompt:
            return ImageResult(ratio=ratio, error="Prompt is required")

        try:
            data, mime_type = await retry_async(
                lambda: self._attempt(prompt, references, ratio),
                max_attempts=self.max_attempts,
                delays=self.retry_delays,
                operation=f"Image generation {ratio.value}",
            )
        except Exception as e:
            logger.error(f"Image generation failed for {ratio.value}: {e}")
            return ImageResult(ratio=ratio, error=str(e) or type(e).__name__)

        logger.info(f"Generated {ratio.value} image (~{len(data) // 1024}KB)")
        return ImageResult(ratio=ratio, data=data, mime_type=mime_type)

    async def _attempt(
        self, prompt: str, references: list[ReferenceImage], ratio: AspectRatio
    ) -> tuple[bytes, str]:
        self.circuit_breaker.check()
        start_time = time.time()
        try:
            result = await self._request(prompt, references, ratio)
        except CircuitOpenError:
            raise
        except Exception as e:
            self.circuit_breaker.record_failure(str(e))
            raise
        self.circuit_breaker.record_success()
        logger.debug(f"Image API responded in {time.time() - start_time:.1f}s ({ratio.value})")
        return result

    def _build_payload(
        self, prompt: str, references: list[ReferenceImage], ratio: AspectRatio
    ) -> dict:
        text = (
            "Professional commercial advertisement image. "
            f"{_UNSAFE_WORDS.sub('', prompt)}\n\n"
            "Any human models must be fully clothed."
        )
        if references:
            text += (
                "\n\nThe attached reference images show the real product, brand logo and "
                "concept style. Reproduce the product exactly as it appears in its photo."
            )
        parts = [{"text": text}, *(image.to_inline_part() for image in references)]
        return {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "responseModalities": ["TEXT", "IMAGE"],
                "imageConfig": {"aspectRatio": ratio.value},
            },
        }

    async def _request(
        self, prompt: str, references: list[ReferenceImage], ratio: AspectRatio
    ) -> tuple[bytes, str]:
        url = f"{GEMINI_API_BASE}/models/{self.model_name}:generateContent"
        headers = {
            "x-goog-api-key": self.api_key,
            "Content-Type": "application/json",
        }
        payload = self._build_payload(prompt, references, ratio)

        try:
            response = await self.client.post(url, headers=headers, json=payload)
            response.raise_for_status()
        except httpx.TimeoutException as e:
            raise NetworkError(f"Image generation timed out: {e}")
        except httpx.HTTPStatusError as e:
            try:
                error_detail = e.response.json().get("error", {}).get("message", "")
            except Exception:
                error_detail = e.response.text
            raise classify_error(f"Gemini API error {e.response.status_code}: {error_detail}")
        except httpx.TransportError as e:
            raise NetworkError(f"Network error: {e}")

        result_data = response.json()

        block_reason = result_data.get("promptFeedback", {}).get("blockReason")
        if block_reason:
            raise ImageGenerationError(f"Prompt refused by safety filter: {block_reason}")

        for candidate in result_data.get("candidates", []):
            for part in candidate.get("content", {}).get("parts", []):
                inline_data = part.get("inlineData", {})
                if inline_data.get("data"):
                    mime_type = inline_data.get("mimeType", "image/png")
                    return base64.b64decode(inline_data["data"]), mime_type

        finish_reason = ""
        if result_data.get("candidates"):
            finish_reason = result_data["candidates"][0].get("finishReason", "")
        if finish_reason in ("SAFETY", "PROHIBITED_CONTENT", "IMAGE_SAFETY"):
            raise ImageGenerationError(f"Image refused by safety filter: {finish_reason}")
        raise ImageGenerationError("Gemini returned no image data")
