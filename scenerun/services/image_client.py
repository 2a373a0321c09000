"""Image-generation provider client with timeout, 429 backoff and bounded retries."""

import base64
import hashlib
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx
from tenacity import Retrying, retry_if_exception, stop_after_attempt

from scenerun.config import Settings, settings as default_settings
from scenerun.errors import (
    GenerationFailedError,
    GenerationTimeoutError,
    PolicyViolationError,
    RateLimitError,
    UpstreamError,
)

logger = logging.getLogger(__name__)

ASPECT_RATIOS = {
    "yt_long": "16:9",
    "short_vertical": "9:16",
}

_BLOCK_REASONS = {"SAFETY", "PROHIBITED_CONTENT", "BLOCKLIST", "IMAGE_SAFETY", "OTHER"}


@dataclass
class ReferenceImage:
    data: bytes
    mime_type: str = "image/png"
    character_name: Optional[str] = None


@dataclass
class GeneratedImage:
    data: bytes
    mime_type: str
    attempts: int


def _is_retryable(exc: BaseException) -> bool:
    """429, timeouts, 5xx and transport errors are retried; other 4xx and policy refusals are not."""
    if isinstance(exc, UpstreamError):
        return not exc.permanent
    return False


class ImageClient:
    """Client for a Gemini-style ``generateContent`` image endpoint."""

    def __init__(
        self,
        settings: Settings = default_settings,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.settings = settings
        self.base_url = settings.IMAGE_API_BASE_URL
        self.model = settings.IMAGE_MODEL
        self.timeout = settings.IMAGE_TIMEOUT_SECONDS
        self.max_attempts = settings.IMAGE_MAX_ATTEMPTS
        self._transport = transport
        self._sleep = sleep

    def backoff_seconds(self, attempt_number: int, exc: Optional[BaseException]) -> float:
        """Wait before the next attempt.

        Rate limits back off exponentially from IMAGE_RATE_LIMIT_BASE_SECONDS,
        other transient failures linearly; both are capped.
        """
        s = self.settings
        if isinstance(exc, RateLimitError):
            delay = s.IMAGE_RATE_LIMIT_BASE_SECONDS * (2 ** (attempt_number - 1))
            if exc.retry_after is not None:
                delay = max(delay, exc.retry_after)
            return min(delay, s.IMAGE_RATE_LIMIT_MAX_SECONDS)
        return min(s.IMAGE_RETRY_STEP_SECONDS * attempt_number, s.IMAGE_RETRY_MAX_SECONDS)

    def _wait(self, retry_state) -> float:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        delay = self.backoff_seconds(retry_state.attempt_number, exc)
        logger.warning(
            f"Image generation attempt {retry_state.attempt_number}/{self.max_attempts} failed "
            f"({exc.__class__.__name__}), retrying in {delay:.1f}s"
        )
        return delay

    def _build_payload(self, prompt: str, aspect_ratio: str, reference_images: List[ReferenceImage]) -> Dict[str, Any]:
        parts: List[Dict[str, Any]] = []
        for ref in reference_images:
            parts.append(
                {
                    "inline_data": {
                        "data": base64.b64encode(ref.data).decode("ascii"),
                        "mime_type": ref.mime_type,
                    }
                }
            )
        parts.append({"text": prompt})
        return {
            "contents": [{"parts": parts}],
            "generationConfig": {
                "responseModalities": ["Image"],
                "imageConfig": {"aspectRatio": aspect_ratio, "imageSize": "2K"},
            },
        }

    def _parse_image(self, result: Dict[str, Any]) -> GeneratedImage:
        feedback = result.get("promptFeedback") or {}
        if feedback.get("blockReason"):
            raise PolicyViolationError(f"Prompt blocked: {feedback['blockReason']}")

        candidates = result.get("candidates") or []
        if not candidates:
            raise GenerationFailedError("No candidates in response")

        candidate = candidates[0]
        for part in (candidate.get("content") or {}).get("parts") or []:
            inline = part.get("inlineData") or part.get("inline_data")
            if inline and inline.get("data"):
                return GeneratedImage(
                    data=base64.b64decode(inline["data"], validate=True),
                    mime_type=inline.get("mimeType") or inline.get("mime_type") or "image/png",
                    attempts=0,
                )

        if candidate.get("finishReason") in _BLOCK_REASONS:
            raise PolicyViolationError(f"Generation stopped: {candidate['finishReason']}")
        raise GenerationFailedError("No inline image data in response parts")

    def _generate_once(self, prompt: str, api_key: str, aspect_ratio: str, reference_images: List[ReferenceImage]) -> GeneratedImage:
        payload = self._build_payload(prompt, aspect_ratio, reference_images)
        prompt_hash = hashlib.sha256(prompt.encode()).hexdigest()
        logger.info(
            f"Image request to {self.model}, prompt hash: {prompt_hash[:16]}, "
            f"references: {len(reference_images)}"
        )

        try:
            with httpx.Client(timeout=self.timeout, transport=self._transport) as client:
                response = client.post(
                    f"{self.base_url}/models/{self.model}:generateContent",
                    headers={"x-goog-api-key": api_key, "Content-Type": "application/json"},
                    json=payload,
                )
        except httpx.TimeoutException as e:
            raise GenerationTimeoutError(f"Image generation timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise UpstreamError(f"Image provider unreachable: {e}", permanent=False) from e

        if response.status_code == 429:
            retry_after = response.headers.get("Retry-After")
            try:
                retry_after_s = float(retry_after) if retry_after else None
            except ValueError:
                retry_after_s = None
            raise RateLimitError("Image provider rate limit exceeded", retry_after=retry_after_s)

        if response.status_code >= 400:
            try:
                error = response.json().get("error") or {}
            except ValueError:
                error = {}
            message = error.get("message") or f"API error: {response.status_code}"
            logger.error(f"Image provider error {response.status_code}: {message}")
            raise UpstreamError(message, upstream_status=response.status_code, body=error)

        try:
            return self._parse_image(response.json())
        except (ValueError, TypeError, AttributeError, KeyError) as e:
            # Non-JSON body, bad base64 or an unexpected shape
            logger.error(f"Malformed image provider response: {e}")
            raise GenerationFailedError(f"Malformed image response: {e}") from e

    def generate(
        self,
        prompt: str,
        api_key: str,
        aspect_ratio: str = "16:9",
        reference_images: Optional[List[ReferenceImage]] = None,
    ) -> GeneratedImage:
        """
        Generate one image, retrying transient failures.

        Args:
            prompt: Full styled prompt
            api_key: Resolved provider key
            aspect_ratio: Provider aspect ratio string
            reference_images: Character references for visual consistency

        Returns:
            GeneratedImage with decoded bytes and the number of attempts used

        Raises:
            RateLimitError, GenerationTimeoutError, UpstreamError: retries exhausted
            PolicyViolationError, GenerationFailedError: not retried here
        """
        references = list(reference_images or [])[: self.settings.MAX_REFERENCE_IMAGES]
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._wait,
            retry=retry_if_exception(_is_retryable),
            sleep=self._sleep,
            reraise=True,
        )
        for attempt in retrying:
            with attempt:
                image = self._generate_once(prompt, api_key, aspect_ratio, references)
                image.attempts = attempt.retry_state.attempt_number
                logger.info(f"Image generated ({len(image.data)} bytes) after {image.attempts} attempt(s)")
                return image
        raise GenerationFailedError("Image generation did not run")
