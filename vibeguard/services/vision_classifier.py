"""Vision classifier client — scores an image against the content policy.

Sends the image URL plus a fixed rubric prompt to an OpenAI-compatible
``/chat/completions`` endpoint, retries rate limits and server errors with
exponential backoff, and validates the model's JSON verdict before anything
downstream trusts it.
"""
from __future__ import annotations

import asyncio
import json
import logging
import math
import time
from typing import Awaitable, Callable, Optional

import httpx
import openai
from openai import AsyncOpenAI

from vibeguard.errors import (
    ClassifierRequestError,
    ConfigurationError,
    ExhaustedRetriesError,
    MalformedResponseError,
    TransientClassifierError,
)
from vibeguard.middleware.metrics import metrics
from vibeguard.models.moderation import CATEGORY_ORDER, Analysis, CategoryScores

logger = logging.getLogger(__name__)

MODERATION_PROMPT = """Analyze this image for content policy violations. You must return a valid JSON object with the following structure:

{
  "is_safe": boolean,
  "overall_confidence": number between 0.0 and 1.0 representing the highest violation confidence,
  "categories": {
    "nsfw": number between 0.0 and 1.0,
    "violence": number between 0.0 and 1.0,
    "hate": number between 0.0 and 1.0,
    "harassment": number between 0.0 and 1.0,
    "self_harm": number between 0.0 and 1.0,
    "drugs": number between 0.0 and 1.0,
    "illegal": number between 0.0 and 1.0
  },
  "reasoning": "brief explanation of your assessment"
}

Category definitions:
- nsfw: Sexual or adult content, nudity, sexually suggestive poses
- violence: Graphic violence, gore, weapons used threateningly, death
- hate: Hate symbols, slurs, discriminatory imagery, extremist content
- harassment: Targeted harassment, bullying, doxxing, threats
- self_harm: Self-harm promotion, suicide content, eating disorders
- drugs: Illegal drug use, drug paraphernalia, drug promotion
- illegal: Clearly illegal activities (theft, fraud, etc.)

Score guidelines:
- 0.0-0.3: No violation or very unlikely
- 0.3-0.5: Minor concern, likely acceptable
- 0.5-0.7: Moderate concern, needs human review
- 0.7-0.9: High concern, likely violation
- 0.9-1.0: Clear violation, should be blocked

Return ONLY the JSON object, no additional text."""

IMAGE_DETAIL = "low"
TEMPERATURE = 0.1
MAX_TOKENS = 500

Sleep = Callable[[float], Awaitable[None]]


def clamp_unit(value) -> float:
    """Clamp a model-supplied score into [0, 1]; anything non-numeric becomes 0."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0.0
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


def extract_json_object(content: str) -> dict:
    """Return the first JSON object embedded anywhere in ``content``.

    Strict JSON is tried first; prose-wrapped or fenced output falls back to
    scanning for the first ``{`` that decodes to an object.
    """
    try:
        parsed = json.loads(content)
    except json.JSONDecodeError:
        parsed = None
    if isinstance(parsed, dict):
        return parsed

    start = content.find("{")
    if start == -1:
        raise MalformedResponseError("No JSON object found in response")

    decoder = json.JSONDecoder()
    while start != -1:
        try:
            obj, _ = decoder.raw_decode(content, start)
        except json.JSONDecodeError:
            obj = None
        if isinstance(obj, dict):
            return obj
        start = content.find("{", start + 1)

    raise MalformedResponseError("Failed to parse JSON response")


def parse_verdict(
    payload: dict,
    *,
    model_version: str,
    processing_time_ms: int = 0,
) -> Analysis:
    """Validate a decoded verdict and clamp every confidence into [0, 1]."""
    is_safe = payload.get("is_safe")
    if not isinstance(is_safe, bool):
        raise MalformedResponseError("Missing or invalid is_safe field")

    overall = payload.get("overall_confidence")
    if isinstance(overall, bool) or not isinstance(overall, (int, float)) or math.isnan(overall):
        raise MalformedResponseError("Missing or invalid overall_confidence field")

    raw_categories = payload.get("categories")
    if not isinstance(raw_categories, dict):
        raise MalformedResponseError("Missing or invalid categories field")

    categories = CategoryScores(**{
        category.value: clamp_unit(raw_categories.get(category.value, 0))
        for category in CATEGORY_ORDER
    })

    reasoning = payload.get("reasoning")
    return Analysis(
        is_safe=is_safe,
        overall_confidence=clamp_unit(overall),
        categories=categories,
        reasoning=reasoning if isinstance(reasoning, str) else "",
        model_version=model_version,
        processing_time_ms=processing_time_ms,
        raw_response=payload,
    )


class VisionClassifier:
    """Async client for the external vision classifier.

    Wraps one reused ``AsyncOpenAI`` client with SDK retries disabled; this
    class owns the retry policy. Inject ``http_client`` and ``sleep`` in tests
    to fake the endpoint and record backoff delays.
    """

    def __init__(
        self,
        api_key: Optional[str],
        *,
        model: str = "gpt-4o-mini",
        api_base: str = "https://api.openai.com/v1",
        timeout: float = 30.0,
        max_attempts: int = 3,
        backoff_base: float = 1.0,
        structured_output: bool = True,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        if not api_key:
            raise ConfigurationError("CLASSIFIER_API_KEY is required for content moderation")
        if max_attempts < 1:
            raise ConfigurationError("CLASSIFIER_MAX_ATTEMPTS must be at least 1")

        self.model = model
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.structured_output = structured_output
        self._sleep = sleep
        self.client = AsyncOpenAI(
            api_key=api_key,
            base_url=api_base,
            timeout=timeout,
            max_retries=0,
            http_client=http_client,
        )

    @classmethod
    def from_settings(cls, settings, **overrides) -> "VisionClassifier":
        kwargs = dict(
            model=settings.CLASSIFIER_MODEL,
            api_base=settings.CLASSIFIER_API_BASE,
            timeout=settings.CLASSIFIER_TIMEOUT_SECONDS,
            max_attempts=settings.CLASSIFIER_MAX_ATTEMPTS,
            backoff_base=settings.CLASSIFIER_BACKOFF_BASE_SECONDS,
            structured_output=settings.CLASSIFIER_STRUCTURED_OUTPUT,
        )
        kwargs.update(overrides)
        return cls(settings.CLASSIFIER_API_KEY, **kwargs)

    def build_request(self, image_url: str) -> dict:
        body = {
            "model": self.model,
            "messages": [
                {
                    "role": "user",
                    "content": [
                        {"type": "text", "text": MODERATION_PROMPT},
                        {"type": "image_url", "image_url": {"url": image_url, "detail": IMAGE_DETAIL}},
                    ],
                }
            ],
            "max_tokens": MAX_TOKENS,
            "temperature": TEMPERATURE,
        }
        if self.structured_output:
            body["response_format"] = {"type": "json_object"}
        return body

    async def analyze(self, image_url: str) -> Analysis:
        """Score one image. Raises a ClassifierError subclass on failure."""
        started = time.perf_counter()
        body = self.build_request(image_url)
        last_error: Optional[TransientClassifierError] = None

        for attempt in range(self.max_attempts):
            try:
                content = await self._complete(body)
            except TransientClassifierError as e:
                metrics.record_classifier_attempt("transient")
                last_error = e
                if attempt == self.max_attempts - 1:
                    break
                delay = self.backoff_base * (2 ** attempt)
                logger.warning(
                    "Classifier attempt %d/%d failed (%s); retrying in %.1fs",
                    attempt + 1, self.max_attempts, e.message, delay,
                )
                await self._sleep(delay)
                continue
            except Exception:
                metrics.record_classifier_attempt("error")
                raise

            elapsed_ms = int((time.perf_counter() - started) * 1000)
            try:
                analysis = parse_verdict(
                    extract_json_object(content),
                    model_version=self.model,
                    processing_time_ms=elapsed_ms,
                )
            except MalformedResponseError:
                metrics.record_classifier_attempt("malformed")
                raise
            metrics.record_classifier_attempt("ok")
            metrics.record_classifier_latency(elapsed_ms / 1000)
            return analysis

        raise ExhaustedRetriesError(
            f"Max retries exceeded after {self.max_attempts} attempts: {last_error.message}",
            attempts=self.max_attempts,
            status_code=last_error.status_code,
        )

    async def _complete(self, body: dict) -> str:
        """One chat completion round trip. Returns the assistant message text."""
        try:
            completion = await self.client.chat.completions.create(**body)
        except (openai.RateLimitError, openai.InternalServerError) as e:
            raise TransientClassifierError(
                f"Classifier returned HTTP {e.status_code}", status_code=e.status_code,
            ) from e
        except openai.APIStatusError as e:
            raise ClassifierRequestError(
                f"Classifier returned HTTP {e.status_code}: {e.message}"[:300],
                status_code=e.status_code,
            ) from e
        except openai.APIError as e:
            # Connection failures, timeouts, undecodable bodies
            raise ClassifierRequestError(f"Classifier request failed: {e.__class__.__name__}: {e}") from e

        try:
            content = completion.choices[0].message.content
        except (AttributeError, IndexError, TypeError) as e:
            raise MalformedResponseError("Unexpected response shape from classifier") from e
        if not content or not isinstance(content, str):
            raise MalformedResponseError("Empty response from classifier")
        return content

    async def close(self):
        await self.client.close()
