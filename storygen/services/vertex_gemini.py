import logging
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable

from google import genai
from google.genai import types

from storygen.core.metrics import record_token_usage, track_gemini_call

logger = logging.getLogger(__name__)


class GeminiError(Exception):
    """Base exception for Gemini-related errors."""

    def __init__(self, message: str, request_id: str | None = None, model: str | None = None):
        super().__init__(message)
        self.request_id = request_id
        self.model = model


class GeminiRateLimitError(GeminiError):
    """Raised when rate limit is exceeded."""


class GeminiContentFilterError(GeminiError):
    """Raised when content is blocked by safety filters."""

    def __init__(
        self,
        message: str,
        request_id: str | None = None,
        model: str | None = None,
        blocked_categories: list[str] | None = None,
    ):
        super().__init__(message, request_id, model)
        self.blocked_categories = blocked_categories or []


class GeminiTimeoutError(GeminiError):
    """Raised when request times out."""


class GeminiCircuitOpenError(GeminiError):
    """Raised when circuit breaker is open (too many failures)."""

    def __init__(self, message: str, retry_after: datetime | None = None):
        super().__init__(message)
        self.retry_after = retry_after


class GeminiModelUnavailableError(GeminiError):
    """Raised when the model is unavailable."""


@dataclass
class CircuitBreakerState:
    """Tracks circuit breaker state for one operation type."""

    failure_count: int = 0
    circuit_open_until: datetime | None = None
    consecutive_successes: int = 0

    failure_threshold: int = 5
    recovery_timeout_seconds: int = 60
    half_open_success_threshold: int = 2

    def record_failure(self) -> None:
        self.failure_count += 1
        self.consecutive_successes = 0
        if self.failure_count >= self.failure_threshold:
            self.circuit_open_until = datetime.now(timezone.utc) + timedelta(
                seconds=self.recovery_timeout_seconds
            )
            logger.warning(
                "Circuit breaker OPEN: %d failures, retry after %s",
                self.failure_count,
                self.circuit_open_until.isoformat(),
            )

    def record_success(self) -> None:
        self.consecutive_successes += 1
        if self.is_half_open and self.consecutive_successes >= self.half_open_success_threshold:
            logger.info("Circuit breaker CLOSED: recovered after %d successes", self.consecutive_successes)
            self.reset()

    def reset(self) -> None:
        self.failure_count = 0
        self.circuit_open_until = None
        self.consecutive_successes = 0

    @property
    def is_open(self) -> bool:
        if self.circuit_open_until is None:
            return False
        return datetime.now(timezone.utc) < self.circuit_open_until

    @property
    def is_half_open(self) -> bool:
        if self.circuit_open_until is None:
            return False
        return datetime.now(timezone.utc) >= self.circuit_open_until and self.failure_count > 0

    def check_circuit(self) -> None:
        if self.is_open:
            raise GeminiCircuitOpenError(
                f"Circuit breaker is open due to {self.failure_count} consecutive failures. "
                f"Retry after {self.circuit_open_until.isoformat() if self.circuit_open_until else 'unknown'}",
                retry_after=self.circuit_open_until,
            )


_JSON_TEXT_CONFIG = types.GenerateContentConfig(response_mime_type="application/json")


class GeminiClient:
    """Thin wrapper around google-genai with retries, fallback models and circuit breakers."""

    def __init__(
        self,
        project: str | None,
        location: str | None,
        api_key: str | None,
        text_model: str,
        image_model: str,
        timeout_seconds: float = 60.0,
        max_retries: int = 3,
        initial_backoff_seconds: float = 0.8,
        rate_limit_backoff_seconds: list[float] | None = None,
        fallback_text_model: str | None = None,
        fallback_image_model: str | None = None,
        circuit_breaker_threshold: int = 5,
        circuit_breaker_timeout: int = 60,
    ):
        if not api_key and (not project or not location):
            raise RuntimeError(
                "Either GEMINI_API_KEY or both GOOGLE_CLOUD_PROJECT and GOOGLE_CLOUD_LOCATION must be configured"
            )

        self._text_model = text_model
        self._image_model = image_model
        self._fallback_text_model = fallback_text_model
        self._fallback_image_model = fallback_image_model
        self._max_retries = max_retries
        self._initial_backoff_seconds = initial_backoff_seconds
        self._rate_limit_backoff_seconds = rate_limit_backoff_seconds or [5, 10, 30, 60]

        self.last_request_id: str | None = None
        self.last_model: str | None = None
        self.last_usage: dict | None = None
        self.last_error_type: str | None = None

        self._circuit_breakers: dict[str, CircuitBreakerState] = {
            operation: CircuitBreakerState(
                failure_threshold=circuit_breaker_threshold,
                recovery_timeout_seconds=circuit_breaker_timeout,
            )
            for operation in ("generate_text", "generate_image")
        }

        # google-genai expects the request timeout in milliseconds.
        http_options = types.HttpOptions(timeout=int(timeout_seconds * 1000))
        if project and location:
            self._client = genai.Client(
                vertexai=True, project=project, location=location, http_options=http_options
            )
        else:
            self._client = genai.Client(api_key=api_key, http_options=http_options)

    def _classify_error(self, exc: Exception, error_text: str) -> tuple[str, bool]:
        """Return (error_type, is_retryable) for a raw provider exception."""
        lowered = error_text.lower()
        if "RESOURCE_EXHAUSTED" in error_text or "429" in error_text:
            return "rate_limit", True
        if "SAFETY" in error_text.upper() or "blocked" in lowered:
            return "content_filter", False
        if "timeout" in lowered or "deadline" in lowered or isinstance(exc, TimeoutError):
            return "timeout", True
        if "unavailable" in lowered or "503" in error_text:
            return "model_unavailable", True
        if "invalid" in lowered or "400" in error_text:
            return "invalid_request", False
        return "unknown", True

    def _check_response_safety(
        self,
        response: types.GenerateContentResponse,
        request_id: str,
        model_name: str,
    ) -> None:
        candidate = (response.candidates or [None])[0]
        if candidate is None:
            return
        finish_reason = getattr(candidate, "finish_reason", None)
        if finish_reason and "SAFETY" in str(finish_reason).upper():
            blocked = [
                str(getattr(rating, "category", "UNKNOWN"))
                for rating in (getattr(candidate, "safety_ratings", None) or [])
                if getattr(rating, "blocked", False)
            ]
            raise GeminiContentFilterError(
                f"Content blocked by safety filters: {blocked}",
                request_id=request_id,
                model=model_name,
                blocked_categories=blocked,
            )

    def _retry(
        self,
        func: Callable[[], types.GenerateContentResponse],
        model_name: str,
        request_type: str,
    ) -> types.GenerateContentResponse:
        circuit_breaker = self._circuit_breakers.get(request_type)
        if circuit_breaker:
            circuit_breaker.check_circuit()

        last_exc: Exception | None = None
        last_error_type = "unknown"
        request_id = str(uuid.uuid4())
        attempt = 0
        max_attempts = self._max_retries

        while attempt < max_attempts:
            try:
                with track_gemini_call(request_type):
                    response = func()
                self.last_request_id = response.response_id or request_id
                self.last_model = model_name
                self.last_error_type = None
                if response.usage_metadata:
                    self.last_usage = response.usage_metadata.model_dump()
                    record_token_usage(model_name, self.last_usage)
                else:
                    self.last_usage = {"model": model_name}

                self._check_response_safety(response, request_id, model_name)
                if circuit_breaker:
                    circuit_breaker.record_success()
                return response

            except GeminiContentFilterError:
                self.last_error_type = "content_filter"
                if circuit_breaker:
                    circuit_breaker.record_failure()
                raise

            except Exception as exc:  # noqa: BLE001
                last_exc = exc
                error_type, is_retryable = self._classify_error(exc, str(exc))
                last_error_type = error_type
                self.last_error_type = error_type

                if not is_retryable:
                    logger.error(
                        "gemini.%s non-retryable error request_id=%s model=%s type=%s error=%s",
                        request_type,
                        request_id,
                        model_name,
                        error_type,
                        repr(exc),
                    )
                    break

                if error_type == "rate_limit":
                    max_attempts = max(max_attempts, len(self._rate_limit_backoff_seconds) + 1)
                    backoff = self._rate_limit_backoff_seconds[
                        min(attempt, len(self._rate_limit_backoff_seconds) - 1)
                    ]
                else:
                    backoff = self._initial_backoff_seconds * (2**attempt)

                logger.warning(
                    "gemini.%s failed request_id=%s model=%s attempt=%s/%s type=%s error=%s",
                    request_type,
                    request_id,
                    model_name,
                    attempt + 1,
                    max_attempts,
                    error_type,
                    repr(exc),
                )
                if attempt + 1 >= max_attempts:
                    break
                time.sleep(backoff)
                attempt += 1

        if circuit_breaker:
            circuit_breaker.record_failure()
        self.last_request_id = request_id
        self.last_model = model_name

        if last_error_type == "rate_limit":
            raise GeminiRateLimitError(
                f"Rate limit exceeded after {attempt + 1} attempts", request_id=request_id, model=model_name
            )
        if last_error_type == "timeout":
            raise GeminiTimeoutError(
                f"Request timed out after {attempt + 1} attempts", request_id=request_id, model=model_name
            )
        if last_error_type == "model_unavailable":
            raise GeminiModelUnavailableError(
                f"Model {model_name} is unavailable", request_id=request_id, model=model_name
            )
        raise GeminiError(
            f"Gemini {request_type} failed after {attempt + 1} attempts: {last_exc!r}",
            request_id=request_id,
            model=model_name,
        )

    def _extract_text_from_response(self, response: types.GenerateContentResponse) -> str:
        candidate = (response.candidates or [None])[0]
        if candidate is None or not candidate.content or not candidate.content.parts:
            raise GeminiError("Gemini returned empty content")
        texts = [part.text for part in candidate.content.parts if part.text]
        if not texts:
            raise GeminiError("Gemini returned no textual content")
        return "\n".join(texts).strip()

    def _extract_image(self, response: types.GenerateContentResponse) -> tuple[bytes, str]:
        candidate = (response.candidates or [None])[0]
        if candidate is None or not candidate.content or not candidate.content.parts:
            raise GeminiError("Gemini returned empty content")
        for part in candidate.content.parts:
            inline_data = part.inline_data
            if inline_data and inline_data.data:
                return inline_data.data, inline_data.mime_type or "image/png"
        raise GeminiError("Gemini returned no image data")

    def _with_fallback(
        self,
        call: Callable[[str], types.GenerateContentResponse],
        model_name: str,
        fallback: str | None,
        request_type: str,
        use_fallback: bool,
    ) -> types.GenerateContentResponse:
        try:
            return self._retry(lambda: call(model_name), model_name=model_name, request_type=request_type)
        except (GeminiModelUnavailableError, GeminiRateLimitError, GeminiTimeoutError) as exc:
            if not (use_fallback and fallback and fallback != model_name):
                raise
            logger.warning("Primary model %s failed, trying fallback %s: %s", model_name, fallback, exc)
            return self._retry(lambda: call(fallback), model_name=fallback, request_type=request_type)

    def generate_text(
        self,
        prompt: str,
        model: str | None = None,
        use_fallback: bool = True,
        json_mode: bool = False,
    ) -> str:
        """Generate text, optionally asking the model for a JSON response body.

        Raises:
            GeminiError: On failure (with specific subclass for error type)
        """
        config = _JSON_TEXT_CONFIG if json_mode else None
        response = self._with_fallback(
            lambda name: self._client.models.generate_content(model=name, contents=[prompt], config=config),
            model_name=model or self._text_model,
            fallback=self._fallback_text_model,
            request_type="generate_text",
            use_fallback=use_fallback,
        )
        return self._extract_text_from_response(response)

    def generate_image(
        self,
        prompt: str,
        model: str | None = None,
        aspect_ratio: str = "16:9",
        use_fallback: bool = True,
    ) -> tuple[bytes, str]:
        """Generate a reference image and return (image_bytes, mime_type)."""
        config = types.GenerateContentConfig(image_config=types.ImageConfig(aspect_ratio=aspect_ratio))
        response = self._with_fallback(
            lambda name: self._client.models.generate_content(model=name, contents=[prompt], config=config),
            model_name=model or self._image_model,
            fallback=self._fallback_image_model,
            request_type="generate_image",
            use_fallback=use_fallback,
        )
        return self._extract_image(response)

    def get_circuit_breaker_status(self) -> dict[str, dict]:
        return {
            op_type: {
                "failure_count": cb.failure_count,
                "is_open": cb.is_open,
                "is_half_open": cb.is_half_open,
                "circuit_open_until": cb.circuit_open_until.isoformat() if cb.circuit_open_until else None,
            }
            for op_type, cb in self._circuit_breakers.items()
        }
