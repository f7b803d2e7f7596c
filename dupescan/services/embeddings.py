"""Embedding client for an OpenAI-compatible embeddings API."""

import logging
import time
from typing import Callable, List, Optional

import httpx
from tenacity import Retrying, before_sleep_log, retry_if_exception_type, stop_after_attempt, stop_never

from dupescan.config import settings
from dupescan.services.errors import CriticalError
from dupescan.services.rate_limit import TokenBucket

logger = logging.getLogger(__name__)

Vector = List[float]


class EmbeddingError(Exception):
    """Base class for embedding client errors."""


class TransientEmbeddingError(EmbeddingError):
    """Rate limit or provider outage; the same batch may be retried after ``delay``."""

    def __init__(self, message: str, delay: float, status_code: Optional[int] = None):
        super().__init__(message)
        self.delay = delay
        self.status_code = status_code


class EmbeddingAPIError(EmbeddingError):
    """Non-retryable provider error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class EmbeddingConfigError(EmbeddingError, CriticalError):
    """Missing or rejected provider credentials."""


class QuotaExceededError(EmbeddingError, CriticalError):
    """The daily request quota is used up."""


def _wait_for_transient(retry_state) -> float:
    """Wait the delay carried by the transient error."""
    error = retry_state.outcome.exception()
    return getattr(error, "delay", settings.EMBEDDING_SERVER_ERROR_DELAY)


class EmbeddingClient:
    """Batch text-to-vector client with per-minute and per-day request quotas."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
        minute_bucket: Optional[TokenBucket] = None,
        daily_bucket: Optional[TokenBucket] = None,
        max_attempts: Optional[int] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the embedding client."""
        self.api_key = api_key if api_key is not None else settings.OPENAI_API_KEY
        if not self.api_key:
            raise EmbeddingConfigError("CRITICAL: OpenAI API key is required for embedding generation")

        self.base_url = base_url or settings.OPENAI_BASE_URL
        self.model = model or settings.EMBEDDING_MODEL
        self.embed_dim = dimensions or settings.EMBED_DIM
        self.minute_bucket = minute_bucket or TokenBucket(settings.EMBEDDING_REQUESTS_PER_MINUTE, 60)
        self.daily_bucket = daily_bucket or TokenBucket(settings.EMBEDDING_REQUESTS_PER_DAY, 86400)
        self.max_attempts = settings.EMBEDDING_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self.transport = transport
        self._sleep = sleep

    def _build_headers(self):
        return {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

    def _wait_for_quota(self) -> None:
        """Check the daily quota, then pace against the per-minute quota."""
        if not self.daily_bucket.try_acquire():
            raise QuotaExceededError(
                "Daily embedding quota exceeded. Please try again tomorrow."
            )
        self.minute_bucket.acquire()

    def _request_batch(self, texts: List[str]) -> List[Optional[Vector]]:
        """Send one embeddings request for the whole batch."""
        self._wait_for_quota()

        payload = {
            "model": self.model,
            "input": texts,
            "dimensions": self.embed_dim,
        }

        try:
            with httpx.Client(timeout=60.0, transport=self.transport) as client:
                response = client.post(
                    f"{self.base_url}/embeddings",
                    headers=self._build_headers(),
                    json=payload,
                )
        except httpx.TransportError as e:
            raise TransientEmbeddingError(
                f"Embedding request failed: {e}", delay=settings.EMBEDDING_SERVER_ERROR_DELAY
            ) from e

        status = response.status_code
        if status == 429:
            raise TransientEmbeddingError(
                "Embedding provider rate limit exceeded",
                delay=settings.EMBEDDING_RATE_LIMIT_DELAY,
                status_code=status,
            )
        if status >= 500:
            raise TransientEmbeddingError(
                f"Embedding provider error: {status}",
                delay=settings.EMBEDDING_SERVER_ERROR_DELAY,
                status_code=status,
            )
        if status == 401:
            raise EmbeddingConfigError("CRITICAL: OpenAI API key was rejected by the embedding provider")
        if status >= 400:
            raise EmbeddingAPIError(f"Embedding provider error: {status} {response.text}", status_code=status)

        return self._parse_vectors(response.json(), len(texts))

    def _parse_vectors(self, result: dict, expected: int) -> List[Optional[Vector]]:
        """Align returned vectors with input positions; absent ones stay None."""
        vectors: List[Optional[Vector]] = [None] * expected

        for position, item in enumerate(result.get("data") or []):
            index = item.get("index", position)
            embedding = item.get("embedding")
            if embedding is None or not 0 <= index < expected:
                continue

            # Validate dimension
            if len(embedding) != self.embed_dim:
                raise EmbeddingAPIError(
                    f"Embedding dimension mismatch: expected {self.embed_dim}, got {len(embedding)}"
                )
            vectors[index] = embedding

        return vectors

    def create_embedding_batch(self, texts: List[str]) -> List[Optional[Vector]]:
        """
        Generate embeddings for a batch of texts in a single request.

        Args:
            texts: List of text strings to embed

        Returns:
            One vector per input text, None where the provider returned nothing

        Raises:
            QuotaExceededError: Daily quota used up (terminal)
            EmbeddingConfigError: Credentials missing or rejected (terminal)
            EmbeddingAPIError: Other provider errors
        """
        if not texts:
            return []

        logger.info(f"Generating embeddings for batch of {len(texts)} texts")

        retrying = Retrying(
            retry=retry_if_exception_type(TransientEmbeddingError),
            wait=_wait_for_transient,
            stop=stop_after_attempt(self.max_attempts) if self.max_attempts > 0 else stop_never,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            sleep=self._sleep,
            reraise=True,
        )
        return retrying(self._request_batch, texts)
