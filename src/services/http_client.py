"""HTTP client wrapper with timeouts and retry logic.

Provider integrations (GitHub releases today) go through this wrapper so that
every outbound call carries an explicit timeout and a consistent retry policy.

Usage Examples:

    # No retries
    client = HttpClient()
    response = client.get("https://api.github.com/repos/o/r/releases/tags/v1")

    # Retry transient failures before raising
    client = HttpClient(retry_config=RetryConfig(max_attempts=3))

Design Decisions:

- **Context manager per call**: a fresh httpx client per request keeps the
  worker free of shared connection state between isolated work items.
- **Retries opt-in**: only idempotent reads should enable them.
- **4xx responses are never retried**: a 404 is an answer, not a failure.
- **Errors always propagate**: callers map httpx errors to their own types.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field

import httpx

from config import settings

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry logic with exponential backoff.

    Args:
        max_attempts: Maximum number of attempts (including initial attempt)
        retry_status_codes: HTTP status codes that should trigger a retry
        backoff_factor: Multiplier for exponential backoff (delay = backoff_factor * 2^attempt)
        max_backoff: Maximum backoff delay in seconds
        retry_exceptions: Exception types that should trigger a retry
    """

    max_attempts: int = 3
    retry_status_codes: set[int] = field(default_factory=lambda: {500, 502, 503, 504})
    backoff_factor: float = 1.0
    max_backoff: float = 10.0
    retry_exceptions: tuple[type[Exception], ...] = (
        httpx.ConnectError,
        httpx.ReadTimeout,
        httpx.PoolTimeout,
    )


class HttpClient:
    """Synchronous HTTP client with timeouts and optional retries.

    Args:
        timeout: Request timeout in seconds (default: settings.http.timeout)
        connect_timeout: Connection timeout in seconds (default: settings.http.connect_timeout)
        retry_config: Retry configuration (None = no retries)
    """

    def __init__(
        self,
        timeout: int | None = None,
        connect_timeout: int | None = None,
        retry_config: RetryConfig | None = None,
    ):
        """Initialize the synchronous HTTP client."""
        self.timeout = timeout if timeout is not None else settings.http.timeout
        self.connect_timeout = (
            connect_timeout if connect_timeout is not None else settings.http.connect_timeout
        )
        self.retry_config = retry_config

    def get(self, url: str, **kwargs) -> httpx.Response:
        """Perform a synchronous GET request.

        Args:
            url: Target URL
            **kwargs: Additional arguments passed to httpx (headers, params, etc.)

        Returns:
            Response object with a 2xx status

        Raises:
            httpx.HTTPError: If the request fails after any configured retries
        """
        return self._request("GET", url, **kwargs)

    def _request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with optional retries."""
        if self.retry_config is None:
            return self._execute_once(method, url, **kwargs)
        return self._execute_with_retry(method, url, **kwargs)

    def _client(self) -> httpx.Client:
        return httpx.Client(timeout=httpx.Timeout(self.timeout, connect=self.connect_timeout))

    def _execute_once(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute a single HTTP request."""
        with self._client() as client:
            response = client.request(method, url, **kwargs)
            response.raise_for_status()
            return response

    def _execute_with_retry(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Execute an HTTP request with retry logic and exponential backoff."""
        assert self.retry_config is not None
        last_exception = None

        for attempt in range(self.retry_config.max_attempts):
            try:
                with self._client() as client:
                    response = client.request(method, url, **kwargs)
                    response.raise_for_status()
                    return response
            except httpx.HTTPStatusError as e:
                last_exception = e
                if e.response.status_code not in self.retry_config.retry_status_codes:
                    raise
                if attempt + 1 >= self.retry_config.max_attempts:
                    break
                delay = min(
                    self.retry_config.backoff_factor * (2**attempt),
                    self.retry_config.max_backoff,
                )
                logger.warning(
                    "HTTP %s %s failed with status %s, retrying in %.1fs (attempt %s/%s)",
                    method,
                    url,
                    e.response.status_code,
                    delay,
                    attempt + 1,
                    self.retry_config.max_attempts,
                )
                time.sleep(delay)
            except self.retry_config.retry_exceptions as e:
                last_exception = e
                if attempt + 1 >= self.retry_config.max_attempts:
                    break
                delay = min(
                    self.retry_config.backoff_factor * (2**attempt),
                    self.retry_config.max_backoff,
                )
                logger.warning(
                    "HTTP %s %s failed with %s, retrying in %.1fs (attempt %s/%s)",
                    method,
                    url,
                    type(e).__name__,
                    delay,
                    attempt + 1,
                    self.retry_config.max_attempts,
                )
                time.sleep(delay)
            except httpx.RequestError as e:
                # Non-retryable request error
                last_exception = e
                break

        logger.error("HTTP %s %s failed: %s", method, url, last_exception)
        raise last_exception
