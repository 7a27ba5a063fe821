"""HTTP client for remote transform inputs and external payloads."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0
DEFAULT_MAX_RETRIES = 3
DEFAULT_BACKOFF_SECONDS = 0.5
DEFAULT_USER_AGENT = "portable-content/0.1 (+transform pipeline)"
RETRYABLE_STATUS_CODES = frozenset({408, 429, 502, 503, 504})


@dataclass(slots=True)
class FetchResult:
    """Outcome of one fetch, after retries."""

    url: str
    status_code: int
    content: bytes
    content_type: str
    is_success: bool
    error: str | None = None
    timed_out: bool = False
    attempts: int = 1


class HttpFetcher:
    """httpx client that retries timeouts and throttling responses with backoff.

    Connection-level retries are left to the transport; status-level retries
    (``RETRYABLE_STATUS_CODES``) and read timeouts are retried here. A fetch
    never raises for HTTP failures: callers inspect ``FetchResult``.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_seconds: float = DEFAULT_BACKOFF_SECONDS,
        user_agent: str = DEFAULT_USER_AGENT,
        transport: httpx.BaseTransport | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.max_retries = max(0, max_retries)
        self.backoff_seconds = backoff_seconds
        self._sleep = sleep
        self._client = httpx.Client(
            timeout=httpx.Timeout(timeout_seconds, connect=min(10.0, timeout_seconds)),
            headers={"User-Agent": user_agent},
            transport=transport or httpx.HTTPTransport(retries=self.max_retries),
            follow_redirects=True,
        )

    def fetch(self, url: str) -> FetchResult:
        attempt = 1
        result = self._fetch_once(url, attempt=attempt)
        while _should_retry(result) and attempt <= self.max_retries:
            delay = self.backoff_seconds * (2 ** (attempt - 1))
            logger.info("Retrying %s in %.2fs (%s)", url, delay, result.error)
            self._sleep(delay)
            attempt += 1
            result = self._fetch_once(url, attempt=attempt)
        return result

    def _fetch_once(self, url: str, *, attempt: int) -> FetchResult:
        try:
            response = self._client.get(url)
        except httpx.TimeoutException:
            logger.warning("Timeout fetching %s (attempt %d)", url, attempt)
            return _failure(url, error="timeout", attempt=attempt, timed_out=True)
        except httpx.HTTPError as exc:
            logger.warning("HTTP error fetching %s: %s", url, exc)
            return _failure(url, error=str(exc), attempt=attempt)
        return FetchResult(
            url=url,
            status_code=response.status_code,
            content=response.content if response.is_success else b"",
            content_type=response.headers.get("content-type", ""),
            is_success=response.is_success,
            error=None if response.is_success else f"HTTP {response.status_code}",
            attempts=attempt,
        )

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> HttpFetcher:
        return self

    def __exit__(self, *_: object) -> None:
        self.close()


def _should_retry(result: FetchResult) -> bool:
    return result.timed_out or result.status_code in RETRYABLE_STATUS_CODES


def _failure(url: str, *, error: str, attempt: int, timed_out: bool = False) -> FetchResult:
    return FetchResult(
        url=url,
        status_code=0,
        content=b"",
        content_type="",
        is_success=False,
        error=error,
        timed_out=timed_out,
        attempts=attempt,
    )
