from __future__ import annotations

import allure
import httpx

from portable_content.http.fetcher import HttpFetcher

pytestmark = [
    allure.epic("Transform Pipeline"),
    allure.feature("Remote Inputs"),
]


def _fetcher(handler, delays: list[float], *, max_retries: int = 3) -> HttpFetcher:
    return HttpFetcher(
        transport=httpx.MockTransport(handler),
        max_retries=max_retries,
        backoff_seconds=0.1,
        sleep=delays.append,
    )


def test_success_returns_bytes_and_content_type() -> None:
    delays: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["User-Agent"].startswith("portable-content/")
        return httpx.Response(200, content=b"\x89PNG", headers={"content-type": "image/png"})

    with _fetcher(handler, delays) as fetcher:
        result = fetcher.fetch("https://cdn.test/a.png")

    assert result.is_success
    assert result.content == b"\x89PNG"
    assert result.content_type == "image/png"
    assert result.attempts == 1
    assert delays == []


def test_throttling_is_retried_with_backoff() -> None:
    delays: list[float] = []
    calls: list[int] = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(1)
        if len(calls) < 3:
            return httpx.Response(503)
        return httpx.Response(200, content=b"ok")

    with _fetcher(handler, delays) as fetcher:
        result = fetcher.fetch("https://cdn.test/busy")

    assert result.is_success
    assert result.attempts == 3
    assert delays == [0.1, 0.2]


def test_client_errors_are_not_retried() -> None:
    delays: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404)

    with _fetcher(handler, delays) as fetcher:
        result = fetcher.fetch("https://cdn.test/missing")

    assert not result.is_success
    assert result.error == "HTTP 404"
    assert result.content == b""
    assert delays == []


def test_timeouts_exhaust_retry_budget() -> None:
    delays: list[float] = []

    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("slow", request=request)

    with _fetcher(handler, delays, max_retries=2) as fetcher:
        result = fetcher.fetch("https://cdn.test/slow")

    assert result.timed_out
    assert result.attempts == 3
    assert len(delays) == 2
