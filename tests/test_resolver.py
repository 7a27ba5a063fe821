from __future__ import annotations

import allure
import httpx
import pytest

from portable_content.http.fetcher import HttpFetcher
from portable_content.pipeline.resolver import (
    ContentResolutionError,
    ContentResolutionErrorType,
    ContentResolver,
    PayloadSource,
)
from portable_content.storage.gateway import LocalObjectStore

pytestmark = [
    allure.epic("Transform Pipeline"),
    allure.feature("Content Resolution"),
]


def _fetcher() -> HttpFetcher:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/slow":
            raise httpx.ReadTimeout("too slow", request=request)
        if request.url.path == "/diagram.svg":
            return httpx.Response(200, content=b"<svg/>")
        if request.url.path == "/note.txt":
            return httpx.Response(200, content="café".encode())
        return httpx.Response(500)

    return HttpFetcher(transport=httpx.MockTransport(handler), sleep=lambda _: None)


def test_payload_source_extraction() -> None:
    bare = PayloadSource.from_payload({"type": "inline", "mediaType": "text/plain", "source": "x"})
    nested = PayloadSource.from_payload(
        {
            "primary": {"type": "external", "mediaType": "image/png", "uri": "a/b.png"},
            "alternatives": [],
        },
    )

    assert bare == PayloadSource(type="inline", media_type="text/plain", source="x")
    assert nested is not None and nested.uri == "a/b.png"
    assert nested.to_dict() == {"type": "external", "mediaType": "image/png", "uri": "a/b.png"}
    assert PayloadSource.from_payload("plain text") is None
    assert PayloadSource.from_payload({"rows": []}) is None


def test_inline_content_keeps_dimensions() -> None:
    content = ContentResolver().resolve(
        PayloadSource(type="inline", media_type="text/markdown", source="# Hi", width=10),
    )

    assert content.data == "# Hi"
    assert content.as_bytes() == b"# Hi"
    assert content.metadata == {"width": 10}


def test_stored_external_content(store: LocalObjectStore) -> None:
    store.put_bytes("item-1/blocks/b1/source.png", b"\x89PNG")
    resolver = ContentResolver(gateway=store)

    content = resolver.resolve(
        PayloadSource(type="external", media_type="image/png", uri="item-1/blocks/b1/source.png"),
    )

    assert content.data == b"\x89PNG"
    with pytest.raises(ContentResolutionError) as error:
        resolver.resolve(PayloadSource(type="external", media_type="image/png", uri="nope.png"))
    assert error.value.error_type == ContentResolutionErrorType.INVALID_CONTENT


def test_remote_content_is_fetched_and_decoded() -> None:
    resolver = ContentResolver(fetcher=_fetcher())

    svg = resolver.resolve(
        PayloadSource(
            type="external",
            media_type="image/svg+xml",
            uri="https://cdn.test/diagram.svg",
        ),
    )
    text = resolver.resolve(
        PayloadSource(type="external", media_type="text/plain", uri="https://cdn.test/note.txt"),
    )

    assert svg.data == b"<svg/>"
    assert text.data == "café"


@pytest.mark.parametrize(
    ("uri", "expected"),
    [
        ("https://cdn.test/slow", ContentResolutionErrorType.TIMEOUT),
        ("https://cdn.test/broken", ContentResolutionErrorType.NETWORK_ERROR),
    ],
)
def test_remote_failures_are_typed(uri: str, expected: ContentResolutionErrorType) -> None:
    resolver = ContentResolver(fetcher=_fetcher())

    with pytest.raises(ContentResolutionError) as error:
        resolver.resolve(PayloadSource(type="external", media_type="image/png", uri=uri))

    assert error.value.error_type == expected


def test_unsupported_and_incomplete_sources() -> None:
    resolver = ContentResolver()

    with pytest.raises(ContentResolutionError) as unsupported:
        resolver.resolve(PayloadSource(type="embedded", media_type="text/plain"))
    with pytest.raises(ContentResolutionError) as missing:
        resolver.resolve(PayloadSource(type="inline", media_type="text/plain"))
    with pytest.raises(ContentResolutionError) as no_gateway:
        resolver.resolve(PayloadSource(type="external", media_type="text/plain", uri="a/b.txt"))

    assert unsupported.value.error_type == ContentResolutionErrorType.UNSUPPORTED_TYPE
    assert missing.value.error_type == ContentResolutionErrorType.INVALID_CONTENT
    assert no_gateway.value.error_type == ContentResolutionErrorType.UNSUPPORTED_TYPE
