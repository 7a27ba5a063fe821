"""Resolution of block payload sources (inline or external) into content."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from portable_content.http.fetcher import HttpFetcher
from portable_content.pipeline.errors import NetworkError
from portable_content.storage.gateway import ObjectNotFound, StorageGateway

logger = logging.getLogger(__name__)


class ContentResolutionErrorType(str, Enum):
    NETWORK_ERROR = "NETWORK_ERROR"
    INVALID_CONTENT = "INVALID_CONTENT"
    UNSUPPORTED_TYPE = "UNSUPPORTED_TYPE"
    TIMEOUT = "TIMEOUT"


class ContentResolutionError(RuntimeError):
    """Payload could not be turned into content bytes."""

    def __init__(self, error_type: ContentResolutionErrorType, message: str) -> None:
        super().__init__(message)
        self.error_type = error_type


@dataclass(frozen=True, slots=True)
class PayloadSource:
    """Where a block's primary content lives."""

    type: str
    media_type: str
    source: str | None = None
    uri: str | None = None
    width: int | None = None
    height: int | None = None

    @classmethod
    def from_payload(cls, payload: Any) -> PayloadSource | None:
        """Extract the primary source from a block payload, if it describes one.

        Accepts a bare source object or a block content object with a
        ``primary`` entry; other payload shapes are opaque and give ``None``.
        """

        if not isinstance(payload, dict):
            return None
        raw = payload.get("primary", payload)
        if not isinstance(raw, dict) or "mediaType" not in raw or "type" not in raw:
            return None
        media_type = raw.get("mediaType")
        source_type = raw.get("type")
        if not isinstance(media_type, str) or not isinstance(source_type, str):
            return None
        return cls(
            type=source_type,
            media_type=media_type,
            source=raw.get("source") if isinstance(raw.get("source"), str) else None,
            uri=raw.get("uri") if isinstance(raw.get("uri"), str) else None,
            width=raw.get("width") if isinstance(raw.get("width"), int) else None,
            height=raw.get("height") if isinstance(raw.get("height"), int) else None,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type, "mediaType": self.media_type}
        for name in ("source", "uri", "width", "height"):
            value = getattr(self, name)
            if value is not None:
                payload[name] = value
        return payload


@dataclass(slots=True)
class NormalizedContent:
    """Resolved content; text media types decode to ``str``."""

    content_type: str
    data: str | bytes
    metadata: dict[str, Any] = field(default_factory=dict)

    def as_bytes(self) -> bytes:
        return self.data.encode("utf-8") if isinstance(self.data, str) else self.data


class ContentResolver:
    """Eager resolver for inline text and external (store or http) content."""

    def __init__(
        self,
        *,
        gateway: StorageGateway | None = None,
        fetcher: HttpFetcher | None = None,
    ) -> None:
        self._gateway = gateway
        self._fetcher = fetcher

    def resolve(self, source: PayloadSource) -> NormalizedContent:
        if source.type == "inline":
            return self._resolve_inline(source)
        if source.type == "external":
            return self._resolve_external(source)
        raise ContentResolutionError(
            ContentResolutionErrorType.UNSUPPORTED_TYPE,
            f"Unsupported payload source type: {source.type}",
        )

    def _resolve_inline(self, source: PayloadSource) -> NormalizedContent:
        if source.source is None:
            raise ContentResolutionError(
                ContentResolutionErrorType.INVALID_CONTENT,
                "Inline content source is missing",
            )
        return NormalizedContent(
            content_type=source.media_type,
            data=source.source,
            metadata=_dimensions(source),
        )

    def _resolve_external(self, source: PayloadSource) -> NormalizedContent:
        if not source.uri:
            raise ContentResolutionError(
                ContentResolutionErrorType.INVALID_CONTENT,
                "External content URI is missing",
            )
        logger.debug("Resolving external %s content from %s", source.media_type, source.uri)
        if source.uri.startswith(("http://", "https://")):
            raw = self._fetch_remote(source.uri)
        else:
            raw = self._fetch_stored(source.uri)
        data: str | bytes = raw
        if source.media_type.lower().startswith("text/"):
            data = raw.decode("utf-8", errors="replace")
        return NormalizedContent(
            content_type=source.media_type,
            data=data,
            metadata=_dimensions(source),
        )

    def _fetch_remote(self, uri: str) -> bytes:
        if self._fetcher is None:
            self._fetcher = HttpFetcher()
        result = self._fetcher.fetch(uri)
        if result.timed_out:
            raise ContentResolutionError(
                ContentResolutionErrorType.TIMEOUT,
                f"Timed out fetching external content: {uri}",
            )
        if not result.is_success:
            raise ContentResolutionError(
                ContentResolutionErrorType.NETWORK_ERROR,
                f"Failed to fetch external content {uri}: {result.error}",
            )
        return result.content

    def _fetch_stored(self, uri: str) -> bytes:
        if self._gateway is None:
            raise ContentResolutionError(
                ContentResolutionErrorType.UNSUPPORTED_TYPE,
                f"No storage gateway configured for uri: {uri}",
            )
        try:
            return self._gateway.download(uri)
        except ObjectNotFound as error:
            raise ContentResolutionError(
                ContentResolutionErrorType.INVALID_CONTENT,
                str(error),
            ) from error
        except NetworkError as error:
            raise ContentResolutionError(
                ContentResolutionErrorType.NETWORK_ERROR,
                str(error),
            ) from error


def _dimensions(source: PayloadSource) -> dict[str, Any]:
    metadata: dict[str, Any] = {}
    if source.width is not None:
        metadata["width"] = source.width
    if source.height is not None:
        metadata["height"] = source.height
    return metadata
