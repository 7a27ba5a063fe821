"""Content-addressed naming and storage key conventions.

Every derived object is named from the transform input bytes, the tool identity
and version, and the exact option set. Equal inputs always produce the same key,
which is what makes job re-execution idempotent and storage self-deduplicating.
"""

from __future__ import annotations

import hashlib
import json
import mimetypes
import re
from collections.abc import Iterable, Mapping
from typing import Any

OBJECTS_PREFIX = "objects"
MANIFEST_FILENAME = "item.json"

_EXTENSIONS: dict[str, str] = {
    "application/json": "json",
    "application/pdf": "pdf",
    "image/avif": "avif",
    "image/gif": "gif",
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/svg+xml": "svg",
    "image/webp": "webp",
    "text/html": "html",
    "text/markdown": "md",
    "text/plain": "txt",
    "text/vnd.mermaid": "mmd",
}
_UNSAFE_SEGMENT = re.compile(r"[^a-z0-9.]+")


def sha256_hex(data: bytes) -> str:
    """Hex sha256 digest of raw bytes."""

    return hashlib.sha256(data).hexdigest()


def source_hash_of(inputs: Iterable[bytes]) -> str:
    """Hash transform input bytes; several inputs hash their ordered digests."""

    digests = [sha256_hex(data) for data in inputs]
    if not digests:
        raise ValueError("At least one transform input is required for a source hash.")
    if len(digests) == 1:
        return digests[0]
    return sha256_hex("\n".join(digests).encode("ascii"))


def canonical_json(value: Any) -> str:
    """Serialize value deterministically (sorted keys, compact separators)."""

    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def content_key(
    source_hash: str,
    tool_version: str,
    options: Mapping[str, Any],
    ext: str,
) -> str:
    """Return ``{sourceHash}-{hash(toolVersion+options)}.{ext}``."""

    if not source_hash:
        raise ValueError("source_hash must be a non-empty string")
    if not tool_version:
        raise ValueError("tool_version must be a non-empty string")
    derivation = sha256_hex(f"{tool_version}{canonical_json(dict(options))}".encode())
    extension = ext.lstrip(".") or "bin"
    return f"{source_hash}-{derivation}.{extension}"


def object_key(cas_key: str) -> str:
    """Storage key holding the bytes of a content-addressed object."""

    return f"{OBJECTS_PREFIX}/{cas_key}"


def parse_media_type(value: str) -> tuple[str, dict[str, str]]:
    """Split ``type/subtype;k=v`` into lowercase base type and parameters."""

    parts = [part.strip() for part in value.split(";")]
    base = parts[0].lower()
    params: dict[str, str] = {}
    for part in parts[1:]:
        if not part:
            continue
        name, sep, raw = part.partition("=")
        if not sep:
            continue
        params[name.strip().lower()] = raw.strip().strip('"')
    return base, params


def extension_for(media_type: str) -> str:
    """File extension (no dot) for a media type, parameters ignored."""

    base, _ = parse_media_type(media_type)
    known = _EXTENSIONS.get(base)
    if known is not None:
        return known
    guessed = mimetypes.guess_extension(base)
    if guessed:
        return guessed.lstrip(".")
    return "bin"


def encode_media_type(media_type: str) -> str:
    """Encode a media type and its parameters as one path segment.

    ``image/png;dpi=192`` becomes ``png-192dpi``; parameters are emitted in
    name order so equal media types always encode identically.
    """

    base, params = parse_media_type(media_type)
    _, _, subtype = base.partition("/")
    pieces = [_safe_segment(subtype or base)]
    for name in sorted(params):
        pieces.append(_safe_segment(f"{params[name]}{name}"))
    return "-".join(piece for piece in pieces if piece)


def variant_storage_key(content_id: str, block_id: str, media_type: str) -> str:
    """Convention key ``{contentId}/blocks/{blockId}/variants/{enc}/content.{ext}``."""

    return (
        f"{content_id}/blocks/{block_id}/variants/"
        f"{encode_media_type(media_type)}/content.{extension_for(media_type)}"
    )


def block_source_key(content_id: str, block_id: str, media_type: str) -> str:
    """Storage key of a block's canonical inline payload."""

    return f"{content_id}/blocks/{block_id}/source.{extension_for(media_type)}"


def manifest_key(content_id: str) -> str:
    """Storage key of a content item's manifest document."""

    return f"{content_id}/{MANIFEST_FILENAME}"


def _safe_segment(value: str) -> str:
    return _UNSAFE_SEGMENT.sub("-", value.lower()).strip("-")
