"""Manifest document (``item.json``) types and their JSON mapping."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

_VARIANT_OPTIONAL_FIELDS: tuple[tuple[str, str, type | tuple[type, ...]], ...] = (
    ("uri", "uri", str),
    ("width", "width", int),
    ("height", "height", int),
    ("bytes", "byte_size", int),
    ("contentHash", "content_hash", str),
    ("generatedBy", "generated_by", str),
    ("toolVersion", "tool_version", str),
    ("createdAt", "created_at", str),
)


@dataclass(frozen=True, slots=True)
class Variant:
    """One concrete rendition of a block; immutable once written."""

    media_type: str
    uri: str | None = None
    width: int | None = None
    height: int | None = None
    byte_size: int | None = None
    content_hash: str | None = None
    generated_by: str | None = None
    tool_version: str | None = None
    created_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"mediaType": self.media_type}
        for json_name, attr, _ in _VARIANT_OPTIONAL_FIELDS:
            value = getattr(self, attr)
            if value is not None:
                payload[json_name] = value
        return payload

    @classmethod
    def from_dict(cls, raw: object) -> Variant:
        if not isinstance(raw, dict):
            raise TypeError("variant must be an object")
        media_type = raw.get("mediaType")
        if not isinstance(media_type, str) or not media_type.strip():
            raise ValueError("variant.mediaType must be a non-empty string")
        values: dict[str, Any] = {}
        for json_name, attr, expected in _VARIANT_OPTIONAL_FIELDS:
            value = raw.get(json_name)
            if value is None:
                continue
            if isinstance(value, bool) or not isinstance(value, expected):
                raise TypeError(f"variant.{json_name} has invalid type")
            values[attr] = value
        return cls(media_type=media_type, **values)


@dataclass(slots=True)
class Block:
    """One unit of authored content and its known variants."""

    id: str
    kind: str
    payload: Any
    variants: list[Variant] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "payload": self.payload,
            "variants": [variant.to_dict() for variant in self.variants],
        }

    @classmethod
    def from_dict(cls, raw: object) -> Block:
        if not isinstance(raw, dict):
            raise TypeError("block must be an object")
        block_id = raw.get("id")
        kind = raw.get("kind")
        if not isinstance(block_id, str) or not block_id.strip():
            raise ValueError("block.id must be a non-empty string")
        if not isinstance(kind, str) or not kind.strip():
            raise ValueError("block.kind must be a non-empty string")
        raw_variants = raw.get("variants", [])
        if not isinstance(raw_variants, list):
            raise TypeError("block.variants must be an array")
        return cls(
            id=block_id,
            kind=kind,
            payload=raw.get("payload"),
            variants=[Variant.from_dict(item) for item in raw_variants],
        )


@dataclass(slots=True)
class ContentItem:
    """Durable manifest of one content item and its blocks."""

    id: str
    type: str
    created_at: str
    updated_at: str
    blocks: list[Block] = field(default_factory=list)
    title: str | None = None
    summary: str | None = None
    representations: Any = None
    extra: dict[str, Any] = field(default_factory=dict)

    def find_block(self, block_id: str) -> Block | None:
        for block in self.blocks:
            if block.id == block_id:
                return block
        return None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = dict(self.extra)
        payload["id"] = self.id
        payload["type"] = self.type
        if self.title is not None:
            payload["title"] = self.title
        if self.summary is not None:
            payload["summary"] = self.summary
        payload["createdAt"] = self.created_at
        payload["updatedAt"] = self.updated_at
        payload["blocks"] = [block.to_dict() for block in self.blocks]
        if self.representations is not None:
            payload["representations"] = self.representations
        return payload

    @classmethod
    def from_dict(cls, raw: object) -> ContentItem:
        if not isinstance(raw, dict):
            raise TypeError("manifest must be an object")
        item_id = raw.get("id")
        item_type = raw.get("type")
        created_at = raw.get("createdAt")
        updated_at = raw.get("updatedAt", created_at)
        if not isinstance(item_id, str) or not item_id.strip():
            raise ValueError("manifest.id must be a non-empty string")
        if not isinstance(item_type, str) or not item_type.strip():
            raise ValueError("manifest.type must be a non-empty string")
        if not isinstance(created_at, str) or not isinstance(updated_at, str):
            raise TypeError("manifest.createdAt/updatedAt must be strings")
        raw_blocks = raw.get("blocks", [])
        if not isinstance(raw_blocks, list):
            raise TypeError("manifest.blocks must be an array")
        title = raw.get("title")
        summary = raw.get("summary")
        if title is not None and not isinstance(title, str):
            raise TypeError("manifest.title must be a string when provided")
        if summary is not None and not isinstance(summary, str):
            raise TypeError("manifest.summary must be a string when provided")
        known = {
            "id",
            "type",
            "title",
            "summary",
            "createdAt",
            "updatedAt",
            "blocks",
            "representations",
        }
        return cls(
            id=item_id,
            type=item_type,
            created_at=created_at,
            updated_at=updated_at,
            blocks=[Block.from_dict(item) for item in raw_blocks],
            title=title,
            summary=summary,
            representations=raw.get("representations"),
            extra={key: value for key, value in raw.items() if key not in known},
        )
