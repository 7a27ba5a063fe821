"""File-based contracts: transform job documents and sandbox result descriptors."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

RESULT_DESCRIPTOR_FILENAME = "metadata.json"
OPTIONS_FILENAME = "options.json"


@dataclass(slots=True)
class JobInput:
    """One transform input location."""

    uri: str
    media_type: str


@dataclass(slots=True)
class JobOutput:
    """One requested output with its option set."""

    media_type: str
    options: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class TransformJobDocument:
    """Job document consumed by workers."""

    id: str
    content_id: str
    block_id: str
    transform_id: str
    tool_image: str
    inputs: list[JobInput]
    outputs: list[JobOutput]
    created_at: str
    priority: int = 100

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "contentId": self.content_id,
            "blockId": self.block_id,
            "transform": {
                "id": self.transform_id,
                "toolImage": self.tool_image,
                "inputs": [
                    {"uri": item.uri, "mediaType": item.media_type} for item in self.inputs
                ],
                "outputs": [
                    {"mediaType": item.media_type, "options": item.options}
                    for item in self.outputs
                ],
            },
            "createdAt": self.created_at,
            "priority": self.priority,
        }


@dataclass(slots=True)
class DescriptorEntry:
    """One output as declared by the tool (not yet verified)."""

    media_type: str
    filename: str
    byte_size: int
    content_hash: str
    width: int | None = None
    height: int | None = None


@dataclass(slots=True)
class ResultDescriptor:
    """Parsed ``metadata.json`` written by a transform tool."""

    variants: list[DescriptorEntry]
    tool_name: str
    tool_version: str
    generated_at: str | None


def write_json(path: Path, payload: dict[str, Any]) -> None:
    """Persist JSON payload using deterministic formatting."""

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2, sort_keys=True), "utf-8")


def load_json(path: Path) -> dict[str, Any]:
    """Load JSON document and validate top-level object type."""

    payload = json.loads(path.read_text("utf-8"))
    if not isinstance(payload, dict):
        raise TypeError(f"Expected JSON object in {path}")
    return payload


def parse_job_document(raw: object) -> TransformJobDocument:
    """Validate and deserialize a transform job document."""

    if not isinstance(raw, dict):
        raise TypeError("job document must be an object")
    for name in ("id", "contentId", "blockId", "createdAt"):
        value = raw.get(name)
        if not isinstance(value, str) or not value.strip():
            raise ValueError(f"job.{name} must be a non-empty string")
    transform = raw.get("transform")
    if not isinstance(transform, dict):
        raise TypeError("job.transform must be an object")
    transform_id = transform.get("id")
    tool_image = transform.get("toolImage")
    if not isinstance(transform_id, str) or not transform_id.strip():
        raise ValueError("job.transform.id must be a non-empty string")
    if not isinstance(tool_image, str) or not tool_image.strip():
        raise ValueError("job.transform.toolImage must be a non-empty string")

    raw_inputs = transform.get("inputs")
    if not isinstance(raw_inputs, list) or not raw_inputs:
        raise ValueError("job.transform.inputs must be a non-empty array")
    inputs: list[JobInput] = []
    for item in raw_inputs:
        if not isinstance(item, dict):
            raise TypeError("job.transform.inputs entry must be an object")
        uri = item.get("uri")
        media_type = item.get("mediaType")
        if not isinstance(uri, str) or not uri.strip():
            raise ValueError("job.transform.inputs.uri must be a non-empty string")
        if not isinstance(media_type, str) or not media_type.strip():
            raise ValueError("job.transform.inputs.mediaType must be a non-empty string")
        inputs.append(JobInput(uri=uri, media_type=media_type))

    raw_outputs = transform.get("outputs")
    if not isinstance(raw_outputs, list) or not raw_outputs:
        raise ValueError("job.transform.outputs must be a non-empty array")
    outputs: list[JobOutput] = []
    for item in raw_outputs:
        if not isinstance(item, dict):
            raise TypeError("job.transform.outputs entry must be an object")
        media_type = item.get("mediaType")
        options = item.get("options", {})
        if not isinstance(media_type, str) or not media_type.strip():
            raise ValueError("job.transform.outputs.mediaType must be a non-empty string")
        if not isinstance(options, dict):
            raise TypeError("job.transform.outputs.options must be an object")
        outputs.append(JobOutput(media_type=media_type, options=options))

    priority = raw.get("priority", 100)
    if isinstance(priority, bool) or not isinstance(priority, int):
        raise TypeError("job.priority must be an integer")
    return TransformJobDocument(
        id=raw["id"],
        content_id=raw["contentId"],
        block_id=raw["blockId"],
        transform_id=transform_id,
        tool_image=tool_image,
        inputs=inputs,
        outputs=outputs,
        created_at=raw["createdAt"],
        priority=priority,
    )


def read_result_descriptor(path: Path) -> ResultDescriptor:
    """Load and validate a tool's ``metadata.json``."""

    raw = load_json(path)
    raw_variants = raw.get("variants")
    if not isinstance(raw_variants, list):
        raise TypeError("metadata.variants must be an array")
    variants: list[DescriptorEntry] = []
    for item in raw_variants:
        if not isinstance(item, dict):
            raise TypeError("metadata.variants entry must be an object")
        media_type = item.get("mediaType")
        filename = item.get("filename")
        byte_size = item.get("bytes")
        content_hash = item.get("contentHash")
        if not isinstance(media_type, str) or not media_type.strip():
            raise ValueError("metadata.variants.mediaType must be a non-empty string")
        if not isinstance(filename, str) or not filename.strip():
            raise ValueError("metadata.variants.filename must be a non-empty string")
        if isinstance(byte_size, bool) or not isinstance(byte_size, int) or byte_size < 0:
            raise ValueError("metadata.variants.bytes must be a non-negative integer")
        if not isinstance(content_hash, str) or not content_hash.strip():
            raise ValueError("metadata.variants.contentHash must be a non-empty string")
        width = _optional_dimension(item, "width")
        height = _optional_dimension(item, "height")
        variants.append(
            DescriptorEntry(
                media_type=media_type,
                filename=filename,
                byte_size=byte_size,
                content_hash=content_hash,
                width=width,
                height=height,
            ),
        )

    tool_info = raw.get("toolInfo")
    if not isinstance(tool_info, dict):
        raise TypeError("metadata.toolInfo must be an object")
    tool_name = tool_info.get("name")
    tool_version = tool_info.get("version")
    generated_at = tool_info.get("generatedAt")
    if not isinstance(tool_name, str) or not tool_name.strip():
        raise ValueError("metadata.toolInfo.name must be a non-empty string")
    if not isinstance(tool_version, str) or not tool_version.strip():
        raise ValueError("metadata.toolInfo.version must be a non-empty string")
    if generated_at is not None and not isinstance(generated_at, str):
        raise ValueError("metadata.toolInfo.generatedAt must be a string when provided")
    return ResultDescriptor(
        variants=variants,
        tool_name=tool_name,
        tool_version=tool_version,
        generated_at=generated_at,
    )


def _optional_dimension(item: dict[str, Any], name: str) -> int | None:
    value = item.get(name)
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
        raise ValueError(f"metadata.variants.{name} must be a positive integer when provided")
    return value
