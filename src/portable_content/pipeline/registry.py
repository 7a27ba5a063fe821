"""Static registry mapping block kinds to transform specifications."""

from __future__ import annotations

import sys
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any

from portable_content.pipeline.contracts import load_json
from portable_content.pipeline.naming import parse_media_type
from portable_content.pipeline.sandbox.base import SandboxLimits


@dataclass(frozen=True, slots=True)
class OutputSpec:
    """One desired output media type with its tool options."""

    media_type: str
    options: Mapping[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"mediaType": self.media_type, "options": dict(self.options)}


@dataclass(frozen=True, slots=True)
class TransformSpec:
    """Tool identity, accepted inputs, and desired outputs of one transform."""

    id: str
    tool_image: str
    tool_version: str
    kinds: tuple[str, ...]
    accepts: tuple[str, ...]
    outputs: tuple[OutputSpec, ...]
    limits: SandboxLimits | None = None

    @property
    def tool_identity(self) -> str:
        return f"{self.id}@{self.tool_version}"

    def accepts_media_type(self, media_type: str | None) -> bool:
        """True when the input media type matches any accepted pattern."""

        if not self.accepts:
            return True
        if media_type is None:
            return False
        base, _ = parse_media_type(media_type)
        for pattern in self.accepts:
            pattern_base, _ = parse_media_type(pattern)
            if pattern_base in {"*/*", base}:
                return True
            if pattern_base.endswith("/*") and base.startswith(pattern_base[:-1]):
                return True
        return False


class TransformRegistry:
    """Immutable kind -> transforms lookup built once at process start."""

    def __init__(self, specs: Iterable[TransformSpec]) -> None:
        by_kind: dict[str, list[TransformSpec]] = {}
        by_id: dict[str, TransformSpec] = {}
        for spec in specs:
            if spec.id in by_id:
                raise ValueError(f"Duplicate transform id in registry: {spec.id}")
            by_id[spec.id] = spec
            for kind in spec.kinds:
                by_kind.setdefault(kind, []).append(spec)
        self._by_kind: Mapping[str, tuple[TransformSpec, ...]] = MappingProxyType(
            {kind: tuple(items) for kind, items in by_kind.items()},
        )
        self._by_id: Mapping[str, TransformSpec] = MappingProxyType(by_id)

    def resolve(self, block_kind: str) -> list[TransformSpec]:
        """Transforms for a block kind; unknown kinds have none."""

        return list(self._by_kind.get(block_kind, ()))

    def get(self, transform_id: str) -> TransformSpec | None:
        return self._by_id.get(transform_id)

    def kinds(self) -> list[str]:
        return sorted(self._by_kind)

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> TransformRegistry:
        raw_transforms = raw.get("transforms")
        if not isinstance(raw_transforms, list):
            raise TypeError("registry.transforms must be an array")
        return cls(_parse_transform(item) for item in raw_transforms)

    @classmethod
    def from_file(cls, path: Path) -> TransformRegistry:
        return cls.from_dict(load_json(path))


def default_registry(python_executable: str | None = None) -> TransformRegistry:
    """Demo registry backed by the bundled echo tool."""

    python = python_executable or sys.executable
    tool = f"{python} -m portable_content.pipeline.sandbox.echo_tool"
    command = (
        f"{tool} --input-dir {{input_dir}} --output-dir {{output_dir}} "
        "--options {options_file}"
    )
    return TransformRegistry(
        [
            TransformSpec(
                id="markdown:html",
                tool_image=command,
                tool_version="1",
                kinds=("markdown", "text"),
                accepts=("text/markdown", "text/plain"),
                outputs=(OutputSpec(media_type="text/html"),),
            ),
            TransformSpec(
                id="mermaid:render",
                tool_image=command,
                tool_version="1",
                kinds=("mermaid", "diagram"),
                accepts=("text/vnd.mermaid", "text/plain"),
                outputs=(
                    OutputSpec(media_type="image/svg+xml", options={"theme": "default"}),
                    OutputSpec(media_type="text/plain"),
                ),
            ),
        ],
    )


def _parse_transform(raw: object) -> TransformSpec:
    if not isinstance(raw, dict):
        raise TypeError("registry transform must be an object")
    transform_id = raw.get("id")
    tool_image = raw.get("toolImage")
    tool_version = raw.get("toolVersion", "1")
    if not isinstance(transform_id, str) or not transform_id.strip():
        raise ValueError("registry transform.id must be a non-empty string")
    if not isinstance(tool_image, str) or not tool_image.strip():
        raise ValueError(
            f"registry transform {transform_id}: toolImage must be a non-empty string",
        )
    if not isinstance(tool_version, str) or not tool_version.strip():
        raise ValueError(f"registry transform {transform_id}: toolVersion must be a string")

    kinds = _string_tuple(raw.get("kinds", []), field_name=f"{transform_id}.kinds")
    accepts = _string_tuple(raw.get("accepts", []), field_name=f"{transform_id}.accepts")
    raw_outputs = raw.get("outputs")
    if not isinstance(raw_outputs, list) or not raw_outputs:
        raise ValueError(f"registry transform {transform_id}: outputs must be a non-empty array")
    outputs: list[OutputSpec] = []
    for item in raw_outputs:
        if not isinstance(item, dict):
            raise TypeError(f"registry transform {transform_id}: output must be an object")
        media_type = item.get("mediaType")
        options = item.get("options", {})
        if not isinstance(media_type, str) or not media_type.strip():
            raise ValueError(f"registry transform {transform_id}: output.mediaType is required")
        if not isinstance(options, dict):
            raise TypeError(f"registry transform {transform_id}: output.options must be an object")
        outputs.append(OutputSpec(media_type=media_type, options=MappingProxyType(dict(options))))

    raw_limits = raw.get("limits")
    if raw_limits is not None and not isinstance(raw_limits, dict):
        raise TypeError(f"registry transform {transform_id}: limits must be an object")
    return TransformSpec(
        id=transform_id,
        tool_image=tool_image,
        tool_version=tool_version,
        kinds=kinds,
        accepts=accepts,
        outputs=tuple(outputs),
        limits=SandboxLimits.from_dict(raw_limits) if raw_limits is not None else None,
    )


def _string_tuple(value: object, *, field_name: str) -> tuple[str, ...]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise TypeError(f"registry {field_name} must be an array of strings")
    return tuple(item.strip() for item in value if item.strip())
