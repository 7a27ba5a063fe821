from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from portable_content.pipeline.registry import (
    OutputSpec,
    TransformRegistry,
    TransformSpec,
    default_registry,
)
from portable_content.pipeline.sandbox.base import SandboxLimits

pytestmark = [
    allure.epic("Transform Pipeline"),
    allure.feature("Transform Registry"),
]


def test_unknown_kind_has_no_transforms() -> None:
    registry = default_registry()

    assert registry.resolve("video") == []
    assert [spec.id for spec in registry.resolve("mermaid")] == ["mermaid:render"]
    assert registry.get("markdown:html") is not None
    assert registry.get("nope") is None


def test_registry_from_file(tmp_path: Path) -> None:
    path = tmp_path / "registry.json"
    path.write_text(
        json.dumps(
            {
                "transforms": [
                    {
                        "id": "mermaid:render",
                        "toolImage": "ghcr.io/example/mermaid:1.2",
                        "toolVersion": "1.2",
                        "kinds": ["mermaid"],
                        "accepts": ["text/*"],
                        "outputs": [
                            {"mediaType": "image/svg+xml", "options": {"theme": "dark"}},
                            {"mediaType": "image/png;dpi=192"},
                        ],
                        "limits": {"wallClockSeconds": 30, "memoryMb": 256},
                    },
                ],
            },
        ),
        "utf-8",
    )

    registry = TransformRegistry.from_file(path)
    spec = registry.resolve("mermaid")[0]

    assert spec.tool_identity == "mermaid:render@1.2"
    assert spec.outputs[0].options["theme"] == "dark"
    assert spec.outputs[1].to_dict() == {"mediaType": "image/png;dpi=192", "options": {}}
    assert spec.limits == SandboxLimits(wall_clock_seconds=30.0, memory_mb=256)
    assert spec.accepts_media_type("text/vnd.mermaid")
    assert not spec.accepts_media_type("image/png")


def test_registry_rejects_duplicates_and_bad_entries() -> None:
    spec = TransformSpec(
        id="dup",
        tool_image="tool",
        tool_version="1",
        kinds=("text",),
        accepts=(),
        outputs=(OutputSpec(media_type="text/html"),),
    )
    with pytest.raises(ValueError):
        TransformRegistry([spec, spec])
    with pytest.raises(ValueError):
        TransformRegistry.from_dict({"transforms": [{"id": "x", "toolImage": "t", "outputs": []}]})
    with pytest.raises(TypeError):
        TransformRegistry.from_dict({"transforms": {}})


def test_empty_accept_list_accepts_anything() -> None:
    spec = TransformSpec(
        id="any",
        tool_image="tool",
        tool_version="1",
        kinds=("text",),
        accepts=(),
        outputs=(OutputSpec(media_type="text/html"),),
    )

    assert spec.accepts_media_type("application/octet-stream")
    assert spec.accepts_media_type(None)
