from __future__ import annotations

import json
from pathlib import Path

import allure
import pytest

from portable_content.pipeline.contracts import (
    JobInput,
    JobOutput,
    TransformJobDocument,
    parse_job_document,
    read_result_descriptor,
)

pytestmark = [
    allure.epic("Transform Pipeline"),
    allure.feature("File Contracts"),
]


def test_job_document_round_trip() -> None:
    document = TransformJobDocument(
        id="job-1",
        content_id="item-1",
        block_id="b1",
        transform_id="mermaid:render",
        tool_image="ghcr.io/example/mermaid:1",
        inputs=[JobInput(uri="item-1/blocks/b1/source.mmd", media_type="text/vnd.mermaid")],
        outputs=[JobOutput(media_type="image/svg+xml", options={"theme": "dark"})],
        created_at="2026-10-19T08:00:00Z",
        priority=10,
    )

    raw = document.to_dict()

    assert raw["transform"]["inputs"] == [
        {"uri": "item-1/blocks/b1/source.mmd", "mediaType": "text/vnd.mermaid"},
    ]
    assert parse_job_document(raw) == document


def test_job_document_validation() -> None:
    with pytest.raises(TypeError):
        parse_job_document([])
    with pytest.raises(ValueError):
        parse_job_document(
            {
                "id": "job-1",
                "contentId": "item-1",
                "blockId": "b1",
                "createdAt": "2026-10-19T08:00:00Z",
                "transform": {"id": "t", "toolImage": "img", "inputs": [], "outputs": []},
            },
        )


def test_result_descriptor_parsing(tmp_path: Path) -> None:
    path = tmp_path / "metadata.json"
    path.write_text(
        json.dumps(
            {
                "variants": [
                    {
                        "mediaType": "image/png",
                        "filename": "out.png",
                        "width": 800,
                        "bytes": 12,
                        "contentHash": "sha256:ab",
                    },
                ],
                "toolInfo": {"name": "renderer", "version": "2.0", "generatedAt": "now"},
            },
        ),
        "utf-8",
    )

    descriptor = read_result_descriptor(path)

    assert descriptor.tool_name == "renderer"
    assert descriptor.variants[0].width == 800
    assert descriptor.variants[0].height is None


def test_result_descriptor_rejects_bad_sizes(tmp_path: Path) -> None:
    path = tmp_path / "metadata.json"
    path.write_text(
        json.dumps(
            {
                "variants": [
                    {"mediaType": "image/png", "filename": "a", "bytes": -1, "contentHash": "x"},
                ],
                "toolInfo": {"name": "renderer", "version": "2.0"},
            },
        ),
        "utf-8",
    )

    with pytest.raises(ValueError):
        read_result_descriptor(path)
