from __future__ import annotations

import allure
import pytest

from portable_content.pipeline.manifest import Block, ContentItem, Variant

pytestmark = [
    allure.epic("Transform Pipeline"),
    allure.feature("Manifest Documents"),
]


def _item_payload() -> dict[str, object]:
    return {
        "id": "item-1",
        "type": "article",
        "title": "Diagrams",
        "createdAt": "2026-10-19T08:00:00Z",
        "updatedAt": "2026-10-19T08:00:00Z",
        "blocks": [
            {
                "id": "b1",
                "kind": "mermaid",
                "payload": {"type": "inline", "mediaType": "text/vnd.mermaid", "source": "A-->B"},
                "variants": [
                    {
                        "mediaType": "image/svg+xml",
                        "uri": "objects/abc.svg",
                        "bytes": 120,
                        "contentHash": "sha256:00",
                        "generatedBy": "mermaid:render",
                        "toolVersion": "1",
                        "createdAt": "2026-10-19T08:01:00Z",
                    },
                ],
            },
        ],
        "representations": {"feed": {"layout": "card"}},
        "locale": "en",
    }


def test_manifest_round_trip_preserves_opaque_fields() -> None:
    payload = _item_payload()

    item = ContentItem.from_dict(payload)

    assert item.blocks[0].variants[0].byte_size == 120
    assert item.extra == {"locale": "en"}
    assert item.to_dict() == payload


def test_variant_serialization_omits_unknown_fields() -> None:
    variant = Variant(media_type="text/html", uri="objects/a.html")

    assert variant.to_dict() == {"mediaType": "text/html", "uri": "objects/a.html"}
    assert Block(id="b1", kind="text", payload="hi").to_dict()["variants"] == []


def test_manifest_rejects_invalid_shapes() -> None:
    payload = _item_payload()
    payload["blocks"] = [{"id": "", "kind": "text"}]
    with pytest.raises(ValueError):
        ContentItem.from_dict(payload)

    with pytest.raises(TypeError):
        Variant.from_dict({"mediaType": "image/png", "bytes": "12"})
    with pytest.raises(TypeError):
        Variant.from_dict({"mediaType": "image/png", "width": True})
    with pytest.raises(TypeError):
        ContentItem.from_dict([])
