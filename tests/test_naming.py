from __future__ import annotations

import hashlib

import allure
import pytest

from portable_content.pipeline.naming import (
    block_source_key,
    content_key,
    encode_media_type,
    extension_for,
    manifest_key,
    object_key,
    parse_media_type,
    source_hash_of,
    variant_storage_key,
)

pytestmark = [
    allure.epic("Transform Pipeline"),
    allure.feature("Content Addressing"),
]


def test_content_key_ignores_option_field_order() -> None:
    first = content_key("abc", "mermaid:render@1", {"theme": "dark", "scale": 2}, "svg")
    second = content_key("abc", "mermaid:render@1", {"scale": 2, "theme": "dark"}, "svg")

    assert first == second
    source_hash, _, rest = first.partition("-")
    assert source_hash == "abc"
    assert rest.endswith(".svg")


def test_content_key_changes_with_tool_version_and_options() -> None:
    base = content_key("abc", "tool@1", {"theme": "dark"}, "svg")

    assert content_key("abc", "tool@2", {"theme": "dark"}, "svg") != base
    assert content_key("abc", "tool@1", {"theme": "light"}, "svg") != base
    assert content_key("abd", "tool@1", {"theme": "dark"}, "svg") != base


def test_content_key_hash_covers_tool_version_and_canonical_options() -> None:
    expected = hashlib.sha256(b'tool@1{"a":1,"b":[1,2]}').hexdigest()

    assert content_key("src", "tool@1", {"b": [1, 2], "a": 1}, ".png") == f"src-{expected}.png"


def test_content_key_rejects_empty_identity() -> None:
    with pytest.raises(ValueError):
        content_key("", "tool@1", {}, "svg")
    with pytest.raises(ValueError):
        content_key("abc", "", {}, "svg")


def test_source_hash_single_and_multiple_inputs() -> None:
    single = source_hash_of([b"hello"])
    assert single == hashlib.sha256(b"hello").hexdigest()

    combined = source_hash_of([b"a", b"b"])
    assert combined != source_hash_of([b"b", b"a"])
    assert len(combined) == 64

    with pytest.raises(ValueError):
        source_hash_of([])


def test_encode_media_type_includes_parameters() -> None:
    assert encode_media_type("image/png;dpi=192") == "png-192dpi"
    assert encode_media_type("image/webp; width=800; dpi=2") == "webp-2dpi-800width"
    assert encode_media_type("image/svg+xml") == "svg-xml"


def test_storage_key_conventions() -> None:
    assert (
        variant_storage_key("item-1", "b1", "image/png;dpi=192")
        == "item-1/blocks/b1/variants/png-192dpi/content.png"
    )
    assert block_source_key("item-1", "b1", "text/markdown") == "item-1/blocks/b1/source.md"
    assert manifest_key("item-1") == "item-1/item.json"
    assert object_key("abc-def.svg") == "objects/abc-def.svg"


def test_parse_media_type_and_extensions() -> None:
    assert parse_media_type('Image/WebP; Width="800"') == ("image/webp", {"width": "800"})
    assert extension_for("text/vnd.mermaid") == "mmd"
    assert extension_for("image/jpeg;q=1") == "jpg"
    assert extension_for("application/x-unknown-thing") == "bin"
