from __future__ import annotations

import allure
import pytest

from portable_content.pipeline.errors import ManifestNotFound
from portable_content.pipeline.manifest import Variant
from portable_content.pipeline.reconciler import ManifestReconciler
from portable_content.pipeline.registry import TransformRegistry
from portable_content.pipeline.repository import JobQueueRepository
from portable_content.pipeline.selector import Capabilities
from portable_content.pipeline.services import IngestContent, IngestionService, ReadService
from portable_content.storage.gateway import LocalObjectStore

pytestmark = [
    allure.epic("Transform Pipeline"),
    allure.feature("Services"),
]


def _service(
    repository: JobQueueRepository,
    store: LocalObjectStore,
    registry: TransformRegistry,
) -> IngestionService:
    return IngestionService(repository=repository, gateway=store, registry=registry)


def _content() -> IngestContent:
    return IngestContent.from_dict(
        {
            "id": "item-1",
            "type": "article",
            "title": "Release notes",
            "blocks": [
                {
                    "id": "intro",
                    "kind": "markdown",
                    "payload": {"type": "inline", "mediaType": "text/markdown", "source": "# v2"},
                },
                {"kind": "table", "payload": {"rows": [[1, 2]]}},
                {
                    "id": "remote",
                    "kind": "markdown",
                    "payload": {
                        "type": "external",
                        "mediaType": "text/markdown",
                        "uri": "https://cdn.test/notes.md",
                    },
                },
            ],
        },
        priority=5,
    )


def test_ingest_stores_manifest_and_enqueues_jobs(
    repository: JobQueueRepository,
    store: LocalObjectStore,
    echo_registry: TransformRegistry,
) -> None:
    result = _service(repository, store, echo_registry).ingest(_content())

    item, _ = store.read_manifest("item-1")
    assert [block.id for block in item.blocks] == ["intro", "block-2", "remote"]
    assert item.title == "Release notes"
    assert [(job.block_id, job.priority) for job in result.jobs] == [("intro", 5), ("remote", 5)]
    intro_inputs = result.jobs[0].document["transform"]["inputs"]
    assert intro_inputs == [{"uri": "item-1/blocks/intro/source.md", "mediaType": "text/markdown"}]
    assert store.get_bytes("item-1/blocks/intro/source.md") == b"# v2"
    remote_inputs = result.jobs[1].document["transform"]["inputs"]
    assert remote_inputs[0]["uri"] == "https://cdn.test/notes.md"


def test_ingest_rejects_bad_content(
    repository: JobQueueRepository,
    store: LocalObjectStore,
    echo_registry: TransformRegistry,
) -> None:
    service = _service(repository, store, echo_registry)
    service.ingest(_content())

    with pytest.raises(ValueError):
        service.ingest(_content())
    with pytest.raises(ValueError):
        service.ingest(IngestContent(type="article", blocks=[{"id": "a", "kind": "text"}] * 2))
    with pytest.raises(ValueError):
        service.ingest(IngestContent(type="article", blocks=[{"id": "a"}]))
    with pytest.raises(ValueError):
        IngestContent.from_dict({"type": "article", "blocks": "nope"})


def test_refresh_filters_by_block_and_transform(
    repository: JobQueueRepository,
    store: LocalObjectStore,
    echo_registry: TransformRegistry,
) -> None:
    service = _service(repository, store, echo_registry)
    service.ingest(_content())

    everything = service.refresh("item-1")
    one_block = service.refresh("item-1", block_id="intro")
    other_transform = service.refresh("item-1", transform_id="mermaid:render")

    assert len(everything) == 2
    assert [job.block_id for job in one_block] == ["intro"]
    assert other_transform == []
    with pytest.raises(ValueError):
        service.refresh("item-1", block_id="missing")
    with pytest.raises(ManifestNotFound):
        service.refresh("missing")


def test_select_picks_best_variant_per_block(
    repository: JobQueueRepository,
    store: LocalObjectStore,
    echo_registry: TransformRegistry,
) -> None:
    _service(repository, store, echo_registry).ingest(_content())
    ManifestReconciler(store).reconcile(
        "item-1",
        "intro",
        [
            Variant(media_type="text/html", uri="objects/a.html", byte_size=100),
            Variant(media_type="image/png", uri="objects/a.png", byte_size=5000),
        ],
    )
    reader = ReadService(gateway=store)

    selections = reader.select("item-1", Capabilities.create(["image/png", "text/html;q=0.5"]))
    only_pdf = reader.select("item-1", Capabilities.create(["application/pdf"]), block_id="intro")

    intro = selections[0]
    assert intro.variant is not None and intro.variant.uri == "objects/a.png"
    assert not intro.fallback
    assert [entry.variant.uri for entry in intro.ranked] == ["objects/a.png", "objects/a.html"]
    assert selections[1].variant is None
    assert not selections[1].fallback
    assert only_pdf[0].fallback
    assert only_pdf[0].variant is not None
    with pytest.raises(ManifestNotFound):
        reader.select("item-1", Capabilities.create(["*/*"]), block_id="missing")


def test_resolve_payload(
    repository: JobQueueRepository,
    store: LocalObjectStore,
    echo_registry: TransformRegistry,
) -> None:
    _service(repository, store, echo_registry).ingest(
        IngestContent(
            type="note",
            content_id="note-1",
            blocks=[{"id": "t", "kind": "text", "payload": "plain words"}, {"kind": "table"}],
        ),
    )
    reader = ReadService(gateway=store)

    content = reader.resolve_payload("note-1", "t")

    assert content is not None
    assert content.content_type == "text/plain"
    assert content.data == "plain words"
    assert reader.resolve_payload("note-1", "block-2") is None
    with pytest.raises(ManifestNotFound):
        reader.resolve_payload("note-1", "missing")
