"""Use-case services: content ingestion, transform refresh, and reads."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from portable_content.pipeline.contracts import JobInput, JobOutput, TransformJobDocument
from portable_content.pipeline.errors import ManifestNotFound, ManifestVersionConflict
from portable_content.pipeline.manifest import Block, ContentItem, Variant
from portable_content.pipeline.models import TransformJobCreate, TransformJobView
from portable_content.pipeline.naming import block_source_key
from portable_content.pipeline.registry import TransformRegistry, TransformSpec
from portable_content.pipeline.repository import JobQueueRepository
from portable_content.pipeline.resolver import ContentResolver, NormalizedContent, PayloadSource
from portable_content.pipeline.selector import (
    Capabilities,
    ScoredVariant,
    rank_variants,
    select_variant,
)
from portable_content.storage.common import to_iso, utc_now
from portable_content.storage.gateway import StorageGateway

logger = logging.getLogger(__name__)

PLAIN_TEXT = "text/plain"


@dataclass(slots=True)
class IngestContent:
    """High-level command to ingest one content item."""

    type: str
    blocks: list[dict[str, Any]]
    content_id: str | None = None
    title: str | None = None
    summary: str | None = None
    representations: Any = None
    priority: int = 100

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, priority: int = 100) -> IngestContent:
        item_type = raw.get("type")
        blocks = raw.get("blocks")
        if not isinstance(item_type, str) or not item_type.strip():
            raise ValueError("content.type must be a non-empty string")
        if not isinstance(blocks, list) or not all(isinstance(item, dict) for item in blocks):
            raise ValueError("content.blocks must be an array of objects")
        return cls(
            type=item_type,
            blocks=blocks,
            content_id=raw.get("id"),
            title=raw.get("title"),
            summary=raw.get("summary"),
            representations=raw.get("representations"),
            priority=priority,
        )


@dataclass(slots=True)
class IngestResult:
    """Stored manifest plus the jobs derived from it."""

    item: ContentItem
    jobs: list[TransformJobView] = field(default_factory=list)


@dataclass(slots=True)
class BlockSelection:
    """Selector outcome for one block."""

    block_id: str
    kind: str
    variant: Variant | None
    fallback: bool
    ranked: list[ScoredVariant] = field(default_factory=list)


class IngestionService:
    """Stores canonical payloads, writes manifests, and enqueues transform jobs."""

    def __init__(
        self,
        *,
        repository: JobQueueRepository,
        gateway: StorageGateway,
        registry: TransformRegistry,
        max_attempts: int = 4,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.registry = registry
        self.max_attempts = max_attempts

    def ingest(self, command: IngestContent) -> IngestResult:
        """Persist a new content item and enqueue every applicable transform."""

        content_id = command.content_id or uuid4().hex
        now = to_iso(utc_now())
        blocks: list[Block] = []
        seen_ids: set[str] = set()
        for index, raw in enumerate(command.blocks, start=1):
            block_id = str(raw.get("id") or f"block-{index}")
            kind = raw.get("kind")
            if not isinstance(kind, str) or not kind.strip():
                raise ValueError(f"Block {block_id}: kind must be a non-empty string")
            if block_id in seen_ids:
                raise ValueError(f"Duplicate block id: {block_id}")
            seen_ids.add(block_id)
            blocks.append(Block(id=block_id, kind=kind, payload=raw.get("payload")))

        item = ContentItem(
            id=content_id,
            type=command.type,
            created_at=now,
            updated_at=now,
            blocks=blocks,
            title=command.title,
            summary=command.summary,
            representations=command.representations,
        )
        block_inputs = {block.id: self._block_input(content_id, block) for block in blocks}
        try:
            self.gateway.write_manifest(item, expected_version=None)
        except ManifestVersionConflict as error:
            raise ValueError(f"Content item already exists: {content_id}") from error
        logger.info("Ingested content %s with %d block(s)", content_id, len(blocks))

        jobs: list[TransformJobView] = []
        for block in blocks:
            jobs.extend(
                self._enqueue_for_block(
                    content_id=content_id,
                    block=block,
                    job_input=block_inputs[block.id],
                    priority=command.priority,
                ),
            )
        return IngestResult(item=item, jobs=jobs)

    def refresh(
        self,
        content_id: str,
        *,
        block_id: str | None = None,
        transform_id: str | None = None,
        priority: int = 100,
    ) -> list[TransformJobView]:
        """Re-enqueue transforms for existing blocks (e.g. after a tool upgrade)."""

        item, _ = self.gateway.read_manifest(content_id)
        blocks = item.blocks
        if block_id is not None:
            block = item.find_block(block_id)
            if block is None:
                raise ValueError(f"Block {block_id} not found in content item {content_id}")
            blocks = [block]

        jobs: list[TransformJobView] = []
        for block in blocks:
            jobs.extend(
                self._enqueue_for_block(
                    content_id=content_id,
                    block=block,
                    job_input=self._block_input(content_id, block),
                    priority=priority,
                    transform_id=transform_id,
                ),
            )
        return jobs

    def _block_input(self, content_id: str, block: Block) -> JobInput | None:
        """Input location for a block's canonical payload; inline text is stored first."""

        if isinstance(block.payload, str):
            source: PayloadSource | None = PayloadSource(
                type="inline",
                media_type=PLAIN_TEXT,
                source=block.payload,
            )
        else:
            source = PayloadSource.from_payload(block.payload)
        if source is None:
            return None
        if source.type == "external" and source.uri:
            return JobInput(uri=source.uri, media_type=source.media_type)
        if source.type == "inline" and source.source is not None:
            key = block_source_key(content_id, block.id, source.media_type)
            self.gateway.put_bytes(key, source.source.encode("utf-8"))
            return JobInput(uri=key, media_type=source.media_type)
        return None

    def _enqueue_for_block(
        self,
        *,
        content_id: str,
        block: Block,
        job_input: JobInput | None,
        priority: int,
        transform_id: str | None = None,
    ) -> list[TransformJobView]:
        if job_input is None:
            logger.debug("Block %s/%s has no resolvable payload; no jobs", content_id, block.id)
            return []
        jobs: list[TransformJobView] = []
        for spec in self.registry.resolve(block.kind):
            if transform_id is not None and spec.id != transform_id:
                continue
            if not spec.accepts_media_type(job_input.media_type):
                continue
            jobs.append(
                self._enqueue(
                    content_id=content_id,
                    block_id=block.id,
                    spec=spec,
                    job_input=job_input,
                    priority=priority,
                ),
            )
        return jobs

    def _enqueue(
        self,
        *,
        content_id: str,
        block_id: str,
        spec: TransformSpec,
        job_input: JobInput,
        priority: int,
    ) -> TransformJobView:
        job_id = str(uuid4())
        document = TransformJobDocument(
            id=job_id,
            content_id=content_id,
            block_id=block_id,
            transform_id=spec.id,
            tool_image=spec.tool_image,
            inputs=[job_input],
            outputs=[
                JobOutput(media_type=output.media_type, options=dict(output.options))
                for output in spec.outputs
            ],
            created_at=to_iso(utc_now()),
            priority=priority,
        )
        return self.repository.enqueue_job(
            TransformJobCreate(
                job_id=job_id,
                content_id=content_id,
                block_id=block_id,
                transform_id=spec.id,
                document=document.to_dict(),
                priority=priority,
                max_attempts=self.max_attempts,
            ),
        )


class ReadService:
    """Read path: variant selection and payload resolution against manifests."""

    def __init__(
        self,
        *,
        gateway: StorageGateway,
        resolver: ContentResolver | None = None,
    ) -> None:
        self.gateway = gateway
        self.resolver = resolver or ContentResolver(gateway=gateway)

    def select(
        self,
        content_id: str,
        capabilities: Capabilities,
        *,
        block_id: str | None = None,
    ) -> list[BlockSelection]:
        """Best variant per block (or for one block) of a content item."""

        item, _ = self.gateway.read_manifest(content_id)
        blocks = item.blocks
        if block_id is not None:
            block = item.find_block(block_id)
            if block is None:
                raise ManifestNotFound(f"Block {block_id} not found in content item {content_id}")
            blocks = [block]

        selections: list[BlockSelection] = []
        for block in blocks:
            ranked = rank_variants(block.variants, capabilities)
            selections.append(
                BlockSelection(
                    block_id=block.id,
                    kind=block.kind,
                    variant=select_variant(block.variants, capabilities),
                    fallback=bool(block.variants) and not ranked,
                    ranked=ranked,
                ),
            )
        return selections

    def resolve_payload(self, content_id: str, block_id: str) -> NormalizedContent | None:
        """Resolve a block's primary payload source; ``None`` for opaque payloads."""

        item, _ = self.gateway.read_manifest(content_id)
        block = item.find_block(block_id)
        if block is None:
            raise ManifestNotFound(f"Block {block_id} not found in content item {content_id}")
        if isinstance(block.payload, str):
            source: PayloadSource | None = PayloadSource(
                type="inline",
                media_type=PLAIN_TEXT,
                source=block.payload,
            )
        else:
            source = PayloadSource.from_payload(block.payload)
        if source is None:
            return None
        return self.resolver.resolve(source)
