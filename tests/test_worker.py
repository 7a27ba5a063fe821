from __future__ import annotations

import hashlib
from dataclasses import replace
from pathlib import Path

import allure

from portable_content.pipeline.models import FailureClass, JobStatus
from portable_content.pipeline.registry import OutputSpec, TransformRegistry, TransformSpec
from portable_content.pipeline.repository import JobQueueRepository
from portable_content.pipeline.sandbox import (
    LocalSandboxRunner,
    SandboxLimits,
    SandboxRunRequest,
    SandboxRunResult,
)
from portable_content.pipeline.sandbox.runner import namespace_isolation_available
from portable_content.pipeline.services import IngestContent, IngestionService
from portable_content.pipeline.worker import TransformWorker, WorkerOptions, WorkerPool
from portable_content.storage.gateway import LocalObjectStore

pytestmark = [
    allure.epic("Transform Pipeline"),
    allure.feature("Worker"),
]

FAST_RETRY = WorkerOptions(poll_interval_seconds=0, retry_base_seconds=0, retry_max_seconds=0)


def _markdown_block(block_id: str = "b1", text: str = "# Hi") -> dict[str, object]:
    return {
        "id": block_id,
        "kind": "markdown",
        "payload": {"type": "inline", "mediaType": "text/markdown", "source": text},
    }


def _ingest(
    repository: JobQueueRepository,
    store: LocalObjectStore,
    registry: TransformRegistry,
    *,
    blocks: list[dict[str, object]] | None = None,
    max_attempts: int = 4,
):
    service = IngestionService(
        repository=repository,
        gateway=store,
        registry=registry,
        max_attempts=max_attempts,
    )
    return service.ingest(
        IngestContent(type="article", blocks=blocks or [_markdown_block()], content_id="item-1"),
    )


def _worker(
    repository: JobQueueRepository,
    store: LocalObjectStore,
    registry: TransformRegistry,
    tmp_path: Path,
    *,
    settings: WorkerOptions = FAST_RETRY,
) -> TransformWorker:
    return TransformWorker(
        repository=repository,
        gateway=store,
        sandbox=LocalSandboxRunner(network_isolation=namespace_isolation_available()),
        registry=registry,
        workdir_root=tmp_path / "work",
        worker_id="worker-test",
        settings=settings,
    )


def _registry_with(spec: TransformSpec) -> TransformRegistry:
    return TransformRegistry([spec])


def test_job_publishes_variant_and_completes(
    tmp_path: Path,
    repository: JobQueueRepository,
    store: LocalObjectStore,
    echo_registry: TransformRegistry,
) -> None:
    ingested = _ingest(repository, store, echo_registry)
    job = ingested.jobs[0]

    summary = _worker(repository, store, echo_registry, tmp_path).run_once()

    assert summary.processed == 1
    assert summary.completed == 1
    item, _ = store.read_manifest("item-1")
    [variant] = item.blocks[0].variants
    body = b"<pre># Hi</pre>\n"
    assert variant.media_type == "text/html"
    assert variant.uri is not None and variant.uri.startswith("objects/")
    assert variant.uri.endswith(".html")
    assert variant.byte_size == len(body)
    assert variant.content_hash == f"sha256:{hashlib.sha256(body).hexdigest()}"
    assert variant.generated_by == "markdown:html"
    assert store.get_bytes(variant.uri) == body
    assert store.get_bytes("item-1/blocks/b1/variants/html/content.html") == body
    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.job.status == JobStatus.COMPLETED
    assert details.events[-1].details["variants_added"] == 1
    assert not (tmp_path / "work" / job.job_id).exists()


def test_re_execution_does_not_duplicate_variants(
    tmp_path: Path,
    repository: JobQueueRepository,
    store: LocalObjectStore,
    echo_registry: TransformRegistry,
) -> None:
    _ingest(repository, store, echo_registry)
    worker = _worker(repository, store, echo_registry, tmp_path)
    worker.run_once()
    first_item, first_version = store.read_manifest("item-1")

    IngestionService(repository=repository, gateway=store, registry=echo_registry).refresh(
        "item-1",
    )
    summary = worker.run_once()

    item, version = store.read_manifest("item-1")
    assert summary.completed == 1
    assert item.blocks[0].variants == first_item.blocks[0].variants
    assert version == first_version


def test_hash_mismatch_fails_without_touching_manifest(
    tmp_path: Path,
    repository: JobQueueRepository,
    store: LocalObjectStore,
    make_echo_transform,
) -> None:
    registry = _registry_with(make_echo_transform(extra_args="--lie-about-hash"))
    job = _ingest(repository, store, registry).jobs[0]

    summary = _worker(repository, store, registry, tmp_path).run_once()

    assert summary.failed == 1
    assert summary.retried == 0
    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.job.status == JobStatus.FAILED
    assert details.job.failure_class == FailureClass.HASH_MISMATCH
    item, _ = store.read_manifest("item-1")
    assert item.blocks[0].variants == []
    assert not store.exists("item-1/blocks/b1/variants/html/content.html")


def test_transient_exit_retries_until_attempts_run_out(
    tmp_path: Path,
    repository: JobQueueRepository,
    store: LocalObjectStore,
    make_echo_transform,
) -> None:
    registry = _registry_with(make_echo_transform(extra_args="--exit-code 75"))
    job = _ingest(repository, store, registry, max_attempts=2).jobs[0]
    worker = _worker(repository, store, registry, tmp_path)

    first = worker.run_once()
    second = worker.run_once()
    third = worker.run_once()

    assert first.retried == 1
    assert second.failed == 1
    assert third.idle_polls == 1
    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.job.status == JobStatus.FAILED
    assert details.job.failure_class == FailureClass.TOOL_TRANSIENT
    assert details.job.attempt == 2
    assert details.job.last_exit_code == 75
    retry_event = next(event for event in details.events if event.event_type == "retry_scheduled")
    assert retry_event.details["reason_code"] == "tool_transient"
    assert retry_event.details["transform_id"] == "markdown:html"


def test_malformed_output_retries_once(
    tmp_path: Path,
    repository: JobQueueRepository,
    store: LocalObjectStore,
    make_echo_transform,
) -> None:
    registry = _registry_with(make_echo_transform(extra_args="--skip-metadata"))
    job = _ingest(repository, store, registry, max_attempts=4).jobs[0]
    worker = _worker(repository, store, registry, tmp_path)

    summary = worker.run_loop(max_idle_polls=1)

    assert summary.processed == 2
    assert summary.retried == 1
    assert summary.failed == 1
    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.job.failure_class == FailureClass.MALFORMED_OUTPUT
    assert details.job.attempt == 2


def test_wall_clock_breach_is_resource_exceeded(
    tmp_path: Path,
    repository: JobQueueRepository,
    store: LocalObjectStore,
    make_echo_transform,
) -> None:
    spec = replace(
        make_echo_transform(extra_args="--sleep 30"),
        limits=SandboxLimits(wall_clock_seconds=0.5),
    )
    registry = _registry_with(spec)
    job = _ingest(repository, store, registry, max_attempts=1).jobs[0]

    summary = _worker(repository, store, registry, tmp_path).run_once()

    assert summary.failed == 1
    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.job.failure_class == FailureClass.RESOURCE_EXCEEDED
    assert details.events[-1].details["ceiling"] == "wall_clock"


def test_unknown_transform_is_input_contract_error(
    tmp_path: Path,
    repository: JobQueueRepository,
    store: LocalObjectStore,
    echo_registry: TransformRegistry,
) -> None:
    job = _ingest(repository, store, echo_registry).jobs[0]

    summary = _worker(repository, store, TransformRegistry([]), tmp_path).run_once()

    assert summary.failed == 1
    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.job.failure_class == FailureClass.INPUT_CONTRACT_ERROR
    assert details.job.attempt == 1


def test_corrupt_manifest_fails_job_instead_of_stranding_lease(
    tmp_path: Path,
    repository: JobQueueRepository,
    store: LocalObjectStore,
    echo_registry: TransformRegistry,
) -> None:
    job = _ingest(repository, store, echo_registry).jobs[0]
    (store.root / "item-1" / "item.json").write_text("{not json", "utf-8")

    summary = _worker(repository, store, echo_registry, tmp_path).run_once()

    assert summary.failed == 1
    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.job.status == JobStatus.FAILED
    assert details.job.failure_class == FailureClass.INPUT_CONTRACT_ERROR
    assert details.job.lease_id is None
    assert details.events[-1].details["exception_type"] == "JSONDecodeError"


class _CrashingSandbox:
    def run(self, request: SandboxRunRequest) -> SandboxRunResult:
        raise RuntimeError("sandbox backend crashed")


def test_unexpected_sandbox_error_is_retried(
    tmp_path: Path,
    repository: JobQueueRepository,
    store: LocalObjectStore,
    echo_registry: TransformRegistry,
) -> None:
    job = _ingest(repository, store, echo_registry, max_attempts=2).jobs[0]
    worker = TransformWorker(
        repository=repository,
        gateway=store,
        sandbox=_CrashingSandbox(),
        registry=echo_registry,
        workdir_root=tmp_path / "work",
        worker_id="worker-test",
        settings=FAST_RETRY,
    )

    summary = worker.run_loop(max_idle_polls=1)

    assert summary.retried == 1
    assert summary.failed == 1
    details = repository.get_job_details(job_id=job.job_id)
    assert details is not None
    assert details.job.status == JobStatus.FAILED
    assert details.job.failure_class == FailureClass.TOOL_TRANSIENT
    assert "sandbox backend crashed" in (details.job.error_summary or "")
    retry_event = next(event for event in details.events if event.event_type == "retry_scheduled")
    assert retry_event.details["reason_code"] == "unexpected_error"


def test_multiple_outputs_become_separate_variants(
    tmp_path: Path,
    repository: JobQueueRepository,
    store: LocalObjectStore,
    make_echo_transform,
) -> None:
    registry = _registry_with(
        make_echo_transform(
            transform_id="mermaid:render",
            kinds=("mermaid",),
            outputs=(
                OutputSpec(media_type="image/svg+xml", options={"theme": "dark"}),
                OutputSpec(media_type="text/html"),
            ),
        ),
    )
    _ingest(
        repository,
        store,
        registry,
        blocks=[{"id": "d1", "kind": "mermaid", "payload": "graph TD; A-->B"}],
    )

    _worker(repository, store, registry, tmp_path).run_once()

    item, _ = store.read_manifest("item-1")
    media_types = [variant.media_type for variant in item.blocks[0].variants]
    assert media_types == ["image/svg+xml", "text/html"]
    assert len({variant.uri for variant in item.blocks[0].variants}) == 2


def test_run_loop_honors_max_jobs(
    tmp_path: Path,
    repository: JobQueueRepository,
    store: LocalObjectStore,
    echo_registry: TransformRegistry,
) -> None:
    _ingest(
        repository,
        store,
        echo_registry,
        blocks=[_markdown_block("b1"), _markdown_block("b2")],
    )
    worker = _worker(repository, store, echo_registry, tmp_path)

    summary = worker.run_loop(max_jobs=1)

    assert summary.processed == 1
    assert repository.count_by_status()[JobStatus.QUEUED] == 1


def test_stopped_worker_does_not_lease(
    tmp_path: Path,
    repository: JobQueueRepository,
    store: LocalObjectStore,
    echo_registry: TransformRegistry,
) -> None:
    _ingest(repository, store, echo_registry)
    worker = _worker(repository, store, echo_registry, tmp_path)
    worker.request_stop()

    summary = worker.run_once()

    assert summary.processed == 0
    assert repository.count_by_status()[JobStatus.QUEUED] == 1


def test_worker_pool_drains_queue(
    tmp_path: Path,
    repository: JobQueueRepository,
    store: LocalObjectStore,
    echo_registry: TransformRegistry,
) -> None:
    blocks = [_markdown_block(f"b{index}", f"# Block {index}") for index in range(4)]
    _ingest(repository, store, echo_registry, blocks=blocks)
    messages: list[str] = []

    summary = WorkerPool(
        size=2,
        db_path=repository.db_path,
        gateway=store,
        sandbox=LocalSandboxRunner(network_isolation=namespace_isolation_available()),
        registry=echo_registry,
        workdir_root=tmp_path / "work",
        settings=FAST_RETRY,
    ).run(max_idle_polls=2, on_progress=messages.append)

    assert summary.completed == 4
    assert repository.count_by_status()[JobStatus.COMPLETED] == 4
    item, _ = store.read_manifest("item-1")
    assert all(len(block.variants) == 1 for block in item.blocks)
    assert messages[0] == "Started 2 worker thread(s)"
