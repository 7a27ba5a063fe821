"""Controllers for pipeline CLI commands."""

from __future__ import annotations

import json
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from portable_content.config import Settings
from portable_content.http.fetcher import HttpFetcher
from portable_content.pipeline.contracts import load_json
from portable_content.pipeline.manifest import Variant
from portable_content.pipeline.models import JobStatus
from portable_content.pipeline.registry import TransformRegistry, default_registry
from portable_content.pipeline.repository import JobQueueRepository
from portable_content.pipeline.sandbox import LocalSandboxRunner
from portable_content.pipeline.selector import Capabilities, Hints, NetworkClass
from portable_content.pipeline.services import IngestContent, IngestionService, ReadService
from portable_content.pipeline.worker import TransformWorker, WorkerPool, WorkerRunSummary
from portable_content.storage.alembic_runner import current_revision
from portable_content.storage.gateway import LocalObjectStore


@dataclass(slots=True)
class IngestCommand:
    """CLI input for content ingestion from a JSON document."""

    db_path: Path | None
    content_path: Path
    priority: int = 100


@dataclass(slots=True)
class RefreshCommand:
    """CLI input for re-enqueuing transforms of an existing item."""

    db_path: Path | None
    content_id: str
    block_id: str | None = None
    transform_id: str | None = None
    priority: int = 100


@dataclass(slots=True)
class SelectCommand:
    """CLI input for variant selection."""

    content_id: str
    accept: tuple[str, ...]
    block_id: str | None = None
    width: int | None = None
    height: int | None = None
    density: float | None = None
    network: str | None = None
    max_bytes: int | None = None
    explain: bool = False


@dataclass(slots=True)
class ResolveCommand:
    """CLI input for block payload resolution."""

    content_id: str
    block_id: str


@dataclass(slots=True)
class WorkerCommand:
    """CLI input for worker execution."""

    db_path: Path | None
    once: bool
    max_jobs: int | None
    max_idle_polls: int = 1
    pool_size: int | None = None


@dataclass(slots=True)
class ListJobsCommand:
    """CLI input for job listing."""

    db_path: Path | None
    status: str | None
    content_id: str | None
    limit: int


@dataclass(slots=True)
class InspectJobCommand:
    """CLI input for job inspection."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class MutateJobCommand:
    """CLI input for retry/cancel operations."""

    db_path: Path | None
    job_id: str


@dataclass(slots=True)
class QueueCommand:
    """CLI input for queue-wide operations (stats, lease recovery)."""

    db_path: Path | None


class PipelineCliController:
    """Coordinates ingestion, worker, selection, and job inspection CLI operations."""

    def ingest(self, command: IngestCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        raw = load_json(command.content_path)
        content = IngestContent.from_dict(raw, priority=command.priority)
        with _repository(settings) as repository, _gateway(settings) as gateway:
            service = IngestionService(
                repository=repository,
                gateway=gateway,
                registry=_registry(settings),
                max_attempts=settings.worker.max_attempts,
            )
            result = service.ingest(content)

        lines = [
            f"Content ingested: content_id={result.item.id} type={result.item.type} "
            f"blocks={len(result.item.blocks)} jobs={len(result.jobs)}",
        ]
        for job in result.jobs:
            lines.append(
                f"  {job.job_id} block={job.block_id} transform={job.transform_id} "
                f"status={job.status.value}",
            )
        return lines

    def refresh(self, command: RefreshCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository, _gateway(settings) as gateway:
            service = IngestionService(
                repository=repository,
                gateway=gateway,
                registry=_registry(settings),
                max_attempts=settings.worker.max_attempts,
            )
            jobs = service.refresh(
                command.content_id,
                block_id=command.block_id,
                transform_id=command.transform_id,
                priority=command.priority,
            )
        lines = [f"Jobs enqueued: {len(jobs)}"]
        for job in jobs:
            lines.append(f"  {job.job_id} block={job.block_id} transform={job.transform_id}")
        return lines

    def select(self, command: SelectCommand) -> list[str]:
        settings = Settings.from_env()
        capabilities = Capabilities.create(
            command.accept,
            Hints(
                width=command.width,
                height=command.height,
                density=command.density,
                network=NetworkClass(command.network.upper()) if command.network else None,
                max_bytes=command.max_bytes,
            ),
        )
        with _gateway(settings) as gateway:
            selections = ReadService(gateway=gateway).select(
                command.content_id,
                capabilities,
                block_id=command.block_id,
            )

        lines: list[str] = []
        for selection in selections:
            suffix = " (fallback)" if selection.fallback else ""
            lines.append(
                f"block={selection.block_id} kind={selection.kind} "
                f"variant={_describe_variant(selection.variant)}{suffix}",
            )
            if not command.explain:
                continue
            for scored in selection.ranked:
                terms = " ".join(f"{name}={value:.3f}" for name, value in scored.terms.items())
                lines.append(
                    f"  score={scored.score:.6f} weight={scored.media_weight:.3f} "
                    f"{_describe_variant(scored.variant)} {terms}".rstrip(),
                )
        return lines

    def resolve(self, command: ResolveCommand) -> list[str]:
        settings = Settings.from_env()
        with _gateway(settings) as gateway:
            content = ReadService(gateway=gateway).resolve_payload(
                command.content_id,
                command.block_id,
            )
        if content is None:
            return [f"Block {command.block_id} has no resolvable payload source"]
        lines = [
            f"Content type: {content.content_type}",
            f"Bytes: {len(content.as_bytes())}",
        ]
        if content.metadata:
            lines.append(f"Metadata: {json.dumps(content.metadata, sort_keys=True)}")
        if isinstance(content.data, str):
            lines.append(content.data)
        return lines

    def run_worker(self, command: WorkerCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        if command.pool_size is not None:
            settings.worker.pool_size = command.pool_size
        settings.validate()

        registry = _registry(settings)
        sandbox = LocalSandboxRunner(
            isolation=settings.sandbox.isolation,
            network_isolation=settings.sandbox.network_isolation,
            docker_binary=settings.sandbox.docker_binary,
            transient_exit_codes=settings.sandbox.transient_exit_codes,
        )
        options = settings.worker.to_options(
            publish_convention_keys=settings.storage.publish_convention_keys,
        )
        with _repository(settings) as repository, _gateway(settings) as gateway:
            if command.once or settings.worker.pool_size == 1:
                worker = TransformWorker(
                    repository=repository,
                    gateway=gateway,
                    sandbox=sandbox,
                    registry=registry,
                    workdir_root=settings.storage.workdir_root,
                    worker_id=f"worker-{settings.db_path.stem}",
                    settings=options,
                    default_limits=settings.sandbox.limits(),
                )
                summary: WorkerRunSummary = (
                    worker.run_once()
                    if command.once
                    else worker.run_loop(
                        max_jobs=command.max_jobs,
                        max_idle_polls=command.max_idle_polls,
                    )
                )
            else:
                pool = WorkerPool(
                    size=settings.worker.pool_size,
                    db_path=settings.db_path,
                    gateway=gateway,
                    sandbox=sandbox,
                    registry=registry,
                    workdir_root=settings.storage.workdir_root,
                    settings=options,
                    default_limits=settings.sandbox.limits(),
                )
                summary = pool.run(max_idle_polls=command.max_idle_polls)

        return [
            "Worker summary: "
            f"processed={summary.processed} completed={summary.completed} "
            f"failed={summary.failed} retried={summary.retried} "
            f"idle_polls={summary.idle_polls}",
        ]

    def list_jobs(self, command: ListJobsCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        status_filter = _parse_status(command.status)
        with _repository(settings) as repository:
            jobs = repository.list_jobs(
                status=status_filter,
                content_id=command.content_id,
                limit=command.limit,
            )

        lines = [f"Jobs: {len(jobs)}"]
        for job in jobs:
            lines.append(
                f"  {job.job_id} {job.content_id}/{job.block_id} transform={job.transform_id} "
                f"status={job.status.value} priority={job.priority} "
                f"attempt={job.attempt}/{job.max_attempts} run_after={job.run_after.isoformat()}",
            )
        return lines

    def inspect_job(self, command: InspectJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            details = repository.get_job_details(job_id=command.job_id)
        if details is None:
            return [f"Job not found: {command.job_id}"]

        job = details.job
        lines = [
            f"Job: {job.job_id}",
            f"Target: {job.content_id}/{job.block_id}",
            f"Transform: {job.transform_id}",
            f"Status: {job.status.value}",
            f"Attempt: {job.attempt}/{job.max_attempts}",
            f"Worker: {job.worker_id or '-'}",
            f"Failure class: {job.failure_class.value if job.failure_class else '-'}",
            f"Exit code: {job.last_exit_code if job.last_exit_code is not None else '-'}",
            f"Error: {job.error_summary or '-'}",
            f"Events: {len(details.events)}",
        ]
        for event in details.events:
            line = (
                f"  {event.created_at.isoformat()} {event.event_type} "
                f"{event.status_from.value if event.status_from else '-'} -> "
                f"{event.status_to.value if event.status_to else '-'}"
            )
            if event.details:
                line += f" {json.dumps(event.details, sort_keys=True)}"
            lines.append(line)
        return lines

    def retry_job(self, command: MutateJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.retry_job(job_id=command.job_id)
        return [f"Job re-queued: {command.job_id}"]

    def cancel_job(self, command: MutateJobCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            repository.cancel_job(job_id=command.job_id)
        return [f"Job canceled: {command.job_id}"]

    def stats(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            counts = repository.count_by_status()
        return [
            "Queue: " + " ".join(f"{status.value}={count}" for status, count in counts.items()),
            f"Schema revision: {current_revision(settings.db_path) or '-'}",
        ]

    def recover_leases(self, command: QueueCommand) -> list[str]:
        settings = Settings.from_env(db_path=command.db_path)
        with _repository(settings) as repository:
            recovery = repository.recover_expired_leases()
        return [f"Expired leases: requeued={recovery.requeued} failed={recovery.failed}"]


def _parse_status(value: str | None) -> JobStatus | None:
    if value is None:
        return None
    return JobStatus(value.strip().lower())


def _describe_variant(variant: Variant | None) -> str:
    if variant is None:
        return "-"
    size = f" bytes={variant.byte_size}" if variant.byte_size is not None else ""
    return f"{variant.media_type} uri={variant.uri or '-'}{size}"


def _registry(settings: Settings) -> TransformRegistry:
    if settings.registry_path is not None:
        return TransformRegistry.from_file(settings.registry_path)
    return default_registry()


@contextmanager
def _repository(settings: Settings) -> Iterator[JobQueueRepository]:
    repository = JobQueueRepository(settings.db_path)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@contextmanager
def _gateway(settings: Settings) -> Iterator[LocalObjectStore]:
    gateway = LocalObjectStore(
        settings.storage.root,
        fetcher=HttpFetcher(
            timeout_seconds=settings.storage.http_timeout_seconds,
            max_retries=settings.storage.http_max_retries,
        ),
    )
    try:
        yield gateway
    finally:
        gateway.close()
