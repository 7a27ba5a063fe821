"""Queue workers that run transforms in the sandbox and reconcile manifests."""

from __future__ import annotations

import logging
import random
import signal
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Any, NamedTuple
from uuid import uuid4

from portable_content.pipeline.contracts import JobOutput, TransformJobDocument, parse_job_document
from portable_content.pipeline.errors import (
    InputContractError,
    MalformedOutput,
    NetworkError,
    PipelineError,
    ToolFailed,
)
from portable_content.pipeline.manifest import Variant
from portable_content.pipeline.models import TransformJobView
from portable_content.pipeline.naming import (
    content_key,
    extension_for,
    object_key,
    parse_media_type,
    source_hash_of,
    variant_storage_key,
)
from portable_content.pipeline.reconciler import ManifestReconciler
from portable_content.pipeline.registry import TransformRegistry, TransformSpec
from portable_content.pipeline.repository import JobQueueRepository
from portable_content.pipeline.sandbox.base import (
    ProducedOutput,
    SandboxLimits,
    SandboxRunner,
    SandboxRunRequest,
)
from portable_content.pipeline.workdir import JobWorkdir, JobWorkdirManager
from portable_content.storage.common import to_iso, utc_now
from portable_content.storage.gateway import ObjectNotFound, StorageGateway

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class WorkerRunSummary:
    """Aggregate worker counters for CLI reporting."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    idle_polls: int = 0

    def add(self, other: WorkerRunSummary) -> None:
        self.processed += other.processed
        self.completed += other.completed
        self.failed += other.failed
        self.retried += other.retried
        self.idle_polls += other.idle_polls


class RetryOutcome(NamedTuple):
    retried: bool
    failed: bool


@dataclass(slots=True)
class WorkerOptions:
    """Tunables shared by every worker of a pool."""

    lease_seconds: int = 600
    poll_interval_seconds: float = 1.0
    retry_base_seconds: float = 5.0
    retry_max_seconds: float = 300.0
    malformed_output_max_attempts: int = 2
    reconcile_max_attempts: int = 5
    publish_convention_keys: bool = True
    keep_workdirs: bool = False


class TransformWorker:
    """Consumes leased jobs: download, sandbox, upload, reconcile, acknowledge."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        repository: JobQueueRepository,
        gateway: StorageGateway,
        sandbox: SandboxRunner,
        registry: TransformRegistry,
        workdir_root: Path,
        worker_id: str,
        settings: WorkerOptions | None = None,
        default_limits: SandboxLimits | None = None,
        stop_event: threading.Event | None = None,
    ) -> None:
        self.repository = repository
        self.gateway = gateway
        self.sandbox = sandbox
        self.registry = registry
        self.worker_id = worker_id
        self.settings = settings or WorkerOptions()
        self.default_limits = default_limits or SandboxLimits()
        self.workdirs = JobWorkdirManager(workdir_root)
        self.reconciler = ManifestReconciler(
            gateway,
            max_attempts=self.settings.reconcile_max_attempts,
        )
        self._stop_event = stop_event or threading.Event()
        self._random = random.Random()  # noqa: S311

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def request_stop(self) -> None:
        self._stop_event.set()

    def run_once(self) -> WorkerRunSummary:
        """Process at most one job from the queue."""

        summary = WorkerRunSummary()
        if self.stop_requested:
            summary.idle_polls = 1
            return summary

        job = self.repository.lease_next_job(
            worker_id=self.worker_id,
            lease_seconds=self.settings.lease_seconds,
        )
        if job is None:
            summary.idle_polls = 1
            return summary

        summary.processed = 1
        lease_id = job.lease_id or ""
        logger.info(
            "Job %s leased: %s for %s/%s (attempt %d/%d)",
            job.job_id,
            job.transform_id,
            job.content_id,
            job.block_id,
            job.attempt,
            job.max_attempts,
        )
        try:
            details = self._execute(job)
        except PipelineError as error:
            outcome = self._handle_retry_or_fail(job=job, lease_id=lease_id, error=error)
            summary.retried = int(outcome.retried)
            summary.failed = int(outcome.failed)
            return summary
        except Exception as error:  # noqa: BLE001
            logger.exception("Job %s raised an unexpected error", job.job_id)
            outcome = self._handle_retry_or_fail(
                job=job,
                lease_id=lease_id,
                error=_unexpected_failure(error),
            )
            summary.retried = int(outcome.retried)
            summary.failed = int(outcome.failed)
            return summary

        if self.repository.complete_job(job_id=job.job_id, lease_id=lease_id, details=details):
            summary.completed = 1
            logger.info("Job %s completed: %s", job.job_id, details)
        else:
            logger.warning("Job %s finished after its lease was lost; ack skipped", job.job_id)
        return summary

    def run_loop(
        self,
        *,
        max_jobs: int | None = None,
        max_idle_polls: int | None = 1,
    ) -> WorkerRunSummary:
        """Run until the queue stays idle, ``max_jobs`` is reached, or stop is requested.

        Args:
            max_jobs: Stop after processing this many jobs (None = unlimited).
            max_idle_polls: Consecutive empty polls before exiting (None = never).
        """

        aggregate = WorkerRunSummary()
        consecutive_idle = 0
        with self._signal_handlers():
            while not self.stop_requested:
                if max_jobs is not None and aggregate.processed >= max_jobs:
                    break
                summary = self.run_once()
                aggregate.add(summary)
                if summary.processed == 0:
                    consecutive_idle += 1
                    if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                        break
                    self._stop_event.wait(timeout=self.settings.poll_interval_seconds)
                    continue
                consecutive_idle = 0
        return aggregate

    def _execute(self, job: TransformJobView) -> dict[str, object]:
        document = _load_document(job)
        spec = self.registry.get(document.transform_id)
        if spec is None:
            raise InputContractError(f"Unknown transform: {document.transform_id}")

        inputs = [(item.media_type, self._download(item.uri)) for item in document.inputs]
        source_hash = source_hash_of(data for _, data in inputs)
        workdir = self.workdirs.materialize(job_id=job.job_id, attempt=job.attempt, inputs=inputs)
        try:
            return self._run_and_publish(
                job=job,
                document=document,
                spec=spec,
                workdir=workdir,
                source_hash=source_hash,
            )
        finally:
            if not self.settings.keep_workdirs:
                self.workdirs.discard(workdir)

    def _run_and_publish(  # noqa: PLR0913
        self,
        *,
        job: TransformJobView,
        document: TransformJobDocument,
        spec: TransformSpec,
        workdir: JobWorkdir,
        source_hash: str,
    ) -> dict[str, object]:
        result = self.sandbox.run(
            SandboxRunRequest(
                tool_image=document.tool_image,
                input_dir=workdir.input_dir,
                output_dir=workdir.output_dir,
                meta_dir=workdir.meta_dir,
                outputs=[
                    {"mediaType": item.media_type, "options": item.options}
                    for item in document.outputs
                ],
                limits=spec.limits or self.default_limits,
                shutdown_requested=self._stop_event.is_set,
            ),
        )
        if not self.repository.extend_lease(
            job_id=job.job_id,
            lease_id=job.lease_id or "",
            lease_seconds=self.settings.lease_seconds,
        ):
            logger.warning("Job %s lease lost during sandbox run; publishing anyway", job.job_id)
            self.repository.add_job_event(
                job_id=job.job_id,
                event_type="lease_lost",
                details={"worker_id": self.worker_id, "lease_id": job.lease_id},
            )

        created_at = to_iso(utc_now())
        variants = [
            self._publish_output(
                document=document,
                spec=spec,
                output=output,
                source_hash=source_hash,
                created_at=created_at,
            )
            for output in result.outputs
        ]
        reconciled = self.reconciler.reconcile(document.content_id, document.block_id, variants)
        return {
            "worker_id": self.worker_id,
            "tool": f"{result.tool_name}@{result.tool_version}",
            "duration_seconds": round(result.duration_seconds, 3),
            "variants": [variant.uri for variant in variants],
            "variants_added": reconciled.added,
            "reconcile_attempts": reconciled.attempts,
        }

    def _publish_output(
        self,
        *,
        document: TransformJobDocument,
        spec: TransformSpec,
        output: ProducedOutput,
        source_hash: str,
        created_at: str,
    ) -> Variant:
        options = _options_for(output.media_type, document.outputs)
        cas_key = content_key(
            source_hash,
            spec.tool_identity,
            {"mediaType": output.media_type, "options": options},
            extension_for(output.media_type),
        )
        data = output.path.read_bytes()
        try:
            uri = self.gateway.put_bytes(object_key(cas_key), data)
            if self.settings.publish_convention_keys:
                self.gateway.put_bytes(
                    variant_storage_key(document.content_id, document.block_id, output.media_type),
                    data,
                )
        except OSError as error:
            raise NetworkError(f"Upload of {cas_key} failed: {error}") from error
        return Variant(
            media_type=output.media_type,
            uri=uri,
            width=output.width,
            height=output.height,
            byte_size=output.byte_size,
            content_hash=output.content_hash,
            generated_by=spec.id,
            tool_version=spec.tool_version,
            created_at=created_at,
        )

    def _download(self, uri: str) -> bytes:
        try:
            return self.gateway.download(uri)
        except (ObjectNotFound, ValueError) as error:
            raise InputContractError(str(error)) from error
        except OSError as error:
            raise NetworkError(f"Download of {uri} failed: {error}") from error

    def _handle_retry_or_fail(
        self,
        *,
        job: TransformJobView,
        lease_id: str,
        error: PipelineError,
    ) -> RetryOutcome:
        failure_class = error.failure_class
        retries_left = job.attempt < job.max_attempts
        retryable = error.transient
        if isinstance(error, MalformedOutput):
            retryable = job.attempt < self.settings.malformed_output_max_attempts
        details: dict[str, Any] = {
            **error.details,
            "worker_id": self.worker_id,
            "attempt": job.attempt,
            "transform_id": job.transform_id,
        }
        ceiling = getattr(error, "ceiling", None)
        if ceiling is not None:
            details["ceiling"] = ceiling
        reason_code = getattr(error, "reason_code", None)
        if reason_code is not None:
            details["reason_code"] = reason_code

        if retries_left and retryable:
            delay_seconds = self._compute_retry_delay(retry_number=job.attempt)
            retried = self.repository.schedule_retry(
                job_id=job.job_id,
                lease_id=lease_id,
                run_after=utc_now() + timedelta(seconds=delay_seconds),
                failure_class=failure_class,
                error_summary=str(error),
                last_exit_code=error.exit_code,
                details=details,
            )
            logger.warning(
                "Job %s attempt %d failed (%s), retry in %.1fs: %s",
                job.job_id,
                job.attempt,
                failure_class.value,
                delay_seconds,
                error,
            )
            return RetryOutcome(retried=retried, failed=False)

        failed = self.repository.fail_job(
            job_id=job.job_id,
            lease_id=lease_id,
            failure_class=failure_class,
            error_summary=str(error),
            last_exit_code=error.exit_code,
            details=details,
        )
        logger.error(
            "Job %s failed terminally (%s) after attempt %d: %s",
            job.job_id,
            failure_class.value,
            job.attempt,
            error,
        )
        return RetryOutcome(retried=False, failed=failed)

    def _compute_retry_delay(self, *, retry_number: int) -> float:
        max_delay = min(
            self.settings.retry_max_seconds,
            self.settings.retry_base_seconds * (2 ** max(retry_number - 1, 0)),
        )
        return self._random.uniform(0, max_delay)

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return

        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.warning("Received %s, stopping after current job", signal.Signals(signum).name)
            self.request_stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


class WorkerPool:
    """Fixed number of worker threads sharing only the queue database and storage."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        size: int,
        db_path: Path,
        gateway: StorageGateway,
        sandbox: SandboxRunner,
        registry: TransformRegistry,
        workdir_root: Path,
        settings: WorkerOptions | None = None,
        default_limits: SandboxLimits | None = None,
        busy_timeout_ms: int = 5000,
        worker_prefix: str = "worker",
    ) -> None:
        if size < 1:
            raise ValueError("Worker pool size must be >= 1")
        self.size = size
        self.db_path = db_path
        self.gateway = gateway
        self.sandbox = sandbox
        self.registry = registry
        self.workdir_root = workdir_root
        self.settings = settings or WorkerOptions()
        self.default_limits = default_limits
        self.busy_timeout_ms = busy_timeout_ms
        self.worker_prefix = worker_prefix
        self._stop = threading.Event()
        self._lock = threading.Lock()
        self._summary = WorkerRunSummary()

    def request_stop(self) -> None:
        self._stop.set()

    def run(
        self,
        *,
        max_idle_polls: int | None = 1,
        on_progress: Callable[[str], None] | None = None,
    ) -> WorkerRunSummary:
        """Start all workers, wait for them to finish, and return combined counters."""

        progress = on_progress or (lambda _msg: None)
        self._stop.clear()
        self._summary = WorkerRunSummary()
        run_tag = uuid4().hex[:6]
        threads = [
            threading.Thread(
                target=self._worker_loop,
                kwargs={
                    "worker_id": f"{self.worker_prefix}-{run_tag}-{index}",
                    "max_idle_polls": max_idle_polls,
                },
                daemon=True,
                name=f"{self.worker_prefix}-{index}",
            )
            for index in range(self.size)
        ]
        for thread in threads:
            thread.start()
        progress(f"Started {self.size} worker thread(s)")
        with self._signal_handlers():
            for thread in threads:
                while thread.is_alive():
                    thread.join(timeout=0.5)
        progress("All worker threads stopped")
        return self._summary

    def _worker_loop(self, *, worker_id: str, max_idle_polls: int | None) -> None:
        repository = JobQueueRepository(self.db_path, busy_timeout_ms=self.busy_timeout_ms)
        try:
            worker = TransformWorker(
                repository=repository,
                gateway=self.gateway,
                sandbox=self.sandbox,
                registry=self.registry,
                workdir_root=self.workdir_root,
                worker_id=worker_id,
                settings=self.settings,
                default_limits=self.default_limits,
                stop_event=self._stop,
            )
            consecutive_idle = 0
            while not self._stop.is_set():
                try:
                    summary = worker.run_once()
                except Exception:
                    logger.exception("Worker %s error", worker_id)
                    self._stop.wait(timeout=self.settings.poll_interval_seconds)
                    continue
                with self._lock:
                    self._summary.add(summary)
                if summary.processed:
                    consecutive_idle = 0
                    continue
                consecutive_idle += 1
                if max_idle_polls is not None and consecutive_idle >= max_idle_polls:
                    return
                self._stop.wait(timeout=self.settings.poll_interval_seconds)
        finally:
            repository.close()

    @contextmanager
    def _signal_handlers(self) -> Iterator[None]:
        if threading.current_thread() is not threading.main_thread():
            yield
            return
        original_sigint = signal.getsignal(signal.SIGINT)
        original_sigterm = signal.getsignal(signal.SIGTERM)

        def _handler(signum: int, _: object | None) -> None:
            logger.warning("Received %s, stopping worker pool", signal.Signals(signum).name)
            self.request_stop()

        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)


def _unexpected_failure(error: Exception) -> PipelineError:
    """Classify an error raised outside the pipeline taxonomy.

    Malformed data (a corrupt manifest, an unparsable document) cannot heal
    on retry and fails terminally; anything else spends the retry budget.
    """

    message = f"Unexpected {type(error).__name__}: {error}"
    details: dict[str, object] = {"exception_type": type(error).__name__}
    if isinstance(error, ValueError):
        return InputContractError(message, details=details)
    return ToolFailed(
        message,
        exit_code=None,
        transient=True,
        reason_code="unexpected_error",
        details=details,
    )


def _load_document(job: TransformJobView) -> TransformJobDocument:
    try:
        document = parse_job_document(job.document)
    except (TypeError, ValueError) as error:
        raise InputContractError(f"Invalid job document for {job.job_id}: {error}") from error
    if (document.content_id, document.block_id) != (job.content_id, job.block_id):
        raise InputContractError(f"Job document of {job.job_id} targets a different block")
    return document


def _options_for(media_type: str, requested: list[JobOutput]) -> dict[str, Any]:
    """Options of the requested output that produced ``media_type``."""

    for item in requested:
        if item.media_type == media_type:
            return dict(item.options)
    base, _ = parse_media_type(media_type)
    for item in requested:
        if parse_media_type(item.media_type)[0] == base:
            return dict(item.options)
    return {}
