"""CLI entrypoint for portable-content."""

import logging
from collections.abc import Callable
from pathlib import Path
from typing import TypeVar

import rich_click as click

from portable_content import __version__
from portable_content.pipeline.controllers import (
    IngestCommand,
    InspectJobCommand,
    ListJobsCommand,
    MutateJobCommand,
    PipelineCliController,
    QueueCommand,
    RefreshCommand,
    ResolveCommand,
    SelectCommand,
    WorkerCommand,
)
from portable_content.pipeline.selector import NetworkClass

click.rich_click.USE_MARKDOWN = True
PIPELINE_CONTROLLER = PipelineCliController()
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
CommandT = TypeVar("CommandT")


@click.group()
@click.version_option(version=__version__, prog_name="portable-content")
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default="WARNING",
    show_default=True,
    help="Logging verbosity for pipeline diagnostics.",
)
def portable_content(log_level: str) -> None:
    """Portable content transform pipeline CLI."""

    logging.basicConfig(level=log_level.upper(), format=LOG_FORMAT)


@portable_content.command("ingest")
@click.argument("content_path", type=click.Path(path_type=Path, exists=True, dir_okay=False))
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--priority",
    type=click.IntRange(min=0),
    default=100,
    show_default=True,
    help="Job priority (lower runs first).",
)
def ingest(content_path: Path, db_path: Path | None, priority: int) -> None:
    """Store a content item from a JSON file and enqueue its transforms."""

    _emit_lines(
        _call(
            PIPELINE_CONTROLLER.ingest,
            IngestCommand(db_path=db_path, content_path=content_path, priority=priority),
        ),
    )


@portable_content.command("refresh")
@click.argument("content_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option("--block-id", default=None, help="Only refresh this block.")
@click.option("--transform-id", default=None, help="Only run this transform.")
@click.option(
    "--priority",
    type=click.IntRange(min=0),
    default=100,
    show_default=True,
    help="Job priority (lower runs first).",
)
def refresh(
    content_id: str,
    db_path: Path | None,
    block_id: str | None,
    transform_id: str | None,
    priority: int,
) -> None:
    """Re-enqueue transforms for an already stored content item."""

    _emit_lines(
        _call(
            PIPELINE_CONTROLLER.refresh,
            RefreshCommand(
                db_path=db_path,
                content_id=content_id,
                block_id=block_id,
                transform_id=transform_id,
                priority=priority,
            ),
        ),
    )


@portable_content.command("select")
@click.argument("content_id")
@click.option(
    "--accept",
    "accept",
    multiple=True,
    required=True,
    help="Accepted media range, e.g. `image/*;q=0.8`. Can be repeated.",
)
@click.option("--block-id", default=None, help="Only select for this block.")
@click.option("--width", type=click.IntRange(min=1), default=None, help="Viewport width hint.")
@click.option("--height", type=click.IntRange(min=1), default=None, help="Viewport height hint.")
@click.option("--density", type=click.FloatRange(min=0, min_open=True), default=None)
@click.option(
    "--network",
    type=click.Choice([item.value for item in NetworkClass], case_sensitive=False),
    default=None,
    help="Network class hint.",
)
@click.option("--max-bytes", type=click.IntRange(min=1), default=None, help="Byte ceiling.")
@click.option("--explain", is_flag=True, default=False, help="Print score breakdown.")
def select(  # noqa: PLR0913
    content_id: str,
    accept: tuple[str, ...],
    block_id: str | None,
    width: int | None,
    height: int | None,
    density: float | None,
    network: str | None,
    max_bytes: int | None,
    explain: bool,
) -> None:
    """Pick the best variant per block for the given client capabilities."""

    _emit_lines(
        _call(
            PIPELINE_CONTROLLER.select,
            SelectCommand(
                content_id=content_id,
                accept=accept,
                block_id=block_id,
                width=width,
                height=height,
                density=density,
                network=network,
                max_bytes=max_bytes,
                explain=explain,
            ),
        ),
    )


@portable_content.command("resolve")
@click.argument("content_id")
@click.argument("block_id")
def resolve(content_id: str, block_id: str) -> None:
    """Resolve a block's primary payload (inline or external)."""

    _emit_lines(
        _call(
            PIPELINE_CONTROLLER.resolve,
            ResolveCommand(content_id=content_id, block_id=block_id),
        ),
    )


@portable_content.command("worker")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--once/--loop",
    default=True,
    show_default=True,
    help="Run one lease-execute cycle or loop until idle.",
)
@click.option(
    "--max-jobs",
    type=click.IntRange(min=1),
    default=None,
    help="Optional cap for processed jobs in single-worker loop mode.",
)
@click.option(
    "--max-idle-polls",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Consecutive empty polls before a worker exits.",
)
@click.option(
    "--pool-size",
    type=click.IntRange(min=1),
    default=None,
    help="Worker threads in loop mode (defaults to PORTABLE_CONTENT_WORKER_POOL_SIZE).",
)
def worker(
    db_path: Path | None,
    once: bool,
    max_jobs: int | None,
    max_idle_polls: int,
    pool_size: int | None,
) -> None:
    """Run transform workers against the job queue."""

    _emit_lines(
        _call(
            PIPELINE_CONTROLLER.run_worker,
            WorkerCommand(
                db_path=db_path,
                once=once,
                max_jobs=max_jobs,
                max_idle_polls=max_idle_polls,
                pool_size=pool_size,
            ),
        ),
    )


@portable_content.group()
def jobs() -> None:
    """Job queue inspection and operator commands."""


@jobs.command("list")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
@click.option(
    "--status",
    type=click.Choice(
        ["queued", "leased", "completed", "failed", "canceled"],
        case_sensitive=False,
    ),
    default=None,
    help="Optional status filter.",
)
@click.option("--content-id", default=None, help="Optional content item filter.")
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=1000),
    default=50,
    show_default=True,
    help="Max number of jobs to print.",
)
def jobs_list(
    db_path: Path | None,
    status: str | None,
    content_id: str | None,
    limit: int,
) -> None:
    """List recent jobs."""

    _emit_lines(
        _call(
            PIPELINE_CONTROLLER.list_jobs,
            ListJobsCommand(db_path=db_path, status=status, content_id=content_id, limit=limit),
        ),
    )


@jobs.command("inspect")
@click.argument("job_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_inspect(job_id: str, db_path: Path | None) -> None:
    """Show job state and its event history."""

    _emit_lines(
        _call(PIPELINE_CONTROLLER.inspect_job, InspectJobCommand(db_path=db_path, job_id=job_id)),
    )


@jobs.command("retry")
@click.argument("job_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_retry(job_id: str, db_path: Path | None) -> None:
    """Re-queue a failed or canceled job."""

    _emit_lines(
        _call(PIPELINE_CONTROLLER.retry_job, MutateJobCommand(db_path=db_path, job_id=job_id)),
    )


@jobs.command("cancel")
@click.argument("job_id")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_cancel(job_id: str, db_path: Path | None) -> None:
    """Cancel a queued or leased job."""

    _emit_lines(
        _call(PIPELINE_CONTROLLER.cancel_job, MutateJobCommand(db_path=db_path, job_id=job_id)),
    )


@jobs.command("stats")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_stats(db_path: Path | None) -> None:
    """Show job counts per status."""

    _emit_lines(_call(PIPELINE_CONTROLLER.stats, QueueCommand(db_path=db_path)))


@jobs.command("recover")
@click.option("--db-path", type=click.Path(path_type=Path), default=None, help="SQLite DB path.")
def jobs_recover(db_path: Path | None) -> None:
    """Return expired leases to the queue (or fail them when out of attempts)."""

    _emit_lines(_call(PIPELINE_CONTROLLER.recover_leases, QueueCommand(db_path=db_path)))


def _call(handler: Callable[[CommandT], list[str]], command: CommandT) -> list[str]:
    try:
        return handler(command)
    except (LookupError, RuntimeError, TypeError, ValueError) as error:
        raise click.ClickException(str(error)) from error


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    portable_content()
