"""Runtime configuration for the transform pipeline."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from portable_content.pipeline.sandbox.base import SandboxLimits
from portable_content.pipeline.sandbox.runner import ISOLATION_MODES
from portable_content.pipeline.worker import WorkerOptions


@dataclass(slots=True)
class WorkerSettings:
    """Queue consumption and retry settings."""

    pool_size: int = 2
    lease_seconds: int = 600
    poll_interval_seconds: float = 1.0
    max_attempts: int = 4
    retry_base_seconds: float = 5.0
    retry_max_seconds: float = 300.0
    malformed_output_max_attempts: int = 2
    reconcile_max_attempts: int = 5
    keep_workdirs: bool = False

    def to_options(self, *, publish_convention_keys: bool) -> WorkerOptions:
        return WorkerOptions(
            lease_seconds=self.lease_seconds,
            poll_interval_seconds=self.poll_interval_seconds,
            retry_base_seconds=self.retry_base_seconds,
            retry_max_seconds=self.retry_max_seconds,
            malformed_output_max_attempts=self.malformed_output_max_attempts,
            reconcile_max_attempts=self.reconcile_max_attempts,
            publish_convention_keys=publish_convention_keys,
            keep_workdirs=self.keep_workdirs,
        )


@dataclass(slots=True)
class SandboxSettings:
    """Tool isolation mode and default resource ceilings."""

    isolation: str = "process"
    network_isolation: bool = True
    docker_binary: str = "docker"
    wall_clock_seconds: float = 120.0
    cpu_seconds: int = 60
    memory_mb: int = 1024
    open_files: int = 256
    max_processes: int = 64
    transient_exit_codes: tuple[int, ...] = (75, 143)

    def limits(self) -> SandboxLimits:
        return SandboxLimits(
            wall_clock_seconds=self.wall_clock_seconds,
            cpu_seconds=self.cpu_seconds,
            memory_mb=self.memory_mb,
            open_files=self.open_files,
            max_processes=self.max_processes,
        )


@dataclass(slots=True)
class StorageSettings:
    """Object store location and HTTP access for remote inputs."""

    root: Path = Path(".portable_content/store")
    workdir_root: Path = Path(".portable_content/work")
    publish_convention_keys: bool = True
    http_timeout_seconds: float = 30.0
    http_max_retries: int = 3


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    db_path: Path = Path(".portable_content.db")
    registry_path: Path | None = None
    worker: WorkerSettings = field(default_factory=WorkerSettings)
    sandbox: SandboxSettings = field(default_factory=SandboxSettings)
    storage: StorageSettings = field(default_factory=StorageSettings)

    @classmethod
    def from_env(cls, db_path: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        registry_raw = os.getenv("PORTABLE_CONTENT_REGISTRY_PATH", "").strip()
        return cls(
            db_path=db_path or Path(os.getenv("PORTABLE_CONTENT_DB_PATH", ".portable_content.db")),
            registry_path=Path(registry_raw) if registry_raw else None,
            worker=WorkerSettings(
                pool_size=int(os.getenv("PORTABLE_CONTENT_WORKER_POOL_SIZE", "2")),
                lease_seconds=int(os.getenv("PORTABLE_CONTENT_LEASE_SECONDS", "600")),
                poll_interval_seconds=float(
                    os.getenv("PORTABLE_CONTENT_POLL_INTERVAL_SECONDS", "1.0"),
                ),
                max_attempts=int(os.getenv("PORTABLE_CONTENT_MAX_ATTEMPTS", "4")),
                retry_base_seconds=float(os.getenv("PORTABLE_CONTENT_RETRY_BASE_SECONDS", "5")),
                retry_max_seconds=float(os.getenv("PORTABLE_CONTENT_RETRY_MAX_SECONDS", "300")),
                malformed_output_max_attempts=int(
                    os.getenv("PORTABLE_CONTENT_MALFORMED_OUTPUT_MAX_ATTEMPTS", "2"),
                ),
                reconcile_max_attempts=int(
                    os.getenv("PORTABLE_CONTENT_RECONCILE_MAX_ATTEMPTS", "5"),
                ),
                keep_workdirs=_env_bool("PORTABLE_CONTENT_KEEP_WORKDIRS", default=False),
            ),
            sandbox=SandboxSettings(
                isolation=os.getenv("PORTABLE_CONTENT_SANDBOX_ISOLATION", "process").strip(),
                network_isolation=_env_bool(
                    "PORTABLE_CONTENT_SANDBOX_NETWORK_ISOLATION",
                    default=True,
                ),
                docker_binary=os.getenv("PORTABLE_CONTENT_DOCKER_BINARY", "docker"),
                wall_clock_seconds=float(
                    os.getenv("PORTABLE_CONTENT_SANDBOX_WALL_CLOCK_SECONDS", "120"),
                ),
                cpu_seconds=int(os.getenv("PORTABLE_CONTENT_SANDBOX_CPU_SECONDS", "60")),
                memory_mb=int(os.getenv("PORTABLE_CONTENT_SANDBOX_MEMORY_MB", "1024")),
                open_files=int(os.getenv("PORTABLE_CONTENT_SANDBOX_OPEN_FILES", "256")),
                max_processes=int(os.getenv("PORTABLE_CONTENT_SANDBOX_MAX_PROCESSES", "64")),
                transient_exit_codes=_env_int_tuple(
                    "PORTABLE_CONTENT_SANDBOX_TRANSIENT_EXIT_CODES",
                    default=(75, 143),
                ),
            ),
            storage=StorageSettings(
                root=Path(os.getenv("PORTABLE_CONTENT_STORE_ROOT", ".portable_content/store")),
                workdir_root=Path(
                    os.getenv("PORTABLE_CONTENT_WORKDIR_ROOT", ".portable_content/work"),
                ),
                publish_convention_keys=_env_bool(
                    "PORTABLE_CONTENT_PUBLISH_CONVENTION_KEYS",
                    default=True,
                ),
                http_timeout_seconds=float(
                    os.getenv("PORTABLE_CONTENT_HTTP_TIMEOUT_SECONDS", "30"),
                ),
                http_max_retries=int(os.getenv("PORTABLE_CONTENT_HTTP_MAX_RETRIES", "3")),
            ),
        )

    def validate(self) -> None:
        """Raise configuration error for unbounded or inconsistent settings."""

        worker = self.worker
        sandbox = self.sandbox
        if worker.pool_size <= 0:
            raise ValueError("PORTABLE_CONTENT_WORKER_POOL_SIZE must be > 0.")
        if worker.max_attempts <= 0:
            raise ValueError("PORTABLE_CONTENT_MAX_ATTEMPTS must be > 0.")
        if worker.malformed_output_max_attempts <= 0:
            raise ValueError("PORTABLE_CONTENT_MALFORMED_OUTPUT_MAX_ATTEMPTS must be > 0.")
        if worker.reconcile_max_attempts <= 0:
            raise ValueError("PORTABLE_CONTENT_RECONCILE_MAX_ATTEMPTS must be > 0.")
        if worker.retry_base_seconds < 0 or worker.retry_max_seconds < worker.retry_base_seconds:
            raise ValueError(
                "Retry backoff requires 0 <= PORTABLE_CONTENT_RETRY_BASE_SECONDS "
                "<= PORTABLE_CONTENT_RETRY_MAX_SECONDS.",
            )
        if worker.poll_interval_seconds < 0:
            raise ValueError("PORTABLE_CONTENT_POLL_INTERVAL_SECONDS must be >= 0.")
        if sandbox.isolation not in ISOLATION_MODES:
            raise ValueError(
                f"PORTABLE_CONTENT_SANDBOX_ISOLATION must be one of {', '.join(ISOLATION_MODES)}.",
            )
        for name, value in (
            ("WALL_CLOCK_SECONDS", sandbox.wall_clock_seconds),
            ("CPU_SECONDS", sandbox.cpu_seconds),
            ("MEMORY_MB", sandbox.memory_mb),
            ("OPEN_FILES", sandbox.open_files),
            ("MAX_PROCESSES", sandbox.max_processes),
        ):
            if value <= 0:
                raise ValueError(f"PORTABLE_CONTENT_SANDBOX_{name} must be > 0.")
        if worker.lease_seconds <= sandbox.wall_clock_seconds:
            raise ValueError(
                "PORTABLE_CONTENT_LEASE_SECONDS must be longer than "
                "PORTABLE_CONTENT_SANDBOX_WALL_CLOCK_SECONDS.",
            )
        if self.storage.http_timeout_seconds <= 0:
            raise ValueError("PORTABLE_CONTENT_HTTP_TIMEOUT_SECONDS must be > 0.")
        if self.storage.http_max_retries < 0:
            raise ValueError("PORTABLE_CONTENT_HTTP_MAX_RETRIES must be >= 0.")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")


def _env_int_tuple(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return tuple(int(part.strip()) for part in raw.split(",") if part.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer list for {name}: {raw!r}") from error
