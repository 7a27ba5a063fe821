"""Sandbox interface for isolated transform tool execution."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol


@dataclass(frozen=True, slots=True)
class SandboxLimits:
    """Hard resource ceilings for one tool invocation."""

    wall_clock_seconds: float = 120.0
    cpu_seconds: int = 60
    memory_mb: int = 1024
    open_files: int = 256
    max_processes: int = 64

    def to_metadata(self) -> dict[str, object]:
        return {
            "wall_clock_seconds": self.wall_clock_seconds,
            "cpu_seconds": self.cpu_seconds,
            "memory_mb": self.memory_mb,
            "open_files": self.open_files,
            "max_processes": self.max_processes,
        }

    @classmethod
    def from_dict(cls, raw: dict[str, Any], *, base: SandboxLimits | None = None) -> SandboxLimits:
        defaults = base or cls()
        return cls(
            wall_clock_seconds=float(raw.get("wallClockSeconds", defaults.wall_clock_seconds)),
            cpu_seconds=int(raw.get("cpuSeconds", defaults.cpu_seconds)),
            memory_mb=int(raw.get("memoryMb", defaults.memory_mb)),
            open_files=int(raw.get("openFiles", defaults.open_files)),
            max_processes=int(raw.get("maxProcesses", defaults.max_processes)),
        )


@dataclass(slots=True)
class SandboxRunRequest:
    """Inputs required to execute one transform tool invocation."""

    tool_image: str
    input_dir: Path
    output_dir: Path
    meta_dir: Path
    outputs: list[dict[str, Any]]
    limits: SandboxLimits
    shutdown_requested: Callable[[], bool] | None = None


@dataclass(slots=True)
class ProducedOutput:
    """One verified output file from a successful run."""

    media_type: str
    path: Path
    byte_size: int
    content_hash: str
    width: int | None = None
    height: int | None = None


@dataclass(slots=True)
class SandboxRunResult:
    """Verified outcome of a successful sandbox run."""

    outputs: list[ProducedOutput]
    tool_name: str
    tool_version: str
    generated_at: str | None
    exit_code: int
    duration_seconds: float
    stdout_path: Path
    stderr_path: Path
    details: dict[str, Any] = field(default_factory=dict)


class SandboxRunner(Protocol):
    """Protocol implemented by sandbox runners."""

    def run(self, request: SandboxRunRequest) -> SandboxRunResult:
        """Run a tool invocation, raising a pipeline error on any failure."""
