"""Sandboxed execution of external transform tools."""

from portable_content.pipeline.sandbox.base import (
    ProducedOutput,
    SandboxLimits,
    SandboxRunner,
    SandboxRunRequest,
    SandboxRunResult,
)
from portable_content.pipeline.sandbox.runner import LocalSandboxRunner

__all__ = [
    "LocalSandboxRunner",
    "ProducedOutput",
    "SandboxLimits",
    "SandboxRunRequest",
    "SandboxRunResult",
    "SandboxRunner",
]
