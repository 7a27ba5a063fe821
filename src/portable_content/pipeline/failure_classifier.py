"""Deterministic tool failure classification for worker retry policy."""

from __future__ import annotations

import signal
from dataclasses import dataclass

from portable_content.pipeline.models import FailureClass

TOOL_FAILURE_CLASSIFIER_VERSION = 1

DEFAULT_TRANSIENT_EXIT_CODES: tuple[int, ...] = (75, 143)
# 137 is what container runtimes report for an OOM kill.
_RESOURCE_EXIT_CODES: tuple[int, ...] = (137,)
_RESOURCE_SIGNALS: tuple[int, ...] = (signal.SIGKILL, signal.SIGXCPU, signal.SIGXFSZ)

_RESOURCE_PATTERNS: tuple[str, ...] = (
    "memoryerror",
    "cannot allocate memory",
    "out of memory",
    "oom-kill",
    "resource temporarily unavailable",
    "too many open files",
    "cpu time limit exceeded",
    "file size limit exceeded",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "temporarily unavailable",
    "temporary failure",
    "connection reset",
    "connection refused",
    "network error",
    "could not resolve host",
    "try again later",
    "timed out",
)


@dataclass(slots=True)
class ToolFailureClassification:
    """Normalized failure classification result."""

    failure_class: FailureClass
    reason_code: str
    matched_rule: str
    matched_pattern: str | None

    @property
    def transient(self) -> bool:
        return self.failure_class in {FailureClass.RESOURCE_EXCEEDED, FailureClass.TOOL_TRANSIENT}

    def to_event_details(self) -> dict[str, object]:
        """Serialize classifier diagnostics for job events."""

        return {
            "classifier_version": TOOL_FAILURE_CLASSIFIER_VERSION,
            "failure_class": self.failure_class.value,
            "reason_code": self.reason_code,
            "matched_rule": self.matched_rule,
            "matched_pattern": self.matched_pattern,
        }


def classify_tool_failure(
    *,
    exit_code: int,
    stdout: str,
    stderr: str,
    transient_exit_codes: tuple[int, ...] = DEFAULT_TRANSIENT_EXIT_CODES,
) -> ToolFailureClassification:
    """Classify a non-zero tool exit into a deterministic retry class."""

    if exit_code < 0 and -exit_code in _RESOURCE_SIGNALS:
        return ToolFailureClassification(
            failure_class=FailureClass.RESOURCE_EXCEEDED,
            reason_code=f"signal_{signal.Signals(-exit_code).name.lower()}",
            matched_rule="resource_signal",
            matched_pattern=None,
        )
    if exit_code in _RESOURCE_EXIT_CODES:
        return ToolFailureClassification(
            failure_class=FailureClass.RESOURCE_EXCEEDED,
            reason_code="killed_exit_code",
            matched_rule="resource_exit_code",
            matched_pattern=None,
        )

    # Tools may legitimately print these phrases as content, so resource
    # exhaustion is only read from stderr.
    pattern = _first_match(stderr.lower(), _RESOURCE_PATTERNS)
    if pattern is not None:
        return ToolFailureClassification(
            failure_class=FailureClass.RESOURCE_EXCEEDED,
            reason_code="resource_exhausted",
            matched_rule="resource_pattern",
            matched_pattern=pattern,
        )

    pattern = _first_match(_normalize_text(stdout=stdout, stderr=stderr), _TRANSIENT_PATTERNS)
    if pattern is not None or exit_code in transient_exit_codes:
        return ToolFailureClassification(
            failure_class=FailureClass.TOOL_TRANSIENT,
            reason_code="tool_transient",
            matched_rule=(
                "transient_exit_code"
                if exit_code in transient_exit_codes and pattern is None
                else "generic_transient"
            ),
            matched_pattern=pattern,
        )

    return ToolFailureClassification(
        failure_class=FailureClass.TOOL_NON_RETRYABLE,
        reason_code="tool_non_retryable",
        matched_rule="fallback_non_retryable",
        matched_pattern=None,
    )


def ceiling_for(classification: ToolFailureClassification) -> str:
    """Best-effort name of the breached ceiling for a resource classification."""

    if classification.reason_code == "signal_sigxcpu":
        return "cpu"
    if classification.reason_code == "signal_sigxfsz":
        return "file_size"
    pattern = classification.matched_pattern or ""
    if "open files" in pattern:
        return "open_files"
    if "resource temporarily unavailable" in pattern:
        return "processes"
    if "cpu" in pattern:
        return "cpu"
    return "memory"


def _normalize_text(*, stdout: str, stderr: str) -> str:
    return f"{stderr}\n{stdout}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
