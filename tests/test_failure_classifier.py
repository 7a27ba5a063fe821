from __future__ import annotations

import signal

import allure

from portable_content.pipeline.failure_classifier import (
    TOOL_FAILURE_CLASSIFIER_VERSION,
    ceiling_for,
    classify_tool_failure,
)
from portable_content.pipeline.models import FailureClass

pytestmark = [
    allure.epic("Transform Pipeline"),
    allure.feature("Failures & Retry Policy"),
]


def test_classifier_version_is_stable() -> None:
    assert TOOL_FAILURE_CLASSIFIER_VERSION == 1


def test_cpu_signal_is_resource_breach() -> None:
    classified = classify_tool_failure(exit_code=-signal.SIGXCPU, stdout="", stderr="")

    assert classified.failure_class == FailureClass.RESOURCE_EXCEEDED
    assert classified.reason_code == "signal_sigxcpu"
    assert ceiling_for(classified) == "cpu"
    assert classified.transient


def test_oom_exit_code_is_resource_breach() -> None:
    classified = classify_tool_failure(exit_code=137, stdout="", stderr="")

    assert classified.failure_class == FailureClass.RESOURCE_EXCEEDED
    assert classified.matched_rule == "resource_exit_code"
    assert ceiling_for(classified) == "memory"


def test_memory_error_in_stderr_prefers_resource_over_transient_code() -> None:
    classified = classify_tool_failure(
        exit_code=75,
        stdout="",
        stderr="Traceback...\nMemoryError",
    )

    assert classified.failure_class == FailureClass.RESOURCE_EXCEEDED
    assert classified.matched_pattern == "memoryerror"


def test_open_files_pattern_maps_to_open_files_ceiling() -> None:
    classified = classify_tool_failure(
        exit_code=1,
        stdout="",
        stderr="OSError: Too many open files",
    )

    assert ceiling_for(classified) == "open_files"


def test_resource_phrases_in_stdout_are_tool_content() -> None:
    classified = classify_tool_failure(
        exit_code=2,
        stdout="<p>What to do when the phone runs out of memory</p>",
        stderr="render failed",
        transient_exit_codes=(),
    )

    assert classified.failure_class == FailureClass.TOOL_NON_RETRYABLE
    assert classified.matched_pattern is None


def test_transient_exit_code_and_patterns() -> None:
    by_code = classify_tool_failure(exit_code=75, stdout="", stderr="")
    by_pattern = classify_tool_failure(exit_code=1, stdout="", stderr="Connection reset by peer")

    assert by_code.failure_class == FailureClass.TOOL_TRANSIENT
    assert by_code.matched_rule == "transient_exit_code"
    assert by_pattern.failure_class == FailureClass.TOOL_TRANSIENT
    assert by_pattern.matched_pattern == "connection reset"


def test_falls_back_to_non_retryable() -> None:
    classified = classify_tool_failure(
        exit_code=2,
        stdout="",
        stderr="syntax error in diagram",
        transient_exit_codes=(),
    )

    assert classified.failure_class == FailureClass.TOOL_NON_RETRYABLE
    assert not classified.transient
    assert classified.to_event_details() == {
        "classifier_version": 1,
        "failure_class": "tool_non_retryable",
        "reason_code": "tool_non_retryable",
        "matched_rule": "fallback_non_retryable",
        "matched_pattern": None,
    }
