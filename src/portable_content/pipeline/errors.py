"""Pipeline error taxonomy with retryability hints."""

from __future__ import annotations

from portable_content.pipeline.models import FailureClass


class PipelineError(RuntimeError):
    """Base error for one failed job step, carrying its failure class."""

    failure_class: FailureClass = FailureClass.TOOL_NON_RETRYABLE
    transient: bool = False

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.details = dict(details or {})


class ResourceExceeded(PipelineError):
    """A sandbox ceiling was breached and the tool was terminated."""

    failure_class = FailureClass.RESOURCE_EXCEEDED
    transient = True

    def __init__(
        self,
        message: str,
        *,
        ceiling: str,
        exit_code: int | None = None,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message, exit_code=exit_code, details=details)
        self.ceiling = ceiling


class MalformedOutput(PipelineError):
    """Tool exited cleanly but left no usable result descriptor."""

    failure_class = FailureClass.MALFORMED_OUTPUT
    transient = True


class HashMismatch(PipelineError):
    """Declared output size or hash disagrees with the bytes on disk."""

    failure_class = FailureClass.HASH_MISMATCH
    transient = False


class NetworkError(PipelineError):
    """Download or upload failed on the network path."""

    failure_class = FailureClass.NETWORK_ERROR
    transient = True


class ReconciliationConflict(PipelineError):
    """Optimistic manifest write kept losing races until attempts ran out."""

    failure_class = FailureClass.RECONCILIATION_CONFLICT
    transient = True


class InputContractError(PipelineError):
    """Job document, transform, or target block cannot be resolved."""

    failure_class = FailureClass.INPUT_CONTRACT_ERROR
    transient = False


class ToolFailed(PipelineError):
    """Tool exited non-zero for a reason other than a ceiling breach."""

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None,
        transient: bool,
        reason_code: str,
        details: dict[str, object] | None = None,
    ) -> None:
        super().__init__(message, exit_code=exit_code, details=details)
        self.transient = transient
        self.failure_class = (
            FailureClass.TOOL_TRANSIENT if transient else FailureClass.TOOL_NON_RETRYABLE
        )
        self.reason_code = reason_code


class ManifestVersionConflict(RuntimeError):
    """Conditional manifest write observed a newer version token."""

    def __init__(self, content_id: str, *, expected: str | None, actual: str | None) -> None:
        super().__init__(
            f"Manifest for {content_id} changed concurrently "
            f"(expected version {expected}, found {actual}).",
        )
        self.content_id = content_id
        self.expected = expected
        self.actual = actual


class ManifestNotFound(LookupError):
    """No manifest document exists for the content id."""
