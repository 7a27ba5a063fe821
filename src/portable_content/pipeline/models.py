"""Domain models for the transform job queue and execution."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class JobStatus(str, Enum):
    """Durable job lifecycle states."""

    QUEUED = "queued"
    LEASED = "leased"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELED = "canceled"


class FailureClass(str, Enum):
    """Normalized failure classes used by retry policy."""

    RESOURCE_EXCEEDED = "resource_exceeded"
    MALFORMED_OUTPUT = "malformed_output"
    HASH_MISMATCH = "hash_mismatch"
    NETWORK_ERROR = "network_error"
    RECONCILIATION_CONFLICT = "reconciliation_conflict"
    TOOL_TRANSIENT = "tool_transient"
    TOOL_NON_RETRYABLE = "tool_non_retryable"
    INPUT_CONTRACT_ERROR = "input_contract_error"
    LEASE_EXPIRED = "lease_expired"


@dataclass(slots=True)
class TransformJobCreate:
    """Input payload for enqueuing a transform job."""

    content_id: str
    block_id: str
    transform_id: str
    document: dict[str, Any]
    job_id: str | None = None
    priority: int = 100
    max_attempts: int = 4
    run_after: datetime | None = None


@dataclass(slots=True)
class TransformJobView:
    """Readable job view for CLI and worker logic."""

    job_id: str
    content_id: str
    block_id: str
    transform_id: str
    priority: int
    status: JobStatus
    attempt: int
    max_attempts: int
    run_after: datetime
    lease_id: str | None
    leased_at: datetime | None
    lease_expires_at: datetime | None
    finished_at: datetime | None
    failure_class: FailureClass | None
    last_exit_code: int | None
    worker_id: str | None
    document: dict[str, Any]
    error_summary: str | None
    created_at: datetime
    updated_at: datetime


@dataclass(slots=True)
class JobEventView:
    """Job event entry for audit trail."""

    event_id: int
    job_id: str
    event_type: str
    status_from: JobStatus | None
    status_to: JobStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class JobDetails:
    """Job details with event stream."""

    job: TransformJobView
    events: list[JobEventView]


@dataclass(slots=True)
class LeaseRecoveryResult:
    """Counters from one expired-lease sweep."""

    requeued: int = 0
    failed: int = 0
