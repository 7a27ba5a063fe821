"""Durable transform job queue backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from datetime import UTC, datetime, timedelta
from pathlib import Path
from uuid import uuid4

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from portable_content.pipeline.models import (
    FailureClass,
    JobDetails,
    JobEventView,
    JobStatus,
    LeaseRecoveryResult,
    TransformJobCreate,
    TransformJobView,
)
from portable_content.storage.alembic_runner import upgrade_head
from portable_content.storage.common import build_sqlite_engine, utc_now
from portable_content.storage.sqlmodel_models import TransformJobEventRow, TransformJobRow

logger = logging.getLogger(__name__)

DEFAULT_BUSY_TIMEOUT_MS = 5000


class JobQueueRepository:
    """Queue persistence facade with leases and an append-only event log.

    Every state change is a conditional ``UPDATE`` keyed on the expected
    status (and, for leased jobs, the lease id), so concurrent workers and
    operators never overwrite each other's transitions.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def enqueue_job(self, payload: TransformJobCreate) -> TransformJobView:
        """Create a queued job."""

        now = utc_now()
        job_id = payload.job_id or str(uuid4())
        with Session(self.engine) as session:
            row = TransformJobRow(
                job_id=job_id,
                content_id=payload.content_id,
                block_id=payload.block_id,
                transform_id=payload.transform_id,
                priority=payload.priority,
                status=JobStatus.QUEUED.value,
                attempt=0,
                max_attempts=payload.max_attempts,
                run_after=_to_db_datetime(payload.run_after or now),
                document_json=json.dumps(payload.document, ensure_ascii=False, sort_keys=True),
                created_at=_to_db_datetime(now),
                updated_at=_to_db_datetime(now),
            )
            session.add(row)
            # The event row references the job; without a relationship the
            # unit of work does not order the two inserts.
            session.flush()
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="enqueued",
                status_from=None,
                status_to=JobStatus.QUEUED,
                details={
                    "content_id": payload.content_id,
                    "block_id": payload.block_id,
                    "transform_id": payload.transform_id,
                    "priority": payload.priority,
                    "max_attempts": payload.max_attempts,
                },
            )
            session.commit()
            session.refresh(row)
            return _to_job_view(row)

    def lease_next_job(self, *, worker_id: str, lease_seconds: int) -> TransformJobView | None:
        """Atomically lease one job ready for execution."""

        self.recover_expired_leases()
        while True:
            now = utc_now()
            with Session(self.engine) as session:
                candidate = session.exec(
                    select(TransformJobRow)
                    .where(
                        TransformJobRow.status == JobStatus.QUEUED.value,
                        TransformJobRow.run_after <= _to_db_datetime(now),
                    )
                    .order_by(
                        col(TransformJobRow.priority).asc(),
                        col(TransformJobRow.run_after).asc(),
                        col(TransformJobRow.created_at).asc(),
                    )
                    .limit(1),
                ).one_or_none()
                if candidate is None:
                    return None

                lease_id = str(uuid4())
                result = session.exec(
                    sa_update(TransformJobRow)
                    .where(
                        col(TransformJobRow.job_id) == candidate.job_id,
                        col(TransformJobRow.status) == JobStatus.QUEUED.value,
                    )
                    .values(
                        status=JobStatus.LEASED.value,
                        attempt=candidate.attempt + 1,
                        lease_id=lease_id,
                        leased_at=_to_db_datetime(now),
                        lease_expires_at=_to_db_datetime(now + timedelta(seconds=lease_seconds)),
                        finished_at=None,
                        worker_id=worker_id,
                        updated_at=_to_db_datetime(now),
                    ),
                )
                if result.rowcount != 1:
                    session.rollback()
                    continue

                leased = session.exec(
                    select(TransformJobRow).where(TransformJobRow.job_id == candidate.job_id),
                ).one()
                self._add_event(
                    session=session,
                    job_id=leased.job_id,
                    event_type="leased",
                    status_from=JobStatus.QUEUED,
                    status_to=JobStatus.LEASED,
                    details={
                        "worker_id": worker_id,
                        "attempt": leased.attempt,
                        "lease_id": lease_id,
                        "lease_seconds": lease_seconds,
                    },
                )
                session.commit()
                return _to_job_view(leased)

    def extend_lease(self, *, job_id: str, lease_id: str, lease_seconds: int) -> bool:
        """Push the lease deadline forward while the holder still owns it."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TransformJobRow)
                .where(
                    col(TransformJobRow.job_id) == job_id,
                    col(TransformJobRow.lease_id) == lease_id,
                    col(TransformJobRow.status) == JobStatus.LEASED.value,
                )
                .values(
                    lease_expires_at=_to_db_datetime(now + timedelta(seconds=lease_seconds)),
                    updated_at=_to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            session.commit()
            return True

    def complete_job(
        self,
        *,
        job_id: str,
        lease_id: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Acknowledge a leased job as completed."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TransformJobRow)
                .where(
                    col(TransformJobRow.job_id) == job_id,
                    col(TransformJobRow.lease_id) == lease_id,
                    col(TransformJobRow.status) == JobStatus.LEASED.value,
                )
                .values(
                    status=JobStatus.COMPLETED.value,
                    finished_at=_to_db_datetime(now),
                    lease_id=None,
                    lease_expires_at=None,
                    failure_class=None,
                    error_summary=None,
                    last_exit_code=None,
                    updated_at=_to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="completed",
                status_from=JobStatus.LEASED,
                status_to=JobStatus.COMPLETED,
                details=details or {},
            )
            session.commit()
            return True

    def fail_job(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        lease_id: str,
        failure_class: FailureClass,
        error_summary: str,
        last_exit_code: int | None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Mark a leased job as terminally failed."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TransformJobRow)
                .where(
                    col(TransformJobRow.job_id) == job_id,
                    col(TransformJobRow.lease_id) == lease_id,
                    col(TransformJobRow.status) == JobStatus.LEASED.value,
                )
                .values(
                    status=JobStatus.FAILED.value,
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    last_exit_code=last_exit_code,
                    finished_at=_to_db_datetime(now),
                    lease_id=None,
                    lease_expires_at=None,
                    updated_at=_to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="failed",
                status_from=JobStatus.LEASED,
                status_to=JobStatus.FAILED,
                details={
                    "failure_class": failure_class.value,
                    "last_exit_code": last_exit_code,
                    "error_summary": error_summary,
                    **(details or {}),
                },
            )
            session.commit()
            return True

    def schedule_retry(  # noqa: PLR0913
        self,
        *,
        job_id: str,
        lease_id: str,
        run_after: datetime,
        failure_class: FailureClass,
        error_summary: str,
        last_exit_code: int | None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Requeue a leased job for automatic retry."""

        now = utc_now()
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(TransformJobRow)
                .where(
                    col(TransformJobRow.job_id) == job_id,
                    col(TransformJobRow.lease_id) == lease_id,
                    col(TransformJobRow.status) == JobStatus.LEASED.value,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    run_after=_to_db_datetime(run_after),
                    failure_class=failure_class.value,
                    error_summary=error_summary,
                    last_exit_code=last_exit_code,
                    lease_id=None,
                    leased_at=None,
                    lease_expires_at=None,
                    finished_at=None,
                    worker_id=None,
                    updated_at=_to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                return False
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="retry_scheduled",
                status_from=JobStatus.LEASED,
                status_to=JobStatus.QUEUED,
                details={
                    "run_after": _to_utc_aware_datetime(run_after).isoformat(),
                    "failure_class": failure_class.value,
                    "error_summary": error_summary,
                    **(details or {}),
                },
            )
            session.commit()
            return True

    def recover_expired_leases(self) -> LeaseRecoveryResult:
        """Return jobs whose lease deadline passed to the queue.

        A job whose attempt budget is already spent fails terminally with
        ``lease_expired`` instead of being requeued.
        """

        recovery = LeaseRecoveryResult()
        now = utc_now()
        with Session(self.engine) as session:
            expired = session.exec(
                select(TransformJobRow).where(
                    TransformJobRow.status == JobStatus.LEASED.value,
                    col(TransformJobRow.lease_expires_at).is_not(None),
                    col(TransformJobRow.lease_expires_at) <= _to_db_datetime(now),
                ),
            ).all()
            for row in expired:
                exhausted = row.attempt >= row.max_attempts
                status_to = JobStatus.FAILED if exhausted else JobStatus.QUEUED
                values: dict[str, object] = {
                    "status": status_to.value,
                    "failure_class": FailureClass.LEASE_EXPIRED.value,
                    "error_summary": f"Lease held by {row.worker_id} expired.",
                    "lease_id": None,
                    "leased_at": None,
                    "lease_expires_at": None,
                    "worker_id": None,
                    "updated_at": _to_db_datetime(now),
                }
                if exhausted:
                    values["finished_at"] = _to_db_datetime(now)
                else:
                    values["run_after"] = _to_db_datetime(now)
                result = session.exec(
                    sa_update(TransformJobRow)
                    .where(
                        col(TransformJobRow.job_id) == row.job_id,
                        col(TransformJobRow.lease_id) == row.lease_id,
                        col(TransformJobRow.status) == JobStatus.LEASED.value,
                    )
                    .values(**values),
                )
                if result.rowcount != 1:
                    continue
                self._add_event(
                    session=session,
                    job_id=row.job_id,
                    event_type="lease_expired",
                    status_from=JobStatus.LEASED,
                    status_to=status_to,
                    details={
                        "worker_id": row.worker_id,
                        "attempt": row.attempt,
                        "max_attempts": row.max_attempts,
                    },
                )
                if exhausted:
                    recovery.failed += 1
                else:
                    recovery.requeued += 1
            session.commit()
        if recovery.requeued or recovery.failed:
            logger.warning(
                "Recovered expired leases: requeued=%d failed=%d",
                recovery.requeued,
                recovery.failed,
            )
        return recovery

    def retry_job(self, *, job_id: str) -> None:
        """Manual operator retry for failed/canceled jobs."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            previous = JobStatus(row.status)
            if previous not in {JobStatus.FAILED, JobStatus.CANCELED}:
                raise RuntimeError(
                    f"Only failed/canceled jobs can be retried manually, got {row.status}.",
                )
            result = session.exec(
                sa_update(TransformJobRow)
                .where(
                    col(TransformJobRow.job_id) == job_id,
                    col(TransformJobRow.status) == previous.value,
                )
                .values(
                    status=JobStatus.QUEUED.value,
                    attempt=0,
                    run_after=_to_db_datetime(now),
                    finished_at=None,
                    failure_class=None,
                    error_summary=None,
                    last_exit_code=None,
                    worker_id=None,
                    updated_at=_to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Job state changed concurrently while retrying; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="manual_retry",
                status_from=previous,
                status_to=JobStatus.QUEUED,
                details={},
            )
            session.commit()

    def cancel_job(self, *, job_id: str) -> None:
        """Cancel a queued/leased job."""

        now = utc_now()
        with Session(self.engine) as session:
            row = self._get_job_row(session=session, job_id=job_id)
            previous = JobStatus(row.status)
            if previous not in {JobStatus.QUEUED, JobStatus.LEASED}:
                raise RuntimeError(f"Job cannot be canceled from status={row.status}")
            result = session.exec(
                sa_update(TransformJobRow)
                .where(
                    col(TransformJobRow.job_id) == job_id,
                    col(TransformJobRow.status) == previous.value,
                )
                .values(
                    status=JobStatus.CANCELED.value,
                    finished_at=_to_db_datetime(now),
                    lease_id=None,
                    lease_expires_at=None,
                    updated_at=_to_db_datetime(now),
                ),
            )
            if result.rowcount != 1:
                session.rollback()
                raise RuntimeError(
                    "Job state changed concurrently while canceling; "
                    f"please retry command (job_id={job_id}).",
                )
            self._add_event(
                session=session,
                job_id=job_id,
                event_type="canceled",
                status_from=previous,
                status_to=JobStatus.CANCELED,
                details={},
            )
            session.commit()

    def list_jobs(
        self,
        *,
        status: JobStatus | None = None,
        content_id: str | None = None,
        limit: int = 50,
    ) -> list[TransformJobView]:
        """List recent jobs, optionally filtered by status and content item."""

        with Session(self.engine) as session:
            statement = select(TransformJobRow)
            if status is not None:
                statement = statement.where(TransformJobRow.status == status.value)
            if content_id is not None:
                statement = statement.where(TransformJobRow.content_id == content_id)
            statement = statement.order_by(col(TransformJobRow.created_at).desc()).limit(limit)
            rows = session.exec(statement).all()
        return [_to_job_view(row) for row in rows]

    def count_by_status(self) -> dict[JobStatus, int]:
        """Number of jobs per lifecycle state."""

        counts = {status: 0 for status in JobStatus}
        with Session(self.engine) as session:
            for status_value in session.exec(select(TransformJobRow.status)).all():
                counts[JobStatus(status_value)] += 1
        return counts

    def get_job_details(self, *, job_id: str) -> JobDetails | None:
        """Return job details with event stream."""

        with Session(self.engine) as session:
            job = session.exec(
                select(TransformJobRow).where(TransformJobRow.job_id == job_id),
            ).one_or_none()
            if job is None:
                return None
            event_rows = session.exec(
                select(TransformJobEventRow)
                .where(TransformJobEventRow.job_id == job_id)
                .order_by(
                    col(TransformJobEventRow.created_at).asc(),
                    col(TransformJobEventRow.id).asc(),
                ),
            ).all()

        events: list[JobEventView] = []
        for row in event_rows:
            details = {}
            if row.details_json:
                parsed = json.loads(row.details_json)
                if isinstance(parsed, dict):
                    details = parsed
            events.append(
                JobEventView(
                    event_id=row.id or 0,
                    job_id=row.job_id,
                    event_type=row.event_type,
                    status_from=(
                        JobStatus(row.status_from) if row.status_from is not None else None
                    ),
                    status_to=JobStatus(row.status_to) if row.status_to is not None else None,
                    created_at=_to_utc_aware_datetime(row.created_at),
                    details=details,
                ),
            )
        return JobDetails(job=_to_job_view(job), events=events)

    def add_job_event(
        self,
        *,
        job_id: str,
        event_type: str,
        details: dict[str, object],
    ) -> None:
        """Append an informational event that does not change job status."""

        with Session(self.engine) as session:
            self._add_event(
                session=session,
                job_id=job_id,
                event_type=event_type,
                status_from=None,
                status_to=None,
                details=details,
            )
            session.commit()

    def _get_job_row(self, *, session: Session, job_id: str) -> TransformJobRow:
        row = session.exec(
            select(TransformJobRow).where(TransformJobRow.job_id == job_id),
        ).one_or_none()
        if row is None:
            raise RuntimeError(f"Job not found: {job_id}")
        return row

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        job_id: str,
        event_type: str,
        status_from: JobStatus | None,
        status_to: JobStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            TransformJobEventRow(
                job_id=job_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=_to_db_datetime(utc_now()),
            ),
        )


def _to_db_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value
    return value.astimezone(UTC).replace(tzinfo=None)


def _to_utc_aware_datetime(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)


def _optional_datetime(value: datetime | None) -> datetime | None:
    return _to_utc_aware_datetime(value) if value is not None else None


def _to_job_view(row: TransformJobRow) -> TransformJobView:
    document = json.loads(row.document_json) if row.document_json else {}
    return TransformJobView(
        job_id=row.job_id,
        content_id=row.content_id,
        block_id=row.block_id,
        transform_id=row.transform_id,
        priority=row.priority,
        status=JobStatus(row.status),
        attempt=row.attempt,
        max_attempts=row.max_attempts,
        run_after=_to_utc_aware_datetime(row.run_after),
        lease_id=row.lease_id,
        leased_at=_optional_datetime(row.leased_at),
        lease_expires_at=_optional_datetime(row.lease_expires_at),
        finished_at=_optional_datetime(row.finished_at),
        failure_class=FailureClass(row.failure_class) if row.failure_class is not None else None,
        last_exit_code=row.last_exit_code,
        worker_id=row.worker_id,
        document=document if isinstance(document, dict) else {},
        error_summary=row.error_summary,
        created_at=_to_utc_aware_datetime(row.created_at),
        updated_at=_to_utc_aware_datetime(row.updated_at),
    )
