"""SQLModel ORM tables for the transform job queue."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import Column, DateTime, ForeignKey, Index, Text
from sqlmodel import Field, SQLModel


class TransformJobRow(SQLModel, table=True):
    __tablename__ = "transform_jobs"  # type: ignore[bad-override]
    __table_args__ = (
        Index("idx_transform_jobs_queue", "status", "priority", "run_after"),
        Index("idx_transform_jobs_block", "content_id", "block_id"),
        Index("idx_transform_jobs_lease", "status", "lease_expires_at"),
    )

    job_id: str = Field(primary_key=True)
    content_id: str = Field(index=True)
    block_id: str
    transform_id: str = Field(index=True)
    priority: int = Field(default=100, index=True)
    status: str = Field(index=True)
    attempt: int = Field(default=0)
    max_attempts: int = Field(default=4)
    run_after: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    lease_id: str | None = Field(default=None)
    leased_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    lease_expires_at: datetime | None = Field(
        default=None,
        sa_column=Column(DateTime(timezone=True)),
    )
    finished_at: datetime | None = Field(default=None, sa_column=Column(DateTime(timezone=True)))
    failure_class: str | None = Field(default=None, index=True)
    last_exit_code: int | None = None
    worker_id: str | None = Field(default=None, index=True)
    document_json: str = Field(sa_column=Column(Text, nullable=False))
    error_summary: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
    updated_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))


class TransformJobEventRow(SQLModel, table=True):
    __tablename__ = "transform_job_events"  # type: ignore[bad-override]
    __table_args__ = (Index("idx_transform_job_events_job_time", "job_id", "created_at"),)

    id: int | None = Field(default=None, primary_key=True)
    job_id: str = Field(
        sa_column=Column(
            ForeignKey("transform_jobs.job_id", ondelete="CASCADE"),
            nullable=False,
            index=True,
        ),
    )
    event_type: str = Field(index=True)
    status_from: str | None = Field(default=None, index=True)
    status_to: str | None = Field(default=None, index=True)
    details_json: str | None = Field(default=None, sa_column=Column(Text))
    created_at: datetime = Field(sa_column=Column(DateTime(timezone=True), nullable=False))
