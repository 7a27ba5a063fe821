"""Create transform job queue and event log tables."""

from __future__ import annotations

import sqlalchemy as sa

from alembic import op

revision = "20261019_0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "transform_jobs",
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("content_id", sa.String(), nullable=False),
        sa.Column("block_id", sa.String(), nullable=False),
        sa.Column("transform_id", sa.String(), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("status", sa.String(), nullable=False),
        sa.Column("attempt", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="4"),
        sa.Column("run_after", sa.DateTime(timezone=True), nullable=False),
        sa.Column("lease_id", sa.String(), nullable=True),
        sa.Column("leased_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("lease_expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finished_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failure_class", sa.String(), nullable=True),
        sa.Column("last_exit_code", sa.Integer(), nullable=True),
        sa.Column("worker_id", sa.String(), nullable=True),
        sa.Column("document_json", sa.Text(), nullable=False),
        sa.Column("error_summary", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("job_id"),
    )
    op.create_index("ix_transform_jobs_content_id", "transform_jobs", ["content_id"])
    op.create_index("ix_transform_jobs_transform_id", "transform_jobs", ["transform_id"])
    op.create_index("ix_transform_jobs_priority", "transform_jobs", ["priority"])
    op.create_index("ix_transform_jobs_status", "transform_jobs", ["status"])
    op.create_index("ix_transform_jobs_failure_class", "transform_jobs", ["failure_class"])
    op.create_index("ix_transform_jobs_worker_id", "transform_jobs", ["worker_id"])
    op.create_index(
        "idx_transform_jobs_queue",
        "transform_jobs",
        ["status", "priority", "run_after"],
    )
    op.create_index("idx_transform_jobs_block", "transform_jobs", ["content_id", "block_id"])
    op.create_index(
        "idx_transform_jobs_lease",
        "transform_jobs",
        ["status", "lease_expires_at"],
    )

    op.create_table(
        "transform_job_events",
        sa.Column("id", sa.Integer(), nullable=False),
        sa.Column("job_id", sa.String(), nullable=False),
        sa.Column("event_type", sa.String(), nullable=False),
        sa.Column("status_from", sa.String(), nullable=True),
        sa.Column("status_to", sa.String(), nullable=True),
        sa.Column("details_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["job_id"], ["transform_jobs.job_id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("ix_transform_job_events_job_id", "transform_job_events", ["job_id"])
    op.create_index("ix_transform_job_events_event_type", "transform_job_events", ["event_type"])
    op.create_index(
        "ix_transform_job_events_status_from",
        "transform_job_events",
        ["status_from"],
    )
    op.create_index("ix_transform_job_events_status_to", "transform_job_events", ["status_to"])
    op.create_index(
        "idx_transform_job_events_job_time",
        "transform_job_events",
        ["job_id", "created_at"],
    )


def downgrade() -> None:
    op.drop_index("idx_transform_job_events_job_time", table_name="transform_job_events")
    op.drop_index("ix_transform_job_events_status_to", table_name="transform_job_events")
    op.drop_index("ix_transform_job_events_status_from", table_name="transform_job_events")
    op.drop_index("ix_transform_job_events_event_type", table_name="transform_job_events")
    op.drop_index("ix_transform_job_events_job_id", table_name="transform_job_events")
    op.drop_table("transform_job_events")
    op.drop_index("idx_transform_jobs_lease", table_name="transform_jobs")
    op.drop_index("idx_transform_jobs_block", table_name="transform_jobs")
    op.drop_index("idx_transform_jobs_queue", table_name="transform_jobs")
    op.drop_index("ix_transform_jobs_worker_id", table_name="transform_jobs")
    op.drop_index("ix_transform_jobs_failure_class", table_name="transform_jobs")
    op.drop_index("ix_transform_jobs_status", table_name="transform_jobs")
    op.drop_index("ix_transform_jobs_priority", table_name="transform_jobs")
    op.drop_index("ix_transform_jobs_transform_id", table_name="transform_jobs")
    op.drop_index("ix_transform_jobs_content_id", table_name="transform_jobs")
    op.drop_table("transform_jobs")
