"""create job orchestration tables

Revision ID: 3b7d1e9a4c20
Revises:
Create Date: 2026-10-17 09:12:41.318204

"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "3b7d1e9a4c20"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

STATUS_CHECK = "status IN ('pending', 'processing', 'completed', 'failed', 'cancelled')"
ACTIVE_WHERE = "status IN ('pending', 'processing')"


def upgrade() -> None:
    """Upgrade schema."""
    # Generic push-dispatched jobs
    op.create_table(
        "jobs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "type", sa.Text, nullable=False, comment="Logical queue the job belongs to"
        ),
        sa.Column(
            "status",
            sa.Text,
            nullable=False,
            server_default="pending",
            comment="pending|processing|completed|failed|cancelled",
        ),
        sa.Column(
            "priority",
            sa.SmallInteger,
            nullable=False,
            server_default="5",
            comment="Priority 1-10, lower is served first",
        ),
        # Retry bookkeeping
        sa.Column(
            "attempts",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Executions started so far",
        ),
        sa.Column("max_attempts", sa.Integer, nullable=False, server_default="3"),
        sa.Column(
            "next_retry_at",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Earliest retry time",
        ),
        sa.Column(
            "scheduled_for",
            sa.TIMESTAMP(timezone=True),
            nullable=True,
            comment="Earliest first dispatch",
        ),
        sa.Column("last_error", sa.Text, nullable=True),
        # Progress
        sa.Column("total_items", sa.Integer, nullable=True),
        sa.Column("processed_items", sa.Integer, nullable=False, server_default="0"),
        sa.Column("failed_items", sa.Integer, nullable=False, server_default="0"),
        # Producer-owned documents
        sa.Column(
            "payload",
            sa.JSON,
            nullable=False,
            server_default="{}",
            comment="Job-specific parameters",
        ),
        sa.Column(
            "result",
            sa.JSON,
            nullable=True,
            comment="Result document, set once on success",
        ),
        # Timing and actor
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_by", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(STATUS_CHECK, name="jobs_status_check"),
        sa.CheckConstraint("priority BETWEEN 1 AND 10", name="jobs_priority_check"),
        sa.CheckConstraint("attempts <= max_attempts", name="jobs_attempts_check"),
        sa.CheckConstraint(
            "total_items IS NULL OR processed_items <= total_items",
            name="jobs_progress_check",
        ),
    )

    op.create_index("ix_jobs_status_created_at", "jobs", ["status", "created_at"])
    op.create_index("ix_jobs_type_status", "jobs", ["type", "status"])

    # At most one pending/processing job per type
    op.create_index(
        "ix_jobs_one_active_per_type",
        "jobs",
        ["type"],
        unique=True,
        postgresql_where=sa.text(ACTIVE_WHERE),
        sqlite_where=sa.text(ACTIVE_WHERE),
    )

    # Audit trail
    op.create_table(
        "job_logs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "job_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("action", sa.Text, nullable=False, comment="e.g. job.created"),
        sa.Column("level", sa.Text, nullable=False, server_default="info"),
        sa.Column("message", sa.Text, nullable=True),
        sa.Column("actor_id", sa.Text, nullable=True),
        sa.Column("metadata", sa.JSON, nullable=False, server_default="{}"),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(
            "level IN ('debug', 'info', 'warning', 'error')",
            name="job_logs_level_check",
        ),
    )
    op.create_index(
        "ix_job_logs_job_id_created_at", "job_logs", ["job_id", "created_at"]
    )

    # Pull-driven batch (import) jobs
    op.create_table(
        "batch_jobs",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "kind",
            sa.Text,
            nullable=False,
            server_default="contractor_import",
            comment="Row processor that handles this job's rows",
        ),
        sa.Column("filename", sa.Text, nullable=True),
        sa.Column("status", sa.Text, nullable=False, server_default="pending"),
        sa.Column("raw_data", sa.JSON, nullable=False, comment="Ordered input rows"),
        sa.Column("total_rows", sa.Integer, nullable=False),
        sa.Column(
            "processed_rows",
            sa.Integer,
            nullable=False,
            server_default="0",
            comment="Rows consumed so far, drives slicing",
        ),
        sa.Column("imported_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("updated_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column("skipped_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "skipped_claimed_count", sa.Integer, nullable=False, server_default="0"
        ),
        sa.Column("error_count", sa.Integer, nullable=False, server_default="0"),
        sa.Column(
            "pending_image_count", sa.Integer, nullable=False, server_default="0"
        ),
        sa.Column("started_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("completed_at", sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column("created_by", sa.Text, nullable=True),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.Column(
            "updated_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
        sa.CheckConstraint(STATUS_CHECK, name="batch_jobs_status_check"),
        sa.CheckConstraint(
            "processed_rows >= 0 AND processed_rows <= total_rows",
            name="batch_jobs_progress_check",
        ),
    )
    op.create_index(
        "ix_batch_jobs_status_created_at", "batch_jobs", ["status", "created_at"]
    )

    op.create_table(
        "batch_job_errors",
        sa.Column("id", sa.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "batch_job_id",
            sa.UUID(as_uuid=True),
            sa.ForeignKey("batch_jobs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "row_index",
            sa.Integer,
            nullable=False,
            comment="0-based position in raw_data",
        ),
        sa.Column("external_identifier", sa.Text, nullable=True),
        sa.Column("message", sa.Text, nullable=False),
        sa.Column(
            "created_at",
            sa.TIMESTAMP(timezone=True),
            nullable=False,
            server_default=sa.func.now(),
        ),
    )
    op.create_index(
        "ix_batch_job_errors_job_id_row_index",
        "batch_job_errors",
        ["batch_job_id", "row_index"],
    )


def downgrade() -> None:
    """Downgrade schema."""
    op.drop_table("batch_job_errors")
    op.drop_table("batch_jobs")
    op.drop_table("job_logs")
    op.drop_table("jobs")
