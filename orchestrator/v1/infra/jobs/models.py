"""
Generic background job models.
"""

from datetime import UTC, datetime
from enum import Enum
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    SmallInteger,
    Text,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column

from orchestrator.infra.database import Base


class JobStatus(str, Enum):
    """Job status enumeration."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = (JobStatus.PENDING, JobStatus.PROCESSING)
TERMINAL_STATUSES = (JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED)

# target status -> statuses a job may move from through set_status.
# Reviving failed/cancelled jobs is reserved to reset_for_retry.
ALLOWED_TRANSITIONS: dict[JobStatus, tuple[JobStatus, ...]] = {
    JobStatus.PENDING: (JobStatus.PROCESSING,),
    JobStatus.PROCESSING: (JobStatus.PENDING,),
    JobStatus.COMPLETED: (JobStatus.PROCESSING,),
    JobStatus.FAILED: (JobStatus.PROCESSING,),
    JobStatus.CANCELLED: ACTIVE_STATUSES,
}


class JobType(str, Enum):
    """Known logical queues. Extend at runtime through JOB_EXTRA_TYPES."""

    IMPORT = "import"
    IMAGE_ENRICHMENT = "image_enrichment"
    CONTRACTOR_ENRICHMENT = "contractor_enrichment"
    REVIEW_ENRICHMENT = "review_enrichment"
    REVIEWER_IMAGE_RETRY = "reviewer_image_retry"


_status_values = ", ".join(f"'{s.value}'" for s in JobStatus)
_active_values = ", ".join(f"'{s.value}'" for s in ACTIVE_STATUSES)


class Job(Base):
    """
    Generic job dispatched to an external worker.

    The partial unique index on ``type`` over active statuses is the
    one-active-job-per-type mutex; creation relies on it rather than on a
    prior lookup.
    """

    __tablename__ = "jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(
        Text, nullable=False, comment="Logical queue the job belongs to"
    )
    status: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=JobStatus.PENDING.value,
        comment="pending|processing|completed|failed|cancelled",
    )
    priority: Mapped[int] = mapped_column(
        SmallInteger,
        nullable=False,
        default=5,
        comment="Priority 1-10, lower is served first",
    )

    # Retry bookkeeping
    attempts: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Executions started so far"
    )
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    next_retry_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="Earliest retry time"
    )
    scheduled_for: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True, comment="Earliest first dispatch"
    )
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Progress
    total_items: Mapped[int | None] = mapped_column(Integer, nullable=True)
    processed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    failed_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    # Producer-owned documents
    payload: Mapped[dict[str, Any]] = mapped_column(
        JSON, nullable=False, default=dict, comment="Job-specific parameters"
    )
    result: Mapped[dict[str, Any] | None] = mapped_column(
        JSON, nullable=True, comment="Result document, set once on success"
    )

    # Timing and actor
    started_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    completed_at: Mapped[datetime | None] = mapped_column(
        TIMESTAMP(timezone=True), nullable=True
    )
    created_by: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(UTC),
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(UTC),
        onupdate=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        CheckConstraint(f"status IN ({_status_values})", name="jobs_status_check"),
        CheckConstraint("priority BETWEEN 1 AND 10", name="jobs_priority_check"),
        CheckConstraint("attempts <= max_attempts", name="jobs_attempts_check"),
        CheckConstraint(
            "total_items IS NULL OR processed_items <= total_items",
            name="jobs_progress_check",
        ),
        Index("ix_jobs_status_created_at", "status", "created_at"),
        Index("ix_jobs_type_status", "type", "status"),
        Index(
            "ix_jobs_one_active_per_type",
            "type",
            unique=True,
            postgresql_where=text(f"status IN ({_active_values})"),
            sqlite_where=text(f"status IN ({_active_values})"),
        ),
    )

    def is_active(self) -> bool:
        """Check if job is pending or processing."""
        return self.status in (s.value for s in ACTIVE_STATUSES)

    def is_terminal(self) -> bool:
        return self.status in (s.value for s in TERMINAL_STATUSES)

    def get_progress_percentage(self) -> float | None:
        """Get progress as percentage if a total is known."""
        if not self.total_items or self.total_items <= 0:
            return None

        return min(100.0, (self.processed_items / self.total_items) * 100.0)


class JobLog(Base):
    """Audit trail entry, written in the same transaction as the change it records."""

    __tablename__ = "job_logs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    job_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    action: Mapped[str] = mapped_column(Text, nullable=False, comment="e.g. job.created")
    level: Mapped[str] = mapped_column(Text, nullable=False, default="info")
    message: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor_id: Mapped[str | None] = mapped_column(Text, nullable=True)
    details: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSON, nullable=False, default=dict
    )
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        CheckConstraint(
            "level IN ('debug', 'info', 'warning', 'error')", name="job_logs_level_check"
        ),
        Index("ix_job_logs_job_id_created_at", "job_id", "created_at"),
    )
