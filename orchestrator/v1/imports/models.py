"""
Batch (import) job models.

A batch job carries its own input rows and is advanced by a client that
repeatedly asks for the next chunk to be processed.
"""

from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    TIMESTAMP,
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Text,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from orchestrator.infra.database import Base
from orchestrator.v1.infra.jobs.models import JobStatus

DEFAULT_BATCH_KIND = "contractor_import"

_status_values = ", ".join(f"'{s.value}'" for s in JobStatus)


class BatchJob(Base):
    """Pull-driven import job. ``raw_data`` is fixed at creation."""

    __tablename__ = "batch_jobs"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    kind: Mapped[str] = mapped_column(
        Text,
        nullable=False,
        default=DEFAULT_BATCH_KIND,
        comment="Row processor that handles this job's rows",
    )
    filename: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        Text, nullable=False, default=JobStatus.PENDING.value
    )

    raw_data: Mapped[list[dict[str, Any]]] = mapped_column(
        JSON, nullable=False, default=list, comment="Ordered input rows"
    )
    total_rows: Mapped[int] = mapped_column(Integer, nullable=False)
    processed_rows: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0, comment="Rows consumed so far, drives slicing"
    )

    # Cumulative outcome counters
    imported_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    skipped_claimed_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    error_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    pending_image_count: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )

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
        CheckConstraint(
            f"status IN ({_status_values})", name="batch_jobs_status_check"
        ),
        CheckConstraint(
            "processed_rows >= 0 AND processed_rows <= total_rows",
            name="batch_jobs_progress_check",
        ),
        Index("ix_batch_jobs_status_created_at", "status", "created_at"),
    )

    def is_complete(self) -> bool:
        return self.processed_rows >= self.total_rows

    def get_progress_percentage(self) -> float:
        if self.total_rows <= 0:
            return 100.0
        return min(100.0, (self.processed_rows / self.total_rows) * 100.0)


class BatchJobError(Base):
    """One failed row of a batch job. Rows are only ever appended."""

    __tablename__ = "batch_job_errors"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    batch_job_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("batch_jobs.id", ondelete="CASCADE"), nullable=False
    )
    row_index: Mapped[int] = mapped_column(
        Integer, nullable=False, comment="0-based position in raw_data"
    )
    external_identifier: Mapped[str | None] = mapped_column(Text, nullable=True)
    message: Mapped[str] = mapped_column(Text, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True),
        nullable=False,
        server_default=func.now(),
        default=lambda: datetime.now(UTC),
    )

    __table_args__ = (
        Index("ix_batch_job_errors_job_id_row_index", "batch_job_id", "row_index"),
    )
