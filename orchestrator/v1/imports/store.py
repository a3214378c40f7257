"""
Batch job store.

Chunk results are applied with one guarded UPDATE of deltas over the live
row; the error rows of the chunk are inserted in the same transaction, so
``error_count`` always matches the number of stored errors.
"""

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import case, func, literal, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.config.settings import Settings
from orchestrator.v1.core.exceptions import (
    ConflictError,
    NoopError,
    NotFoundError,
    ValidationError,
)
from orchestrator.v1.core.registries import RowProcessorRegistry, row_processor_registry
from orchestrator.v1.imports.models import DEFAULT_BATCH_KIND, BatchJob, BatchJobError
from orchestrator.v1.infra.jobs.models import ACTIVE_STATUSES, JobStatus

logger = logging.getLogger(__name__)


@dataclass
class ChunkCounts:
    """Per-category deltas produced by one chunk."""

    processed: int = 0
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    skipped_claimed: int = 0
    pending_image_count: int = 0


class BatchJobStore:
    """Service for persisting and mutating batch jobs."""

    def __init__(
        self,
        settings: Settings,
        processors: RowProcessorRegistry = row_processor_registry,
    ):
        self.settings = settings
        self.processors = processors

    async def create(
        self,
        session: AsyncSession,
        rows: Sequence[dict[str, Any]],
        kind: str = DEFAULT_BATCH_KIND,
        filename: str | None = None,
        created_by: str | None = None,
    ) -> BatchJob:
        """Create a pending batch job over ``rows``."""
        if not self.processors.has(kind):
            raise ValidationError(
                f"Unknown batch job kind: {kind}",
                details={"allowed_kinds": self.processors.list()},
            )
        if not rows:
            raise ValidationError("A batch job needs at least one row")
        if len(rows) > self.settings.import_max_rows:
            raise ValidationError(
                f"Too many rows: {len(rows)} (max {self.settings.import_max_rows})",
                details={"max_rows": self.settings.import_max_rows},
            )

        now = datetime.now(UTC)
        job = BatchJob(
            id=uuid4(),
            kind=kind,
            filename=filename,
            status=JobStatus.PENDING.value,
            raw_data=list(rows),
            total_rows=len(rows),
            processed_rows=0,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )
        session.add(job)
        await session.commit()
        await session.refresh(job)

        logger.info(
            "Batch job created",
            extra={
                "job_id": str(job.id),
                "kind": kind,
                "source_filename": filename,
                "total_rows": job.total_rows,
            },
        )
        return job

    async def find_by_id(self, session: AsyncSession, job_id: UUID) -> BatchJob | None:
        result = await session.execute(
            select(BatchJob)
            .where(BatchJob.id == job_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def require(self, session: AsyncSession, job_id: UUID) -> BatchJob:
        job = await self.find_by_id(session, job_id)
        if job is None:
            raise NotFoundError(f"Batch job {job_id} not found")
        return job

    async def list_jobs(
        self,
        session: AsyncSession,
        status: Sequence[JobStatus] | None = None,
        kind: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[BatchJob], int]:
        conditions = []
        if status:
            conditions.append(BatchJob.status.in_([JobStatus(s).value for s in status]))
        if kind:
            conditions.append(BatchJob.kind == kind)

        total_result = await session.execute(
            select(func.count(BatchJob.id)).where(*conditions)
        )
        total = total_result.scalar() or 0

        result = await session.execute(
            select(BatchJob)
            .where(*conditions)
            .order_by(BatchJob.created_at.desc(), BatchJob.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total

    async def get_errors(
        self, session: AsyncSession, job_id: UUID
    ) -> list[BatchJobError]:
        """Errors in the order they were recorded."""
        result = await session.execute(
            select(BatchJobError)
            .where(BatchJobError.batch_job_id == job_id)
            .order_by(BatchJobError.row_index, BatchJobError.created_at)
        )
        return list(result.scalars().all())

    async def mark_processing(
        self, session: AsyncSession, job_id: UUID, now: datetime
    ) -> bool:
        """pending -> processing. False when the job was no longer pending."""
        result = await session.execute(
            update(BatchJob)
            .where(BatchJob.id == job_id, BatchJob.status == JobStatus.PENDING.value)
            .values(status=JobStatus.PROCESSING.value, started_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount > 0

    async def mark_completed(
        self, session: AsyncSession, job_id: UUID, now: datetime
    ) -> BatchJob:
        """Complete a processing job whose rows are all consumed."""
        result = await session.execute(
            update(BatchJob)
            .where(
                BatchJob.id == job_id,
                BatchJob.status == JobStatus.PROCESSING.value,
                BatchJob.processed_rows >= BatchJob.total_rows,
            )
            .values(status=JobStatus.COMPLETED.value, completed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await session.rollback()
            job = await self.require(session, job_id)
            if job.status != JobStatus.COMPLETED.value:
                raise ConflictError(
                    f"Batch job cannot complete from {job.status}",
                    details={"job_id": str(job_id), "status": job.status},
                )
            return job

        await session.commit()
        logger.info("Batch job completed", extra={"job_id": str(job_id)})
        return await self.require(session, job_id)

    async def apply_chunk(
        self,
        session: AsyncSession,
        job_id: UUID,
        slice_start: int,
        counts: ChunkCounts,
        errors: Sequence[dict[str, Any]],
        now: datetime,
    ) -> BatchJob:
        """
        Record one chunk's outcome.

        The UPDATE only matches while ``processed_rows`` still equals
        ``slice_start``; if another driver got there first the whole chunk
        (including anything row processors wrote) is rolled back and
        ConflictError is raised.
        """
        reaches_end = BatchJob.processed_rows + counts.processed >= BatchJob.total_rows

        result = await session.execute(
            update(BatchJob)
            .where(
                BatchJob.id == job_id,
                BatchJob.status == JobStatus.PROCESSING.value,
                BatchJob.processed_rows == slice_start,
            )
            .values(
                processed_rows=BatchJob.processed_rows + counts.processed,
                imported_count=BatchJob.imported_count + counts.imported,
                updated_count=BatchJob.updated_count + counts.updated,
                skipped_count=BatchJob.skipped_count + counts.skipped,
                skipped_claimed_count=BatchJob.skipped_claimed_count
                + counts.skipped_claimed,
                error_count=BatchJob.error_count + len(errors),
                pending_image_count=BatchJob.pending_image_count
                + counts.pending_image_count,
                status=case(
                    (reaches_end, JobStatus.COMPLETED.value),
                    else_=BatchJob.status,
                ),
                completed_at=case(
                    (reaches_end, literal(now, BatchJob.completed_at.type)),
                    else_=BatchJob.completed_at,
                ),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await session.rollback()
            job = await self.require(session, job_id)
            logger.warning(
                "Batch chunk rejected, job advanced concurrently",
                extra={
                    "job_id": str(job_id),
                    "slice_start": slice_start,
                    "processed_rows": job.processed_rows,
                    "status": job.status,
                },
            )
            raise ConflictError(
                "Batch job was advanced by another request",
                details={
                    "job_id": str(job_id),
                    "expected_processed_rows": slice_start,
                    "processed_rows": job.processed_rows,
                    "status": job.status,
                },
            )

        for error in errors:
            session.add(
                BatchJobError(
                    id=uuid4(),
                    batch_job_id=job_id,
                    row_index=error["row_index"],
                    external_identifier=error.get("external_identifier"),
                    message=error["message"],
                    created_at=now,
                )
            )

        await session.commit()
        return await self.require(session, job_id)

    async def cancel(self, session: AsyncSession, job_id: UUID) -> BatchJob:
        """Cancel a pending or processing batch job, NoopError otherwise."""
        now = datetime.now(UTC)
        result = await session.execute(
            update(BatchJob)
            .where(
                BatchJob.id == job_id,
                BatchJob.status.in_([s.value for s in ACTIVE_STATUSES]),
            )
            .values(
                status=JobStatus.CANCELLED.value, completed_at=now, updated_at=now
            )
            .execution_options(synchronize_session=False)
        )
        if result.rowcount == 0:
            await session.rollback()
            job = await self.require(session, job_id)
            raise NoopError(
                f"Batch job is already {job.status}",
                details={"job_id": str(job_id), "status": job.status},
            )

        await session.commit()
        logger.info("Batch job cancelled", extra={"job_id": str(job_id)})
        return await self.require(session, job_id)
