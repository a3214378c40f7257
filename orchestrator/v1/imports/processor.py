"""
Pull-driven chunk processing for batch jobs.

Each call consumes the next slice of ``raw_data`` starting at
``processed_rows``. A client drives the job by calling until
``is_complete`` comes back true.
"""

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.config.settings import Settings
from orchestrator.v1.core.exceptions import (
    BadStateError,
    ExecutionError,
    ValidationError,
)
from orchestrator.v1.core.registries import RowOutcome
from orchestrator.v1.imports.models import BatchJob
from orchestrator.v1.imports.store import BatchJobStore, ChunkCounts
from orchestrator.v1.infra.jobs.models import JobStatus

logger = logging.getLogger(__name__)

_OUTCOME_FIELDS = {
    RowOutcome.IMPORTED: "imported",
    RowOutcome.UPDATED: "updated",
    RowOutcome.SKIPPED: "skipped",
    RowOutcome.SKIPPED_CLAIMED: "skipped_claimed",
}


@dataclass
class BatchOutcome:
    job_id: UUID
    counts: ChunkCounts
    errors: list[dict[str, Any]] = field(default_factory=list)
    status: str = JobStatus.PROCESSING.value
    total_rows: int = 0
    processed_rows: int = 0
    is_complete: bool = False

    @classmethod
    def idle(cls, job: BatchJob) -> "BatchOutcome":
        """Zero-progress outcome for a job with nothing left to do."""
        return cls(
            job_id=job.id,
            counts=ChunkCounts(),
            status=job.status,
            total_rows=job.total_rows,
            processed_rows=job.processed_rows,
            is_complete=True,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "job_id": self.job_id,
            "batch": {
                "processed": self.counts.processed,
                "imported": self.counts.imported,
                "updated": self.counts.updated,
                "skipped": self.counts.skipped,
                "skipped_claimed": self.counts.skipped_claimed,
                "pending_image_count": self.counts.pending_image_count,
                "errors": self.errors,
            },
            "job": {
                "status": self.status,
                "total_rows": self.total_rows,
                "processed_rows": self.processed_rows,
                "is_complete": self.is_complete,
            },
        }


class BatchProcessor:
    def __init__(self, settings: Settings, store: BatchJobStore):
        self.settings = settings
        self.store = store

    def validate_batch_size(self, batch_size: int) -> None:
        maximum = self.settings.import_max_batch_size
        if not 1 <= batch_size <= maximum:
            raise ValidationError(
                f"batch_size must be between 1 and {maximum}, got: {batch_size}",
                details={"batch_size": batch_size, "max_batch_size": maximum},
            )

    async def process_next_batch(
        self,
        session: AsyncSession,
        job_id: UUID,
        batch_size: int | None = None,
    ) -> BatchOutcome:
        """Process the next chunk of a batch job and record its outcome."""
        batch_size = batch_size if batch_size is not None else self.settings.import_batch_size
        self.validate_batch_size(batch_size)

        job = await self.store.require(session, job_id)

        if job.status in (JobStatus.CANCELLED.value, JobStatus.FAILED.value):
            raise BadStateError(
                f"Cannot process job with status: {job.status}",
                details={"job_id": str(job_id), "status": job.status},
            )
        if job.status == JobStatus.COMPLETED.value:
            if job.is_complete():
                return BatchOutcome.idle(job)
            raise BadStateError(
                "Job is completed but has unprocessed rows",
                details={
                    "job_id": str(job_id),
                    "processed_rows": job.processed_rows,
                    "total_rows": job.total_rows,
                },
            )

        now = datetime.now(UTC)
        if job.status == JobStatus.PENDING.value:
            if await self.store.mark_processing(session, job_id, now):
                logger.info("Batch job started", extra={"job_id": str(job_id)})
            job = await self.store.require(session, job_id)
            if job.status != JobStatus.PROCESSING.value:
                raise BadStateError(
                    f"Cannot process job with status: {job.status}",
                    details={"job_id": str(job_id), "status": job.status},
                )

        slice_start = job.processed_rows
        slice_end = min(slice_start + batch_size, job.total_rows)
        rows = list(job.raw_data[slice_start:slice_end])

        if not rows:
            job = await self.store.mark_completed(session, job_id, now)
            return BatchOutcome.idle(job)

        if not self.store.processors.has(job.kind):
            raise BadStateError(
                f"No row processor registered for kind: {job.kind}",
                details={"job_id": str(job_id), "kind": job.kind},
            )
        processor = self.store.processors.get(job.kind)

        counts = ChunkCounts(processed=len(rows))
        errors: list[dict[str, Any]] = []

        for offset, row in enumerate(rows):
            row_index = slice_start + offset
            try:
                # A failed row rolls back only its own writes
                async with session.begin_nested():
                    row_result = await processor.process_row(session, row, row_index)
            except Exception as e:
                error = ExecutionError(
                    str(e) or e.__class__.__name__,
                    row_index=row_index,
                    external_identifier=processor.external_identifier(row),
                )
                errors.append(error.to_record())
                logger.debug(
                    "Batch row failed",
                    extra={"job_id": str(job_id), "row_index": row_index, "error": error.message},
                )
                continue

            outcome_field = _OUTCOME_FIELDS[RowOutcome(row_result.outcome)]
            setattr(counts, outcome_field, getattr(counts, outcome_field) + 1)
            counts.pending_image_count += row_result.pending_image_count

        job = await self.store.apply_chunk(
            session, job_id, slice_start, counts, errors, datetime.now(UTC)
        )

        logger.info(
            "Batch processed",
            extra={
                "job_id": str(job_id),
                "processed": counts.processed,
                "errors": len(errors),
                "processed_rows": job.processed_rows,
                "total_rows": job.total_rows,
                "status": job.status,
            },
        )

        return BatchOutcome(
            job_id=job.id,
            counts=counts,
            errors=errors,
            status=job.status,
            total_rows=job.total_rows,
            processed_rows=job.processed_rows,
            is_complete=job.is_complete(),
        )
