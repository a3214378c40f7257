"""
Batch import Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from orchestrator.v1.imports.models import DEFAULT_BATCH_KIND
from orchestrator.v1.infra.jobs.models import JobStatus


class BatchJobCreate(BaseModel):
    """Schema for creating a batch job from a list of rows."""

    kind: str = Field(default=DEFAULT_BATCH_KIND, description="Row processor name")
    filename: str | None = Field(default=None, description="Source file name")
    rows: list[dict[str, Any]] = Field(..., description="Input rows, in order")


class BatchJobResponse(BaseModel):
    """Batch job snapshot without its input rows."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    kind: str
    filename: str | None = None
    status: JobStatus

    total_rows: int
    processed_rows: int
    progress_percentage: float | None = None

    imported_count: int
    updated_count: int
    skipped_count: int
    skipped_claimed_count: int
    error_count: int
    pending_image_count: int

    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    created_by: str | None = None


class BatchJobErrorResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    row_index: int
    external_identifier: str | None = None
    message: str


class BatchJobDetailResponse(BatchJobResponse):
    errors: list[BatchJobErrorResponse] = Field(default_factory=list)


class BatchJobListResponse(BaseModel):
    jobs: list[BatchJobResponse]
    total: int
    limit: int
    offset: int


class BatchResult(BaseModel):
    """What one process call did."""

    processed: int = 0
    imported: int = 0
    updated: int = 0
    skipped: int = 0
    skipped_claimed: int = 0
    pending_image_count: int = 0
    errors: list[BatchJobErrorResponse] = Field(default_factory=list)


class BatchJobState(BaseModel):
    status: JobStatus
    total_rows: int
    processed_rows: int
    is_complete: bool


class ProcessBatchResponse(BaseModel):
    job_id: UUID
    batch: BatchResult
    job: BatchJobState
