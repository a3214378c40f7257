"""
Job system Pydantic schemas.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field, model_validator

from orchestrator.v1.infra.jobs.models import JobStatus


class JobCreate(BaseModel):
    """Schema for creating a new job."""

    type: str = Field(..., min_length=1, description="Job type identifier")
    payload: dict[str, Any] = Field(default_factory=dict, description="Job parameters")
    priority: int = Field(
        default=5, ge=1, le=10, description="Priority (1=highest, 10=lowest)"
    )
    scheduled_for: datetime | None = Field(
        default=None, description="Earliest time the job may be dispatched"
    )
    total_items: int | None = Field(
        default=None, ge=0, description="Expected number of items, when known"
    )


class JobResponse(BaseModel):
    """Schema for job API responses."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    type: str
    status: JobStatus
    priority: int

    attempts: int
    max_attempts: int
    next_retry_at: datetime | None = None
    scheduled_for: datetime | None = None
    last_error: str | None = None

    total_items: int | None = None
    processed_items: int
    failed_items: int
    progress_percentage: float | None = None

    payload: dict[str, Any]
    result: dict[str, Any] | None = None

    started_at: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    created_by: str | None = None


class JobListFilters(BaseModel):
    """Schema for job listing filters."""

    status: list[JobStatus] | None = Field(
        default=None, description="Filter by job status"
    )
    type: str | None = Field(default=None, description="Filter by job type")
    limit: int = Field(
        default=50, ge=1, le=1000, description="Maximum results to return"
    )
    offset: int = Field(default=0, ge=0, description="Results offset for pagination")


class JobListResponse(BaseModel):
    """Schema for job list API response."""

    jobs: list[JobResponse]
    total: int
    limit: int
    offset: int


class JobStatsResponse(BaseModel):
    """Schema for job statistics."""

    total_jobs: int
    by_status: dict[str, int]
    by_type: dict[str, int]
    queue_depth: int  # pending + processing
    stuck_jobs: int


class JobLogResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    job_id: UUID
    action: str
    level: str
    message: str | None = None
    actor_id: str | None = None
    details: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime


class JobProgressUpdate(BaseModel):
    """
    Progress report from a worker.

    Deltas are added to the live counters; absolute values are applied
    monotonically.
    """

    processed_delta: int = Field(default=0, ge=0)
    failed_delta: int = Field(default=0, ge=0)
    processed_items: int | None = Field(default=None, ge=0)
    total_items: int | None = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _not_empty(self) -> "JobProgressUpdate":
        if (
            not self.processed_delta
            and not self.failed_delta
            and self.processed_items is None
            and self.total_items is None
        ):
            raise ValueError("Progress update must change at least one counter")
        return self


class JobResultReport(BaseModel):
    """Successful completion reported by a worker."""

    result: dict[str, Any] = Field(default_factory=dict)


class JobFailureReport(BaseModel):
    """Failed attempt reported by a worker."""

    error: str = Field(..., min_length=1, max_length=10_000)


class DispatchTickResponse(BaseModel):
    """Outcome of one dispatcher tick."""

    configured: bool
    reaped: int = 0
    dispatched_job_id: UUID | None = None
    dispatched_job_type: str | None = None
