"""
Batch import API endpoints.
"""

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.config.settings import Settings, SettingsDep
from orchestrator.infra.database import get_session
from orchestrator.v1.core.exceptions import create_success_response
from orchestrator.v1.core.security import Principal, PrincipalDep
from orchestrator.v1.imports.models import BatchJob
from orchestrator.v1.imports.processor import BatchProcessor
from orchestrator.v1.imports.schemas import (
    BatchJobCreate,
    BatchJobDetailResponse,
    BatchJobErrorResponse,
    BatchJobListResponse,
    BatchJobResponse,
    ProcessBatchResponse,
)
from orchestrator.v1.imports.store import BatchJobStore
from orchestrator.v1.infra.jobs.models import JobStatus

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/imports", tags=["imports"])


def get_batch_store(settings: Settings = SettingsDep) -> BatchJobStore:
    return BatchJobStore(settings)


def get_batch_processor(
    store: BatchJobStore = Depends(get_batch_store), settings: Settings = SettingsDep
) -> BatchProcessor:
    return BatchProcessor(settings, store)


def _batch_job_data(job: BatchJob) -> dict[str, Any]:
    job_data = BatchJobResponse.model_validate(job)
    job_data.progress_percentage = job.get_progress_percentage()
    return job_data.model_dump(mode="json")


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_import(
    request: BatchJobCreate,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    store: BatchJobStore = Depends(get_batch_store),
) -> dict[str, Any]:
    """Create a batch job holding the uploaded rows."""
    job = await store.create(
        session,
        request.rows,
        kind=request.kind,
        filename=request.filename,
        created_by=principal.user_id,
    )
    return create_success_response(data=_batch_job_data(job))


@router.get("", response_model=dict)
async def list_imports(
    status: list[JobStatus] | None = Query(
        default=None, description="Filter by status"
    ),
    kind: str | None = Query(default=None, description="Filter by batch kind"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    session: AsyncSession = Depends(get_session),
    store: BatchJobStore = Depends(get_batch_store),
) -> dict[str, Any]:
    """List batch jobs, newest first."""
    jobs, total = await store.list_jobs(
        session, status=status, kind=kind, limit=limit, offset=offset
    )

    job_responses = []
    for job in jobs:
        job_data = BatchJobResponse.model_validate(job)
        job_data.progress_percentage = job.get_progress_percentage()
        job_responses.append(job_data)

    response_data = BatchJobListResponse(
        jobs=job_responses,
        total=total,
        limit=limit,
        offset=offset,
    )
    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/{job_id}", response_model=dict)
async def get_import(
    job_id: UUID,
    session: AsyncSession = Depends(get_session),
    store: BatchJobStore = Depends(get_batch_store),
) -> dict[str, Any]:
    """Get a batch job together with its row errors."""
    job = await store.require(session, job_id)
    errors = await store.get_errors(session, job_id)

    detail = BatchJobDetailResponse.model_validate(job)
    detail.progress_percentage = job.get_progress_percentage()
    detail.errors = [BatchJobErrorResponse.model_validate(error) for error in errors]

    return create_success_response(data=detail.model_dump(mode="json"))


@router.post("/{job_id}/process", response_model=dict)
async def process_import_batch(
    job_id: UUID,
    batch_size: int | None = Query(
        default=None, description="Rows to process in this call (1-100)"
    ),
    session: AsyncSession = Depends(get_session),
    processor: BatchProcessor = Depends(get_batch_processor),
) -> dict[str, Any]:
    """Process the next chunk of rows."""
    outcome = await processor.process_next_batch(session, job_id, batch_size)
    response = ProcessBatchResponse.model_validate(outcome.to_dict())
    return create_success_response(data=response.model_dump(mode="json"))


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_import(
    job_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    store: BatchJobStore = Depends(get_batch_store),
) -> dict[str, Any]:
    """Cancel a pending or processing batch job."""
    job = await store.cancel(session, job_id)

    logger.info(
        "Batch job cancelled via API",
        extra={"job_id": str(job_id), "user_id": principal.user_id},
    )
    return create_success_response(data=_batch_job_data(job))
