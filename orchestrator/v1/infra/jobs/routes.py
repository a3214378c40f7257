"""
Job API endpoints.

Producer and admin endpoints (create, list, inspect, retry, cancel), the
dispatcher trigger, and the secret-protected worker callbacks.
"""

import logging
from typing import Any
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.config.settings import Settings, SettingsDep
from orchestrator.infra.database import get_session
from orchestrator.v1.core.exceptions import NotFoundError, create_success_response
from orchestrator.v1.core.security import Principal, PrincipalDep, RunnerSecretDep
from orchestrator.v1.infra.jobs.dispatcher import Dispatcher
from orchestrator.v1.infra.jobs.models import Job, JobStatus
from orchestrator.v1.infra.jobs.retry import get_retry_policy
from orchestrator.v1.infra.jobs.schemas import (
    DispatchTickResponse,
    JobCreate,
    JobFailureReport,
    JobListResponse,
    JobLogResponse,
    JobProgressUpdate,
    JobResponse,
    JobResultReport,
)
from orchestrator.v1.infra.jobs.store import JobStore, get_job_store
from orchestrator.v1.infra.jobs.worker import (
    JobExecutor,
    WorkerCallbacks,
    get_worker_client,
)

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/jobs", tags=["jobs"])


def get_store(settings: Settings = SettingsDep) -> JobStore:
    return get_job_store(settings)


def get_callbacks(
    store: JobStore = Depends(get_store), settings: Settings = SettingsDep
) -> WorkerCallbacks:
    return WorkerCallbacks(store, get_retry_policy(settings))


def get_dispatcher(
    store: JobStore = Depends(get_store), settings: Settings = SettingsDep
) -> Dispatcher:
    return Dispatcher(settings, store, get_worker_client(settings))


def get_executor(callbacks: WorkerCallbacks = Depends(get_callbacks)) -> JobExecutor:
    return JobExecutor(callbacks)


def _job_data(job: Job) -> dict[str, Any]:
    job_data = JobResponse.model_validate(job)
    job_data.progress_percentage = job.get_progress_percentage()
    return job_data.model_dump(mode="json")


@router.post("", response_model=dict, status_code=status.HTTP_201_CREATED)
async def create_job(
    job_request: JobCreate,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    store: JobStore = Depends(get_store),
) -> dict[str, Any]:
    """Create a pending job. 409 when the type already has an active job."""
    job = await store.create(
        session,
        job_request.type,
        job_request.payload,
        priority=job_request.priority,
        scheduled_for=job_request.scheduled_for,
        created_by=principal.user_id,
        total_items=job_request.total_items,
    )

    logger.info(
        "Job created via API",
        extra={"job_id": str(job.id), "type": job.type, "user_id": principal.user_id},
    )

    return create_success_response(data=_job_data(job))


@router.get("", response_model=dict)
async def list_jobs(
    status: list[JobStatus] | None = Query(
        default=None, description="Filter by status"
    ),
    type: str | None = Query(default=None, description="Filter by job type"),
    limit: int = Query(default=50, ge=1, le=1000, description="Maximum results"),
    offset: int = Query(default=0, ge=0, description="Results offset"),
    session: AsyncSession = Depends(get_session),
    store: JobStore = Depends(get_store),
) -> dict[str, Any]:
    """List jobs with filtering and pagination, newest first."""
    jobs, total = await store.list_jobs(
        session, status=status, job_type=type, limit=limit, offset=offset
    )

    job_responses = []
    for job in jobs:
        job_data = JobResponse.model_validate(job)
        job_data.progress_percentage = job.get_progress_percentage()
        job_responses.append(job_data)

    response_data = JobListResponse(
        jobs=job_responses,
        total=total,
        limit=limit,
        offset=offset,
    )

    return create_success_response(data=response_data.model_dump(mode="json"))


@router.get("/stats/overview", response_model=dict)
async def get_job_stats(
    session: AsyncSession = Depends(get_session),
    store: JobStore = Depends(get_store),
) -> dict[str, Any]:
    """Get job counts by status and type."""
    stats = await store.get_stats(session)
    return create_success_response(data=stats.model_dump())


@router.post("/dispatch", response_model=dict, dependencies=[RunnerSecretDep])
async def dispatch_tick(
    session: AsyncSession = Depends(get_session),
    dispatcher: Dispatcher = Depends(get_dispatcher),
) -> dict[str, Any]:
    """Run one dispatcher tick (called by an external scheduler)."""
    result = await dispatcher.tick(session)
    response = DispatchTickResponse(**result.to_dict())
    return create_success_response(data=response.model_dump(mode="json"))


@router.get("/{job_id}", response_model=dict)
async def get_job(
    job_id: UUID,
    session: AsyncSession = Depends(get_session),
    store: JobStore = Depends(get_store),
) -> dict[str, Any]:
    """Get a specific job by ID."""
    job = await store.find_by_id(session, job_id)
    if not job:
        raise NotFoundError(f"Job {job_id} not found")

    return create_success_response(data=_job_data(job))


@router.get("/{job_id}/logs", response_model=dict)
async def get_job_logs(
    job_id: UUID,
    session: AsyncSession = Depends(get_session),
    store: JobStore = Depends(get_store),
) -> dict[str, Any]:
    """Audit trail of a job, oldest first."""
    logs = await store.get_logs(session, job_id)
    return create_success_response(
        data=[JobLogResponse.model_validate(log).model_dump(mode="json") for log in logs]
    )


@router.post("/{job_id}/retry", response_model=dict)
async def retry_job(
    job_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    store: JobStore = Depends(get_store),
) -> dict[str, Any]:
    """Reset a failed or cancelled job to pending, without backoff."""
    job = await store.reset_for_retry(session, job_id, actor_id=principal.user_id)

    logger.info(
        "Job retried via API",
        extra={"job_id": str(job_id), "user_id": principal.user_id},
    )

    return create_success_response(data=_job_data(job))


@router.post("/{job_id}/cancel", response_model=dict)
async def cancel_job(
    job_id: UUID,
    principal: Principal = PrincipalDep,
    session: AsyncSession = Depends(get_session),
    store: JobStore = Depends(get_store),
) -> dict[str, Any]:
    """Cancel a pending or processing job."""
    job = await store.cancel(session, job_id, actor_id=principal.user_id)

    logger.info(
        "Job cancelled via API",
        extra={"job_id": str(job_id), "user_id": principal.user_id},
    )

    return create_success_response(data=_job_data(job))


# Worker callbacks


@router.post("/{job_id}/result", response_model=dict, dependencies=[RunnerSecretDep])
async def report_result(
    job_id: UUID,
    report: JobResultReport,
    session: AsyncSession = Depends(get_session),
    callbacks: WorkerCallbacks = Depends(get_callbacks),
) -> dict[str, Any]:
    """Worker reports a successful run."""
    job = await callbacks.report_result(session, job_id, report.result)
    return create_success_response(data=_job_data(job))


@router.post("/{job_id}/failure", response_model=dict, dependencies=[RunnerSecretDep])
async def report_failure(
    job_id: UUID,
    report: JobFailureReport,
    session: AsyncSession = Depends(get_session),
    callbacks: WorkerCallbacks = Depends(get_callbacks),
) -> dict[str, Any]:
    """Worker reports a failed run; the job is requeued or failed."""
    job = await callbacks.report_failure(session, job_id, report.error)
    return create_success_response(data=_job_data(job))


@router.post("/{job_id}/progress", response_model=dict, dependencies=[RunnerSecretDep])
async def report_progress(
    job_id: UUID,
    update: JobProgressUpdate,
    session: AsyncSession = Depends(get_session),
    callbacks: WorkerCallbacks = Depends(get_callbacks),
) -> dict[str, Any]:
    """Worker reports progress counters."""
    job = await callbacks.report_progress(
        session,
        job_id,
        processed_delta=update.processed_delta,
        failed_delta=update.failed_delta,
        processed_items=update.processed_items,
        total_items=update.total_items,
    )
    return create_success_response(data=_job_data(job))


@router.post("/{job_id}/execute", response_model=dict, dependencies=[RunnerSecretDep])
async def execute_job(
    job_id: UUID,
    session: AsyncSession = Depends(get_session),
    executor: JobExecutor = Depends(get_executor),
) -> dict[str, Any]:
    """Run a processing job with the in-process handler registered for its type."""
    outcome = await executor.execute(session, job_id)
    return create_success_response(data=outcome)
