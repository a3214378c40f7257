from datetime import UTC, datetime

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import func, select, text
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.config.logging import get_logger
from orchestrator.config.settings import Settings, SettingsDep
from orchestrator.infra.database import get_session
from orchestrator.v1.core.exceptions import create_success_response
from orchestrator.v1.infra.jobs.models import ACTIVE_STATUSES, Job
from orchestrator.v1.infra.jobs.store import get_job_store

logger = get_logger(__name__)
router = APIRouter()


class DatabaseHealth(BaseModel):
    """Database health status."""

    connected: bool
    response_time_ms: float | None = None
    error: str | None = None


class QueueHealth(BaseModel):
    """Job queue status."""

    queue_depth: int = 0
    stuck_jobs_count: int = 0
    dispatcher_configured: bool = False


@router.get("/healthz", response_model=dict)
async def health_check(
    settings: Settings = SettingsDep, session: AsyncSession = Depends(get_session)
):
    """Health check with database connectivity and queue status."""

    timestamp = datetime.now(UTC).isoformat()

    db_health = await _check_database_health(session)
    overall_ok = db_health.connected

    queue_health = None
    if db_health.connected:
        try:
            queue_health = await _check_queue_health(session, settings)
        except Exception as e:
            # Queue metrics are informational; they do not fail the health check
            logger.warning("Queue health check failed", error=str(e))
            queue_health = QueueHealth(
                dispatcher_configured=settings.worker_configured
            )

    health_data = {
        "ok": overall_ok,
        "version": settings.version,
        "environment": settings.environment,
        "timestamp": timestamp,
        "database": db_health.model_dump(),
        "queue": queue_health.model_dump() if queue_health else None,
    }

    return create_success_response(data=health_data)


async def _check_database_health(session: AsyncSession) -> DatabaseHealth:
    """Check database connectivity and response time."""
    start_time = datetime.now(UTC)

    try:
        await session.execute(text("SELECT 1"))

        end_time = datetime.now(UTC)
        response_time_ms = (end_time - start_time).total_seconds() * 1000

        return DatabaseHealth(
            connected=True, response_time_ms=round(response_time_ms, 2)
        )

    except Exception as e:
        logger.error("Database health check failed", error=str(e))
        return DatabaseHealth(connected=False, error=str(e))


async def _check_queue_health(session: AsyncSession, settings: Settings) -> QueueHealth:
    """Queue depth and jobs stuck in processing past the timeout."""
    queue_depth_result = await session.execute(
        select(func.count(Job.id)).where(
            Job.status.in_([s.value for s in ACTIVE_STATUSES])
        )
    )
    queue_depth = queue_depth_result.scalar() or 0

    store = get_job_store(settings)
    stuck_jobs_count = await store.count_stuck(session, datetime.now(UTC))

    return QueueHealth(
        queue_depth=queue_depth,
        stuck_jobs_count=stuck_jobs_count,
        dispatcher_configured=settings.worker_configured,
    )
