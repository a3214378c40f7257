"""
Dispatcher tick: reap stuck jobs, claim the next eligible one, and hand it
to the external worker without waiting for the response.

Ticks are triggered from outside (the dispatch endpoint or the CLI loop).
"""

from dataclasses import dataclass, field
from datetime import UTC, datetime
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.config.logging import bind_job_context, get_logger
from orchestrator.config.settings import Settings
from orchestrator.v1.infra.jobs.store import JobStore
from orchestrator.v1.infra.jobs.worker import WorkerClient

logger = get_logger(__name__)


@dataclass
class TickResult:
    configured: bool
    reaped: list[UUID] = field(default_factory=list)
    dispatched_job_id: UUID | None = None
    dispatched_job_type: str | None = None

    def to_dict(self) -> dict:
        return {
            "configured": self.configured,
            "reaped": len(self.reaped),
            "dispatched_job_id": self.dispatched_job_id,
            "dispatched_job_type": self.dispatched_job_type,
        }


class Dispatcher:
    def __init__(self, settings: Settings, store: JobStore, worker: WorkerClient):
        self.settings = settings
        self.store = store
        self.worker = worker

    async def tick(self, session: AsyncSession, now: datetime | None = None) -> TickResult:
        """Run one dispatcher cycle. Dispatches at most one job."""
        if not self.settings.worker_configured:
            logger.warning(
                "Dispatcher not configured, skipping tick",
                worker_base_url_set=bool(self.settings.job_worker_base_url),
                runner_secret_set=bool(self.settings.job_runner_secret),
            )
            return TickResult(configured=False)

        now = now or datetime.now(UTC)
        reaped = await self.store.reap_stuck(session, now)

        job = await self.store.claim_next(session, now)
        if job is None:
            logger.debug("No job to dispatch", reaped=len(reaped))
            return TickResult(configured=True, reaped=reaped)

        bind_job_context(job_id=str(job.id), job_type=job.type)
        self.worker.fire(job.id)

        logger.info(
            "Job dispatched",
            job_id=str(job.id),
            job_type=job.type,
            attempt=job.attempts,
            reaped=len(reaped),
        )
        return TickResult(
            configured=True,
            reaped=reaped,
            dispatched_job_id=job.id,
            dispatched_job_type=job.type,
        )
