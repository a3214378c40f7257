"""
Worker contract.

Outbound: the dispatcher asks an external worker to run a job with an
empty ``POST {base}/jobs/{id}/execute`` carrying the shared secret.

Inbound: workers report back through ``WorkerCallbacks`` (result, failure,
progress). ``JobExecutor`` is an optional in-process worker that runs
handlers from ``job_registry`` and reports through the same callbacks.
"""

import asyncio
import logging
from datetime import UTC, datetime
from typing import Any
from uuid import UUID

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from orchestrator.config.logging import bind_job_context
from orchestrator.config.settings import Settings
from orchestrator.v1.core.exceptions import ConfigurationError, ConflictError, NotFoundError
from orchestrator.v1.core.registries import JobRegistry, job_registry
from orchestrator.v1.core.security import RUNNER_SECRET_HEADER
from orchestrator.v1.infra.jobs.models import Job, JobStatus
from orchestrator.v1.infra.jobs.retry import RetryPolicy
from orchestrator.v1.infra.jobs.store import JobStore

logger = logging.getLogger(__name__)


class WorkerClient:
    """Fire-and-forget HTTP client for the external worker."""

    def __init__(
        self,
        settings: Settings,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.settings = settings
        self.transport = transport
        self._tasks: set[asyncio.Task] = set()

    def execute_url(self, job_id: UUID) -> str:
        if not self.settings.job_worker_base_url:
            raise ConfigurationError("JOB_WORKER_BASE_URL is not configured")
        base = self.settings.job_worker_base_url.rstrip("/")
        return f"{base}/jobs/{job_id}/execute"

    async def post_execute(self, job_id: UUID) -> int | None:
        """
        Send the execute request and return the worker's status code.

        Transport errors are logged and reported as None: nobody awaits the
        outcome, the reaper and retry policy cover a worker that never
        reports back.
        """
        url = self.execute_url(job_id)
        headers = {RUNNER_SECRET_HEADER: self.settings.job_runner_secret or ""}

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.job_worker_timeout_s,
                transport=self.transport,
            ) as client:
                response = await client.post(url, headers=headers)
        except httpx.HTTPError as e:
            logger.warning(
                "Worker execute request failed",
                extra={"job_id": str(job_id), "url": url, "error": str(e)},
            )
            return None

        if response.is_error:
            logger.warning(
                "Worker rejected execute request",
                extra={
                    "job_id": str(job_id),
                    "url": url,
                    "status_code": response.status_code,
                },
            )
        else:
            logger.info(
                "Worker accepted execute request",
                extra={"job_id": str(job_id), "status_code": response.status_code},
            )
        return response.status_code

    def fire(self, job_id: UUID) -> asyncio.Task:
        """Schedule the execute request on the running loop without awaiting it."""
        task = asyncio.create_task(self.post_execute(job_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        """Wait for in-flight requests, e.g. before shutdown."""
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)


class WorkerCallbacks:
    """Inbound mutators workers report through."""

    def __init__(self, store: JobStore, policy: RetryPolicy):
        self.store = store
        self.policy = policy

    async def report_result(
        self, session: AsyncSession, job_id: UUID, result: dict[str, Any]
    ) -> Job:
        return await self.store.set_result(session, job_id, result)

    async def report_failure(
        self,
        session: AsyncSession,
        job_id: UUID,
        error: str,
        now: datetime | None = None,
    ) -> Job:
        """
        Record a failed attempt.

        The retry policy decides between a backoff requeue and terminal
        failure; attempts are not counted here since the claim counted them.
        """
        now = now or datetime.now(UTC)
        job = await self.store.find_by_id(session, job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        if job.status != JobStatus.PROCESSING.value:
            raise ConflictError(
                f"Only processing jobs can report failure, job is {job.status}",
                details={"job_id": str(job_id), "status": job.status},
            )

        decision = self.policy.evaluate_failure(job.attempts, job.max_attempts, now)
        if decision.retry:
            return await self.store.schedule_retry(
                session, job_id, decision.next_retry_at, error
            )

        logger.error(
            "Job failed permanently",
            extra={
                "job_id": str(job_id),
                "type": job.type,
                "attempts": job.attempts,
                "error": error,
            },
        )
        return await self.store.set_status(
            session, job_id, JobStatus.FAILED, error=error, completed_at=now
        )

    async def report_progress(
        self,
        session: AsyncSession,
        job_id: UUID,
        processed_delta: int = 0,
        failed_delta: int = 0,
        processed_items: int | None = None,
        total_items: int | None = None,
    ) -> Job:
        return await self.store.update_progress(
            session,
            job_id,
            processed_delta=processed_delta,
            failed_delta=failed_delta,
            processed_items=processed_items,
            total_items=total_items,
        )


class JobExecutor:
    """In-process worker runtime backed by ``job_registry``."""

    def __init__(self, callbacks: WorkerCallbacks, registry: JobRegistry = job_registry):
        self.callbacks = callbacks
        self.registry = registry

    async def execute(self, session: AsyncSession, job_id: UUID) -> dict[str, Any]:
        store = self.callbacks.store
        job = await store.find_by_id(session, job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        if job.status != JobStatus.PROCESSING.value:
            raise ConflictError(
                f"Only processing jobs can execute, job is {job.status}",
                details={"job_id": str(job_id), "status": job.status},
            )

        bind_job_context(job_id=str(job.id), job_type=job.type)
        payload = dict(job.payload or {})

        if not self.registry.has(job.type):
            error = f"No handler registered for job type: {job.type}"
            logger.error(error, extra={"job_id": str(job_id)})
            job = await self.callbacks.report_failure(session, job_id, error)
            return self._outcome(job)

        handler = self.registry.get(job.type)
        logger.info("Executing job", extra={"job_id": str(job_id), "type": job.type})

        try:
            result = await handler.handle(session, str(job_id), payload)
        except Exception as e:
            logger.exception(
                "Job handler failed", extra={"job_id": str(job_id), "error": str(e)}
            )
            # Discard whatever the handler left in the session
            await session.rollback()
            job = await self.callbacks.report_failure(
                session, job_id, str(e) or e.__class__.__name__
            )
            return self._outcome(job)

        job = await self.callbacks.report_result(session, job_id, result or {})
        return self._outcome(job)

    @staticmethod
    def _outcome(job: Job) -> dict[str, Any]:
        return {
            "job_id": str(job.id),
            "status": job.status,
            "attempts": job.attempts,
            "next_retry_at": job.next_retry_at.isoformat() if job.next_retry_at else None,
            "last_error": job.last_error,
            "result": job.result,
        }


_worker_client: WorkerClient | None = None


def get_worker_client(settings: Settings) -> WorkerClient:
    """Get or create the shared worker client so in-flight tasks stay referenced."""
    global _worker_client
    if _worker_client is None or _worker_client.settings is not settings:
        _worker_client = WorkerClient(settings)
    return _worker_client
