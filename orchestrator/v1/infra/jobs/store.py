"""
Job store: persistence and atomic mutation of generic jobs.

Every mutation is a single guarded UPDATE against the live row, followed by
an audit row in the same transaction. Listeners registered through
``JobStore.subscribe`` hear about status changes after they commit.
"""

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import and_, case, delete, exists, func, literal, or_, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from orchestrator.config.settings import Settings
from orchestrator.v1.core.exceptions import (
    ConflictError,
    JobTimeoutError,
    NoopError,
    NotFoundError,
    ValidationError,
)
from orchestrator.v1.infra.jobs.models import (
    ACTIVE_STATUSES,
    ALLOWED_TRANSITIONS,
    TERMINAL_STATUSES,
    Job,
    JobLog,
    JobStatus,
    JobType,
)
from orchestrator.v1.infra.jobs.schemas import JobStatsResponse

logger = logging.getLogger(__name__)

ACTIVE_TYPE_INDEX = "ix_jobs_one_active_per_type"

_ACTIONS: dict[JobStatus, str] = {
    JobStatus.PENDING: "job.retry_scheduled",
    JobStatus.PROCESSING: "job.claimed",
    JobStatus.COMPLETED: "job.completed",
    JobStatus.FAILED: "job.failed",
    JobStatus.CANCELLED: "job.cancelled",
}


@dataclass(frozen=True)
class JobStateChange:
    """Committed status change delivered to subscribers."""

    job_id: UUID
    type: str
    status: JobStatus
    occurred_at: datetime


StateListener = Callable[[JobStateChange], Any]


def _active_values() -> list[str]:
    return [s.value for s in ACTIVE_STATUSES]


def _is_active_type_conflict(exc: IntegrityError) -> bool:
    # Postgres names the index; SQLite names the indexed column
    message = str(exc.orig) if exc.orig is not None else str(exc)
    return ACTIVE_TYPE_INDEX in message or "jobs.type" in message


class JobStore:
    """Service for persisting and mutating generic jobs."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self._listeners: list[StateListener] = []

    # Subscription

    def subscribe(self, listener: StateListener) -> Callable[[], None]:
        """Register a state-change listener. Returns a callable that removes it."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self, job: Job, occurred_at: datetime) -> None:
        change = JobStateChange(
            job_id=job.id,
            type=job.type,
            status=JobStatus(job.status),
            occurred_at=occurred_at,
        )
        for listener in list(self._listeners):
            try:
                listener(change)
            except Exception:
                logger.exception(
                    "Job state listener failed",
                    extra={"job_id": str(job.id), "status": job.status},
                )

    # Validation

    def allowed_types(self) -> set[str]:
        return {t.value for t in JobType} | set(self.settings.job_extra_types)

    def validate_type(self, job_type: str) -> None:
        allowed = self.allowed_types()
        if job_type not in allowed:
            raise ValidationError(
                f"Unknown job type: {job_type}",
                details={"allowed_types": sorted(allowed)},
            )

    # Helpers

    def _audit(
        self,
        session: AsyncSession,
        job_id: UUID,
        action: str,
        message: str | None = None,
        level: str = "info",
        actor_id: str | None = None,
        **details: Any,
    ) -> None:
        session.add(
            JobLog(
                id=uuid4(),
                job_id=job_id,
                action=action,
                level=level,
                message=message,
                actor_id=actor_id,
                details=details,
            )
        )

    async def _load(self, session: AsyncSession, job_id: UUID) -> Job | None:
        result = await session.execute(
            select(Job)
            .where(Job.id == job_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def _require(self, session: AsyncSession, job_id: UUID) -> Job:
        job = await self._load(session, job_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    async def _guarded_update(
        self, session: AsyncSession, job_id: UUID, *conditions: Any, **values: Any
    ) -> int:
        result = await session.execute(
            update(Job)
            .where(Job.id == job_id, *conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount

    async def _commit_and_reload(self, session: AsyncSession, job_id: UUID) -> Job:
        await session.commit()
        return await self._require(session, job_id)

    # Creation and lookup

    async def create(
        self,
        session: AsyncSession,
        job_type: str,
        payload: dict[str, Any] | None = None,
        *,
        priority: int = 5,
        scheduled_for: datetime | None = None,
        created_by: str | None = None,
        total_items: int | None = None,
    ) -> Job:
        """
        Create a pending job.

        Raises ConflictError when another job of the same type is already
        pending or processing. The unique index decides, not a prior read.
        """
        self.validate_type(job_type)
        if not 1 <= priority <= 10:
            raise ValidationError("priority must be between 1 and 10")

        now = datetime.now(UTC)
        job = Job(
            id=uuid4(),
            type=job_type,
            status=JobStatus.PENDING.value,
            priority=priority,
            attempts=0,
            max_attempts=self.settings.job_max_attempts,
            payload=payload or {},
            scheduled_for=scheduled_for,
            total_items=total_items,
            created_by=created_by,
            created_at=now,
            updated_at=now,
        )

        try:
            session.add(job)
            await session.flush()
            self._audit(
                session,
                job.id,
                "job.created",
                f"Job created: {job_type}",
                actor_id=created_by,
                type=job_type,
                priority=priority,
            )
            await session.commit()
        except IntegrityError as e:
            await session.rollback()
            if _is_active_type_conflict(e):
                logger.info(
                    "Job creation rejected, type already active",
                    extra={"type": job_type},
                )
                raise ConflictError(
                    f"A {job_type} job is already pending or processing",
                    details={"type": job_type},
                ) from e
            raise

        await session.refresh(job)

        logger.info(
            "Job created",
            extra={
                "job_id": str(job.id),
                "type": job.type,
                "priority": job.priority,
                "created_by": created_by,
            },
        )
        self._notify(job, now)
        return job

    async def find_by_id(self, session: AsyncSession, job_id: UUID) -> Job | None:
        return await self._load(session, job_id)

    async def list_jobs(
        self,
        session: AsyncSession,
        status: JobStatus | Sequence[JobStatus] | None = None,
        job_type: str | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Job], int]:
        """List jobs newest first. Returns the page and the total match count."""
        conditions = []
        if status:
            statuses = [status] if isinstance(status, JobStatus) else list(status)
            conditions.append(Job.status.in_([JobStatus(s).value for s in statuses]))
        if job_type:
            conditions.append(Job.type == job_type)

        total_result = await session.execute(
            select(func.count(Job.id)).where(*conditions)
        )
        total = total_result.scalar() or 0

        result = await session.execute(
            select(Job)
            .where(*conditions)
            .order_by(Job.created_at.desc(), Job.id)
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all()), total

    # Status mutators

    async def set_status(
        self,
        session: AsyncSession,
        job_id: UUID,
        status: JobStatus,
        *,
        error: str | None = None,
        started_at: datetime | None = None,
        completed_at: datetime | None = None,
        actor_id: str | None = None,
    ) -> Job:
        """
        Move a job to ``status``.

        Only the timestamps passed in are written. The move must be allowed
        by ALLOWED_TRANSITIONS, otherwise ConflictError.
        """
        status = JobStatus(status)
        now = datetime.now(UTC)
        sources = [s.value for s in ALLOWED_TRANSITIONS[status]]

        values: dict[str, Any] = {"status": status.value, "updated_at": now}
        if error is not None:
            values["last_error"] = error
        if started_at is not None:
            values["started_at"] = started_at
        if completed_at is not None:
            values["completed_at"] = completed_at

        try:
            updated = await self._guarded_update(
                session, job_id, Job.status.in_(sources), **values
            )
        except IntegrityError as e:
            await session.rollback()
            raise ConflictError(
                f"Job {job_id} cannot become {status.value}: type already active"
            ) from e

        if updated == 0:
            await session.rollback()
            job = await self._require(session, job_id)
            raise ConflictError(
                f"Cannot move job from {job.status} to {status.value}",
                details={"job_id": str(job_id), "status": job.status},
            )

        level = "error" if status == JobStatus.FAILED else "info"
        self._audit(
            session,
            job_id,
            _ACTIONS[status],
            error or f"Job {status.value}",
            level=level,
            actor_id=actor_id,
        )
        job = await self._commit_and_reload(session, job_id)

        logger.info(
            "Job status changed",
            extra={"job_id": str(job_id), "type": job.type, "status": status.value},
        )
        self._notify(job, now)
        return job

    async def set_result(
        self, session: AsyncSession, job_id: UUID, result: dict[str, Any]
    ) -> Job:
        """Complete a processing job with its result document."""
        now = datetime.now(UTC)
        updated = await self._guarded_update(
            session,
            job_id,
            Job.status == JobStatus.PROCESSING.value,
            status=JobStatus.COMPLETED.value,
            result=result,
            last_error=None,
            next_retry_at=None,
            completed_at=now,
            updated_at=now,
        )
        if updated == 0:
            await session.rollback()
            job = await self._require(session, job_id)
            raise ConflictError(
                f"Only processing jobs can complete, job is {job.status}",
                details={"job_id": str(job_id), "status": job.status},
            )

        self._audit(session, job_id, "job.completed", "Job completed")
        job = await self._commit_and_reload(session, job_id)

        logger.info(
            "Job completed",
            extra={"job_id": str(job_id), "type": job.type, "attempts": job.attempts},
        )
        self._notify(job, now)
        return job

    async def update_progress(
        self,
        session: AsyncSession,
        job_id: UUID,
        processed_delta: int = 0,
        failed_delta: int = 0,
        processed_items: int | None = None,
        total_items: int | None = None,
    ) -> Job:
        """
        Apply a progress report in one statement over the live row.

        Deltas are added to the stored counters. An absolute
        ``processed_items`` only ever raises the counter.
        """
        if processed_delta < 0 or failed_delta < 0:
            raise ValidationError("Progress deltas must not be negative")
        if (processed_items is not None and processed_items < 0) or (
            total_items is not None and total_items < 0
        ):
            raise ValidationError("Progress counters must not be negative")

        new_processed = Job.processed_items + processed_delta
        if processed_items is not None:
            new_processed = case(
                (new_processed < processed_items, processed_items),
                else_=new_processed,
            )
        new_total = total_items if total_items is not None else Job.total_items

        within_total = (
            or_(Job.total_items.is_(None), new_processed <= Job.total_items)
            if total_items is None
            else new_processed <= total_items
        )

        values: dict[str, Any] = {
            "processed_items": new_processed,
            "failed_items": Job.failed_items + failed_delta,
            "updated_at": datetime.now(UTC),
        }
        if total_items is not None:
            values["total_items"] = new_total

        updated = await self._guarded_update(
            session,
            job_id,
            Job.status.in_(_active_values()),
            within_total,
            **values,
        )
        if updated == 0:
            await session.rollback()
            job = await self._require(session, job_id)
            if not job.is_active():
                raise ConflictError(
                    f"Cannot report progress on a {job.status} job",
                    details={"job_id": str(job_id), "status": job.status},
                )
            raise ValidationError(
                "Progress update would exceed total_items",
                details={
                    "processed_items": job.processed_items,
                    "total_items": job.total_items,
                },
            )

        job = await self._commit_and_reload(session, job_id)
        logger.debug(
            "Job progress updated",
            extra={
                "job_id": str(job_id),
                "processed_items": job.processed_items,
                "failed_items": job.failed_items,
                "total_items": job.total_items,
            },
        )
        return job

    async def increment_attempts(
        self, session: AsyncSession, job_id: UUID, next_retry_at: datetime
    ) -> Job:
        """
        Count an extra attempt on a processing job.

        The job is requeued while attempts remain. The attempt that reaches
        max_attempts fails it terminally, which frees its type's slot.
        Refused with ConflictError once attempts reached max_attempts.
        """
        now = datetime.now(UTC)
        exhausted = Job.attempts + 1 >= Job.max_attempts
        updated = await self._guarded_update(
            session,
            job_id,
            Job.status == JobStatus.PROCESSING.value,
            Job.attempts < Job.max_attempts,
            attempts=Job.attempts + 1,
            status=case(
                (exhausted, JobStatus.FAILED.value), else_=JobStatus.PENDING.value
            ),
            next_retry_at=case(
                (exhausted, None),
                else_=literal(next_retry_at, Job.next_retry_at.type),
            ),
            completed_at=case(
                (exhausted, literal(now, Job.completed_at.type)), else_=None
            ),
            updated_at=now,
        )
        if updated == 0:
            await session.rollback()
            job = await self._require(session, job_id)
            raise ConflictError(
                "Job has no attempts left or is not processing",
                details={
                    "job_id": str(job_id),
                    "status": job.status,
                    "attempts": job.attempts,
                    "max_attempts": job.max_attempts,
                },
            )

        job = await self._require(session, job_id)
        if job.status == JobStatus.FAILED.value:
            self._audit(
                session,
                job_id,
                "job.failed",
                "Attempt counted, no attempts left",
                level="error",
                attempts=job.attempts,
            )
        else:
            self._audit(
                session,
                job_id,
                "job.retry_scheduled",
                "Attempt counted, job requeued",
                level="warning",
                next_retry_at=next_retry_at.isoformat(),
            )
        job = await self._commit_and_reload(session, job_id)

        logger.warning(
            "Job attempt counted",
            extra={
                "job_id": str(job_id),
                "type": job.type,
                "status": job.status,
                "attempts": job.attempts,
                "max_attempts": job.max_attempts,
            },
        )
        self._notify(job, now)
        return job

    async def schedule_retry(
        self,
        session: AsyncSession,
        job_id: UUID,
        next_retry_at: datetime,
        error: str,
    ) -> Job:
        """Requeue a processing job with backoff. The attempt was counted at claim."""
        now = datetime.now(UTC)
        updated = await self._guarded_update(
            session,
            job_id,
            Job.status == JobStatus.PROCESSING.value,
            status=JobStatus.PENDING.value,
            next_retry_at=next_retry_at,
            last_error=error,
            updated_at=now,
        )
        if updated == 0:
            await session.rollback()
            job = await self._require(session, job_id)
            raise ConflictError(
                f"Only processing jobs can be retried, job is {job.status}",
                details={"job_id": str(job_id), "status": job.status},
            )

        self._audit(
            session,
            job_id,
            "job.retry_scheduled",
            error,
            level="warning",
            next_retry_at=next_retry_at.isoformat(),
        )
        job = await self._commit_and_reload(session, job_id)

        logger.warning(
            "Job retry scheduled",
            extra={
                "job_id": str(job_id),
                "type": job.type,
                "attempts": job.attempts,
                "max_attempts": job.max_attempts,
                "next_retry_at": next_retry_at.isoformat(),
                "error": error,
            },
        )
        self._notify(job, now)
        return job

    async def reset_for_retry(
        self, session: AsyncSession, job_id: UUID, actor_id: str | None = None
    ) -> Job:
        """
        Manually revive a failed or cancelled job.

        Raises ConflictError when the job is in another status or when its
        type already has an active job.
        """
        now = datetime.now(UTC)
        try:
            updated = await self._guarded_update(
                session,
                job_id,
                Job.status.in_([JobStatus.FAILED.value, JobStatus.CANCELLED.value]),
                status=JobStatus.PENDING.value,
                attempts=0,
                max_attempts=self.settings.job_max_attempts,
                last_error=None,
                result=None,
                next_retry_at=None,
                started_at=None,
                completed_at=None,
                updated_at=now,
            )
        except IntegrityError as e:
            await session.rollback()
            if not _is_active_type_conflict(e):
                raise
            job = await self._require(session, job_id)
            raise ConflictError(
                f"A {job.type} job is already pending or processing",
                details={"job_id": str(job_id), "type": job.type},
            ) from e

        if updated == 0:
            await session.rollback()
            job = await self._require(session, job_id)
            raise ConflictError(
                f"Only failed or cancelled jobs can be retried, job is {job.status}",
                details={"job_id": str(job_id), "status": job.status},
            )

        self._audit(session, job_id, "job.reset", "Job reset for retry", actor_id=actor_id)
        job = await self._commit_and_reload(session, job_id)

        logger.info(
            "Job reset for retry",
            extra={"job_id": str(job_id), "type": job.type, "actor_id": actor_id},
        )
        self._notify(job, now)
        return job

    async def cancel(
        self, session: AsyncSession, job_id: UUID, actor_id: str | None = None
    ) -> Job:
        """Cancel a pending or processing job, NoopError otherwise."""
        now = datetime.now(UTC)
        updated = await self._guarded_update(
            session,
            job_id,
            Job.status.in_(_active_values()),
            status=JobStatus.CANCELLED.value,
            completed_at=now,
            updated_at=now,
        )
        if updated == 0:
            await session.rollback()
            job = await self._require(session, job_id)
            raise NoopError(
                f"Job is already {job.status}",
                details={"job_id": str(job_id), "status": job.status},
            )

        self._audit(session, job_id, "job.cancelled", "Job cancelled", actor_id=actor_id)
        job = await self._commit_and_reload(session, job_id)

        logger.info(
            "Job cancelled",
            extra={"job_id": str(job_id), "type": job.type, "actor_id": actor_id},
        )
        self._notify(job, now)
        return job

    # Dispatcher operations

    def stuck_cutoff(self, now: datetime) -> datetime:
        return now - timedelta(minutes=self.settings.job_timeout_minutes)

    async def reap_stuck(self, session: AsyncSession, now: datetime) -> list[UUID]:
        """Fail processing jobs that started before the timeout ceiling."""
        cutoff = self.stuck_cutoff(now)
        timeout = JobTimeoutError(self.settings.job_timeout_minutes)

        result = await session.execute(
            select(Job.id)
            .where(
                Job.status == JobStatus.PROCESSING.value,
                Job.started_at < cutoff,
            )
            .with_for_update(skip_locked=True)
        )
        candidates = list(result.scalars().all())
        if not candidates:
            await session.rollback()
            return []

        reaped: list[UUID] = []
        for job_id in candidates:
            updated = await self._guarded_update(
                session,
                job_id,
                Job.status == JobStatus.PROCESSING.value,
                status=JobStatus.FAILED.value,
                last_error=timeout.message,
                completed_at=now,
                updated_at=now,
            )
            if updated:
                self._audit(
                    session,
                    job_id,
                    "job.timed_out",
                    timeout.message,
                    level="error",
                    timeout_minutes=timeout.timeout_minutes,
                )
                reaped.append(job_id)

        await session.commit()

        if reaped:
            logger.warning(
                "Reaped stuck jobs",
                extra={
                    "job_ids": [str(job_id) for job_id in reaped],
                    "timeout_minutes": timeout.timeout_minutes,
                },
            )
            for job_id in reaped:
                job = await self._load(session, job_id)
                if job is not None:
                    self._notify(job, now)

        return reaped

    async def claim_next(self, session: AsyncSession, now: datetime) -> Job | None:
        """
        Claim the next eligible pending job.

        Eligible means due (retry and schedule), attempts left, and no other
        processing job of the same type. Returns None when nothing is
        eligible or another dispatcher claimed the row first.
        """
        busy = aliased(Job)
        result = await session.execute(
            select(Job)
            .where(
                and_(
                    Job.status == JobStatus.PENDING.value,
                    or_(Job.next_retry_at.is_(None), Job.next_retry_at <= now),
                    or_(Job.scheduled_for.is_(None), Job.scheduled_for <= now),
                    Job.attempts < Job.max_attempts,
                    ~exists().where(
                        busy.type == Job.type,
                        busy.status == JobStatus.PROCESSING.value,
                    ),
                )
            )
            .order_by(Job.priority, Job.created_at)
            .limit(1)
            .with_for_update(skip_locked=True, of=Job)
        )
        candidate = result.scalar_one_or_none()
        if candidate is None:
            await session.rollback()
            return None

        job_id = candidate.id
        updated = await self._guarded_update(
            session,
            job_id,
            Job.status == JobStatus.PENDING.value,
            status=JobStatus.PROCESSING.value,
            started_at=now,
            completed_at=None,
            next_retry_at=None,
            attempts=Job.attempts + 1,
            updated_at=now,
        )
        if updated == 0:
            await session.rollback()
            logger.info("Job claimed by another dispatcher", extra={"job_id": str(job_id)})
            return None

        self._audit(
            session,
            job_id,
            "job.claimed",
            "Job claimed for dispatch",
            attempt=candidate.attempts + 1,
        )
        job = await self._commit_and_reload(session, job_id)

        logger.info(
            "Job claimed",
            extra={
                "job_id": str(job_id),
                "type": job.type,
                "attempts": job.attempts,
                "max_attempts": job.max_attempts,
            },
        )
        self._notify(job, now)
        return job

    # Reporting

    async def get_logs(self, session: AsyncSession, job_id: UUID) -> list[JobLog]:
        """Audit trail for a job, oldest first."""
        await self._require(session, job_id)
        result = await session.execute(
            select(JobLog)
            .where(JobLog.job_id == job_id)
            .order_by(JobLog.created_at, JobLog.id)
        )
        return list(result.scalars().all())

    async def count_stuck(self, session: AsyncSession, now: datetime) -> int:
        result = await session.execute(
            select(func.count(Job.id)).where(
                Job.status == JobStatus.PROCESSING.value,
                Job.started_at < self.stuck_cutoff(now),
            )
        )
        return result.scalar() or 0

    async def get_stats(
        self, session: AsyncSession, now: datetime | None = None
    ) -> JobStatsResponse:
        """Counts by status and type, queue depth and stuck jobs."""
        now = now or datetime.now(UTC)

        total_result = await session.execute(select(func.count(Job.id)))
        total_jobs = total_result.scalar() or 0

        status_result = await session.execute(
            select(Job.status, func.count(Job.id)).group_by(Job.status)
        )
        by_status = {s.value: 0 for s in JobStatus}
        by_status.update(dict(status_result.all()))

        type_result = await session.execute(
            select(Job.type, func.count(Job.id)).group_by(Job.type)
        )
        by_type = dict(type_result.all())

        queue_depth = by_status[JobStatus.PENDING.value] + by_status[
            JobStatus.PROCESSING.value
        ]

        return JobStatsResponse(
            total_jobs=total_jobs,
            by_status=by_status,
            by_type=by_type,
            queue_depth=queue_depth,
            stuck_jobs=await self.count_stuck(session, now),
        )

    async def cleanup_old_jobs(
        self, session: AsyncSession, now: datetime | None = None
    ) -> int:
        """Delete terminal jobs older than the retention window."""
        retention_days = self.settings.job_cleanup_after_days
        cutoff = (now or datetime.now(UTC)) - timedelta(days=retention_days)

        expired = select(Job.id).where(
            Job.status.in_([s.value for s in TERMINAL_STATUSES]),
            Job.updated_at < cutoff,
        )
        await session.execute(
            delete(JobLog)
            .where(JobLog.job_id.in_(expired))
            .execution_options(synchronize_session=False)
        )
        result = await session.execute(
            delete(Job)
            .where(Job.id.in_(expired))
            .execution_options(synchronize_session=False)
        )
        deleted_count = result.rowcount
        await session.commit()

        if deleted_count > 0:
            logger.info(
                "Cleaned up old jobs",
                extra={"deleted_count": deleted_count, "retention_days": retention_days},
            )

        return deleted_count


_job_store: JobStore | None = None


def get_job_store(settings: Settings) -> JobStore:
    """Get or create the process-wide store, so subscriptions are shared."""
    global _job_store
    if _job_store is None or _job_store.settings is not settings:
        _job_store = JobStore(settings)
    return _job_store
