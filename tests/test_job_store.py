import asyncio
from datetime import UTC, datetime, timedelta
from uuid import uuid4

import pytest

from orchestrator.v1.core.exceptions import (
    ConflictError,
    NoopError,
    NotFoundError,
    ValidationError,
)
from orchestrator.v1.infra.jobs.models import JobStatus
from orchestrator.v1.infra.jobs.retry import RetryPolicy
from orchestrator.v1.infra.jobs.worker import WorkerCallbacks


def utcnow() -> datetime:
    return datetime.now(UTC)


class TestCreate:
    async def test_create_pending_job(self, job_store, db_session):
        job = await job_store.create(
            db_session, "import", {"file": "a.json"}, priority=3, created_by="user-1"
        )

        assert job.status == JobStatus.PENDING.value
        assert job.priority == 3
        assert job.attempts == 0
        assert job.max_attempts == 3
        assert job.payload == {"file": "a.json"}
        assert job.created_by == "user-1"

        logs = await job_store.get_logs(db_session, job.id)
        assert [log.action for log in logs] == ["job.created"]
        assert logs[0].actor_id == "user-1"

    async def test_unknown_type_rejected(self, job_store, db_session):
        with pytest.raises(ValidationError, match="Unknown job type"):
            await job_store.create(db_session, "not_a_type")

    async def test_extra_types_allowed(self, settings, db_session):
        from orchestrator.v1.infra.jobs.store import JobStore

        settings.job_extra_types = ["nightly_report"]
        store = JobStore(settings)
        job = await store.create(db_session, "nightly_report")
        assert job.type == "nightly_report"

    async def test_priority_bounds(self, job_store, db_session):
        with pytest.raises(ValidationError, match="priority"):
            await job_store.create(db_session, "import", priority=11)

    async def test_second_active_job_of_same_type_conflicts(
        self, job_store, session_factory
    ):
        async with session_factory() as first, session_factory() as second:
            await job_store.create(first, "import")

            with pytest.raises(ConflictError, match="already pending or processing"):
                await job_store.create(second, "import")

            jobs, total = await job_store.list_jobs(second, job_type="import")
            assert total == 1

    async def test_concurrent_creates_one_wins(self, job_store, session_factory):
        async def attempt():
            async with session_factory() as session:
                return await job_store.create(session, "import")

        results = await asyncio.gather(attempt(), attempt(), return_exceptions=True)

        created = [r for r in results if not isinstance(r, BaseException)]
        conflicts = [r for r in results if isinstance(r, ConflictError)]
        assert len(created) == 1
        assert len(conflicts) == 1

        async with session_factory() as session:
            jobs, total = await job_store.list_jobs(session, job_type="import")
            assert total == 1
            assert jobs[0].id == created[0].id

    async def test_conflict_also_while_processing(self, job_store, db_session):
        await job_store.create(db_session, "import")
        await job_store.claim_next(db_session, utcnow())

        with pytest.raises(ConflictError):
            await job_store.create(db_session, "import")

    async def test_other_types_are_independent(self, job_store, db_session):
        await job_store.create(db_session, "import")
        other = await job_store.create(db_session, "image_enrichment")
        assert other.status == JobStatus.PENDING.value

    async def test_new_job_allowed_once_previous_is_terminal(self, job_store, db_session):
        first = await job_store.create(db_session, "import")
        await job_store.cancel(db_session, first.id)

        second = await job_store.create(db_session, "import")
        assert second.id != first.id
        assert second.status == JobStatus.PENDING.value


class TestLookup:
    async def test_find_missing_job(self, job_store, db_session):
        assert await job_store.find_by_id(db_session, uuid4()) is None

    async def test_list_filters_and_total(self, job_store, db_session):
        a = await job_store.create(db_session, "import")
        await job_store.create(db_session, "image_enrichment")
        await job_store.cancel(db_session, a.id)

        jobs, total = await job_store.list_jobs(db_session, status=[JobStatus.PENDING])
        assert total == 1
        assert jobs[0].type == "image_enrichment"

        jobs, total = await job_store.list_jobs(db_session, limit=1)
        assert total == 2
        assert len(jobs) == 1

    async def test_logs_for_missing_job(self, job_store, db_session):
        with pytest.raises(NotFoundError):
            await job_store.get_logs(db_session, uuid4())


class TestTransitions:
    async def test_pending_cannot_complete_directly(self, job_store, db_session):
        job = await job_store.create(db_session, "import")

        with pytest.raises(ConflictError, match="Cannot move job from pending"):
            await job_store.set_status(db_session, job.id, JobStatus.COMPLETED)

        job = await job_store.find_by_id(db_session, job.id)
        assert job.status == JobStatus.PENDING.value

    async def test_processing_to_failed_records_error(self, job_store, db_session):
        await job_store.create(db_session, "import")
        claimed = await job_store.claim_next(db_session, utcnow())

        job = await job_store.set_status(
            db_session,
            claimed.id,
            JobStatus.FAILED,
            error="worker crashed",
            completed_at=utcnow(),
        )
        assert job.status == JobStatus.FAILED.value
        assert job.last_error == "worker crashed"
        assert job.completed_at is not None

        logs = await job_store.get_logs(db_session, job.id)
        assert "job.failed" in [log.action for log in logs]
        assert logs[-1].level == "error"

    async def test_terminal_job_cannot_move(self, job_store, db_session):
        job = await job_store.create(db_session, "import")
        await job_store.cancel(db_session, job.id)

        with pytest.raises(ConflictError):
            await job_store.set_status(db_session, job.id, JobStatus.PROCESSING)

    async def test_set_status_missing_job(self, job_store, db_session):
        with pytest.raises(NotFoundError):
            await job_store.set_status(db_session, uuid4(), JobStatus.CANCELLED)

    async def test_set_result_completes(self, job_store, db_session):
        await job_store.create(db_session, "import")
        claimed = await job_store.claim_next(db_session, utcnow())

        job = await job_store.set_result(db_session, claimed.id, {"imported": 12})
        assert job.status == JobStatus.COMPLETED.value
        assert job.result == {"imported": 12}
        assert job.completed_at is not None

    async def test_set_result_requires_processing(self, job_store, db_session):
        job = await job_store.create(db_session, "import")
        with pytest.raises(ConflictError, match="Only processing jobs can complete"):
            await job_store.set_result(db_session, job.id, {})


class TestProgress:
    async def test_deltas_accumulate(self, job_store, db_session):
        job = await job_store.create(db_session, "import", total_items=10)

        job = await job_store.update_progress(db_session, job.id, processed_delta=4)
        job = await job_store.update_progress(
            db_session, job.id, processed_delta=2, failed_delta=1
        )

        assert job.processed_items == 6
        assert job.failed_items == 1
        assert job.get_progress_percentage() == 60.0

    async def test_absolute_value_never_lowers_counter(self, job_store, db_session):
        job = await job_store.create(db_session, "import", total_items=10)
        await job_store.update_progress(db_session, job.id, processed_items=7)

        job = await job_store.update_progress(db_session, job.id, processed_items=3)
        assert job.processed_items == 7

    async def test_cannot_exceed_total(self, job_store, db_session):
        job = await job_store.create(db_session, "import", total_items=5)
        await job_store.update_progress(db_session, job.id, processed_delta=4)

        with pytest.raises(ValidationError, match="exceed total_items"):
            await job_store.update_progress(db_session, job.id, processed_delta=2)

        job = await job_store.find_by_id(db_session, job.id)
        assert job.processed_items == 4

    async def test_total_can_be_set_with_progress(self, job_store, db_session):
        job = await job_store.create(db_session, "import")
        job = await job_store.update_progress(
            db_session, job.id, processed_delta=3, total_items=8
        )
        assert job.total_items == 8
        assert job.processed_items == 3

    async def test_negative_values_rejected(self, job_store, db_session):
        job = await job_store.create(db_session, "import")
        with pytest.raises(ValidationError):
            await job_store.update_progress(db_session, job.id, processed_delta=-1)

    async def test_terminal_job_rejects_progress(self, job_store, db_session):
        job = await job_store.create(db_session, "import")
        await job_store.cancel(db_session, job.id)

        with pytest.raises(ConflictError, match="cancelled"):
            await job_store.update_progress(db_session, job.id, processed_delta=1)


class TestRetryAndCancel:
    async def test_cancel_active_job(self, job_store, db_session):
        job = await job_store.create(db_session, "import")
        job = await job_store.cancel(db_session, job.id, actor_id="admin")

        assert job.status == JobStatus.CANCELLED.value
        assert job.completed_at is not None

    async def test_cancel_terminal_job_is_noop_error(self, job_store, db_session):
        job = await job_store.create(db_session, "import")
        await job_store.cancel(db_session, job.id)

        with pytest.raises(NoopError, match="already cancelled"):
            await job_store.cancel(db_session, job.id)

    async def test_reset_failed_job(self, job_store, db_session):
        await job_store.create(db_session, "import")
        claimed = await job_store.claim_next(db_session, utcnow())
        await job_store.set_status(
            db_session, claimed.id, JobStatus.FAILED, error="boom", completed_at=utcnow()
        )

        job = await job_store.reset_for_retry(db_session, claimed.id, actor_id="admin")

        assert job.status == JobStatus.PENDING.value
        assert job.attempts == 0
        assert job.last_error is None
        assert job.next_retry_at is None
        assert job.started_at is None
        assert job.completed_at is None

        logs = await job_store.get_logs(db_session, job.id)
        assert logs[-1].action == "job.reset"

    async def test_reset_requires_failed_or_cancelled(self, job_store, db_session):
        job = await job_store.create(db_session, "import")
        with pytest.raises(ConflictError, match="Only failed or cancelled"):
            await job_store.reset_for_retry(db_session, job.id)

    async def test_reset_into_occupied_type_conflicts(self, job_store, db_session):
        old = await job_store.create(db_session, "import")
        await job_store.cancel(db_session, old.id)
        await job_store.create(db_session, "import")

        with pytest.raises(ConflictError, match="already pending or processing"):
            await job_store.reset_for_retry(db_session, old.id)

        old = await job_store.find_by_id(db_session, old.id)
        assert old.status == JobStatus.CANCELLED.value

    async def test_increment_attempts_stops_at_max(self, job_store, db_session):
        await job_store.create(db_session, "import")
        now = utcnow()
        job = await job_store.claim_next(db_session, now)
        assert job.attempts == 1

        job = await job_store.increment_attempts(db_session, job.id, now)
        assert job.attempts == 2
        assert job.status == JobStatus.PENDING.value

        job = await job_store.claim_next(db_session, now + timedelta(seconds=1))
        assert job.attempts == 3

        with pytest.raises(ConflictError, match="no attempts left"):
            await job_store.increment_attempts(db_session, job.id, now)

        job = await job_store.find_by_id(db_session, job.id)
        assert job.attempts == 3

    async def test_increment_to_last_attempt_fails_job(self, job_store, db_session):
        await job_store.create(db_session, "import")
        now = utcnow()
        job = await job_store.claim_next(db_session, now)
        await job_store.schedule_retry(db_session, job.id, now, "worker timeout")
        job = await job_store.claim_next(db_session, now + timedelta(seconds=1))
        assert job.attempts == 2

        job = await job_store.increment_attempts(
            db_session, job.id, now + timedelta(minutes=5)
        )

        assert job.status == JobStatus.FAILED.value
        assert job.attempts == job.max_attempts == 3
        assert job.completed_at is not None
        assert job.next_retry_at is None

        logs = await job_store.get_logs(db_session, job.id)
        assert "job.failed" in [log.action for log in logs]

        # The type's slot is free again
        replacement = await job_store.create(db_session, "import")
        assert replacement.status == JobStatus.PENDING.value


class TestDispatchOperations:
    async def test_claim_counts_attempt(self, job_store, db_session):
        created = await job_store.create(db_session, "import")
        now = utcnow()

        job = await job_store.claim_next(db_session, now)

        assert job.id == created.id
        assert job.status == JobStatus.PROCESSING.value
        assert job.attempts == 1
        assert job.started_at is not None

    async def test_claim_empty_queue(self, job_store, db_session):
        assert await job_store.claim_next(db_session, utcnow()) is None

    async def test_claim_orders_by_priority_then_age(self, job_store, db_session):
        await job_store.create(db_session, "import", priority=5)
        urgent = await job_store.create(db_session, "image_enrichment", priority=1)
        await job_store.create(db_session, "review_enrichment", priority=1)

        job = await job_store.claim_next(db_session, utcnow())
        assert job.id == urgent.id

    async def test_claim_skips_future_schedule(self, job_store, db_session):
        now = utcnow()
        await job_store.create(
            db_session, "import", scheduled_for=now + timedelta(hours=1)
        )

        assert await job_store.claim_next(db_session, now) is None
        assert await job_store.claim_next(db_session, now + timedelta(hours=2)) is not None

    async def test_retry_backoff_gates_claim(self, job_store, db_session):
        await job_store.create(db_session, "import")
        now = utcnow()
        job = await job_store.claim_next(db_session, now)

        await job_store.schedule_retry(
            db_session, job.id, now + timedelta(minutes=1), "transient"
        )

        assert await job_store.claim_next(db_session, now + timedelta(seconds=30)) is None
        job = await job_store.claim_next(db_session, now + timedelta(minutes=2))
        assert job.attempts == 2
        assert job.next_retry_at is None

    async def test_attempts_never_exceed_max(self, settings, job_store, db_session):
        callbacks = WorkerCallbacks(job_store, RetryPolicy(settings.job_retry_delays_minutes))
        await job_store.create(db_session, "import")
        now = utcnow()

        job = await job_store.claim_next(db_session, now)
        job = await callbacks.report_failure(db_session, job.id, "fail 1", now=now)
        assert job.status == JobStatus.PENDING.value
        assert job.next_retry_at is not None

        now += timedelta(minutes=2)
        job = await job_store.claim_next(db_session, now)
        job = await callbacks.report_failure(db_session, job.id, "fail 2", now=now)
        assert job.status == JobStatus.PENDING.value

        now += timedelta(minutes=6)
        job = await job_store.claim_next(db_session, now)
        assert job.attempts == 3
        job = await callbacks.report_failure(db_session, job.id, "fail 3", now=now)

        assert job.status == JobStatus.FAILED.value
        assert job.attempts == job.max_attempts == 3
        assert job.last_error == "fail 3"
        assert await job_store.claim_next(db_session, now + timedelta(hours=1)) is None

    async def test_reap_stuck_processing_jobs(self, job_store, db_session):
        await job_store.create(db_session, "import")
        fresh = await job_store.create(db_session, "image_enrichment")
        now = utcnow()

        stuck = await job_store.claim_next(db_session, now - timedelta(hours=1))
        await job_store.claim_next(db_session, now)

        assert await job_store.count_stuck(db_session, now) == 1
        reaped = await job_store.reap_stuck(db_session, now)

        assert reaped == [stuck.id]
        job = await job_store.find_by_id(db_session, stuck.id)
        assert job.status == JobStatus.FAILED.value
        assert job.last_error == "Job timed out after 30 minutes"
        assert job.completed_at is not None

        fresh = await job_store.find_by_id(db_session, fresh.id)
        assert fresh.status == JobStatus.PROCESSING.value

        logs = await job_store.get_logs(db_session, stuck.id)
        assert logs[-1].action == "job.timed_out"
        assert logs[-1].details == {"timeout_minutes": 30}

    async def test_reap_nothing(self, job_store, db_session):
        assert await job_store.reap_stuck(db_session, utcnow()) == []


class TestReporting:
    async def test_stats(self, job_store, db_session):
        a = await job_store.create(db_session, "import")
        await job_store.create(db_session, "image_enrichment")
        await job_store.cancel(db_session, a.id)

        stats = await job_store.get_stats(db_session)

        assert stats.total_jobs == 2
        assert stats.by_status["pending"] == 1
        assert stats.by_status["cancelled"] == 1
        assert stats.by_status["processing"] == 0
        assert stats.by_type == {"import": 1, "image_enrichment": 1}
        assert stats.queue_depth == 1
        assert stats.stuck_jobs == 0

    async def test_cleanup_removes_old_terminal_jobs(self, job_store, db_session):
        done = await job_store.create(db_session, "import")
        await job_store.cancel(db_session, done.id)
        active = await job_store.create(db_session, "image_enrichment")

        assert await job_store.cleanup_old_jobs(db_session) == 0

        deleted = await job_store.cleanup_old_jobs(
            db_session, now=utcnow() + timedelta(days=31)
        )
        assert deleted == 1
        assert await job_store.find_by_id(db_session, done.id) is None
        assert await job_store.find_by_id(db_session, active.id) is not None


class TestSubscribe:
    async def test_listeners_hear_committed_changes(self, job_store, db_session):
        changes = []
        unsubscribe = job_store.subscribe(changes.append)

        job = await job_store.create(db_session, "import")
        await job_store.cancel(db_session, job.id)

        assert [c.status for c in changes] == [JobStatus.PENDING, JobStatus.CANCELLED]
        assert all(c.job_id == job.id for c in changes)

        unsubscribe()
        await job_store.create(db_session, "image_enrichment")
        assert len(changes) == 2

    async def test_failing_listener_does_not_break_mutation(self, job_store, db_session):
        def broken(change):
            raise RuntimeError("listener down")

        job_store.subscribe(broken)
        job = await job_store.create(db_session, "import")
        assert job.status == JobStatus.PENDING.value
