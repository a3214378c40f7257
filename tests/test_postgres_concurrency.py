"""
Row-locking behaviour that SQLite cannot exercise.

Runs only when DATABASE_URL points at a PostgreSQL database, against which the
tables are created and dropped around each test.
"""

import asyncio
import os
from datetime import UTC, datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from orchestrator.config.settings import Settings
from orchestrator.infra.database import Base
from orchestrator.v1.core.exceptions import ConflictError
from orchestrator.v1.infra.jobs.models import JobStatus
from orchestrator.v1.infra.jobs.store import JobStore

DATABASE_URL = os.getenv("DATABASE_URL", "")

pytestmark = pytest.mark.skipif(
    "postgresql" not in DATABASE_URL, reason="No PostgreSQL database available for testing"
)


@pytest.fixture
async def pg_factory():
    engine = create_async_engine(DATABASE_URL, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)

    yield async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest.fixture
def pg_store() -> JobStore:
    return JobStore(Settings(_env_file=None, database_url=DATABASE_URL))


async def test_concurrent_creates_one_wins(pg_factory, pg_store):
    async def attempt():
        async with pg_factory() as session:
            return await pg_store.create(session, "import")

    results = await asyncio.gather(attempt(), attempt(), return_exceptions=True)

    created = [r for r in results if not isinstance(r, Exception)]
    conflicts = [r for r in results if isinstance(r, ConflictError)]
    assert len(created) == 1
    assert len(conflicts) == 1


async def test_concurrent_claims_never_share_a_job(pg_factory, pg_store):
    async with pg_factory() as session:
        await pg_store.create(session, "import")
        await pg_store.create(session, "image_enrichment")
        await pg_store.create(session, "review_enrichment")

    async def claim():
        async with pg_factory() as session:
            return await pg_store.claim_next(session, datetime.now(UTC))

    claimed = await asyncio.gather(*(claim() for _ in range(5)))
    claimed_ids = [job.id for job in claimed if job is not None]

    assert len(claimed_ids) == len(set(claimed_ids))
    assert 1 <= len(claimed_ids) <= 3

    async with pg_factory() as session:
        jobs, _ = await pg_store.list_jobs(session, status=[JobStatus.PROCESSING])
        assert all(job.attempts == 1 for job in jobs)
