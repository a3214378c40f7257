from collections.abc import AsyncGenerator
from typing import Any

import httpx
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from orchestrator.config.settings import Settings, get_settings
from orchestrator.infra.database import Base, get_session
from orchestrator.main import create_app

# Import models to ensure they're registered
from orchestrator.v1.imports import models as import_models  # noqa: F401
from orchestrator.v1.infra.jobs import models as job_models  # noqa: F401
from orchestrator.v1.core.registries import (
    RowOutcome,
    RowProcessorRegistry,
    RowResult,
    row_processor_registry,
)
from orchestrator.v1.infra.jobs.dispatcher import Dispatcher
from orchestrator.v1.infra.jobs.routes import get_dispatcher
from orchestrator.v1.infra.jobs.store import JobStore, get_job_store
from orchestrator.v1.infra.jobs.worker import WorkerClient

WORKER_URL = "http://worker.test"
RUNNER_SECRET = "test-runner-secret"


class FakeRowProcessor:
    """Row processor driven by the row contents, for batch tests."""

    def __init__(self):
        self.seen: list[int] = []

    def external_identifier(self, row: dict[str, Any]) -> str | None:
        return row.get("place_id")

    async def process_row(
        self, session: AsyncSession, row: dict[str, Any], row_index: int
    ) -> RowResult:
        self.seen.append(row_index)
        if row.get("fail"):
            raise ValueError(row.get("reason", "bad row"))
        return RowResult(
            outcome=RowOutcome(row.get("outcome", "imported")),
            pending_image_count=row.get("images", 0),
        )


class RecordingWorker:
    """Collects outbound execute requests sent through httpx.MockTransport."""

    def __init__(self, status_code: int = 202):
        self.status_code = status_code
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return httpx.Response(self.status_code, json={"accepted": True})


@pytest.fixture
def settings(tmp_path) -> Settings:
    """Settings pointing at a throwaway SQLite database with a configured worker."""
    return Settings(
        _env_file=None,
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'orchestrator.db'}",
        environment="test",
        debug=False,
        job_worker_base_url=WORKER_URL,
        job_runner_secret=RUNNER_SECRET,
        job_max_attempts=3,
        job_retry_delays_minutes=[1, 5, 15],
        job_timeout_minutes=30,
    )


@pytest.fixture
async def test_engine(settings):
    """Create a test database engine with the full schema."""
    engine = create_async_engine(settings.database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    await engine.dispose()


@pytest.fixture
def session_factory(test_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a fresh database session for each test."""
    async with session_factory() as session:
        yield session


@pytest.fixture
def job_store(settings) -> JobStore:
    return JobStore(settings)


@pytest.fixture
def recording_worker() -> RecordingWorker:
    return RecordingWorker()


@pytest.fixture
def worker_client(settings, recording_worker) -> WorkerClient:
    return WorkerClient(settings, transport=httpx.MockTransport(recording_worker))


@pytest.fixture
def row_processors() -> RowProcessorRegistry:
    registry = RowProcessorRegistry()
    registry.register("contractor_import", FakeRowProcessor())
    return registry


@pytest.fixture
def app(settings, session_factory, worker_client):
    """Create a test FastAPI application bound to the test database."""
    app = create_app()

    async def get_test_session() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = get_test_session
    app.dependency_overrides[get_settings] = lambda: settings
    app.dependency_overrides[get_dispatcher] = lambda: Dispatcher(
        settings, get_job_store(settings), worker_client
    )

    yield app

    app.dependency_overrides.clear()


@pytest.fixture
async def async_client(app) -> AsyncGenerator[AsyncClient, None]:
    """Create an async test client."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture
def runner_headers() -> dict[str, str]:
    return {"X-Job-Runner-Secret": RUNNER_SECRET}


@pytest.fixture
def registered_row_processor():
    """Register the fake processor on the global registry used by the API."""
    processor = FakeRowProcessor()
    row_processor_registry.register("contractor_import", processor)
    yield processor
    row_processor_registry.unregister("contractor_import")
