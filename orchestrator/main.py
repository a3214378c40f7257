from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.middleware.cors import CORSMiddleware

from orchestrator.config.logging import get_logger, setup_logging
from orchestrator.config.settings import settings
from orchestrator.v1.core.exceptions import (
    OrchestratorException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    orchestrator_exception_handler,
)
from orchestrator.v1.core.registries import (
    job_registry,
    load_registry_modules,
    row_processor_registry,
)
from orchestrator.v1.healthz import router as health_router
from orchestrator.v1.imports.routes import router as imports_router
from orchestrator.v1.infra.jobs.routes import router as jobs_router
from orchestrator.v1.infra.jobs.worker import get_worker_client

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Let fire-and-forget worker calls finish before the loop goes away
    worker_client = get_worker_client(settings)
    if worker_client.in_flight:
        logger.info("Waiting for in-flight worker calls", count=worker_client.in_flight)
        await worker_client.drain()


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Background job queue with dispatcher, retries and batch imports",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        # All endpoints live under the /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(OrchestratorException, orchestrator_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")
    app.include_router(imports_router, prefix="/v1")

    # Handlers and row processors must be in place before the freeze below
    if not job_registry.is_frozen():
        load_registry_modules(settings.registry_modules)
        logger.info(
            "Registries loaded",
            job_handlers=job_registry.list(),
            row_processors=row_processor_registry.list(),
        )

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        job_registry.freeze()
        row_processor_registry.freeze()

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "orchestrator.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
