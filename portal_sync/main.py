"""ASGI application factory and process entry point."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from portal_sync.api.v1 import router as api_v1_router
from portal_sync.api.v1.schemas.common import (
    ErrorResponse,
    HealthResponse,
    SchedulerHealth,
    SyncHealth,
)
from portal_sync.config import get_settings
from portal_sync.core.exceptions import AppException
from portal_sync.core.logging import configure_logging, get_logger
from portal_sync.domain.services.sync_runtime import build_sync_runtime
from portal_sync.infrastructure.database.connection import (
    close_db,
    get_session_factory,
    init_db,
)
from portal_sync.infrastructure.database.sync_status_repository import (
    SqlSyncStatusRepository,
)
from portal_sync.infrastructure.scheduler import (
    get_scheduler_status,
    schedule_sync_jobs,
    start_scheduler,
    stop_scheduler,
)

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Bring up the database and sync runtime, then drain them on exit."""
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)

    logger.info("Starting application", version=settings.app_version)
    await init_db(settings)

    runtime = None
    app.state.sync_orchestrator = None
    if settings.sync_enabled and settings.workspace_configured:
        repository = SqlSyncStatusRepository(get_session_factory())
        runtime = build_sync_runtime(settings, repository)
        await runtime.start()
        app.state.sync_runtime = runtime
        app.state.sync_orchestrator = runtime.orchestrator

        start_scheduler()
        schedule_sync_jobs(runtime.orchestrator, settings)

        # Recover records left unsynced by a previous run
        try:
            await runtime.orchestrator.sync_all_pending()
        except Exception as e:
            logger.warning("Startup pending sweep failed", error=str(e))
    else:
        logger.warning(
            "Workspace sync disabled",
            sync_enabled=settings.sync_enabled,
            workspace_configured=settings.workspace_configured,
        )

    yield

    logger.info("Stopping application")
    stop_scheduler()
    if runtime is not None:
        await runtime.stop(timeout=settings.sync_shutdown_timeout_seconds)
    await close_db()


async def app_exception_handler(request: Request, exc: AppException) -> JSONResponse:
    """Render application errors as ErrorResponse."""
    if exc.status_code >= 500:
        logger.error("Request failed", path=request.url.path, error=exc.message)
    body = ErrorResponse(
        error=type(exc).__name__,
        message=exc.message,
        details=exc.details or None,
    )
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(mode="json"))


def create_app() -> FastAPI:
    """Build the API application; the sync runtime starts in the lifespan."""
    settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        debug=settings.debug,
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(AppException, app_exception_handler)

    app.include_router(api_v1_router, prefix="/api/v1")

    @app.get("/health", response_model=HealthResponse)
    async def health_check(request: Request) -> HealthResponse:
        """Liveness plus queue and scheduler state."""
        scheduler_status = get_scheduler_status()
        orchestrator = getattr(request.app.state, "sync_orchestrator", None)
        queue_status = orchestrator.queue.get_status() if orchestrator else None
        return HealthResponse(
            status="healthy",
            version=settings.app_version,
            sync=SyncHealth(
                enabled=orchestrator is not None,
                running=bool(queue_status and queue_status["running"]),
                in_flight=len(queue_status["in_flight"]) if queue_status else 0,
                tasks=queue_status["tasks"] if queue_status else None,
            ),
            scheduler=SchedulerHealth(
                running=scheduler_status["running"],
                jobs_count=scheduler_status["job_count"],
            ),
        )

    return app


def main() -> None:
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "portal_sync.main:create_app",
        factory=True,
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
    )


if __name__ == "__main__":
    main()
