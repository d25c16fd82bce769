"""
FastAPI application factory.

Creates and configures the approval engine API application.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.exceptions import RedisError

from approval_engine import __version__
from approval_engine.api.routes import router
from approval_engine.config import Settings, get_settings
from approval_engine.core.errors import (
    ConcurrencyConflictError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
    WorkflowError,
)
from approval_engine.messaging.events import LoggingEventPublisher, RedisStreamEventPublisher
from approval_engine.messaging.notifications import (
    LoggingNotificationSink,
    NotificationDispatcher,
    RedisStreamNotificationSink,
)
from approval_engine.orchestrator.auto_approval import AutoApprovalEvaluator
from approval_engine.orchestrator.engine import WorkflowEngine
from approval_engine.orchestrator.scheduler import SweepRunner
from approval_engine.orchestrator.timeouts import TimeoutSweeper
from approval_engine.registry.templates import TemplateRegistry
from approval_engine.storage.base import WorkflowStore
from approval_engine.storage.memory import InMemoryWorkflowStore
from approval_engine.storage.postgres.database import Database
from approval_engine.storage.postgres.repository import SqlWorkflowStore
from approval_engine.storage.redis.connection import RedisConnection, close_redis, get_redis
from approval_engine.subjects.reader import (
    HttpSubjectAttributeReader,
    InMemorySubjectAttributeReader,
    SubjectAttributeReader,
    SubjectUnavailableError,
)

logger = logging.getLogger(__name__)


ERROR_STATUS_CODES: dict[type[WorkflowError], int] = {
    NotFoundError: status.HTTP_404_NOT_FOUND,
    ValidationError: status.HTTP_422_UNPROCESSABLE_ENTITY,
    InvalidStateError: status.HTTP_409_CONFLICT,
    ConcurrencyConflictError: status.HTTP_409_CONFLICT,
    SubjectUnavailableError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def configure_services(
    app: FastAPI,
    store: WorkflowStore,
    settings: Settings,
    redis_connection: Optional[RedisConnection] = None,
    subjects: Optional[SubjectAttributeReader] = None,
) -> None:
    """Wire the registry, engine and sweeps onto ``app.state``."""
    if redis_connection is not None:
        notifier = NotificationDispatcher(
            RedisStreamNotificationSink(redis_connection.client, settings.redis)
        )
        events = RedisStreamEventPublisher(redis_connection.client, settings.redis)
    else:
        notifier = NotificationDispatcher(LoggingNotificationSink())
        events = LoggingEventPublisher()

    registry = TemplateRegistry(store, settings=settings)
    engine = WorkflowEngine(store, registry=registry, notifier=notifier, events=events, settings=settings)
    auto_approval = AutoApprovalEvaluator(engine, subjects or InMemorySubjectAttributeReader())
    timeouts = TimeoutSweeper(engine, settings)

    app.state.settings = settings
    app.state.store = store
    app.state.redis = redis_connection
    app.state.registry = registry
    app.state.engine = engine
    app.state.auto_approval = auto_approval
    app.state.timeouts = timeouts
    app.state.sweep_runner = SweepRunner(auto_approval, timeouts, settings)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan manager.

    Handles startup and shutdown events.
    """
    settings = get_settings()

    # Startup
    logger.info("Starting Approval Workflow Engine...")

    database: Optional[Database] = None
    if settings.engine.store_backend == "memory":
        store: WorkflowStore = InMemoryWorkflowStore()
        logger.warning("Using in-memory store; workflow state is lost on restart")
    else:
        database = Database()
        await database.init()
        if settings.is_development:
            await database.create_all()
        store = SqlWorkflowStore(database)
        logger.info("Database connection established")
    app.state.database = database

    redis_connection: Optional[RedisConnection] = None
    try:
        redis_connection = await get_redis()
        logger.info("Redis connection established")
    except (RedisError, OSError) as e:
        if settings.is_production:
            raise
        logger.warning(f"Redis unavailable ({e}); notifications and events go to the log")

    subjects: Optional[SubjectAttributeReader] = None
    if settings.subjects.base_url:
        subjects = HttpSubjectAttributeReader(settings.subjects)
    else:
        logger.warning("SUBJECTS_BASE_URL not set; conditional auto-approval sees no subjects")

    configure_services(app, store, settings, redis_connection, subjects)

    if settings.sweep.enabled:
        await app.state.sweep_runner.start()

    logger.info(
        f"Approval Engine started - Environment: {settings.environment.value}, "
        f"store: {settings.engine.store_backend}"
    )

    yield

    # Shutdown
    logger.info("Shutting down Approval Workflow Engine...")

    await app.state.sweep_runner.stop()

    if isinstance(subjects, HttpSubjectAttributeReader):
        await subjects.close()

    if database is not None:
        await database.close()

    if redis_connection is not None:
        await close_redis()

    logger.info("Approval Engine shutdown complete")


async def workflow_error_handler(request: Request, exc: WorkflowError) -> JSONResponse:
    """Map engine errors to HTTP responses."""
    status_code = status.HTTP_400_BAD_REQUEST
    for error_type, code in ERROR_STATUS_CODES.items():
        if isinstance(exc, error_type):
            status_code = code
            break

    return JSONResponse(
        status_code=status_code,
        content={
            "error": exc.code,
            "message": exc.message,
            "details": exc.details,
            "retryable": exc.retryable,
        },
    )


def create_app(use_lifespan: bool = True) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        use_lifespan: Wire services on startup; tests pass False and call
            ``configure_services`` themselves.
    """
    settings = get_settings()

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    app = FastAPI(
        title=settings.app_name,
        description="Approval and review workflow orchestration engine",
        version=__version__,
        lifespan=lifespan if use_lifespan else None,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # Add CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(WorkflowError, workflow_error_handler)

    # Include routers
    app.include_router(router)

    # Root endpoint
    @app.get("/", tags=["root"])
    async def root():
        return {
            "name": settings.app_name,
            "version": __version__,
            "status": "running",
        }

    return app


# Application instance for uvicorn
app = create_app()
