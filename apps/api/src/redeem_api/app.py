from contextlib import asynccontextmanager
from pathlib import Path

from fastapi import FastAPI
from loguru import logger

from redeem_api.core.settings import settings
from redeem_api.db.session import async_session
from .api.routes import api_router
from .core.logging import configure_logging
from .observability.tracing import configure_tracing
from .scheduling import JobScheduler
from .workers import RedeemReconciliationWorker


APP_VERSION = "0.1.0"
SERVICE_NAME = "redeem-api"


def _session_factory():
    return async_session()


def _schedule_path() -> Path:
    path = Path(settings.job_schedule_path)
    if not path.is_absolute():
        path = Path(__file__).resolve().parent.parent.parent / path
    return path


@asynccontextmanager
async def lifespan(app: FastAPI):
    reconciliation_worker = RedeemReconciliationWorker(
        session_factory=_session_factory,
        interval_seconds=settings.redeem_reconciliation_interval_seconds,
        limit=settings.redeem_reconciliation_limit,
        pending_timeout_seconds=settings.redeem_reconciliation_pending_timeout_seconds,
        trigger_label=settings.redeem_reconciliation_trigger_label,
    )
    schedule_path = _schedule_path()
    job_scheduler = JobScheduler(session_factory=_session_factory, config_path=schedule_path)

    app.state.redeem_reconciliation_worker = reconciliation_worker
    app.state.job_scheduler = job_scheduler

    scheduler_enabled = settings.job_scheduler_enabled
    if scheduler_enabled:
        try:
            job_scheduler.start()
        except FileNotFoundError as exc:
            logger.exception("Job scheduler failed to start", error=str(exc))
        else:
            logger.info("Job scheduler enabled", schedule_path=str(schedule_path))
    else:
        logger.info("Job scheduler disabled", reason="job_scheduler_enabled is false")

    worker_enabled = settings.redeem_reconciliation_worker_enabled
    if worker_enabled and not scheduler_enabled:
        reconciliation_worker.start()
    elif worker_enabled:
        logger.info("Redeem reconciliation managed via scheduler", schedule_path=str(schedule_path))
    else:
        logger.info(
            "Redeem reconciliation worker disabled",
            reason="redeem_reconciliation_worker_enabled is false",
        )

    try:
        yield
    finally:
        if reconciliation_worker.is_running:
            await reconciliation_worker.stop()
        if job_scheduler.is_running:
            await job_scheduler.stop()


def create_app() -> FastAPI:
    """Application factory for the redeem API service."""
    configure_logging(
        service_name=SERVICE_NAME,
        environment=settings.environment,
        version=APP_VERSION,
    )

    app = FastAPI(
        title="Redeem API",
        version=APP_VERSION,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    configure_tracing(
        app,
        service_name=SERVICE_NAME,
        service_version=APP_VERSION,
        environment=settings.environment,
    )

    app.include_router(api_router)

    @app.get("/healthz", tags=["Health"])
    async def health_check() -> dict[str, str]:
        return {
            "status": "ok",
            "environment": settings.environment,
            "version": APP_VERSION,
        }

    return app
