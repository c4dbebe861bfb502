from __future__ import annotations

from typing import Dict, Literal

from fastapi import APIRouter, Depends, Request
from loguru import logger
from pydantic import BaseModel, Field
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from redeem_api.core.settings import settings
from redeem_api.db.session import get_session
from redeem_api.observability.scheduler import get_scheduler_store


router = APIRouter()

ComponentState = Literal["ready", "starting", "disabled", "error", "degraded"]


class ComponentStatus(BaseModel):
    status: ComponentState
    detail: str | None = Field(default=None, description="Human readable status detail")


class ReadinessPayload(BaseModel):
    status: Literal["ready", "degraded", "error"]
    components: Dict[str, ComponentStatus]


@router.get("/healthz", summary="Service health check")
async def service_health() -> dict[str, str]:
    return {"status": "ok"}


async def _database_component(session: AsyncSession) -> ComponentStatus:
    try:
        await session.execute(text("SELECT 1"))
    except Exception as error:
        logger.warning("Database readiness probe failed", error=str(error))
        return ComponentStatus(status="error", detail="Database unreachable")
    return ComponentStatus(status="ready")


def _worker_component(request: Request) -> ComponentStatus:
    worker = getattr(request.app.state, "redeem_reconciliation_worker", None)
    if not settings.redeem_reconciliation_worker_enabled or worker is None:
        return ComponentStatus(status="disabled", detail="Reconciliation worker disabled via settings")
    if getattr(worker, "is_running", False):
        return ComponentStatus(status="ready")
    return ComponentStatus(status="starting", detail="Reconciliation worker not running")


def _scheduler_component(request: Request) -> ComponentStatus:
    scheduler = getattr(request.app.state, "job_scheduler", None)
    if not settings.job_scheduler_enabled or scheduler is None:
        return ComponentStatus(status="disabled", detail="Job scheduler disabled via settings")
    failing = get_scheduler_store().snapshot().failing_jobs
    if failing:
        return ComponentStatus(status="error", detail=f"Jobs failing: {', '.join(failing)}")
    if getattr(scheduler, "is_running", False):
        return ComponentStatus(status="ready")
    return ComponentStatus(status="starting", detail="Job scheduler not running")


@router.get("/readyz", summary="Service readiness", response_model=ReadinessPayload)
async def service_readiness(
    request: Request,
    session: AsyncSession = Depends(get_session),
) -> ReadinessPayload:
    components = {
        "database": await _database_component(session),
        "redeem_reconciliation": _worker_component(request),
        "job_scheduler": _scheduler_component(request),
    }
    states = {component.status for component in components.values()}
    status: Literal["ready", "degraded", "error"] = "ready"
    if "error" in states:
        status = "error"
    elif states & {"starting", "degraded"}:
        status = "degraded"
    return ReadinessPayload(status=status, components=components)
