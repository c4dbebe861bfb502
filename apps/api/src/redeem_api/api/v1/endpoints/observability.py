"""Observability endpoints exposing redemption and scheduler metrics."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from redeem_api.api.dependencies.security import require_admin_api_key
from redeem_api.observability.redeem import get_redeem_store
from redeem_api.observability.scheduler import get_scheduler_store


router = APIRouter(
    prefix="/observability",
    tags=["Observability"],
    dependencies=[Depends(require_admin_api_key)],
)


@router.get("/redeem", summary="Redemption outcome snapshot")
async def get_redeem_snapshot() -> dict[str, object]:
    return get_redeem_store().snapshot().as_dict()


@router.get("/scheduler", summary="Scheduled job snapshot")
async def get_scheduler_snapshot() -> dict[str, object]:
    return get_scheduler_store().snapshot().as_dict()


def _format_metric(name: str, description: str, value: int | float, labels: dict[str, str] | None = None) -> list[str]:
    label_fragment = ""
    if labels:
        formatted = ",".join(f'{key}="{val}"' for key, val in sorted(labels.items()))
        label_fragment = f"{{{formatted}}}"
    return [
        f"# HELP {name} {description}",
        f"# TYPE {name} gauge",
        f"{name}{label_fragment} {value}",
    ]


@router.get(
    "/prometheus",
    summary="Prometheus-formatted observability metrics",
    response_class=PlainTextResponse,
)
async def get_prometheus_metrics() -> PlainTextResponse:
    redeem = get_redeem_store().snapshot()
    scheduler = get_scheduler_store().snapshot()

    lines: list[str] = []
    for outcome, value in sorted(redeem.outcomes.items()):
        lines.extend(
            _format_metric("redeem_outcomes_total", "Redemption attempts by outcome", value, {"outcome": outcome})
        )
    for error, value in sorted(redeem.errors.items()):
        lines.extend(_format_metric("redeem_errors_total", "Failed redemptions by error code", value, {"error": error}))
    for reward_type, value in sorted(redeem.rewards.items()):
        lines.extend(
            _format_metric("redeem_rewards_total", "Granted rewards by type", value, {"reward_type": reward_type})
        )
    for result, value in sorted(redeem.compensations.items()):
        lines.extend(
            _format_metric("redeem_compensations_total", "Reservation releases by result", value, {"result": result})
        )
    for key, value in sorted(redeem.reconciliation.items()):
        lines.extend(
            _format_metric("redeem_reconciliation_total", "Pending record reconciliation counters", value, {"kind": key})
        )
    for key, value in sorted(scheduler.totals.items()):
        lines.extend(_format_metric("redeem_scheduler_jobs_total", "Scheduled job counters", value, {"kind": key}))

    return PlainTextResponse("\n".join(lines) + "\n")
