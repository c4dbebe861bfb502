"""Settle redemption records stuck in ``pending`` once.

Intended usage: ad-hoc sweeps after an outage, or cron on hosts that run
the API with the in-process worker and scheduler disabled.

Example:
    python tooling/scripts/run_redeem_reconciliation.py --trigger cron --limit 200
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute pending redemption reconciliation once")
    parser.add_argument(
        "--trigger",
        default="manual",
        help="Label logged with the run to describe the invocation source.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Override the number of pending records processed in this sweep.",
    )
    parser.add_argument(
        "--pending-timeout-seconds",
        type=int,
        default=None,
        help="Only settle records that have been pending at least this long.",
    )
    return parser.parse_args()


async def _run(trigger: str, limit: int | None, pending_timeout_seconds: int | None) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "apps" / "api" / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from redeem_api.core.settings import settings  # type: ignore import-position
    from redeem_api.db.session import async_session  # type: ignore import-position
    from redeem_api.workers import RedeemReconciliationWorker  # type: ignore import-position

    worker = RedeemReconciliationWorker(
        async_session,  # type: ignore[arg-type]
        interval_seconds=settings.redeem_reconciliation_interval_seconds,
        limit=limit or settings.redeem_reconciliation_limit,
        pending_timeout_seconds=pending_timeout_seconds or settings.redeem_reconciliation_pending_timeout_seconds,
        trigger_label=settings.redeem_reconciliation_trigger_label,
    )
    return await worker.run_once(triggered_by=trigger)


def main() -> int:
    args = parse_args()
    summary = asyncio.run(_run(args.trigger, args.limit, args.pending_timeout_seconds))
    logger.success(
        "Redeem reconciliation run completed",
        checked=summary.get("checked", 0),
        succeeded=summary.get("succeeded", 0),
        failed=summary.get("failed", 0),
        trigger=args.trigger,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
