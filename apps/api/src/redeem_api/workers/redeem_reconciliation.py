"""Interval worker driving pending redemption reconciliation."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from redeem_api.core.settings import settings
from redeem_api.jobs.redeem import run_redeem_reconciliation
from redeem_api.jobs.redeem.reconciliation import ApplicatorFactory

SessionFactory = Callable[[], Awaitable[AsyncSession]] | Callable[[], AsyncSession]


class RedeemReconciliationWorker:
    """Periodically re-settles redemption records left in ``pending``."""

    def __init__(
        self,
        session_factory: SessionFactory,
        *,
        interval_seconds: int | None = None,
        limit: int | None = None,
        pending_timeout_seconds: int | None = None,
        trigger_label: str | None = None,
        applicator_factory: ApplicatorFactory | None = None,
    ) -> None:
        self._session_factory = session_factory
        self.interval_seconds = interval_seconds or settings.redeem_reconciliation_interval_seconds
        self._limit = limit or settings.redeem_reconciliation_limit
        self._pending_timeout_seconds = (
            pending_timeout_seconds or settings.redeem_reconciliation_pending_timeout_seconds
        )
        self._trigger_label = trigger_label or settings.redeem_reconciliation_trigger_label
        self._applicator_factory = applicator_factory
        self._stop_event = asyncio.Event()
        self._task: asyncio.Task | None = None
        self.is_running: bool = False

    def start(self) -> None:
        if self._task and not self._task.done():
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop())
        self.is_running = True
        logger.info(
            "Redeem reconciliation worker started",
            interval_seconds=self.interval_seconds,
            limit=self._limit,
            pending_timeout_seconds=self._pending_timeout_seconds,
        )

    async def stop(self) -> None:
        if not self._task:
            return
        self._stop_event.set()
        await self._task
        self._task = None
        self.is_running = False
        logger.info("Redeem reconciliation worker stopped")

    async def run_once(self, *, triggered_by: str | None = None) -> Dict[str, int]:
        trigger = triggered_by or self._trigger_label
        summary = await run_redeem_reconciliation(
            session_factory=self._session_factory,
            limit=self._limit,
            pending_timeout_seconds=self._pending_timeout_seconds,
            applicator_factory=self._applicator_factory,
        )
        logger.info("Redeem reconciliation run finished", trigger=trigger, **summary)
        return summary

    async def _run_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as exc:  # pragma: no cover - defensive logging
                logger.exception("Redeem reconciliation iteration failed", error=str(exc))
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
