"""Job that settles redemption records stuck in ``pending``."""

from __future__ import annotations

from datetime import timedelta
from typing import Awaitable, Callable, Dict

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from redeem_api.core.clock import utcnow
from redeem_api.core.settings import settings
from redeem_api.services.redeem import RedeemService, RewardApplicator

SessionFactory = Callable[[], AsyncSession] | Callable[[], Awaitable[AsyncSession]]
ApplicatorFactory = Callable[[AsyncSession], RewardApplicator]


async def run_redeem_reconciliation(
    *,
    session_factory: SessionFactory,
    limit: int | None = None,
    pending_timeout_seconds: int | None = None,
    applicator_factory: ApplicatorFactory | None = None,
) -> Dict[str, int]:
    """Re-apply or fail pending records older than the configured timeout."""

    maybe_session = session_factory()
    session: AsyncSession
    if isinstance(maybe_session, AsyncSession):
        session = maybe_session
    else:
        session = await maybe_session

    timeout = pending_timeout_seconds or settings.redeem_reconciliation_pending_timeout_seconds
    async with session as managed_session:
        applicator = applicator_factory(managed_session) if applicator_factory else None
        service = RedeemService(managed_session, applicator=applicator)
        summary = await service.reconcile_pending(
            older_than=utcnow() - timedelta(seconds=timeout),
            limit=limit or settings.redeem_reconciliation_limit,
        )

    logger.bind(summary=summary).info("Redeem reconciliation sweep completed")
    return summary


__all__ = ["run_redeem_reconciliation"]
