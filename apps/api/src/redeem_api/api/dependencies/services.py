"""Service providers injected into redeem endpoints."""

from __future__ import annotations

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from redeem_api.db.session import get_session
from redeem_api.services.redeem import RedeemService


async def get_redeem_service(db: AsyncSession = Depends(get_session)) -> RedeemService:
    return RedeemService(db)
