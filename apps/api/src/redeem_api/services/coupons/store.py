from __future__ import annotations

from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from redeem_api.models.coupon import Coupon


class SqlCouponStore:
    """Read-only coupon lookups."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_by_id(self, coupon_id: str) -> Coupon | None:
        try:
            identifier = UUID(str(coupon_id))
        except ValueError:
            return None
        return await self._db.get(Coupon, identifier)

    async def get_by_code(self, code: str) -> Coupon | None:
        stmt = select(Coupon).where(Coupon.code == code.strip().upper())
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()


__all__ = ["SqlCouponStore"]
