"""Membership tier and member persistence."""

from __future__ import annotations

from typing import Any, Mapping
from uuid import UUID

from loguru import logger
from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from redeem_api.models.membership import Member, MembershipTier


class SqlMembershipStore:
    """Membership lookups and writes scoped to the caller's session."""

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_tier_by_id(self, tier_id: str) -> MembershipTier | None:
        """Lookup a tier by UUID or slug."""

        conditions = [MembershipTier.slug == tier_id]
        try:
            conditions.append(MembershipTier.id == UUID(str(tier_id)))
        except ValueError:
            pass
        stmt = select(MembershipTier).where(or_(*conditions))
        result = await self._db.execute(stmt)
        return result.scalars().first()

    async def list_active_tiers(self) -> list[MembershipTier]:
        stmt = (
            select(MembershipTier)
            .where(MembershipTier.is_active.is_(True))
            .order_by(MembershipTier.sort_order.asc(), MembershipTier.created_at.asc())
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    async def get_member_by_address(self, address: str) -> Member | None:
        stmt = select(Member).where(Member.user_address == address)
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def create_member(self, **fields: Any) -> Member:
        member = Member(**fields)
        self._db.add(member)
        await self._db.flush()
        logger.info("Created member", member_id=str(member.id), address=member.user_address)
        return member

    async def update_member(self, member_id: UUID, patch: Mapping[str, Any]) -> Member:
        member = await self._db.get(Member, member_id)
        if member is None:
            raise LookupError(f"Member {member_id} not found")
        for key, value in patch.items():
            setattr(member, key, value)
        await self._db.flush()
        logger.info("Updated member", member_id=str(member_id), fields=sorted(patch))
        return member


__all__ = ["SqlMembershipStore"]
