"""Seed a membership tier, a coupon and demo redeem codes into the API database."""

from __future__ import annotations

import asyncio
import os
from decimal import Decimal
from typing import TypedDict

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from redeem_api.core.settings import settings
from redeem_api.models.coupon import Coupon
from redeem_api.models.membership import MembershipTier
from redeem_api.models.redeem import RedeemCode, RedeemRewardType
from redeem_api.services.redeem import RedeemStore, resolve_reward


class SeedBatch(TypedDict):
    title: str
    reward_type: RedeemRewardType
    reward_payload: dict
    codes: list[str]


DEV_COUPON_CODE = os.getenv("DEV_REDEEM_COUPON_CODE", "WELCOME10").upper()

DEV_BATCHES: list[SeedBatch] = [
    {
        "title": "Dev mantou drop",
        "reward_type": RedeemRewardType.MANTOU,
        "reward_payload": {"amount": 100},
        "codes": ["DEVMANTOU01", "DEVMANTOU02", "DEVMANTOU03"],
    },
    {
        "title": "Dev VIP week",
        "reward_type": RedeemRewardType.VIP,
        "reward_payload": {"days": 7, "tierId": "dev-vip"},
        "codes": ["DEVVIP0001"],
    },
    {
        "title": "Dev coupon grant",
        "reward_type": RedeemRewardType.COUPON,
        "reward_payload": {"couponCode": DEV_COUPON_CODE},
        "codes": ["DEVCOUPON01"],
    },
]


async def seed_collaborators(session: AsyncSession) -> None:
    tier = (await session.execute(select(MembershipTier).where(MembershipTier.slug == "dev-vip"))).scalar_one_or_none()
    if tier is None:
        session.add(MembershipTier(slug="dev-vip", name="Dev VIP", sort_order=0, is_active=True))

    coupon = (await session.execute(select(Coupon).where(Coupon.code == DEV_COUPON_CODE))).scalar_one_or_none()
    if coupon is None:
        session.add(
            Coupon(code=DEV_COUPON_CODE, title="Welcome 10 off", discount=Decimal("10"), min_spend=Decimal("50"))
        )
    await session.flush()


async def seed_batches(session: AsyncSession) -> int:
    store = RedeemStore(session)
    created = 0
    for definition in DEV_BATCHES:
        resolve_reward(definition["reward_type"].value, definition["reward_payload"])
        existing = await session.execute(select(RedeemCode.code).where(RedeemCode.code.in_(definition["codes"])))
        if existing.first() is not None:
            continue
        batch = await store.create_batch(
            title=definition["title"],
            reward_type=definition["reward_type"],
            reward_payload=definition["reward_payload"],
            total_codes=len(definition["codes"]),
        )
        codes = await store.create_codes(definition["codes"], batch=batch)
        created += len(codes)
    await session.commit()
    return created


async def main() -> None:
    engine = create_async_engine(settings.database_url, future=True)
    session_factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        async with session_factory() as session:
            await seed_collaborators(session)
            created = await seed_batches(session)
        print(f"Development redeem codes ready ({created} created)")
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
