"""Side-effecting reward grants for resolved reward descriptors."""

from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Mapping, Protocol, Sequence
from uuid import UUID

from loguru import logger

from redeem_api.core.clock import ensure_aware, utcnow
from redeem_api.models.coupon import Coupon, CouponStatus
from redeem_api.models.membership import Member, MemberStatus, MembershipTier
from redeem_api.models.redeem import RedeemRewardType
from redeem_api.services.ledger.currency import CurrencyCredit
from redeem_api.services.ledger.points import PointsCredit
from redeem_api.services.redeem.errors import RedeemError
from redeem_api.services.redeem.rewards import (
    CouponReward,
    CustomReward,
    DiamondReward,
    PointsReward,
    RewardDescriptor,
    VipReward,
)


class PointsLedger(Protocol):
    async def credit(
        self, address: str, amount: int, idempotency_key: str | None = None, note: str | None = None
    ) -> PointsCredit:
        """Credit points; a repeated idempotency key returns ``duplicated=True``."""


class CurrencyLedger(Protocol):
    async def credit(
        self, address: str, amount: int, idempotency_key: str, note: str | None = None
    ) -> CurrencyCredit:
        """Credit settled currency and return the settlement reference."""


class MembershipStore(Protocol):
    async def get_tier_by_id(self, tier_id: str) -> MembershipTier | None: ...

    async def list_active_tiers(self) -> Sequence[MembershipTier]: ...

    async def get_member_by_address(self, address: str) -> Member | None: ...

    async def create_member(self, **fields: Any) -> Member: ...

    async def update_member(self, member_id: UUID, patch: Mapping[str, Any]) -> Member: ...


class CouponStore(Protocol):
    async def get_by_id(self, coupon_id: str) -> Coupon | None: ...

    async def get_by_code(self, code: str) -> Coupon | None: ...


@dataclass(slots=True)
class RewardSummary:
    """Client-facing description of what a redemption granted."""

    type: str
    amount: int | None = None
    days: int | None = None
    tier_name: str | None = None
    coupon: dict[str, Any] | None = None
    message: str | None = None
    digest: str | None = None

    def as_dict(self) -> dict[str, Any]:
        keys = {"tier_name": "tierName"}
        return {keys.get(key, key): value for key, value in asdict(self).items() if value is not None}


@dataclass(slots=True)
class AppliedReward:
    reward: RewardSummary
    meta: dict[str, Any] = field(default_factory=dict)


def _number(value: Decimal | None) -> float | None:
    return float(value) if value is not None else None


def _timestamp(value: datetime | None) -> str | None:
    aware = ensure_aware(value)
    return aware.isoformat() if aware else None


class RewardApplicator:
    """Grant rewards through the ledger, membership and coupon collaborators.

    The redemption record id doubles as the idempotency key handed to every
    collaborator, so applying the same record twice never grants twice.
    """

    def __init__(
        self,
        *,
        points_ledger: PointsLedger,
        membership_store: MembershipStore,
        coupon_store: CouponStore,
        currency_ledger: CurrencyLedger | None = None,
        default_message: str = "Redeemed successfully",
    ) -> None:
        self._points = points_ledger
        self._currency = currency_ledger
        self._membership = membership_store
        self._coupons = coupon_store
        self._default_message = default_message

    async def apply(self, reward: RewardDescriptor, *, address: str, record_id: str) -> AppliedReward:
        if isinstance(reward, PointsReward):
            return await self._apply_points(reward, address=address, record_id=record_id)
        if isinstance(reward, DiamondReward):
            return await self._apply_diamond(reward, address=address, record_id=record_id)
        if isinstance(reward, VipReward):
            return await self._apply_vip(reward, address=address, record_id=record_id)
        if isinstance(reward, CouponReward):
            return await self._apply_coupon(reward)
        if isinstance(reward, CustomReward):
            message = reward.message or self._default_message
            return AppliedReward(
                reward=RewardSummary(type=RedeemRewardType.CUSTOM.value, message=message),
                meta={"message": message},
            )
        raise RedeemError("reward_type_invalid")

    async def _apply_points(self, reward: PointsReward, *, address: str, record_id: str) -> AppliedReward:
        result = await self._points.credit(
            address,
            reward.amount,
            idempotency_key=record_id,
            note=f"Redeem code {record_id}",
        )
        return AppliedReward(
            reward=RewardSummary(type=RedeemRewardType.MANTOU.value, amount=reward.amount),
            meta={
                "balance": result.new_balance,
                "transactionId": str(result.transaction_id) if result.transaction_id else None,
                "duplicated": result.duplicated,
            },
        )

    async def _apply_diamond(self, reward: DiamondReward, *, address: str, record_id: str) -> AppliedReward:
        if self._currency is None:
            raise RuntimeError("Currency ledger is not configured")
        result = await self._currency.credit(
            address,
            reward.amount,
            idempotency_key=record_id,
            note=f"Redeem code {record_id}",
        )
        return AppliedReward(
            reward=RewardSummary(
                type=RedeemRewardType.DIAMOND.value,
                amount=reward.amount,
                digest=result.settlement_ref,
            ),
            meta={
                "ledger": {
                    "digest": result.settlement_ref,
                    "balance": result.new_balance,
                    "receiptId": record_id,
                }
            },
        )

    async def _apply_vip(self, reward: VipReward, *, address: str, record_id: str) -> AppliedReward:
        tier: MembershipTier | None = None
        if reward.tier_id:
            tier = await self._membership.get_tier_by_id(reward.tier_id)
        if tier is None:
            tiers = await self._membership.list_active_tiers()
            tier = tiers[0] if tiers else None
        if tier is None:
            raise RedeemError("vip_tier_missing")

        summary = RewardSummary(type=RedeemRewardType.VIP.value, days=reward.days, tier_name=tier.name)
        member = await self._membership.get_member_by_address(address)
        if member is not None and member.grant_reference == record_id:
            logger.info("Membership grant already applied", member_id=str(member.id), record_id=record_id)
            return AppliedReward(
                reward=summary,
                meta={"expiresAt": _timestamp(member.expires_at), "tierId": str(tier.id), "duplicated": True},
            )

        now = utcnow()
        current_expiry = ensure_aware(member.expires_at) if member is not None else None
        base = current_expiry if current_expiry and current_expiry > now else now
        new_expires_at = base + timedelta(days=reward.days)
        fields = {
            "tier_id": tier.id,
            "tier_name": tier.name,
            "status": MemberStatus.ACTIVE.value,
            "expires_at": new_expires_at,
            "grant_reference": record_id,
        }
        if member is not None:
            await self._membership.update_member(member.id, fields)
        else:
            await self._membership.create_member(user_address=address, **fields)

        return AppliedReward(
            reward=summary,
            meta={"expiresAt": new_expires_at.isoformat(), "tierId": str(tier.id)},
        )

    async def _apply_coupon(self, reward: CouponReward) -> AppliedReward:
        coupon: Coupon | None = None
        if reward.coupon_id:
            coupon = await self._coupons.get_by_id(reward.coupon_id)
        if coupon is None and reward.coupon_code:
            coupon = await self._coupons.get_by_code(reward.coupon_code)
        if coupon is None:
            raise RedeemError("coupon_not_found")
        if coupon.status != CouponStatus.USABLE.value:
            raise RedeemError("coupon_unavailable")

        now = utcnow()
        starts_at = ensure_aware(coupon.starts_at)
        expires_at = ensure_aware(coupon.expires_at)
        if starts_at and starts_at > now:
            raise RedeemError("coupon_not_started")
        if expires_at and expires_at < now:
            raise RedeemError("coupon_expired")

        return AppliedReward(
            reward=RewardSummary(
                type=RedeemRewardType.COUPON.value,
                coupon={
                    "id": str(coupon.id),
                    "title": coupon.title,
                    "code": coupon.code,
                    "discount": _number(coupon.discount),
                    "minSpend": _number(coupon.min_spend),
                    "expiresAt": _timestamp(coupon.expires_at),
                },
            ),
            meta={"couponId": str(coupon.id)},
        )


__all__ = [
    "AppliedReward",
    "CouponStore",
    "CurrencyLedger",
    "MembershipStore",
    "PointsLedger",
    "RewardApplicator",
    "RewardSummary",
]
