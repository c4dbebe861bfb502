"""Reward payload validation.

Every reward definition stored on a batch or code is a loosely typed JSON
object. ``resolve_reward`` validates it against its reward type and returns
one of the frozen descriptor dataclasses below, which the applicator and the
audit snapshot work with from then on.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Mapping, Union

from redeem_api.models.redeem import RedeemRewardType
from redeem_api.services.redeem.errors import RedeemError


@dataclass(frozen=True, slots=True)
class PointsReward:
    amount: int
    kind: RedeemRewardType = RedeemRewardType.MANTOU

    def to_payload(self) -> dict[str, Any]:
        return {"amount": self.amount}


@dataclass(frozen=True, slots=True)
class DiamondReward:
    amount: int
    kind: RedeemRewardType = RedeemRewardType.DIAMOND

    def to_payload(self) -> dict[str, Any]:
        return {"amount": self.amount}


@dataclass(frozen=True, slots=True)
class VipReward:
    days: int
    tier_id: str | None = None
    kind: RedeemRewardType = RedeemRewardType.VIP

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"days": self.days}
        if self.tier_id:
            payload["tierId"] = self.tier_id
        return payload


@dataclass(frozen=True, slots=True)
class CouponReward:
    coupon_id: str | None = None
    coupon_code: str | None = None
    kind: RedeemRewardType = RedeemRewardType.COUPON

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.coupon_id:
            payload["couponId"] = self.coupon_id
        if self.coupon_code:
            payload["couponCode"] = self.coupon_code
        return payload


@dataclass(frozen=True, slots=True)
class CustomReward:
    message: str | None = None
    kind: RedeemRewardType = RedeemRewardType.CUSTOM

    def to_payload(self) -> dict[str, Any]:
        return {"message": self.message} if self.message else {}


RewardDescriptor = Union[PointsReward, DiamondReward, VipReward, CouponReward, CustomReward]


def parse_positive_int(value: Any) -> int | None:
    """Coerce numbers and numeric strings to a positive int, flooring fractions."""

    if isinstance(value, bool):
        return None
    if isinstance(value, str):
        try:
            value = float(value.strip())
        except ValueError:
            return None
    if not isinstance(value, (int, float)) or not math.isfinite(value):
        return None
    rounded = math.floor(value)
    return rounded if rounded > 0 else None


def _first_present(payload: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = payload.get(key)
        if value is not None:
            return value
    return None


def _optional_str(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def resolve_reward(
    reward_type: RedeemRewardType | str | None,
    raw_payload: Mapping[str, Any] | None,
) -> RewardDescriptor:
    """Validate a reward definition and return its typed descriptor."""

    try:
        kind = RedeemRewardType(reward_type)
    except ValueError as exc:
        raise RedeemError("reward_type_invalid") from exc

    payload: Mapping[str, Any] = raw_payload or {}

    if kind in (RedeemRewardType.MANTOU, RedeemRewardType.DIAMOND):
        amount = parse_positive_int(_first_present(payload, "amount", "value"))
        if amount is None:
            raise RedeemError("reward_amount_required")
        if kind is RedeemRewardType.MANTOU:
            return PointsReward(amount=amount)
        return DiamondReward(amount=amount)

    if kind is RedeemRewardType.VIP:
        days = parse_positive_int(_first_present(payload, "days", "durationDays", "value"))
        if days is None:
            raise RedeemError("reward_days_required")
        return VipReward(days=days, tier_id=_optional_str(payload.get("tierId")))

    if kind is RedeemRewardType.COUPON:
        coupon_id = _optional_str(payload.get("couponId"))
        coupon_code = _optional_str(payload.get("couponCode"))
        if not coupon_id and not coupon_code:
            raise RedeemError("reward_coupon_required")
        return CouponReward(coupon_id=coupon_id, coupon_code=coupon_code)

    message = payload.get("message")
    return CustomReward(message=message if isinstance(message, str) else None)


__all__ = [
    "CouponReward",
    "CustomReward",
    "DiamondReward",
    "PointsReward",
    "RewardDescriptor",
    "VipReward",
    "parse_positive_int",
    "resolve_reward",
]
