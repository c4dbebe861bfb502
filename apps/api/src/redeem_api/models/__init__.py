"""SQLAlchemy models package."""

from .coupon import Coupon, CouponStatus  # noqa: F401
from .membership import Member, MemberStatus, MembershipTier  # noqa: F401
from .points import PointsTransaction, PointsWallet  # noqa: F401
from .redeem import (  # noqa: F401
    RedeemBatch,
    RedeemCode,
    RedeemRecord,
    RedeemRecordStatus,
    RedeemRewardType,
    RedeemStatus,
)
from .user_session import UserSession  # noqa: F401
