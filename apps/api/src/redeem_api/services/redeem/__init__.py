"""Redeem code service exports."""

from .applicator import AppliedReward, RewardApplicator, RewardSummary  # noqa: F401
from .errors import DuplicateCodesError, RedeemError  # noqa: F401
from .redeem_service import (  # noqa: F401
    RedeemFailure,
    RedeemResult,
    RedeemService,
    RedeemSuccess,
)
from .rewards import RewardDescriptor, resolve_reward  # noqa: F401
from .store import Page, RedeemStore, normalize_code  # noqa: F401
