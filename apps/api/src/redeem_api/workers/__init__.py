"""Background workers supporting redeem maintenance."""

from .redeem_reconciliation import RedeemReconciliationWorker

__all__ = ["RedeemReconciliationWorker"]
