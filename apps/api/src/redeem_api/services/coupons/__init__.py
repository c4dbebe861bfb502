from .store import SqlCouponStore  # noqa: F401
