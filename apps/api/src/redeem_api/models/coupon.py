from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Column, DateTime, Numeric, String, func
from sqlalchemy.dialects.postgresql import UUID

from redeem_api.db.base import Base


class CouponStatus(str, Enum):
    USABLE = "usable"
    DISABLED = "disabled"
    USED_UP = "used_up"


class Coupon(Base):
    """Discount coupon definition granted by coupon rewards."""

    __tablename__ = "coupons"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code = Column(String(64), nullable=True, unique=True, index=True)
    title = Column(String, nullable=False)
    status = Column(String(16), nullable=False, default=CouponStatus.USABLE.value, server_default=CouponStatus.USABLE.value)
    discount = Column(Numeric(12, 2), nullable=True)
    min_spend = Column(Numeric(12, 2), nullable=True)
    starts_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)
