"""Membership tiers and members keyed by account address."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from redeem_api.db.base import Base


class MemberStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    SUSPENDED = "suspended"


class MembershipTier(Base):
    """Purchasable or grantable membership tier."""

    __tablename__ = "membership_tiers"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    slug = Column(String, nullable=False, unique=True, index=True)
    name = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    sort_order = Column(Integer, nullable=False, default=0, server_default="0")
    is_active = Column(Boolean, nullable=False, default=True, server_default="true")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    members = relationship("Member", back_populates="tier")


class Member(Base):
    """Membership row for one account address."""

    __tablename__ = "members"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    user_address = Column(String(66), nullable=False, unique=True, index=True)
    tier_id = Column(UUID(as_uuid=True), ForeignKey("membership_tiers.id"), nullable=True)
    tier_name = Column(String, nullable=True)
    status = Column(String(16), nullable=False, default=MemberStatus.ACTIVE.value, server_default=MemberStatus.ACTIVE.value)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    grant_reference = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    tier = relationship("MembershipTier", back_populates="members")
