"""Redeem code domain models: batches, codes and redemption records."""

from __future__ import annotations

from enum import Enum
from uuid import uuid4

from sqlalchemy import (
    Column,
    DateTime,
    Enum as SqlEnum,
    ForeignKey,
    Index,
    Integer,
    JSON,
    String,
    Text,
    func,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship

from redeem_api.db.base import Base


def _enum_values(enum_cls: type[Enum]) -> list[str]:
    return [member.value for member in enum_cls]


class RedeemRewardType(str, Enum):
    """Reward kinds a redeem code can grant."""

    MANTOU = "mantou"
    DIAMOND = "diamond"
    VIP = "vip"
    COUPON = "coupon"
    CUSTOM = "custom"


class RedeemStatus(str, Enum):
    """Shared lifecycle for batches and codes."""

    ACTIVE = "active"
    DISABLED = "disabled"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"


class RedeemRecordStatus(str, Enum):
    """Lifecycle for a single redemption attempt."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class RedeemBatch(Base):
    """A named issuance of codes sharing one reward definition."""

    __tablename__ = "redeem_batches"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    reward_type = Column(
        SqlEnum(RedeemRewardType, name="redeem_reward_type", values_callable=_enum_values),
        nullable=False,
    )
    reward_payload = Column(JSON, nullable=True)
    status = Column(
        SqlEnum(RedeemStatus, name="redeem_status", values_callable=_enum_values),
        nullable=False,
        default=RedeemStatus.ACTIVE,
        server_default=RedeemStatus.ACTIVE.value,
    )
    max_redeem = Column(Integer, nullable=True)
    max_redeem_per_user = Column(Integer, nullable=True)
    total_codes = Column(Integer, nullable=True)
    used_count = Column(Integer, nullable=False, default=0, server_default="0")
    starts_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    codes = relationship("RedeemCode", back_populates="batch")


class RedeemCode(Base):
    """An individually redeemable code, standalone or part of a batch."""

    __tablename__ = "redeem_codes"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    batch_id = Column(UUID(as_uuid=True), ForeignKey("redeem_batches.id"), nullable=True, index=True)
    code = Column(String(64), nullable=False, unique=True, index=True)
    reward_type = Column(
        SqlEnum(RedeemRewardType, name="redeem_reward_type", values_callable=_enum_values),
        nullable=True,
    )
    reward_payload = Column(JSON, nullable=True)
    status = Column(
        SqlEnum(RedeemStatus, name="redeem_status", values_callable=_enum_values),
        nullable=False,
        default=RedeemStatus.ACTIVE,
        server_default=RedeemStatus.ACTIVE.value,
    )
    max_redeem = Column(Integer, nullable=False, default=1, server_default="1")
    max_redeem_per_user = Column(Integer, nullable=False, default=1, server_default="1")
    used_count = Column(Integer, nullable=False, default=0, server_default="0")
    starts_at = Column(DateTime(timezone=True), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    note = Column(Text, nullable=True)
    last_redeemed_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    batch = relationship("RedeemBatch", back_populates="codes")
    records = relationship("RedeemRecord", back_populates="code")


class RedeemRecord(Base):
    """Audit and state row for one user's attempt against one code."""

    __tablename__ = "redeem_records"
    __table_args__ = (
        Index("ix_redeem_records_code_user_status", "code_id", "user_address", "status"),
        Index("ix_redeem_records_status_created", "status", "created_at"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    code_id = Column(UUID(as_uuid=True), ForeignKey("redeem_codes.id"), nullable=False)
    batch_id = Column(UUID(as_uuid=True), ForeignKey("redeem_batches.id"), nullable=True)
    user_address = Column(String(66), nullable=False, index=True)
    reward_type = Column(
        SqlEnum(RedeemRewardType, name="redeem_reward_type", values_callable=_enum_values),
        nullable=False,
    )
    reward_payload = Column(JSON, nullable=True)
    status = Column(
        SqlEnum(RedeemRecordStatus, name="redeem_record_status", values_callable=_enum_values),
        nullable=False,
        default=RedeemRecordStatus.PENDING,
        server_default=RedeemRecordStatus.PENDING.value,
    )
    ip = Column(String, nullable=True)
    user_agent = Column(String, nullable=True)
    meta = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    code = relationship("RedeemCode", back_populates="records")
    batch = relationship("RedeemBatch")
