"""Points (mantou) wallet and transaction models."""

from __future__ import annotations

from uuid import uuid4

from sqlalchemy import Column, DateTime, Integer, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID

from redeem_api.db.base import Base


class PointsWallet(Base):
    """Per-address points balance."""

    __tablename__ = "points_wallets"

    address = Column(String(66), primary_key=True)
    balance = Column(Integer, nullable=False, default=0, server_default="0")
    frozen = Column(Integer, nullable=False, default=0, server_default="0")
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class PointsTransaction(Base):
    """Ledger entry for a points balance change."""

    __tablename__ = "points_transactions"
    __table_args__ = (
        UniqueConstraint("reference", "entry_type", name="uq_points_transactions_reference_type"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid4)
    address = Column(String(66), nullable=False, index=True)
    entry_type = Column(String(16), nullable=False, default="credit", server_default="credit")
    amount = Column(Integer, nullable=False)
    reference = Column(String, nullable=True)
    note = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
