"""SQL-backed points (mantou) ledger."""

from __future__ import annotations

from dataclasses import dataclass
from uuid import UUID

from loguru import logger
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from redeem_api.models.points import PointsTransaction, PointsWallet


@dataclass(slots=True)
class PointsCredit:
    """Outcome of a points credit."""

    new_balance: int
    duplicated: bool
    transaction_id: UUID | None


class SqlPointsLedger:
    """Credits points wallets, deduplicating on the caller's reference key.

    Writes are flushed, not committed; the caller owns the transaction so the
    credit lands together with whatever finalizes it.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def get_balance(self, address: str) -> int:
        wallet = await self._db.get(PointsWallet, address)
        return int(wallet.balance or 0) if wallet else 0

    async def credit(
        self,
        address: str,
        amount: int,
        idempotency_key: str | None = None,
        note: str | None = None,
    ) -> PointsCredit:
        if amount <= 0:
            raise ValueError("Points credit amount must be a positive integer")

        if idempotency_key:
            stmt = select(PointsTransaction).where(
                PointsTransaction.reference == idempotency_key,
                PointsTransaction.entry_type == "credit",
            )
            existing = (await self._db.execute(stmt)).scalar_one_or_none()
            if existing is not None:
                logger.info(
                    "Points credit already applied",
                    address=address,
                    reference=idempotency_key,
                )
                return PointsCredit(
                    new_balance=await self.get_balance(address),
                    duplicated=True,
                    transaction_id=existing.id,
                )

        result = await self._db.execute(
            update(PointsWallet)
            .where(PointsWallet.address == address)
            .values(balance=PointsWallet.balance + amount)
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            self._db.add(PointsWallet(address=address, balance=amount, frozen=0))

        transaction = PointsTransaction(
            address=address,
            entry_type="credit",
            amount=amount,
            reference=idempotency_key,
            note=note,
        )
        self._db.add(transaction)
        await self._db.flush()

        wallet = await self._db.get(PointsWallet, address, populate_existing=True)
        balance = int(wallet.balance or 0) if wallet else amount
        logger.info(
            "Credited points wallet",
            address=address,
            amount=amount,
            balance=balance,
            reference=idempotency_key,
        )
        return PointsCredit(new_balance=balance, duplicated=False, transaction_id=transaction.id)


__all__ = ["PointsCredit", "SqlPointsLedger"]
