import pytest
from sqlalchemy import select

from redeem_api.models.points import PointsTransaction
from redeem_api.services.ledger import SqlPointsLedger

ADDRESS = "0x" + "9" * 64


@pytest.mark.asyncio
async def test_credit_creates_wallet_and_accumulates(session_factory) -> None:
    async with session_factory() as session:
        ledger = SqlPointsLedger(session)
        first = await ledger.credit(ADDRESS, 30, idempotency_key="a", note="first")
        second = await ledger.credit(ADDRESS, 12, idempotency_key="b")
        await session.commit()

    assert first.new_balance == 30
    assert second.new_balance == 42
    assert not first.duplicated and not second.duplicated

    async with session_factory() as session:
        assert await SqlPointsLedger(session).get_balance(ADDRESS) == 42
        rows = (await session.execute(select(PointsTransaction).order_by(PointsTransaction.amount))).scalars().all()
    assert [(row.amount, row.reference) for row in rows] == [(12, "b"), (30, "a")]


@pytest.mark.asyncio
async def test_repeated_reference_is_not_credited_twice(session_factory) -> None:
    async with session_factory() as session:
        ledger = SqlPointsLedger(session)
        original = await ledger.credit(ADDRESS, 10, idempotency_key="same")
        await session.commit()

    async with session_factory() as session:
        repeat = await SqlPointsLedger(session).credit(ADDRESS, 10, idempotency_key="same")

    assert repeat.duplicated is True
    assert repeat.transaction_id == original.transaction_id
    assert repeat.new_balance == 10


@pytest.mark.asyncio
async def test_rejects_non_positive_amounts(session_factory) -> None:
    async with session_factory() as session:
        with pytest.raises(ValueError):
            await SqlPointsLedger(session).credit(ADDRESS, 0)
        assert await SqlPointsLedger(session).get_balance(ADDRESS) == 0
