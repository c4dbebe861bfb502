import asyncio
from datetime import timedelta
from typing import Any
from uuid import UUID

import pytest
from sqlalchemy import select, update

from redeem_api.core.clock import utcnow
from redeem_api.models.points import PointsWallet
from redeem_api.models.redeem import (
    RedeemBatch,
    RedeemCode,
    RedeemRecord,
    RedeemRecordStatus,
    RedeemRewardType,
    RedeemStatus,
)
from redeem_api.observability.redeem import get_redeem_store
from redeem_api.services.coupons import SqlCouponStore
from redeem_api.services.ledger import CurrencyCredit, SqlPointsLedger
from redeem_api.services.membership import SqlMembershipStore
from redeem_api.services.redeem import (
    RedeemFailure,
    RedeemService,
    RedeemStore,
    RedeemSuccess,
    RewardApplicator,
)
from redeem_api.services.redeem.redeem_service import normalize_address


def _address(digit: int) -> str:
    return "0x" + str(digit) * 64


async def _seed(
    session_factory,
    *,
    codes: list[str],
    reward_type: RedeemRewardType = RedeemRewardType.MANTOU,
    reward_payload: dict[str, Any] | None = None,
    max_redeem: int = 1,
    max_redeem_per_user: int = 1,
    batch_max_redeem: int | None = None,
    starts_at=None,
    expires_at=None,
    code_expires_at=None,
) -> tuple[UUID, list[UUID]]:
    async with session_factory() as session:
        store = RedeemStore(session)
        batch = await store.create_batch(
            title="Launch",
            reward_type=reward_type,
            reward_payload=reward_payload if reward_payload is not None else {"amount": 10},
            max_redeem=batch_max_redeem,
            starts_at=starts_at,
            expires_at=expires_at,
        )
        created = await store.create_codes(
            codes,
            batch=batch,
            max_redeem=max_redeem,
            max_redeem_per_user=max_redeem_per_user,
            expires_at=code_expires_at,
        )
        await session.commit()
        return batch.id, [code.id for code in created]


async def _redeem(session_factory, code: str, address: str, applicator_factory=None):
    async with session_factory() as session:
        applicator = applicator_factory(session) if applicator_factory else None
        return await RedeemService(session, applicator=applicator).redeem(code, address)


async def _code(session_factory, code_id: UUID) -> RedeemCode:
    async with session_factory() as session:
        return await session.get(RedeemCode, code_id)


async def _batch(session_factory, batch_id: UUID) -> RedeemBatch:
    async with session_factory() as session:
        return await session.get(RedeemBatch, batch_id)


async def _records(session_factory, code_id: UUID) -> list[RedeemRecord]:
    async with session_factory() as session:
        result = await session.execute(
            select(RedeemRecord).where(RedeemRecord.code_id == code_id).order_by(RedeemRecord.created_at)
        )
        return list(result.scalars().all())


class FakeCurrencyLedger:
    def __init__(self) -> None:
        self.keys: list[str] = []

    async def credit(self, address, amount, idempotency_key, note=None):
        self.keys.append(idempotency_key)
        return CurrencyCredit(new_balance=amount, settlement_ref=f"0xdigest{len(self.keys)}", payload={})


class ExplodingApplicator:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error or RuntimeError("ledger offline")
        self.calls = 0

    async def apply(self, reward, *, address, record_id):
        self.calls += 1
        raise self.error


def _sql_applicator(session, currency_ledger=None) -> RewardApplicator:
    return RewardApplicator(
        points_ledger=SqlPointsLedger(session),
        membership_store=SqlMembershipStore(session),
        coupon_store=SqlCouponStore(session),
        currency_ledger=currency_ledger,
    )


def test_normalize_address_pads_and_lowercases() -> None:
    assert normalize_address("0xABC") == "0x" + "0" * 61 + "abc"
    assert normalize_address("  abc ") == "0x" + "0" * 61 + "abc"
    assert normalize_address("0x" + "f" * 64) == "0x" + "f" * 64
    assert normalize_address("0x" + "f" * 65) is None
    assert normalize_address("0xzz") is None
    assert normalize_address("0x") is None
    assert normalize_address(None) is None


@pytest.mark.asyncio
async def test_input_validation_failures(session_factory) -> None:
    await _seed(session_factory, codes=["VALID1"])

    invalid_address = await _redeem(session_factory, "VALID1", "not-hex")
    assert invalid_address == RedeemFailure(error="invalid_address", status=400)

    missing_code = await _redeem(session_factory, " - ", _address(1))
    assert missing_code == RedeemFailure(error="code_required", status=400)

    unknown = await _redeem(session_factory, "NOPE99", _address(1))
    assert unknown == RedeemFailure(error="invalid_code", status=404)


@pytest.mark.asyncio
async def test_code_lookup_is_normalized(session_factory) -> None:
    _, (code_id,) = await _seed(session_factory, codes=["ABC123"])

    result = await _redeem(session_factory, " abc-123 ", "0X" + "AB" * 32)

    assert isinstance(result, RedeemSuccess)
    assert result.reward == {"type": "mantou", "amount": 10}
    (record,) = await _records(session_factory, code_id)
    assert record.user_address == "0x" + "ab" * 32
    assert record.status == RedeemRecordStatus.SUCCESS


@pytest.mark.asyncio
async def test_sequential_attempts_never_over_redeem(session_factory) -> None:
    _, (code_id,) = await _seed(session_factory, codes=["MULTI1"], max_redeem=3)

    results = [await _redeem(session_factory, "MULTI1", _address(digit)) for digit in range(1, 6)]

    successes = [result for result in results if isinstance(result, RedeemSuccess)]
    failures = [result for result in results if isinstance(result, RedeemFailure)]
    assert len(successes) == 3
    assert failures == [RedeemFailure(error="code_used_up", status=409)] * 2

    code = await _code(session_factory, code_id)
    assert code.used_count == 3
    assert code.status == RedeemStatus.EXHAUSTED
    assert code.last_redeemed_at is not None
    assert len(await _records(session_factory, code_id)) == 3


@pytest.mark.asyncio
async def test_concurrent_attempts_never_over_redeem(file_session_factory) -> None:
    _, (code_id,) = await _seed(file_session_factory, codes=["RUSH01"], max_redeem=3)

    results = await asyncio.gather(
        *(_redeem(file_session_factory, "RUSH01", _address(digit)) for digit in range(1, 9))
    )

    successes = [result for result in results if isinstance(result, RedeemSuccess)]
    failures = [result for result in results if isinstance(result, RedeemFailure)]
    assert len(successes) == 3
    assert len({result.record_id for result in successes}) == 3
    assert failures == [RedeemFailure(error="code_used_up", status=409)] * 5

    code = await _code(file_session_factory, code_id)
    assert code.used_count == 3
    assert code.status == RedeemStatus.EXHAUSTED
    records = await _records(file_session_factory, code_id)
    assert [record.status for record in records] == [RedeemRecordStatus.SUCCESS] * 3


@pytest.mark.asyncio
async def test_stale_snapshot_cannot_reserve(session_factory) -> None:
    _, (code_id,) = await _seed(session_factory, codes=["STALE1"])

    async with session_factory() as session:
        store = RedeemStore(session)
        snapshot = await store.get_code(code_id)
        assert snapshot.used_count == 0

        await session.execute(
            update(RedeemCode)
            .where(RedeemCode.id == code_id)
            .values(used_count=1)
            .execution_options(synchronize_session=False)
        )

        assert snapshot.used_count == 0
        assert await store.reserve_code(code_id) is False


@pytest.mark.asyncio
async def test_batch_cap_limits_total_redemptions(session_factory) -> None:
    batch_id, _ = await _seed(session_factory, codes=["BATCH01", "BATCH02", "BATCH03"], batch_max_redeem=2)

    assert isinstance(await _redeem(session_factory, "BATCH01", _address(1)), RedeemSuccess)
    assert isinstance(await _redeem(session_factory, "BATCH02", _address(2)), RedeemSuccess)
    third = await _redeem(session_factory, "BATCH03", _address(3))

    assert third == RedeemFailure(error="batch_used_up", status=409)
    batch = await _batch(session_factory, batch_id)
    assert batch.used_count == 2
    assert batch.status == RedeemStatus.EXHAUSTED


@pytest.mark.asyncio
async def test_per_user_cap(session_factory) -> None:
    _, (code_id,) = await _seed(session_factory, codes=["REPEAT1"], max_redeem=5, max_redeem_per_user=2)
    address = _address(7)

    first = await _redeem(session_factory, "REPEAT1", address)
    second = await _redeem(session_factory, "REPEAT1", address)
    third = await _redeem(session_factory, "REPEAT1", address)

    assert isinstance(first, RedeemSuccess) and isinstance(second, RedeemSuccess)
    assert first.record_id != second.record_id
    assert not second.duplicated
    assert third == RedeemFailure(error="user_limit_reached", status=409)
    assert (await _code(session_factory, code_id)).used_count == 2


@pytest.mark.asyncio
async def test_single_use_redeem_is_idempotent(session_factory) -> None:
    _, (code_id,) = await _seed(session_factory, codes=["ONCE01"], max_redeem=2)
    address = _address(3)

    first = await _redeem(session_factory, "ONCE01", address)
    again = await _redeem(session_factory, "ONCE01", address)

    assert isinstance(again, RedeemSuccess)
    assert again.duplicated is True
    assert again.record_id == first.record_id
    assert again.reward == first.reward
    assert again.as_dict()["duplicated"] is True
    assert len(await _records(session_factory, code_id)) == 1
    assert (await _code(session_factory, code_id)).used_count == 1

    async with session_factory() as session:
        wallet = await session.get(PointsWallet, address)
        assert wallet.balance == 10

    outcomes = get_redeem_store().snapshot().outcomes
    assert outcomes == {"success": 1, "duplicated": 1}


@pytest.mark.asyncio
async def test_failed_apply_compensates_and_frees_capacity(session_factory) -> None:
    batch_id, (code_id,) = await _seed(session_factory, codes=["FLAKY1"], batch_max_redeem=1)
    exploding = ExplodingApplicator()

    failed = await _redeem(session_factory, "FLAKY1", _address(1), lambda session: exploding)

    assert failed == RedeemFailure(error="reward_failed", status=502)
    (record,) = await _records(session_factory, code_id)
    assert record.status == RedeemRecordStatus.FAILED
    assert record.meta == {"error": "ledger offline"}
    code = await _code(session_factory, code_id)
    batch = await _batch(session_factory, batch_id)
    assert (code.used_count, code.status) == (0, RedeemStatus.ACTIVE)
    assert (batch.used_count, batch.status) == (0, RedeemStatus.ACTIVE)
    assert get_redeem_store().snapshot().compensations == {"applied": 1}

    retry = await _redeem(session_factory, "FLAKY1", _address(2))
    assert isinstance(retry, RedeemSuccess)
    assert (await _code(session_factory, code_id)).status == RedeemStatus.EXHAUSTED


@pytest.mark.asyncio
async def test_domain_error_from_apply_keeps_its_code(session_factory) -> None:
    _, (code_id,) = await _seed(
        session_factory,
        codes=["COUPON1"],
        reward_type=RedeemRewardType.COUPON,
        reward_payload={"couponCode": "GONE"},
    )

    result = await _redeem(session_factory, "COUPON1", _address(1))

    assert result == RedeemFailure(error="coupon_not_found", status=400)
    (record,) = await _records(session_factory, code_id)
    assert record.meta == {"error": "coupon_not_found"}
    assert (await _code(session_factory, code_id)).used_count == 0


@pytest.mark.asyncio
async def test_compensation_keeps_operator_disable(session_factory) -> None:
    _, (code_id,) = await _seed(session_factory, codes=["PAUSE1"])

    class DisablingApplicator:
        async def apply(self, reward, *, address, record_id):
            async with session_factory() as other:
                await other.execute(
                    update(RedeemCode).where(RedeemCode.id == code_id).values(status=RedeemStatus.DISABLED)
                )
                await other.commit()
            raise RuntimeError("grant interrupted")

    result = await _redeem(session_factory, "PAUSE1", _address(1), lambda session: DisablingApplicator())

    assert result.error == "reward_failed"
    code = await _code(session_factory, code_id)
    assert code.used_count == 0
    assert code.status == RedeemStatus.DISABLED


@pytest.mark.asyncio
async def test_state_and_window_checks(session_factory) -> None:
    now = utcnow()
    _, (expired_id,) = await _seed(session_factory, codes=["PAST01"], code_expires_at=now - timedelta(minutes=1))
    await _seed(session_factory, codes=["BPAST1"], expires_at=now - timedelta(days=1))
    await _seed(session_factory, codes=["SOON01"], starts_at=now + timedelta(days=1))
    batch_id, _ = await _seed(session_factory, codes=["OFF001"])

    expired = await _redeem(session_factory, "PAST01", _address(1))
    assert expired == RedeemFailure(error="code_expired", status=410)
    assert (await _code(session_factory, expired_id)).status == RedeemStatus.EXPIRED
    assert (await _redeem(session_factory, "PAST01", _address(1))).error == "code_expired"

    assert (await _redeem(session_factory, "BPAST1", _address(1))).error == "code_expired"
    assert await _redeem(session_factory, "SOON01", _address(1)) == RedeemFailure(
        error="code_not_started", status=400
    )

    async with session_factory() as session:
        await RedeemStore(session).update_batch_status(batch_id, RedeemStatus.DISABLED)
        await session.commit()
    assert await _redeem(session_factory, "OFF001", _address(1)) == RedeemFailure(error="batch_disabled", status=403)


@pytest.mark.asyncio
async def test_expiry_reported_before_exhaustion(session_factory) -> None:
    _, (code_id,) = await _seed(session_factory, codes=["SPENT1"])
    assert isinstance(await _redeem(session_factory, "SPENT1", _address(1)), RedeemSuccess)

    async with session_factory() as session:
        await RedeemStore(session).update_code(code_id, {"expires_at": utcnow() - timedelta(seconds=5)})
        await session.commit()

    result = await _redeem(session_factory, "SPENT1", _address(2))
    assert result == RedeemFailure(error="code_expired", status=410)
    assert (await _code(session_factory, code_id)).status == RedeemStatus.EXPIRED


@pytest.mark.asyncio
async def test_standalone_code_without_reward_is_rejected(session_factory) -> None:
    async with session_factory() as session:
        await RedeemStore(session).create_codes(["BARE01"])
        await session.commit()

    result = await _redeem(session_factory, "BARE01", _address(1))
    assert result == RedeemFailure(error="reward_missing", status=400)


@pytest.mark.asyncio
async def test_diamond_round_trip(session_factory) -> None:
    await _seed(
        session_factory,
        codes=["ABC123"],
        reward_type=RedeemRewardType.DIAMOND,
        reward_payload={"amount": 5},
    )
    ledger = FakeCurrencyLedger()

    def factory(session):
        return _sql_applicator(session, ledger)

    first = await _redeem(session_factory, "ABC123", _address(1), factory)
    again = await _redeem(session_factory, "abc123", _address(1), factory)
    other = await _redeem(session_factory, "ABC123", _address(2), factory)

    assert isinstance(first, RedeemSuccess)
    assert first.reward == {"type": "diamond", "amount": 5, "digest": "0xdigest1"}
    assert isinstance(again, RedeemSuccess) and again.duplicated
    assert again.record_id == first.record_id
    assert again.reward["digest"] == "0xdigest1"
    assert other == RedeemFailure(error="code_used_up", status=409)
    assert ledger.keys == [str(first.record_id)]


@pytest.mark.asyncio
async def test_finalize_failure_after_grant_keeps_slot_pending(session_factory, monkeypatch) -> None:
    _, (code_id,) = await _seed(
        session_factory,
        codes=["GEM001"],
        reward_type=RedeemRewardType.DIAMOND,
        reward_payload={"amount": 5},
    )
    ledger = FakeCurrencyLedger()

    def factory(session):
        return _sql_applicator(session, ledger)

    original_touch = RedeemStore.touch_code
    calls = 0

    async def flaky_touch(self, code_id):
        nonlocal calls
        calls += 1
        if calls == 1:
            raise RuntimeError("connection reset")
        await original_touch(self, code_id)

    monkeypatch.setattr(RedeemStore, "touch_code", flaky_touch)

    first = await _redeem(session_factory, "GEM001", _address(1), factory)
    assert first == RedeemFailure(error="redeem_failed", status=500)

    (record,) = await _records(session_factory, code_id)
    assert record.status == RedeemRecordStatus.PENDING
    assert (await _code(session_factory, code_id)).used_count == 1

    other = await _redeem(session_factory, "GEM001", _address(2), factory)
    assert other == RedeemFailure(error="code_used_up", status=409)
    assert ledger.keys == [str(record.id)]

    async with session_factory() as session:
        summary = await RedeemService(session, applicator=factory(session)).reconcile_pending(
            older_than=utcnow() + timedelta(seconds=1)
        )
    assert summary == {"checked": 1, "succeeded": 1, "failed": 0}
    assert ledger.keys == [str(record.id), str(record.id)]

    (settled,) = await _records(session_factory, code_id)
    assert settled.status == RedeemRecordStatus.SUCCESS
    code = await _code(session_factory, code_id)
    assert code.used_count == 1
    assert code.status == RedeemStatus.EXHAUSTED

    again = await _redeem(session_factory, "GEM001", _address(1), factory)
    assert isinstance(again, RedeemSuccess) and again.duplicated
    assert again.record_id == record.id


@pytest.mark.asyncio
async def test_reconcile_settles_stale_pending_records(session_factory) -> None:
    _, (ok_id, broken_id) = await _seed(session_factory, codes=["STUCK01", "STUCK02"])

    async with session_factory() as session:
        store = RedeemStore(session)
        for code_value, digit in (("STUCK01", 1), ("STUCK02", 2)):
            code = await store.get_code_with_batch(code_value)
            assert await store.reserve_batch(code.batch_id, capped=False)
            assert await store.reserve_code(code.id)
            await store.create_record(
                code=code,
                address=_address(digit),
                reward_type=RedeemRewardType.MANTOU,
                reward_payload={"amount": 10} if digit == 1 else {"amount": 0},
            )
        await session.commit()

    async with session_factory() as session:
        summary = await RedeemService(session).reconcile_pending(older_than=utcnow() + timedelta(seconds=1))

    assert summary == {"checked": 2, "succeeded": 1, "failed": 1}

    (settled,) = await _records(session_factory, ok_id)
    assert settled.status == RedeemRecordStatus.SUCCESS
    assert settled.meta["reward"] == {"type": "mantou", "amount": 10}
    assert (await _code(session_factory, ok_id)).status == RedeemStatus.EXHAUSTED

    (failed,) = await _records(session_factory, broken_id)
    assert failed.status == RedeemRecordStatus.FAILED
    assert failed.meta == {"error": "reward_amount_required"}
    assert (await _code(session_factory, broken_id)).used_count == 0

    async with session_factory() as session:
        wallet = await session.get(PointsWallet, _address(1))
        assert wallet.balance == 10
        again = await RedeemService(session).reconcile_pending(older_than=utcnow() + timedelta(seconds=1))
    assert again == {"checked": 0, "succeeded": 0, "failed": 0}
    assert get_redeem_store().snapshot().reconciliation["runs"] == 2


@pytest.mark.asyncio
async def test_reconcile_skips_fresh_pending_records(session_factory) -> None:
    await _seed(session_factory, codes=["FRESH1"])

    async with session_factory() as session:
        store = RedeemStore(session)
        code = await store.get_code_with_batch("FRESH1")
        await store.reserve_code(code.id)
        await store.create_record(
            code=code,
            address=_address(1),
            reward_type=RedeemRewardType.MANTOU,
            reward_payload={"amount": 10},
        )
        await session.commit()

    async with session_factory() as session:
        summary = await RedeemService(session).reconcile_pending(older_than=utcnow() - timedelta(minutes=15))

    assert summary["checked"] == 0


@pytest.mark.asyncio
async def test_unexpected_errors_become_redeem_failed(session_factory) -> None:
    await _seed(session_factory, codes=["BOOM01"])

    async with session_factory() as session:
        service = RedeemService(session)

        async def broken(code: str):
            raise ValueError("db gone")

        service._store.get_code_with_batch = broken  # type: ignore[method-assign]
        result = await service.redeem("BOOM01", _address(1))

    assert result == RedeemFailure(error="redeem_failed", status=500)
    assert get_redeem_store().snapshot().errors == {"redeem_failed": 1}
