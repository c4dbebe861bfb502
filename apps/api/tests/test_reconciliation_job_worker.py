from datetime import timedelta

import pytest
from sqlalchemy import update

from redeem_api.core.clock import utcnow
from redeem_api.jobs.redeem import run_redeem_reconciliation
from redeem_api.models.redeem import RedeemRecord, RedeemRecordStatus, RedeemRewardType
from redeem_api.services.redeem import RedeemStore
from redeem_api.workers import RedeemReconciliationWorker

ADDRESS = "0x" + "5" * 64


class RejectingApplicator:
    async def apply(self, reward, *, address, record_id):
        raise RuntimeError("grant unavailable")


async def _stuck_record(session_factory, code_value: str, *, age: timedelta = timedelta(hours=1)):
    async with session_factory() as session:
        store = RedeemStore(session)
        batch = await store.create_batch(
            title="Stuck",
            reward_type=RedeemRewardType.MANTOU,
            reward_payload={"amount": 3},
            max_redeem=5,
        )
        (code,) = await store.create_codes([code_value], batch=batch)
        await store.reserve_batch(batch.id, capped=True)
        await store.reserve_code(code.id)
        record = await store.create_record(
            code=code,
            address=ADDRESS,
            reward_type=RedeemRewardType.MANTOU,
            reward_payload={"amount": 3},
        )
        await session.execute(
            update(RedeemRecord)
            .where(RedeemRecord.id == record.id)
            .values(created_at=utcnow() - age)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return record.id, code.id, batch.id


@pytest.mark.asyncio
async def test_job_settles_records_past_timeout(session_factory) -> None:
    old_id, _, _ = await _stuck_record(session_factory, "OLD0001")
    fresh_id, _, _ = await _stuck_record(session_factory, "NEW0001", age=timedelta(seconds=0))

    summary = await run_redeem_reconciliation(session_factory=session_factory, pending_timeout_seconds=600)

    assert summary == {"checked": 1, "succeeded": 1, "failed": 0}
    async with session_factory() as session:
        store = RedeemStore(session)
        assert (await store.get_record(old_id)).status == RedeemRecordStatus.SUCCESS
        assert (await store.get_record(fresh_id)).status == RedeemRecordStatus.PENDING


@pytest.mark.asyncio
async def test_job_accepts_async_session_factory_and_custom_applicator(session_factory) -> None:
    record_id, code_id, batch_id = await _stuck_record(session_factory, "FAIL0001")

    async def async_factory():
        return session_factory()

    summary = await run_redeem_reconciliation(
        session_factory=async_factory,
        pending_timeout_seconds=60,
        applicator_factory=lambda session: RejectingApplicator(),
    )

    assert summary == {"checked": 1, "succeeded": 0, "failed": 1}
    async with session_factory() as session:
        store = RedeemStore(session)
        record = await store.get_record(record_id)
        assert record.status == RedeemRecordStatus.FAILED
        assert record.meta == {"error": "grant unavailable"}
        assert (await store.get_code(code_id)).used_count == 0
        assert (await store.get_batch(batch_id)).used_count == 0


@pytest.mark.asyncio
async def test_worker_run_once_uses_configured_limits(session_factory) -> None:
    await _stuck_record(session_factory, "WORK0001")
    await _stuck_record(session_factory, "WORK0002")

    worker = RedeemReconciliationWorker(
        session_factory,
        interval_seconds=1,
        limit=1,
        pending_timeout_seconds=60,
        trigger_label="unit-default",
    )

    first = await worker.run_once(triggered_by="unit-test")
    second = await worker.run_once()
    third = await worker.run_once()

    assert first == {"checked": 1, "succeeded": 1, "failed": 0}
    assert second["succeeded"] == 1
    assert third["checked"] == 0


@pytest.mark.asyncio
async def test_worker_start_and_stop(session_factory) -> None:
    worker = RedeemReconciliationWorker(session_factory, interval_seconds=60, pending_timeout_seconds=60)

    worker.start()
    assert worker.is_running is True
    await worker.stop()
    assert worker.is_running is False
