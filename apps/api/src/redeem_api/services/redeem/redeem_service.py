"""Redemption orchestration: validate, reserve, apply, then finalize or compensate."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Union
from uuid import UUID

from fastapi import status
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from redeem_api.core.clock import ensure_aware, utcnow
from redeem_api.core.settings import Settings, settings
from redeem_api.models.redeem import RedeemRecord, RedeemRecordStatus, RedeemRewardType, RedeemStatus
from redeem_api.observability.redeem import get_redeem_store
from redeem_api.services.coupons import SqlCouponStore
from redeem_api.services.ledger import HttpCurrencyLedger, SqlPointsLedger
from redeem_api.services.membership import SqlMembershipStore
from redeem_api.services.redeem.applicator import RewardApplicator
from redeem_api.services.redeem.errors import REDEEM_FAILED, REWARD_FAILED, RedeemError, state_conflict
from redeem_api.services.redeem.rewards import RewardDescriptor, resolve_reward
from redeem_api.services.redeem.store import RedeemStore, normalize_code

_HEX = re.compile(r"^[0-9a-f]+$")

# Statuses that are still redeemable up to the capacity check; ``exhausted``
# is reported as used-up after the duplicate fast path has had its chance.
_OPEN_STATUSES = (RedeemStatus.ACTIVE, RedeemStatus.EXHAUSTED)


@dataclass(slots=True)
class RedeemSuccess:
    record_id: UUID
    reward: dict[str, Any]
    duplicated: bool = False

    ok = True

    def as_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"ok": True, "recordId": str(self.record_id), "reward": self.reward}
        if self.duplicated:
            payload["duplicated"] = True
        return payload


@dataclass(slots=True)
class RedeemFailure:
    error: str
    status: int

    ok = False

    def as_dict(self) -> dict[str, Any]:
        return {"ok": False, "error": self.error, "status": self.status}


RedeemResult = Union[RedeemSuccess, RedeemFailure]


@dataclass(slots=True)
class _Reservation:
    """Plain values captured before the reservation commits."""

    record_id: UUID
    address: str
    code_id: UUID
    batch_id: UUID | None
    code_expires_at: datetime | None
    batch_expires_at: datetime | None


def normalize_address(raw: str | None, hex_length: int = 64) -> str | None:
    """Return a lower-cased, ``0x``-prefixed, zero-padded account address."""

    value = (raw or "").strip().lower()
    if value.startswith("0x"):
        value = value[2:]
    if not value or len(value) > hex_length or not _HEX.match(value):
        return None
    return "0x" + value.rjust(hex_length, "0")


def _stored_summary(record: RedeemRecord) -> dict[str, Any]:
    meta = record.meta or {}
    summary = meta.get("reward") if isinstance(meta, dict) else None
    if isinstance(summary, dict):
        return dict(summary)
    reward_type = record.reward_type
    return {"type": reward_type.value if isinstance(reward_type, RedeemRewardType) else str(reward_type)}


def _is_past(value: datetime | None, now: datetime) -> bool:
    aware = ensure_aware(value)
    return aware is not None and aware <= now


class RedeemService:
    """Run the redemption state machine over one database session.

    The reservation (per-user count, guarded counter increments and the pending
    record) commits as one unit before any reward is granted. The grant runs
    outside it; its outcome either finalizes the record or fails it and
    releases the reserved slot.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        *,
        applicator: RewardApplicator | None = None,
        config: Settings = settings,
    ) -> None:
        self._db = db_session
        self._config = config
        self._store = RedeemStore(db_session)
        self._applicator = applicator or self._build_applicator()
        self._metrics = get_redeem_store()

    def _build_applicator(self) -> RewardApplicator:
        currency = HttpCurrencyLedger.from_settings(self._config) if self._config.currency_ledger_url else None
        return RewardApplicator(
            points_ledger=SqlPointsLedger(self._db),
            membership_store=SqlMembershipStore(self._db),
            coupon_store=SqlCouponStore(self._db),
            currency_ledger=currency,
            default_message=self._config.redeem_custom_default_message,
        )

    def normalize_address(self, raw: str | None) -> str | None:
        return normalize_address(raw, self._config.redeem_address_hex_length)

    async def redeem(
        self,
        code: str | None,
        address: str | None,
        *,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> RedeemResult:
        try:
            result = await self._redeem(code, address, ip=ip, user_agent=user_agent)
        except RedeemError as exc:
            await self._db.rollback()
            logger.info("Redeem rejected", code=code, error=exc.code, status=exc.status_code)
            result = RedeemFailure(error=exc.code, status=exc.status_code)
        except Exception:
            await self._db.rollback()
            logger.exception("Redeem failed unexpectedly", code=code)
            result = RedeemFailure(error=REDEEM_FAILED, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        if isinstance(result, RedeemFailure):
            self._metrics.record_failure(result.error)
        else:
            self._metrics.record_success(str(result.reward.get("type", "")), duplicated=result.duplicated)
        return result

    async def _redeem(
        self,
        code: str | None,
        address: str | None,
        *,
        ip: str | None,
        user_agent: str | None,
    ) -> RedeemResult:
        normalized_address = self.normalize_address(address)
        if normalized_address is None:
            raise RedeemError("invalid_address")
        normalized_code = normalize_code(code)
        if not normalized_code:
            raise RedeemError("code_required")

        code_row = await self._store.get_code_with_batch(normalized_code)
        if code_row is None:
            raise RedeemError("invalid_code", status.HTTP_404_NOT_FOUND)
        batch = code_row.batch

        if batch is not None and batch.status not in _OPEN_STATUSES:
            raise state_conflict("batch", batch.status.value)
        if code_row.status not in _OPEN_STATUSES:
            raise state_conflict("code", code_row.status.value)

        now = utcnow()
        starts_at = ensure_aware(code_row.starts_at or (batch.starts_at if batch is not None else None))
        expires_at = ensure_aware(code_row.expires_at or (batch.expires_at if batch is not None else None))
        if starts_at is not None and starts_at > now:
            raise RedeemError("code_not_started")
        if expires_at is not None and expires_at <= now:
            await self._store.mark_code_status(code_row.id, RedeemStatus.EXPIRED, current=_OPEN_STATUSES)
            await self._db.commit()
            raise RedeemError("code_expired", status.HTTP_410_GONE)

        if code_row.reward_type is not None:
            reward_type, raw_payload = code_row.reward_type, code_row.reward_payload
        elif batch is not None:
            reward_type, raw_payload = batch.reward_type, batch.reward_payload
        else:
            reward_type, raw_payload = None, None
        if reward_type is None:
            raise RedeemError("reward_missing")
        reward = resolve_reward(reward_type, raw_payload)

        max_redeem = max(1, code_row.max_redeem or 1)
        max_per_user = max(1, code_row.max_redeem_per_user or 1)

        if max_per_user <= 1:
            existing = await self._store.find_success_record(code_row.id, normalized_address)
            if existing is not None:
                logger.info(
                    "Redeem duplicate returned",
                    record_id=str(existing.id),
                    code=normalized_code,
                    address=normalized_address,
                )
                return RedeemSuccess(record_id=existing.id, reward=_stored_summary(existing), duplicated=True)

        if batch is not None and batch.status == RedeemStatus.EXHAUSTED:
            raise RedeemError("batch_used_up", status.HTTP_409_CONFLICT)
        if code_row.status == RedeemStatus.EXHAUSTED or (code_row.used_count or 0) >= max_redeem:
            await self._store.mark_code_status(code_row.id, RedeemStatus.EXHAUSTED)
            await self._db.commit()
            raise RedeemError("code_used_up", status.HTTP_409_CONFLICT)

        if await self._store.count_active_records(code_row.id, normalized_address) >= max_per_user:
            raise RedeemError("user_limit_reached", status.HTTP_409_CONFLICT)
        if batch is not None:
            capped = batch.max_redeem is not None
            if not await self._store.reserve_batch(batch.id, capped=capped):
                raise RedeemError("batch_used_up", status.HTTP_409_CONFLICT)
        if not await self._store.reserve_code(code_row.id):
            raise RedeemError("code_used_up", status.HTTP_409_CONFLICT)
        # Re-check with the counter rows locked so a concurrent request by the
        # same user that committed in between is counted.
        if await self._store.count_active_records(code_row.id, normalized_address) >= max_per_user:
            raise RedeemError("user_limit_reached", status.HTTP_409_CONFLICT)

        record = await self._store.create_record(
            code=code_row,
            address=normalized_address,
            reward_type=reward.kind,
            reward_payload=reward.to_payload(),
            ip=ip,
            user_agent=user_agent,
        )
        reservation = _Reservation(
            record_id=record.id,
            address=normalized_address,
            code_id=code_row.id,
            batch_id=code_row.batch_id,
            code_expires_at=expires_at,
            batch_expires_at=ensure_aware(batch.expires_at) if batch is not None else None,
        )
        await self._db.commit()
        logger.info(
            "Redeem reserved",
            record_id=str(reservation.record_id),
            code=normalized_code,
            address=normalized_address,
            reward_type=reward.kind.value,
        )

        return await self._settle(reservation, reward)

    async def _settle(self, reservation: _Reservation, reward: RewardDescriptor) -> RedeemResult:
        record_id = reservation.record_id
        try:
            applied = await self._applicator.apply(
                reward,
                address=reservation.address,
                record_id=str(record_id),
            )
        except Exception as exc:
            await self._db.rollback()
            if isinstance(exc, RedeemError):
                error = exc
                logger.warning("Reward application rejected", record_id=str(record_id), error=exc.code)
            else:
                error = RedeemError(REWARD_FAILED, status.HTTP_502_BAD_GATEWAY)
                logger.exception("Reward application failed", record_id=str(record_id))
            await self._fail_and_compensate(reservation, detail=exc.code if isinstance(exc, RedeemError) else str(exc))
            return RedeemFailure(error=error.code, status=error.status_code)

        # A failed write after the grant keeps the slot and leaves the record
        # pending for reconciliation.
        summary = applied.reward.as_dict()
        try:
            finalized = await self._store.mark_record(
                record_id,
                RedeemRecordStatus.SUCCESS,
                {**applied.meta, "reward": summary},
            )
            if finalized:
                await self._store.touch_code(reservation.code_id)
                await self._store.finalize_exhaustion(reservation.code_id, reservation.batch_id)
                await self._db.commit()
        except Exception:
            await self._db.rollback()
            logger.exception("Redeem finalize failed, record left pending", record_id=str(record_id))
            return RedeemFailure(error=REDEEM_FAILED, status=status.HTTP_500_INTERNAL_SERVER_ERROR)

        if not finalized:
            await self._db.rollback()
            return await self._settled_outcome(record_id)

        logger.info(
            "Redeem succeeded",
            record_id=str(record_id),
            address=reservation.address,
            reward_type=reward.kind.value,
        )
        return RedeemSuccess(record_id=record_id, reward=summary)

    async def _settled_outcome(self, record_id: UUID) -> RedeemResult:
        """Report a record some other writer already finalized."""

        record = await self._store.get_record(record_id)
        if record is not None and record.status == RedeemRecordStatus.SUCCESS:
            return RedeemSuccess(record_id=record.id, reward=_stored_summary(record), duplicated=True)
        return RedeemFailure(error=REWARD_FAILED, status=status.HTTP_502_BAD_GATEWAY)

    async def _fail_and_compensate(self, reservation: _Reservation, *, detail: str) -> None:
        now = utcnow()
        try:
            marked = await self._store.mark_record(
                reservation.record_id,
                RedeemRecordStatus.FAILED,
                {"error": detail},
            )
            if marked:
                await self._store.compensate(
                    reservation.code_id,
                    reservation.batch_id,
                    code_expired=_is_past(reservation.code_expires_at, now),
                    batch_expired=_is_past(reservation.batch_expires_at, now),
                )
            await self._db.commit()
        except Exception:
            logger.exception("Redeem compensation failed", record_id=str(reservation.record_id))
            self._metrics.record_compensation(False)
            await self._db.rollback()
            return
        if marked:
            self._metrics.record_compensation(True)
            logger.info("Redeem reservation released", record_id=str(reservation.record_id))

    async def reconcile_pending(
        self,
        *,
        older_than: datetime | None = None,
        limit: int | None = None,
    ) -> dict[str, int]:
        """Settle records left in ``pending`` by a crashed or interrupted apply.

        Every grant is keyed by the record id, so re-running the apply never
        grants twice.
        """

        cutoff = older_than or utcnow() - timedelta(
            seconds=self._config.redeem_reconciliation_pending_timeout_seconds
        )
        batch_limit = limit or self._config.redeem_reconciliation_limit
        records = await self._store.list_stale_pending(cutoff, batch_limit)
        pending = [
            (record.id, record.user_address, record.code_id, record.batch_id, record.reward_type, record.reward_payload)
            for record in records
        ]
        await self._db.rollback()

        summary = {"checked": len(pending), "succeeded": 0, "failed": 0}
        for record_id, address, code_id, batch_id, reward_type, reward_payload in pending:
            code_row = await self._store.get_code(code_id)
            batch = await self._store.get_batch(batch_id) if batch_id is not None else None
            code_expires_at = ensure_aware(
                (code_row.expires_at if code_row is not None else None)
                or (batch.expires_at if batch is not None else None)
            )
            batch_expires_at = ensure_aware(batch.expires_at) if batch is not None else None
            await self._db.rollback()

            reservation = _Reservation(
                record_id=record_id,
                address=address,
                code_id=code_id,
                batch_id=batch_id,
                code_expires_at=code_expires_at,
                batch_expires_at=batch_expires_at,
            )
            try:
                reward = resolve_reward(reward_type, reward_payload)
            except RedeemError as exc:
                await self._fail_and_compensate(reservation, detail=exc.code)
                summary["failed"] += 1
                continue

            outcome = await self._settle(reservation, reward)
            if isinstance(outcome, RedeemSuccess):
                summary["succeeded"] += 1
            else:
                summary["failed"] += 1

        self._metrics.record_reconciliation(summary)
        logger.bind(summary=summary).info("Redeem reconciliation finished")
        return summary


__all__ = [
    "RedeemFailure",
    "RedeemResult",
    "RedeemService",
    "RedeemSuccess",
    "normalize_address",
]
