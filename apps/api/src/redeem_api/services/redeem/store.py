"""Persistence for redeem batches, codes and records.

Shared counters (``used_count`` and ``status`` on codes and batches) are only
ever changed through guarded ``UPDATE`` statements; the affected row count is
what tells the caller whether it won the slot.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Generic, Iterable, Mapping, Sequence, TypeVar
from uuid import UUID

from loguru import logger
from sqlalchemy import and_, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from redeem_api.core.clock import utcnow
from redeem_api.models.redeem import (
    RedeemBatch,
    RedeemCode,
    RedeemRecord,
    RedeemRecordStatus,
    RedeemRewardType,
    RedeemStatus,
)
from redeem_api.services.redeem.errors import DuplicateCodesError

T = TypeVar("T")

MIN_CODE_LENGTH = 6
DEFAULT_PAGE_SIZE = 20
MIN_PAGE_SIZE = 5
MAX_PAGE_SIZE = 200

_CODE_STRIP = re.compile(r"[\s\-]+")

_RESTORABLE = (RedeemStatus.ACTIVE, RedeemStatus.EXHAUSTED)


def normalize_code(raw: str | None) -> str:
    """Strip whitespace and dashes and upper-case a code string."""

    return _CODE_STRIP.sub("", raw or "").upper()


def clamp_page_size(value: int | None) -> int:
    if not value:
        return DEFAULT_PAGE_SIZE
    return min(MAX_PAGE_SIZE, max(MIN_PAGE_SIZE, value))


@dataclass(slots=True)
class Page(Generic[T]):
    items: list[T]
    total: int
    page: int
    page_size: int

    @property
    def total_pages(self) -> int:
        return max(1, -(-self.total // self.page_size))


class RedeemStore:
    """Reads and guarded writes over the redeem tables.

    Methods flush but never commit; transaction boundaries belong to the caller.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    async def get_code_with_batch(self, code: str) -> RedeemCode | None:
        stmt = (
            select(RedeemCode)
            .options(selectinload(RedeemCode.batch))
            .where(RedeemCode.code == code)
            .execution_options(populate_existing=True)
        )
        result = await self._db.execute(stmt)
        return result.scalar_one_or_none()

    async def get_code(self, code_id: UUID) -> RedeemCode | None:
        return await self._db.get(RedeemCode, code_id, populate_existing=True)

    async def get_batch(self, batch_id: UUID) -> RedeemBatch | None:
        return await self._db.get(RedeemBatch, batch_id, populate_existing=True)

    async def get_record(self, record_id: UUID) -> RedeemRecord | None:
        return await self._db.get(RedeemRecord, record_id, populate_existing=True)

    async def find_success_record(self, code_id: UUID, address: str) -> RedeemRecord | None:
        stmt = (
            select(RedeemRecord)
            .where(
                RedeemRecord.code_id == code_id,
                RedeemRecord.user_address == address,
                RedeemRecord.status == RedeemRecordStatus.SUCCESS,
            )
            .order_by(RedeemRecord.created_at.asc())
            .limit(1)
        )
        result = await self._db.execute(stmt)
        return result.scalars().first()

    async def count_active_records(self, code_id: UUID, address: str) -> int:
        """Count pending and successful records for a (code, user) pair."""

        stmt = select(func.count(RedeemRecord.id)).where(
            RedeemRecord.code_id == code_id,
            RedeemRecord.user_address == address,
            RedeemRecord.status.in_((RedeemRecordStatus.PENDING, RedeemRecordStatus.SUCCESS)),
        )
        result = await self._db.execute(stmt)
        return int(result.scalar_one() or 0)

    async def list_stale_pending(self, older_than: datetime, limit: int) -> list[RedeemRecord]:
        stmt = (
            select(RedeemRecord)
            .where(
                RedeemRecord.status == RedeemRecordStatus.PENDING,
                RedeemRecord.created_at <= older_than,
            )
            .order_by(RedeemRecord.created_at.asc())
            .limit(limit)
        )
        result = await self._db.execute(stmt)
        return list(result.scalars().all())

    # ------------------------------------------------------------------
    # Guarded counter writes
    # ------------------------------------------------------------------
    async def mark_code_status(
        self,
        code_id: UUID,
        status: RedeemStatus,
        *,
        current: Sequence[RedeemStatus] = (RedeemStatus.ACTIVE,),
    ) -> bool:
        """Move a code to ``status`` only while it is in one of ``current``."""

        result = await self._db.execute(
            update(RedeemCode)
            .where(RedeemCode.id == code_id, RedeemCode.status.in_(tuple(current)))
            .values(status=status, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def reserve_batch(self, batch_id: UUID, *, capped: bool) -> bool:
        conditions = [RedeemBatch.id == batch_id]
        if capped:
            conditions.append(RedeemBatch.status == RedeemStatus.ACTIVE)
            conditions.append(RedeemBatch.max_redeem.is_not(None))
            conditions.append(RedeemBatch.used_count < RedeemBatch.max_redeem)
        result = await self._db.execute(
            update(RedeemBatch)
            .where(*conditions)
            .values(used_count=RedeemBatch.used_count + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def reserve_code(self, code_id: UUID) -> bool:
        result = await self._db.execute(
            update(RedeemCode)
            .where(
                RedeemCode.id == code_id,
                RedeemCode.status == RedeemStatus.ACTIVE,
                RedeemCode.used_count < RedeemCode.max_redeem,
            )
            .values(used_count=RedeemCode.used_count + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def finalize_exhaustion(self, code_id: UUID, batch_id: UUID | None) -> None:
        """Flip code and batch to exhausted once their counters reach the cap."""

        now = utcnow()
        await self._db.execute(
            update(RedeemCode)
            .where(
                RedeemCode.id == code_id,
                RedeemCode.status == RedeemStatus.ACTIVE,
                RedeemCode.used_count >= RedeemCode.max_redeem,
            )
            .values(status=RedeemStatus.EXHAUSTED, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if batch_id is not None:
            await self._db.execute(
                update(RedeemBatch)
                .where(
                    RedeemBatch.id == batch_id,
                    RedeemBatch.status == RedeemStatus.ACTIVE,
                    RedeemBatch.max_redeem.is_not(None),
                    RedeemBatch.used_count >= RedeemBatch.max_redeem,
                )
                .values(status=RedeemStatus.EXHAUSTED, updated_at=now)
                .execution_options(synchronize_session=False)
            )

    async def compensate(
        self,
        code_id: UUID,
        batch_id: UUID | None,
        *,
        code_expired: bool,
        batch_expired: bool,
    ) -> None:
        """Release one reserved slot on the code and its batch.

        Status is restored to ``active`` (or ``expired`` when the window has
        closed) only from ``active``/``exhausted``; an operator-disabled row
        keeps its status.
        """

        now = utcnow()
        await self._db.execute(
            update(RedeemCode)
            .where(RedeemCode.id == code_id, RedeemCode.used_count > 0)
            .values(used_count=RedeemCode.used_count - 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(
            update(RedeemCode)
            .where(RedeemCode.id == code_id, RedeemCode.status.in_(_RESTORABLE))
            .values(status=RedeemStatus.EXPIRED if code_expired else RedeemStatus.ACTIVE, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if batch_id is None:
            return
        await self._db.execute(
            update(RedeemBatch)
            .where(RedeemBatch.id == batch_id, RedeemBatch.used_count > 0)
            .values(used_count=RedeemBatch.used_count - 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        await self._db.execute(
            update(RedeemBatch)
            .where(RedeemBatch.id == batch_id, RedeemBatch.status.in_(_RESTORABLE))
            .values(status=RedeemStatus.EXPIRED if batch_expired else RedeemStatus.ACTIVE, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Records
    # ------------------------------------------------------------------
    async def create_record(
        self,
        *,
        code: RedeemCode,
        address: str,
        reward_type: RedeemRewardType,
        reward_payload: Mapping[str, Any],
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> RedeemRecord:
        now = utcnow()
        record = RedeemRecord(
            code_id=code.id,
            batch_id=code.batch_id,
            user_address=address,
            reward_type=reward_type,
            reward_payload=dict(reward_payload),
            status=RedeemRecordStatus.PENDING,
            ip=ip,
            user_agent=user_agent,
            created_at=now,
            updated_at=now,
        )
        self._db.add(record)
        await self._db.flush()
        return record

    async def mark_record(
        self,
        record_id: UUID,
        status: RedeemRecordStatus,
        meta: Mapping[str, Any] | None = None,
    ) -> bool:
        """Finalize a pending record; terminal records are never rewritten."""

        result = await self._db.execute(
            update(RedeemRecord)
            .where(RedeemRecord.id == record_id, RedeemRecord.status == RedeemRecordStatus.PENDING)
            .values(status=status, meta=dict(meta or {}), updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        return bool(result.rowcount)

    async def touch_code(self, code_id: UUID) -> None:
        now = utcnow()
        await self._db.execute(
            update(RedeemCode)
            .where(RedeemCode.id == code_id)
            .values(last_redeemed_at=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------
    async def create_batch(
        self,
        *,
        title: str,
        reward_type: RedeemRewardType,
        reward_payload: Mapping[str, Any] | None = None,
        description: str | None = None,
        status: RedeemStatus = RedeemStatus.ACTIVE,
        max_redeem: int | None = None,
        max_redeem_per_user: int | None = None,
        starts_at: datetime | None = None,
        expires_at: datetime | None = None,
        total_codes: int | None = None,
    ) -> RedeemBatch:
        now = utcnow()
        batch = RedeemBatch(
            title=title.strip(),
            description=(description or "").strip() or None,
            reward_type=reward_type,
            reward_payload=dict(reward_payload) if reward_payload else None,
            status=status,
            max_redeem=max_redeem,
            max_redeem_per_user=max_redeem_per_user,
            total_codes=total_codes,
            used_count=0,
            starts_at=starts_at,
            expires_at=expires_at,
            created_at=now,
            updated_at=now,
        )
        self._db.add(batch)
        await self._db.flush()
        logger.info("Created redeem batch", batch_id=str(batch.id), reward_type=reward_type.value)
        return batch

    async def create_codes(
        self,
        codes: Iterable[str],
        *,
        batch: RedeemBatch | None = None,
        status: RedeemStatus = RedeemStatus.ACTIVE,
        max_redeem: int = 1,
        max_redeem_per_user: int = 1,
        reward_type: RedeemRewardType | None = None,
        reward_payload: Mapping[str, Any] | None = None,
        starts_at: datetime | None = None,
        expires_at: datetime | None = None,
        note: str | None = None,
    ) -> list[RedeemCode]:
        """Insert normalized codes, rejecting any that already exist.

        Inputs that normalize to fewer than ``MIN_CODE_LENGTH`` characters are
        dropped and repeats collapse to one code.
        """

        normalized: list[str] = []
        for raw in codes:
            value = normalize_code(raw)
            if len(value) >= MIN_CODE_LENGTH and value not in normalized:
                normalized.append(value)
        if not normalized:
            return []

        existing = await self._db.execute(select(RedeemCode.code).where(RedeemCode.code.in_(normalized)))
        duplicates = sorted(existing.scalars().all())
        if duplicates:
            raise DuplicateCodesError(duplicates)

        now = utcnow()
        created = [
            RedeemCode(
                batch_id=batch.id if batch is not None else None,
                code=value,
                status=status,
                max_redeem=max_redeem,
                max_redeem_per_user=max_redeem_per_user,
                used_count=0,
                reward_type=reward_type,
                reward_payload=dict(reward_payload) if reward_payload else None,
                starts_at=starts_at,
                expires_at=expires_at,
                note=note,
                created_at=now,
                updated_at=now,
            )
            for value in normalized
        ]
        self._db.add_all(created)
        await self._db.flush()
        logger.info(
            "Created redeem codes",
            batch_id=str(batch.id) if batch is not None else None,
            count=len(created),
        )
        return created

    async def query_codes(
        self,
        *,
        page: int = 1,
        page_size: int | None = None,
        status: RedeemStatus | None = None,
        batch_id: UUID | None = None,
        keyword: str | None = None,
    ) -> Page[RedeemCode]:
        conditions = []
        if status is not None:
            conditions.append(RedeemCode.status == status)
        if batch_id is not None:
            conditions.append(RedeemCode.batch_id == batch_id)
        term = (keyword or "").strip()
        if term:
            pattern = f"%{term}%"
            conditions.append(or_(RedeemCode.code.ilike(pattern), RedeemBatch.title.ilike(pattern)))

        base = select(RedeemCode).outerjoin(RedeemBatch, RedeemCode.batch_id == RedeemBatch.id)
        if conditions:
            base = base.where(and_(*conditions))
        return await self._paginate(
            base,
            options=(selectinload(RedeemCode.batch),),
            order_by=(RedeemCode.created_at.desc(), RedeemCode.id.desc()),
            page=page,
            page_size=page_size,
        )

    async def query_records(
        self,
        *,
        page: int = 1,
        page_size: int | None = None,
        status: RedeemRecordStatus | None = None,
        batch_id: UUID | None = None,
        code_id: UUID | None = None,
        address: str | None = None,
        keyword: str | None = None,
    ) -> Page[RedeemRecord]:
        conditions = []
        if status is not None:
            conditions.append(RedeemRecord.status == status)
        if batch_id is not None:
            conditions.append(RedeemRecord.batch_id == batch_id)
        if code_id is not None:
            conditions.append(RedeemRecord.code_id == code_id)
        if address:
            conditions.append(RedeemRecord.user_address == address)
        term = (keyword or "").strip()
        if term:
            pattern = f"%{term}%"
            conditions.append(
                or_(
                    RedeemRecord.user_address.ilike(pattern),
                    RedeemCode.code.ilike(pattern),
                    RedeemBatch.title.ilike(pattern),
                )
            )

        base = (
            select(RedeemRecord)
            .join(RedeemCode, RedeemRecord.code_id == RedeemCode.id)
            .outerjoin(RedeemBatch, RedeemRecord.batch_id == RedeemBatch.id)
        )
        if conditions:
            base = base.where(and_(*conditions))
        return await self._paginate(
            base,
            options=(selectinload(RedeemRecord.code), selectinload(RedeemRecord.batch)),
            order_by=(RedeemRecord.created_at.desc(), RedeemRecord.id.desc()),
            page=page,
            page_size=page_size,
        )

    async def update_code(self, code_id: UUID, patch: Mapping[str, Any]) -> RedeemCode | None:
        """Apply an operator patch (status, note, window) to a code."""

        allowed = {"status", "note", "starts_at", "expires_at"}
        values = {key: value for key, value in patch.items() if key in allowed}
        code = await self.get_code(code_id)
        if code is None:
            return None
        for key, value in values.items():
            setattr(code, key, value)
        code.updated_at = utcnow()
        await self._db.flush()
        logger.info("Updated redeem code", code_id=str(code_id), fields=sorted(values))
        return code

    async def update_batch_status(self, batch_id: UUID, status: RedeemStatus) -> RedeemBatch | None:
        batch = await self.get_batch(batch_id)
        if batch is None:
            return None
        batch.status = status
        batch.updated_at = utcnow()
        await self._db.flush()
        logger.info("Updated redeem batch status", batch_id=str(batch_id), status=status.value)
        return batch

    async def _paginate(
        self,
        base,
        *,
        options: Sequence[Any],
        order_by: Sequence[Any],
        page: int,
        page_size: int | None,
    ) -> Page[Any]:
        size = clamp_page_size(page_size)
        total = int(
            (await self._db.execute(select(func.count()).select_from(base.subquery()))).scalar_one() or 0
        )
        total_pages = max(1, -(-total // size))
        current = min(max(page, 1), total_pages)
        stmt = base.options(*options).order_by(*order_by).offset((current - 1) * size).limit(size)
        rows = (await self._db.execute(stmt)).scalars().all()
        return Page(items=list(rows), total=total, page=current, page_size=size)


__all__ = [
    "DEFAULT_PAGE_SIZE",
    "MAX_PAGE_SIZE",
    "MIN_CODE_LENGTH",
    "MIN_PAGE_SIZE",
    "Page",
    "RedeemStore",
    "clamp_page_size",
    "normalize_code",
]
