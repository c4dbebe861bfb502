"""Administrative endpoints for redeem batches, codes and records."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, List, Literal, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, Response, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from redeem_api.api.dependencies.security import require_admin_api_key
from redeem_api.api.dependencies.services import get_redeem_service
from redeem_api.core.clock import ensure_aware, utcnow
from redeem_api.core.settings import settings
from redeem_api.db.session import get_session
from redeem_api.models.redeem import (
    RedeemBatch,
    RedeemCode,
    RedeemRecord,
    RedeemRecordStatus,
    RedeemRewardType,
    RedeemStatus,
)
from redeem_api.services.auth import UserSessionStore
from redeem_api.services.redeem import (
    DuplicateCodesError,
    RedeemError,
    RedeemService,
    RedeemStore,
    resolve_reward,
)


router = APIRouter(
    prefix="/admin/redeem",
    tags=["redeem-admin"],
    dependencies=[Depends(require_admin_api_key)],
)

RewardTypeLiteral = Literal["mantou", "diamond", "vip", "coupon", "custom"]
StatusLiteral = Literal["active", "disabled", "exhausted", "expired"]


class RedeemBatchResponse(BaseModel):
    id: UUID
    title: str
    description: Optional[str]
    rewardType: str
    rewardPayload: Optional[dict[str, Any]]
    status: str
    maxRedeem: Optional[int]
    maxRedeemPerUser: Optional[int]
    totalCodes: Optional[int]
    usedCount: int
    startsAt: Optional[datetime]
    expiresAt: Optional[datetime]
    createdAt: Optional[datetime]


class RedeemCodeResponse(BaseModel):
    id: UUID
    code: str
    batchId: Optional[UUID]
    batchTitle: Optional[str] = None
    rewardType: Optional[str]
    rewardPayload: Optional[dict[str, Any]]
    status: str
    maxRedeem: int
    maxRedeemPerUser: int
    usedCount: int
    startsAt: Optional[datetime]
    expiresAt: Optional[datetime]
    note: Optional[str]
    lastRedeemedAt: Optional[datetime]
    createdAt: Optional[datetime]


class RedeemRecordResponse(BaseModel):
    id: UUID
    codeId: UUID
    code: Optional[str]
    batchId: Optional[UUID]
    batchTitle: Optional[str]
    userAddress: str
    rewardType: str
    rewardPayload: Optional[dict[str, Any]]
    status: str
    ip: Optional[str]
    userAgent: Optional[str]
    meta: Optional[dict[str, Any]]
    createdAt: Optional[datetime]


class RedeemCodePage(BaseModel):
    items: List[RedeemCodeResponse]
    total: int
    page: int
    pageSize: int
    totalPages: int


class RedeemRecordPage(BaseModel):
    items: List[RedeemRecordResponse]
    total: int
    page: int
    pageSize: int
    totalPages: int


class BatchCreateRequest(BaseModel):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    rewardType: RewardTypeLiteral
    rewardPayload: dict[str, Any] = Field(default_factory=dict)
    status: Literal["active", "disabled"] = "active"
    batchMaxRedeem: Optional[int] = Field(None, ge=1, le=1_000_000, description="Total redemptions across the batch")
    maxRedeem: int = Field(1, ge=1, le=10_000, description="Redemptions allowed per code")
    maxRedeemPerUser: int = Field(1, ge=1, le=10_000)
    startsAt: Optional[datetime] = None
    expiresAt: Optional[datetime] = None
    codes: List[str] = Field(..., min_length=1, max_length=500)


class BatchCreateResponse(BaseModel):
    batch: RedeemBatchResponse
    codes: List[RedeemCodeResponse]
    count: int


class CodeCreateRequest(BaseModel):
    rewardType: RewardTypeLiteral
    rewardPayload: dict[str, Any] = Field(default_factory=dict)
    status: Literal["active", "disabled"] = "active"
    maxRedeem: int = Field(1, ge=1, le=10_000)
    maxRedeemPerUser: int = Field(1, ge=1, le=10_000)
    startsAt: Optional[datetime] = None
    expiresAt: Optional[datetime] = None
    note: Optional[str] = None
    codes: List[str] = Field(..., min_length=1, max_length=500)


class CodeUpdateRequest(BaseModel):
    status: Optional[StatusLiteral] = None
    note: Optional[str] = None
    startsAt: Optional[datetime] = None
    expiresAt: Optional[datetime] = None


class BatchStatusRequest(BaseModel):
    status: StatusLiteral


class ReconcileRequest(BaseModel):
    limit: Optional[int] = Field(None, ge=1, le=1_000)
    pendingTimeoutSeconds: Optional[int] = Field(None, ge=0)


class ReconcileResponse(BaseModel):
    checked: int
    succeeded: int
    failed: int


def _value(enum_value: Any) -> Optional[str]:
    if enum_value is None:
        return None
    return getattr(enum_value, "value", str(enum_value))


def _serialize_batch(batch: RedeemBatch) -> RedeemBatchResponse:
    return RedeemBatchResponse(
        id=batch.id,
        title=batch.title,
        description=batch.description,
        rewardType=_value(batch.reward_type) or "",
        rewardPayload=batch.reward_payload,
        status=_value(batch.status) or "",
        maxRedeem=batch.max_redeem,
        maxRedeemPerUser=batch.max_redeem_per_user,
        totalCodes=batch.total_codes,
        usedCount=batch.used_count or 0,
        startsAt=ensure_aware(batch.starts_at),
        expiresAt=ensure_aware(batch.expires_at),
        createdAt=ensure_aware(batch.created_at),
    )


def _serialize_code(code: RedeemCode, batch: RedeemBatch | None = None) -> RedeemCodeResponse:
    return RedeemCodeResponse(
        id=code.id,
        code=code.code,
        batchId=code.batch_id,
        batchTitle=batch.title if batch is not None else None,
        rewardType=_value(code.reward_type),
        rewardPayload=code.reward_payload,
        status=_value(code.status) or "",
        maxRedeem=code.max_redeem,
        maxRedeemPerUser=code.max_redeem_per_user,
        usedCount=code.used_count or 0,
        startsAt=ensure_aware(code.starts_at),
        expiresAt=ensure_aware(code.expires_at),
        note=code.note,
        lastRedeemedAt=ensure_aware(code.last_redeemed_at),
        createdAt=ensure_aware(code.created_at),
    )


def _serialize_record(record: RedeemRecord) -> RedeemRecordResponse:
    return RedeemRecordResponse(
        id=record.id,
        codeId=record.code_id,
        code=record.code.code if record.code is not None else None,
        batchId=record.batch_id,
        batchTitle=record.batch.title if record.batch is not None else None,
        userAddress=record.user_address,
        rewardType=_value(record.reward_type) or "",
        rewardPayload=record.reward_payload,
        status=_value(record.status) or "",
        ip=record.ip,
        userAgent=record.user_agent,
        meta=record.meta,
        createdAt=ensure_aware(record.created_at),
    )


def _validate_reward(reward_type: str, payload: dict[str, Any]) -> None:
    try:
        resolve_reward(reward_type, payload)
    except RedeemError as error:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=error.code) from error


def _duplicate_conflict(error: DuplicateCodesError) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_409_CONFLICT,
        detail={"error": error.code, "duplicated": error.codes},
    )


@router.post(
    "/batches",
    response_model=BatchCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Create a batch and its codes",
)
async def create_batch(
    payload: BatchCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> BatchCreateResponse:
    _validate_reward(payload.rewardType, payload.rewardPayload)
    store = RedeemStore(db)
    batch = await store.create_batch(
        title=payload.title,
        description=payload.description,
        reward_type=RedeemRewardType(payload.rewardType),
        reward_payload=payload.rewardPayload,
        status=RedeemStatus(payload.status),
        max_redeem=payload.batchMaxRedeem,
        max_redeem_per_user=payload.maxRedeemPerUser,
        starts_at=payload.startsAt,
        expires_at=payload.expiresAt,
    )
    try:
        codes = await store.create_codes(
            payload.codes,
            batch=batch,
            status=RedeemStatus(payload.status),
            max_redeem=payload.maxRedeem,
            max_redeem_per_user=payload.maxRedeemPerUser,
            starts_at=payload.startsAt,
            expires_at=payload.expiresAt,
        )
    except DuplicateCodesError as error:
        await db.rollback()
        raise _duplicate_conflict(error) from error
    if not codes:
        await db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="codes_required")

    batch.total_codes = len(codes)
    await db.commit()
    return BatchCreateResponse(
        batch=_serialize_batch(batch),
        codes=[_serialize_code(code, batch) for code in codes],
        count=len(codes),
    )


@router.post(
    "/codes",
    response_model=List[RedeemCodeResponse],
    status_code=status.HTTP_201_CREATED,
    summary="Create standalone codes",
)
async def create_codes(
    payload: CodeCreateRequest,
    db: AsyncSession = Depends(get_session),
) -> List[RedeemCodeResponse]:
    _validate_reward(payload.rewardType, payload.rewardPayload)
    store = RedeemStore(db)
    try:
        codes = await store.create_codes(
            payload.codes,
            status=RedeemStatus(payload.status),
            max_redeem=payload.maxRedeem,
            max_redeem_per_user=payload.maxRedeemPerUser,
            reward_type=RedeemRewardType(payload.rewardType),
            reward_payload=payload.rewardPayload,
            starts_at=payload.startsAt,
            expires_at=payload.expiresAt,
            note=payload.note,
        )
    except DuplicateCodesError as error:
        await db.rollback()
        raise _duplicate_conflict(error) from error
    if not codes:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="codes_required")
    await db.commit()
    return [_serialize_code(code) for code in codes]


@router.get("/codes", response_model=RedeemCodePage, summary="List redeem codes")
async def list_codes(
    page: int = Query(1, ge=1),
    pageSize: int = Query(20),
    status_filter: Optional[StatusLiteral] = Query(None, alias="status"),
    batchId: Optional[UUID] = Query(None),
    q: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_session),
) -> RedeemCodePage:
    result = await RedeemStore(db).query_codes(
        page=page,
        page_size=pageSize,
        status=RedeemStatus(status_filter) if status_filter else None,
        batch_id=batchId,
        keyword=q,
    )
    return RedeemCodePage(
        items=[_serialize_code(code, code.batch) for code in result.items],
        total=result.total,
        page=result.page,
        pageSize=result.page_size,
        totalPages=result.total_pages,
    )


@router.patch("/codes/{code_id}", response_model=RedeemCodeResponse, summary="Update a redeem code")
async def update_code(
    code_id: UUID,
    payload: CodeUpdateRequest,
    db: AsyncSession = Depends(get_session),
) -> RedeemCodeResponse:
    field_map = {"status": "status", "note": "note", "startsAt": "starts_at", "expiresAt": "expires_at"}
    patch: dict[str, Any] = {}
    for field_name in payload.model_fields_set:
        value = getattr(payload, field_name)
        if field_name == "status":
            if value is None:
                continue
            value = RedeemStatus(value)
        patch[field_map[field_name]] = value

    code = await RedeemStore(db).update_code(code_id, patch)
    if code is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Redeem code not found")
    await db.commit()
    return _serialize_code(code)


@router.patch("/batches/{batch_id}", response_model=RedeemBatchResponse, summary="Update batch status")
async def update_batch_status(
    batch_id: UUID,
    payload: BatchStatusRequest,
    db: AsyncSession = Depends(get_session),
) -> RedeemBatchResponse:
    batch = await RedeemStore(db).update_batch_status(batch_id, RedeemStatus(payload.status))
    if batch is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Redeem batch not found")
    await db.commit()
    return _serialize_batch(batch)


@router.get("/records", response_model=RedeemRecordPage, summary="List redemption records")
async def list_records(
    page: int = Query(1, ge=1),
    pageSize: int = Query(20),
    status_filter: Optional[Literal["pending", "success", "failed"]] = Query(None, alias="status"),
    batchId: Optional[UUID] = Query(None),
    codeId: Optional[UUID] = Query(None),
    address: Optional[str] = Query(None),
    q: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_session),
) -> RedeemRecordPage:
    result = await RedeemStore(db).query_records(
        page=page,
        page_size=pageSize,
        status=RedeemRecordStatus(status_filter) if status_filter else None,
        batch_id=batchId,
        code_id=codeId,
        address=address,
        keyword=q,
    )
    return RedeemRecordPage(
        items=[_serialize_record(record) for record in result.items],
        total=result.total,
        page=result.page,
        pageSize=result.page_size,
        totalPages=result.total_pages,
    )


@router.post("/reconcile", response_model=ReconcileResponse, summary="Settle stale pending records")
async def reconcile_pending(
    payload: Optional[ReconcileRequest] = None,
    service: RedeemService = Depends(get_redeem_service),
) -> ReconcileResponse:
    options = payload or ReconcileRequest()
    older_than = None
    if options.pendingTimeoutSeconds is not None:
        older_than = utcnow() - timedelta(seconds=options.pendingTimeoutSeconds)
    summary = await service.reconcile_pending(older_than=older_than, limit=options.limit)
    return ReconcileResponse(**summary)


class SessionCreateRequest(BaseModel):
    address: str
    ttlHours: Optional[int] = Field(None, ge=1, le=24 * 90)
    ip: Optional[str] = None
    userAgent: Optional[str] = None


class SessionCreateResponse(BaseModel):
    token: str
    address: str
    expiresAt: datetime


@router.post(
    "/sessions",
    response_model=SessionCreateResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Issue a bearer session for a verified address",
)
async def create_user_session(
    payload: SessionCreateRequest,
    service: RedeemService = Depends(get_redeem_service),
    db: AsyncSession = Depends(get_session),
) -> SessionCreateResponse:
    address = service.normalize_address(payload.address)
    if address is None:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="invalid_address")
    ttl_hours = payload.ttlHours or settings.user_session_ttl_hours
    token, session = await UserSessionStore(db).create_session(
        address,
        ttl=timedelta(hours=ttl_hours),
        ip=payload.ip,
        user_agent=payload.userAgent,
    )
    await db.commit()
    return SessionCreateResponse(token=token, address=address, expiresAt=session.expires_at)


@router.delete(
    "/sessions/{token}",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Revoke a bearer session",
)
async def revoke_user_session(token: str, db: AsyncSession = Depends(get_session)) -> Response:
    if not await UserSessionStore(db).revoke_session(token):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    await db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
