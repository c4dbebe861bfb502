"""Public redeem code endpoint."""

from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, Depends, HTTPException, Request, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from redeem_api.api.dependencies.services import get_redeem_service
from redeem_api.api.dependencies.user_auth import require_user_session
from redeem_api.models.user_session import UserSession
from redeem_api.services.redeem import RedeemFailure, RedeemService


router = APIRouter(prefix="/redeem", tags=["redeem"])


class RedeemRequest(BaseModel):
    code: Optional[str] = Field(None, description="Redeem code as typed by the user")
    address: Optional[str] = Field(None, description="Account address receiving the reward")


class RedeemResponse(BaseModel):
    ok: bool
    recordId: Optional[str] = None
    reward: Optional[dict[str, Any]] = None
    duplicated: Optional[bool] = None
    error: Optional[str] = None
    status: Optional[int] = None


def _client_ip(request: Request) -> str | None:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


@router.post(
    "",
    response_model=RedeemResponse,
    response_model_exclude_none=True,
    summary="Redeem a promotional code",
)
async def redeem_code(
    payload: RedeemRequest,
    request: Request,
    user_session: UserSession | None = Depends(require_user_session),
    service: RedeemService = Depends(get_redeem_service),
) -> JSONResponse:
    if user_session is not None:
        address = service.normalize_address(payload.address)
        if address is not None and address != user_session.user_address:
            raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="address_mismatch")

    result = await service.redeem(
        payload.code,
        payload.address,
        ip=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    status_code = result.status if isinstance(result, RedeemFailure) else 200
    return JSONResponse(status_code=status_code, content=result.as_dict())
