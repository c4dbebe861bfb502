from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from redeem_api.core.settings import settings
from redeem_api.db.session import get_session
from redeem_api.models.user_session import UserSession
from redeem_api.services.auth import UserSessionStore


async def require_user_session(
    authorization: str = Header("", alias="Authorization"),
    db: AsyncSession = Depends(get_session),
) -> UserSession | None:
    """Resolve the caller's bearer session.

    Returns ``None`` when user auth is switched off.
    """

    if not settings.redeem_user_auth_required:
        return None

    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="auth_required")

    session = await UserSessionStore(db).get_active_session(token.strip())
    if session is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="invalid_token")
    return session
