from __future__ import annotations

import hashlib
import secrets
from datetime import timedelta

from loguru import logger
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from redeem_api.core.clock import ensure_aware, utcnow
from redeem_api.models.user_session import UserSession


def hash_session_token(token: str) -> str:
    digest = hashlib.sha256()
    digest.update(token.strip().encode("utf-8"))
    return digest.hexdigest()


class UserSessionStore:
    """Issue, look up and revoke address-bound bearer sessions.

    Only the sha256 of a token is stored; the raw token is returned once at
    issue time.
    """

    def __init__(self, db_session: AsyncSession) -> None:
        self._db = db_session

    async def create_session(
        self,
        address: str,
        *,
        ttl: timedelta,
        ip: str | None = None,
        user_agent: str | None = None,
    ) -> tuple[str, UserSession]:
        token = secrets.token_hex(32)
        session = UserSession(
            token_hash=hash_session_token(token),
            user_address=address,
            expires_at=utcnow() + ttl,
            ip=ip,
            user_agent=user_agent,
        )
        self._db.add(session)
        await self._db.flush()
        logger.info("User session issued", session_id=str(session.id), address=address)
        return token, session

    async def get_active_session(self, token: str) -> UserSession | None:
        """Return the live session for ``token``; expired sessions are removed."""

        if not token or not token.strip():
            return None
        token_hash = hash_session_token(token)
        result = await self._db.execute(select(UserSession).where(UserSession.token_hash == token_hash))
        session = result.scalar_one_or_none()
        if session is None:
            return None

        now = utcnow()
        if ensure_aware(session.expires_at) <= now:
            await self._db.delete(session)
            await self._db.commit()
            logger.info("User session expired", session_id=str(session.id))
            return None

        session.last_seen_at = now
        await self._db.commit()
        return session

    async def revoke_session(self, token: str) -> bool:
        if not token or not token.strip():
            return False
        result = await self._db.execute(
            delete(UserSession).where(UserSession.token_hash == hash_session_token(token))
        )
        return bool(result.rowcount)


__all__ = ["UserSessionStore", "hash_session_token"]
