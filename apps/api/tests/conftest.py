import sys
from datetime import timedelta
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

import redeem_api.models  # noqa: E402,F401
from redeem_api.app import create_app  # noqa: E402
from redeem_api.core.settings import settings  # noqa: E402
from redeem_api.db.base import Base  # noqa: E402
from redeem_api.db.session import get_session  # noqa: E402
from redeem_api.observability.redeem import get_redeem_store  # noqa: E402
from redeem_api.observability.scheduler import get_scheduler_store  # noqa: E402
from redeem_api.services.auth import UserSessionStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_observability():
    get_redeem_store().reset()
    get_scheduler_store().reset()
    yield


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        future=True,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Separate connections per session so concurrent requests contend in SQLite."""

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'redeem.db'}",
        future=True,
        connect_args={"timeout": 30},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def client(app_with_db):
    app, _ = app_with_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http_client:
        yield http_client


@pytest.fixture
def user_headers(app_with_db):
    _, session_factory = app_with_db

    async def _issue(address: str) -> dict[str, str]:
        async with session_factory() as session:
            token, _ = await UserSessionStore(session).create_session(address, ttl=timedelta(hours=1))
            await session.commit()
        return {"Authorization": f"Bearer {token}"}

    return _issue


@pytest.fixture
def admin_key():
    previous = settings.admin_api_key
    settings.admin_api_key = "admin-secret"
    try:
        yield {"X-API-Key": "admin-secret"}
    finally:
        settings.admin_api_key = previous
