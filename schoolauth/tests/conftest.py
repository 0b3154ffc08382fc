"""Shared pytest fixtures for API tests and database isolation."""

from __future__ import annotations

import os
import tempfile
import uuid

os.environ.setdefault("ENVIRONMENT", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-access-secret")
os.environ.setdefault("JWT_REFRESH_SECRET_KEY", "test-refresh-secret")
os.environ.setdefault("DATABASE_URL", f"sqlite+aiosqlite:///{tempfile.gettempdir()}/schoolauth-test.db")

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from passlib.context import CryptContext
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from schoolauth.api.deps import get_db
from schoolauth.core import security
from schoolauth.core.config import settings
from schoolauth.db.base_class import Base
from schoolauth.main import app
from schoolauth.services.session_registry import SessionRegistry
from schoolauth.tests.utils import FakeClock


@pytest.fixture(autouse=True)
def _use_plaintext_passwords(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(security, "pwd_context", CryptContext(schemes=["plaintext"]))


@pytest_asyncio.fixture()
async def session_factory(tmp_path) -> async_sessionmaker[AsyncSession]:
    # File-backed SQLite so concurrent requests each get their own connection.
    database_url = settings.test_database_url or f"sqlite+aiosqlite:///{tmp_path / 'auth.db'}"
    url = make_url(database_url)
    schema_name: str | None = None
    engine = create_async_engine(database_url, future=True)
    if url.drivername.startswith("postgresql"):
        # Isolate each test run in its own schema for parallel-friendly cleanup.
        schema_name = f"test_{uuid.uuid4().hex}"
        engine = engine.execution_options(schema_translate_map={None: schema_name})
    async with engine.begin() as conn:
        if schema_name:
            await conn.exec_driver_sql(f'CREATE SCHEMA IF NOT EXISTS "{schema_name}"')
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)
    finally:
        async with engine.begin() as conn:
            if schema_name:
                await conn.exec_driver_sql(f'DROP SCHEMA IF EXISTS "{schema_name}" CASCADE')
            else:
                await conn.run_sync(Base.metadata.drop_all)
        await engine.dispose()


@pytest_asyncio.fixture()
async def session(session_factory: async_sessionmaker[AsyncSession]) -> AsyncSession:
    async with session_factory() as session:
        yield session


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def registry(clock: FakeClock) -> SessionRegistry:
    return SessionRegistry.from_settings(settings, clock=clock)


@pytest_asyncio.fixture()
async def client(
    session_factory: async_sessionmaker[AsyncSession], registry: SessionRegistry
) -> AsyncClient:
    async def _get_test_db():
        async with session_factory() as session:
            yield session

    original_registry = app.state.session_registry
    app.dependency_overrides[get_db] = _get_test_db
    app.state.session_registry = registry
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://testserver") as async_client:
        yield async_client
    app.dependency_overrides.pop(get_db, None)
    app.state.session_registry = original_registry
