"""Shared helpers for API tests."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from httpx import AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from schoolauth.models.account import Account, AccountRole
from schoolauth.services import account_service

DEFAULT_PASSWORD = "Str0ng!pass"


class FakeClock:
    """Controllable UTC clock; starts at the current whole second."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **delta: float) -> datetime:
        self.current += timedelta(**delta)
        return self.current


@dataclass(slots=True)
class AuthContext:
    """Signed-in account context for API tests."""

    account: dict[str, Any]
    email: str
    password: str
    access_token: str
    refresh_token: str
    session_metadata: dict[str, Any]

    @property
    def account_id(self) -> str:
        return str(self.account["id"])

    @property
    def session_id(self) -> str:
        return str(self.session_metadata["sessionId"])

    @property
    def headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.access_token}"}


async def create_account(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    role: AccountRole = AccountRole.ADMIN,
    password: str | None = DEFAULT_PASSWORD,
    prefix: str = "staff",
) -> Account:
    """Insert an account directly; ``password=None`` leaves it in first-login state."""
    email = f"{prefix}_{uuid.uuid4().hex[:8]}@example.com"
    async with session_factory() as session:
        account = await account_service.create_account(session, email, role=role, password=password)
    return account


async def sign_in(
    client: AsyncClient,
    email: str,
    password: str = DEFAULT_PASSWORD,
    *,
    remember_me: bool = False,
    headers: dict[str, str] | None = None,
) -> AuthContext:
    res = await client.post(
        "/api/auth/signin",
        json={"email": email, "password": password, "rememberMe": remember_me},
        headers=headers,
    )
    assert res.status_code == 200, res.text
    body = res.json()
    return AuthContext(
        account=body["account"],
        email=email,
        password=password,
        access_token=body["accessToken"],
        refresh_token=body["refreshToken"],
        session_metadata=body["sessionMetadata"],
    )


async def create_and_sign_in(
    client: AsyncClient,
    session_factory: async_sessionmaker[AsyncSession],
    *,
    role: AccountRole = AccountRole.ADMIN,
    remember_me: bool = False,
) -> AuthContext:
    account = await create_account(session_factory, role=role)
    return await sign_in(client, account.email, remember_me=remember_me)
