"""Account provisioning and deactivation endpoint tests."""

from __future__ import annotations

import uuid

import pytest

from schoolauth.models.account import AccountRole
from schoolauth.tests.utils import create_account, create_and_sign_in, sign_in


@pytest.mark.asyncio
async def test_super_admin_creates_account_in_first_login_state(client, session_factory):
    root = await create_and_sign_in(client, session_factory, role=AccountRole.SUPER_ADMIN)
    email = f"new_{uuid.uuid4().hex[:8]}@example.com"

    res = await client.post(
        "/api/accounts",
        json={"email": email, "role": "teacher", "firstName": "Ada", "lastName": "Obi"},
        headers=root.headers,
    )
    assert res.status_code == 201
    body = res.json()
    assert body["email"] == email
    assert body["role"] == "teacher"
    assert body["isFirstLogin"] is True
    assert body["firstName"] == "Ada"

    duplicate = await client.post("/api/accounts", json={"email": email}, headers=root.headers)
    assert duplicate.status_code == 409

    signin = await client.post("/api/auth/signin", json={"email": email, "password": "whatever"})
    assert signin.status_code == 403


@pytest.mark.asyncio
async def test_only_super_admin_creates_accounts(client, session_factory):
    admin = await create_and_sign_in(client, session_factory, role=AccountRole.ADMIN)

    res = await client.post("/api/accounts", json={"email": "x@example.com"}, headers=admin.headers)
    assert res.status_code == 403
    assert res.json()["code"] == "insufficient_role"


@pytest.mark.asyncio
async def test_list_accounts_for_admins(client, session_factory):
    admin = await create_and_sign_in(client, session_factory, role=AccountRole.ADMIN)
    teacher = await create_and_sign_in(client, session_factory, role=AccountRole.TEACHER)

    res = await client.get("/api/accounts", headers=admin.headers)
    assert res.status_code == 200
    emails = {item["email"] for item in res.json()}
    assert {admin.email, teacher.email} <= emails

    forbidden = await client.get("/api/accounts", headers=teacher.headers)
    assert forbidden.status_code == 403


@pytest.mark.asyncio
async def test_deactivation_revokes_every_session(client, session_factory):
    root = await create_and_sign_in(client, session_factory, role=AccountRole.SUPER_ADMIN)
    target = await create_account(session_factory, role=AccountRole.TEACHER)
    laptop = await sign_in(client, target.email)
    phone = await sign_in(client, target.email, remember_me=True)

    res = await client.post(f"/api/accounts/{target.id}/deactivate", headers=root.headers)
    assert res.status_code == 200
    assert res.json()["isActive"] is False

    for device in (laptop, phone):
        refresh_res = await client.post(
            "/api/auth/refresh-token", headers={"X-Refresh-Token": device.refresh_token}
        )
        assert refresh_res.status_code == 401
        assert refresh_res.json()["code"] == "revoked"

    me = await client.get("/api/auth/me", headers=laptop.headers)
    assert me.status_code == 401
    assert me.json()["code"] == "account_inactive"

    listing = await client.get("/api/accounts", params={"include_inactive": True}, headers=root.headers)
    assert target.email in {item["email"] for item in listing.json()}
    active_only = await client.get("/api/accounts", headers=root.headers)
    assert target.email not in {item["email"] for item in active_only.json()}


@pytest.mark.asyncio
async def test_cannot_deactivate_self_or_unknown(client, session_factory):
    root = await create_and_sign_in(client, session_factory, role=AccountRole.SUPER_ADMIN)

    own = await client.post(f"/api/accounts/{root.account_id}/deactivate", headers=root.headers)
    assert own.status_code == 400

    unknown = await client.post(f"/api/accounts/{uuid.uuid4()}/deactivate", headers=root.headers)
    assert unknown.status_code == 404
