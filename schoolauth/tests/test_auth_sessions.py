"""Session management and password lifecycle endpoint tests."""

from __future__ import annotations

import pytest

from schoolauth.models.account import AccountRole
from schoolauth.tests.utils import DEFAULT_PASSWORD, create_account, create_and_sign_in, sign_in


@pytest.mark.asyncio
async def test_me_returns_account_and_session(client, session_factory):
    auth = await create_and_sign_in(client, session_factory, role=AccountRole.TEACHER)

    res = await client.get("/api/auth/me", headers=auth.headers)
    assert res.status_code == 200
    body = res.json()
    assert body["account"]["id"] == auth.account_id
    assert body["sessionId"] == auth.session_id
    assert body["accessExpiresAt"]


@pytest.mark.asyncio
async def test_me_rejects_missing_or_forged_tokens(client, session_factory):
    auth = await create_and_sign_in(client, session_factory)

    missing = await client.get("/api/auth/me")
    assert missing.status_code == 401
    assert missing.json()["code"] == "invalid_token"

    forged = await client.get("/api/auth/me", headers={"Authorization": f"Bearer {auth.refresh_token}"})
    assert forged.status_code == 401
    assert forged.json()["code"] == "invalid_token"


@pytest.mark.asyncio
async def test_list_and_revoke_sessions(client, session_factory):
    account = await create_account(session_factory)
    laptop = await sign_in(client, account.email, headers={"User-Agent": "laptop-browser"})
    phone = await sign_in(client, account.email, remember_me=True, headers={"User-Agent": "phone-browser"})

    res = await client.get("/api/auth/sessions", headers=laptop.headers)
    assert res.status_code == 200
    sessions = {item["id"]: item for item in res.json()}
    assert set(sessions) == {laptop.session_id, phone.session_id}
    assert sessions[laptop.session_id]["isCurrent"] is True
    assert sessions[phone.session_id]["isCurrent"] is False
    assert sessions[phone.session_id]["userAgent"] == "phone-browser"
    assert all(item["isActive"] for item in sessions.values())

    revoke_res = await client.post(f"/api/auth/sessions/{phone.session_id}/revoke", headers=laptop.headers)
    assert revoke_res.status_code == 204

    remaining = await client.get("/api/auth/sessions", headers=laptop.headers)
    assert [item["id"] for item in remaining.json()] == [laptop.session_id]

    history = await client.get("/api/auth/sessions", params={"include_revoked": True}, headers=laptop.headers)
    revoked = next(item for item in history.json() if item["id"] == phone.session_id)
    assert revoked["revokedReason"] == "user_revoked"
    assert revoked["isActive"] is False

    again = await client.post(f"/api/auth/sessions/{phone.session_id}/revoke", headers=laptop.headers)
    assert again.status_code == 404


@pytest.mark.asyncio
async def test_cannot_revoke_another_accounts_session(client, session_factory):
    owner = await create_and_sign_in(client, session_factory)
    intruder = await create_and_sign_in(client, session_factory)

    res = await client.post(f"/api/auth/sessions/{owner.session_id}/revoke", headers=intruder.headers)
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_change_password(client, session_factory):
    auth = await create_and_sign_in(client, session_factory)

    weak = await client.post(
        "/api/auth/change-password",
        json={"currentPassword": DEFAULT_PASSWORD, "newPassword": "short"},
        headers=auth.headers,
    )
    assert weak.status_code == 422

    wrong = await client.post(
        "/api/auth/change-password",
        json={"currentPassword": "Not!theR1ght", "newPassword": "N3w!password"},
        headers=auth.headers,
    )
    assert wrong.status_code == 400

    ok = await client.post(
        "/api/auth/change-password",
        json={"currentPassword": DEFAULT_PASSWORD, "newPassword": "N3w!password"},
        headers=auth.headers,
    )
    assert ok.status_code == 204

    old_login = await client.post("/api/auth/signin", json={"email": auth.email, "password": DEFAULT_PASSWORD})
    assert old_login.status_code == 401
    await sign_in(client, auth.email, "N3w!password")


@pytest.mark.asyncio
async def test_first_login_flow(client, session_factory):
    admin = await create_and_sign_in(client, session_factory, role=AccountRole.ADMIN)
    newcomer = await create_account(session_factory, role=AccountRole.TEACHER, password=None)

    token_res = await client.post(
        "/api/auth/generate-first-login-token", json={"email": newcomer.email}, headers=admin.headers
    )
    assert token_res.status_code == 200
    setup_token = token_res.json()["setupToken"]

    setup_res = await client.post(
        "/api/auth/setup-first-password",
        json={"setupToken": setup_token, "newPassword": "F1rst!login", "rememberMe": True},
    )
    assert setup_res.status_code == 200
    body = setup_res.json()
    assert body["account"]["isFirstLogin"] is False
    assert body["sessionMetadata"]["rememberMe"] is True

    reused = await client.post(
        "/api/auth/setup-first-password",
        json={"setupToken": setup_token, "newPassword": "An0ther!pass"},
    )
    assert reused.status_code == 400

    await sign_in(client, newcomer.email, "F1rst!login")

    activated = await client.post(
        "/api/auth/generate-first-login-token", json={"email": newcomer.email}, headers=admin.headers
    )
    assert activated.status_code == 400


@pytest.mark.asyncio
async def test_first_login_token_requires_admin(client, session_factory):
    teacher = await create_and_sign_in(client, session_factory, role=AccountRole.TEACHER)
    newcomer = await create_account(session_factory, password=None)

    res = await client.post(
        "/api/auth/generate-first-login-token", json={"email": newcomer.email}, headers=teacher.headers
    )
    assert res.status_code == 403
    assert res.json()["code"] == "insufficient_role"


@pytest.mark.asyncio
async def test_setup_rejects_invalid_token(client):
    res = await client.post(
        "/api/auth/setup-first-password", json={"setupToken": "bogus", "newPassword": "F1rst!login"}
    )
    assert res.status_code == 401
    assert res.json()["code"] == "invalid_token"
