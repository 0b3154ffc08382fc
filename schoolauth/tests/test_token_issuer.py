"""Token issuer tests: lifetimes, purity of verification, and secret separation."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest
from jose import jwt

from schoolauth.core.config import settings
from schoolauth.core.tokens import InvalidToken, TokenIssuer

NOW = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


def _account(role: str = "admin") -> SimpleNamespace:
    return SimpleNamespace(id=uuid.uuid4(), email="head@example.com", role=role)


@pytest.fixture()
def issuer() -> TokenIssuer:
    return TokenIssuer(settings)


def test_issue_binds_account_and_session(issuer: TokenIssuer) -> None:
    account = _account()
    session_id = uuid.uuid4()
    pair = issuer.issue(account, False, session_id=session_id, refresh_id="jti-1", now=NOW)

    access = issuer.verify_access(pair.access_token, now=NOW)
    assert not isinstance(access, InvalidToken)
    assert access.account_id == str(account.id)
    assert access.role == "admin"
    assert access.session_id == str(session_id)
    assert access.expires_at == NOW + timedelta(minutes=settings.access_token_expires_minutes)

    refresh = issuer.verify_refresh(pair.refresh_token, now=NOW)
    assert not isinstance(refresh, InvalidToken)
    assert refresh.session_id == str(session_id)
    assert refresh.refresh_id == "jti-1"
    assert refresh.remember_me is False


def test_access_validity_boundary_is_exact(issuer: TokenIssuer) -> None:
    pair = issuer.issue(_account(), False, session_id=uuid.uuid4(), refresh_id="jti", now=NOW)
    expiry = NOW + issuer.access_lifetime

    assert not isinstance(issuer.verify_access(pair.access_token, now=expiry - timedelta(seconds=1)), InvalidToken)
    past = issuer.verify_access(pair.access_token, now=expiry + timedelta(seconds=1))
    assert isinstance(past, InvalidToken)
    assert past.reason == "expired"
    assert isinstance(issuer.verify_access(pair.access_token, now=expiry), InvalidToken)


def test_verify_access_is_deterministic(issuer: TokenIssuer) -> None:
    pair = issuer.issue(_account(), True, session_id=uuid.uuid4(), refresh_id="jti", now=NOW)
    moment = NOW + timedelta(minutes=3)
    assert issuer.verify_access(pair.access_token, now=moment) == issuer.verify_access(pair.access_token, now=moment)


def test_tokens_are_not_interchangeable(issuer: TokenIssuer) -> None:
    pair = issuer.issue(_account(), False, session_id=uuid.uuid4(), refresh_id="jti", now=NOW)

    as_access = issuer.verify_access(pair.refresh_token, now=NOW)
    assert isinstance(as_access, InvalidToken)
    assert as_access.reason == "invalid_signature"

    as_refresh = issuer.verify_refresh(pair.access_token, now=NOW)
    assert isinstance(as_refresh, InvalidToken)
    assert as_refresh.reason == "invalid_signature"


def test_wrong_type_and_bad_claims(issuer: TokenIssuer) -> None:
    base = {"iss": settings.jwt_issuer, "aud": settings.jwt_audience, "sub": "x", "exp": int(NOW.timestamp()) + 60}
    wrong_type = jwt.encode({**base, "type": "refresh"}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)
    assert issuer.verify_access(wrong_type, now=NOW) == InvalidToken("wrong_type")

    wrong_audience = jwt.encode(
        {**base, "aud": "someone-else", "type": "access"}, settings.jwt_secret_key, algorithm=settings.jwt_algorithm
    )
    assert issuer.verify_access(wrong_audience, now=NOW) == InvalidToken("invalid_claims")

    assert issuer.verify_access("not-a-token", now=NOW) == InvalidToken("invalid_signature")


@pytest.mark.parametrize(
    ("quality", "remember_me", "minutes"),
    [
        ("stable", False, 30),
        ("stable", True, 60 * 24),
        ("unstable", False, 60 * 4),
        ("unstable", True, 60 * 24 * 7),
        ("offline", False, 60 * 24),
        ("offline", True, 60 * 24 * 30),
    ],
)
def test_refresh_lifetime_by_quality(issuer: TokenIssuer, quality: str, remember_me: bool, minutes: int) -> None:
    assert issuer.refresh_lifetime(remember_me, quality) == timedelta(minutes=minutes)


def test_refresh_expiry_can_be_read_back_when_expired(issuer: TokenIssuer) -> None:
    pair = issuer.issue(_account(), False, session_id=uuid.uuid4(), refresh_id="jti", now=NOW)
    later = NOW + timedelta(days=2)

    assert issuer.verify_refresh(pair.refresh_token, now=later) == InvalidToken("expired")
    claims = issuer.verify_refresh(pair.refresh_token, now=later, allow_expired=True)
    assert not isinstance(claims, InvalidToken)
    assert claims.expires_at == pair.refresh_expires_at


def test_first_login_token_round_trip(issuer: TokenIssuer) -> None:
    account = _account("teacher")
    token, expires_at = issuer.issue_first_login_token(account, now=NOW)

    assert issuer.verify_first_login_token(token, now=NOW) == str(account.id)
    assert expires_at == NOW + timedelta(minutes=settings.first_login_token_expires_minutes)
    assert issuer.verify_first_login_token(token, now=expires_at) == InvalidToken("expired")
    # A first-login token is not an access token.
    assert issuer.verify_access(token, now=NOW) == InvalidToken("wrong_type")
