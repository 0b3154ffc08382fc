"""Access/refresh token minting and verification.

Invariants:
- Access and refresh tokens are signed with distinct secrets.
- Verification is pure: the caller supplies the clock, nothing is looked up.
- A token is valid strictly before its ``exp`` second.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Literal

from jose import JWTError, jwt
from jose.exceptions import JWTClaimsError

from .config import Settings

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"
FIRST_LOGIN_TOKEN_TYPE = "first_login"

InvalidReason = Literal["expired", "invalid_signature", "invalid_claims", "wrong_type"]


@dataclass(frozen=True, slots=True)
class TokenPair:
    access_token: str
    refresh_token: str
    access_expires_at: datetime
    refresh_expires_at: datetime


@dataclass(frozen=True, slots=True)
class AccessClaims:
    account_id: str
    role: str
    email: str | None
    session_id: str | None
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class RefreshClaims:
    account_id: str
    session_id: str
    refresh_id: str
    remember_me: bool
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True, slots=True)
class InvalidToken:
    reason: InvalidReason

    def __bool__(self) -> bool:
        return False


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_timestamp(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return int(value.timestamp())


def _from_timestamp(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


def _role_value(role: Any) -> str:
    return str(getattr(role, "value", role))


class TokenIssuer:
    """Stateless signer/verifier for the token kinds used by the auth flows."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    @property
    def access_lifetime(self) -> timedelta:
        return timedelta(minutes=self._settings.access_token_expires_minutes)

    def refresh_lifetime(self, remember_me: bool, connection_quality: str = "stable") -> timedelta:
        """Session/refresh lifetime for a remember-me choice and connection quality."""
        lifetimes = self._settings.session_lifetimes
        short, extended = lifetimes.get(connection_quality, lifetimes["stable"])
        return timedelta(minutes=extended if remember_me else short)

    def _encode(self, payload: dict[str, Any], secret: str) -> str:
        claims = {"iss": self._settings.jwt_issuer, "aud": self._settings.jwt_audience, **payload}
        return jwt.encode(claims, secret, algorithm=self._settings.jwt_algorithm)

    def _decode(self, token: str, secret: str, expected_type: str, now: datetime) -> dict[str, Any] | InvalidToken:
        try:
            payload = jwt.decode(
                token,
                secret,
                algorithms=[self._settings.jwt_algorithm],
                audience=self._settings.jwt_audience,
                issuer=self._settings.jwt_issuer,
                options={"verify_exp": False},
            )
        except JWTClaimsError:
            return InvalidToken("invalid_claims")
        except JWTError:
            return InvalidToken("invalid_signature")
        if payload.get("type") != expected_type:
            return InvalidToken("wrong_type")
        exp = payload.get("exp")
        if not isinstance(exp, (int, float)) or not payload.get("sub"):
            return InvalidToken("invalid_claims")
        if _as_timestamp(now) >= int(exp):
            return InvalidToken("expired")
        return payload

    def issue_access(self, account: Any, *, session_id: str | uuid.UUID | None, now: datetime | None = None) -> tuple[str, datetime]:
        issued_at = now or _utcnow()
        iat = _as_timestamp(issued_at)
        exp = iat + int(self.access_lifetime.total_seconds())
        token = self._encode(
            {
                "sub": str(account.id),
                "role": _role_value(account.role),
                "email": account.email,
                "sid": str(session_id) if session_id else None,
                "type": ACCESS_TOKEN_TYPE,
                "iat": iat,
                "exp": exp,
            },
            self._settings.jwt_secret_key,
        )
        return token, _from_timestamp(exp)

    def issue_refresh(
        self,
        account_id: str | uuid.UUID,
        *,
        session_id: str | uuid.UUID,
        refresh_id: str,
        remember_me: bool,
        expires_at: datetime,
        now: datetime | None = None,
    ) -> str:
        iat = _as_timestamp(now or _utcnow())
        return self._encode(
            {
                "sub": str(account_id),
                "sid": str(session_id),
                "jti": refresh_id,
                "rm": bool(remember_me),
                "type": REFRESH_TOKEN_TYPE,
                "iat": iat,
                "exp": _as_timestamp(expires_at),
            },
            self._settings.jwt_refresh_secret_key,
        )

    def issue(
        self,
        account: Any,
        remember_me: bool,
        *,
        session_id: str | uuid.UUID,
        refresh_id: str,
        connection_quality: str = "stable",
        refresh_expires_at: datetime | None = None,
        now: datetime | None = None,
    ) -> TokenPair:
        """Mint an access/refresh pair bound to an account and a session."""
        issued_at = now or _utcnow()
        access_token, access_expires_at = self.issue_access(account, session_id=session_id, now=issued_at)
        refresh_expires_at = refresh_expires_at or issued_at + self.refresh_lifetime(remember_me, connection_quality)
        refresh_token = self.issue_refresh(
            account.id,
            session_id=session_id,
            refresh_id=refresh_id,
            remember_me=remember_me,
            expires_at=refresh_expires_at,
            now=issued_at,
        )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            access_expires_at=access_expires_at,
            refresh_expires_at=_from_timestamp(_as_timestamp(refresh_expires_at)),
        )

    def verify_access(self, token: str, *, now: datetime | None = None) -> AccessClaims | InvalidToken:
        """Decode an access token into claims, or a typed invalid result."""
        payload = self._decode(token, self._settings.jwt_secret_key, ACCESS_TOKEN_TYPE, now or _utcnow())
        if isinstance(payload, InvalidToken):
            return payload
        return AccessClaims(
            account_id=str(payload["sub"]),
            role=str(payload.get("role") or ""),
            email=payload.get("email"),
            session_id=payload.get("sid"),
            issued_at=_from_timestamp(payload.get("iat", 0)),
            expires_at=_from_timestamp(payload["exp"]),
        )

    def verify_refresh(
        self, token: str, *, now: datetime | None = None, allow_expired: bool = False
    ) -> RefreshClaims | InvalidToken:
        """Decode a refresh token; ``allow_expired`` keeps signature checks but skips expiry."""
        moment = now or _utcnow()
        if allow_expired:
            moment = datetime.fromtimestamp(0, tz=timezone.utc)
        payload = self._decode(token, self._settings.jwt_refresh_secret_key, REFRESH_TOKEN_TYPE, moment)
        if isinstance(payload, InvalidToken):
            return payload
        if not payload.get("sid") or not payload.get("jti"):
            return InvalidToken("invalid_claims")
        return RefreshClaims(
            account_id=str(payload["sub"]),
            session_id=str(payload["sid"]),
            refresh_id=str(payload["jti"]),
            remember_me=bool(payload.get("rm")),
            issued_at=_from_timestamp(payload.get("iat", 0)),
            expires_at=_from_timestamp(payload["exp"]),
        )

    def issue_first_login_token(self, account: Any, *, now: datetime | None = None) -> tuple[str, datetime]:
        """Short-lived token allowing an account in first-login state to set its password."""
        iat = _as_timestamp(now or _utcnow())
        exp = iat + self._settings.first_login_token_expires_minutes * 60
        token = self._encode(
            {"sub": str(account.id), "email": account.email, "type": FIRST_LOGIN_TOKEN_TYPE, "iat": iat, "exp": exp},
            self._settings.jwt_secret_key,
        )
        return token, _from_timestamp(exp)

    def verify_first_login_token(self, token: str, *, now: datetime | None = None) -> str | InvalidToken:
        payload = self._decode(token, self._settings.jwt_secret_key, FIRST_LOGIN_TOKEN_TYPE, now or _utcnow())
        if isinstance(payload, InvalidToken):
            return payload
        return str(payload["sub"])
