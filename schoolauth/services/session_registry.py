"""Server-side registry of login sessions and their rotating refresh identifiers.

Implementation notes:
- Each session row holds exactly one current refresh identifier; rotation
  replaces it with a compare-and-swap ``UPDATE`` so only one rotation can win,
  even across processes.
- Within a process, a per-session ``asyncio.Lock`` orders rotate/heartbeat/revoke
  so the losing caller is classified against committed state.
- A presented identifier equal to the *previous* one inside the grace window is
  a lost race (``stale``); any other mismatch is replay and revokes the session.
"""

from __future__ import annotations

import asyncio
import logging
import secrets
import uuid
import weakref
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable

from sqlalchemy import delete, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from schoolauth.core.config import Settings
from schoolauth.core.errors import (
    RefreshTokenExpired,
    RefreshTokenReused,
    RefreshTokenStale,
    SessionRevoked,
    TokenInvalidSignature,
)
from schoolauth.core.tokens import InvalidToken, TokenIssuer, TokenPair
from schoolauth.models.account import Account
from schoolauth.models.auth import AuthSession
from schoolauth.services.connection_quality import STABLE, normalize_quality
from schoolauth.utils.datetime import ensure_timezone, utcnow

logger = logging.getLogger("schoolauth.services.session_registry")


@dataclass(frozen=True, slots=True)
class DeviceMeta:
    """Device/connection facts captured when a session starts."""

    connection_quality: str = STABLE
    user_agent: str | None = None
    ip_address: str | None = None


@dataclass(frozen=True, slots=True)
class IssuedSession:
    record: AuthSession
    account: Account
    tokens: TokenPair


def _new_refresh_id() -> str:
    """Generate a high-entropy refresh identifier."""
    return secrets.token_urlsafe(32)


def _parse_session_id(value: str) -> uuid.UUID:
    try:
        return uuid.UUID(value)
    except ValueError as exc:
        raise TokenInvalidSignature() from exc


def session_is_active(record: AuthSession, now: datetime | None = None) -> bool:
    expires_at = ensure_timezone(record.expires_at)
    return record.revoked_at is None and expires_at is not None and expires_at > (now or utcnow())


class SessionRegistry:
    """Owns session rows: creation, rotation, heartbeat, revocation, and sweeping."""

    def __init__(
        self,
        issuer: TokenIssuer,
        *,
        reuse_grace: timedelta = timedelta(seconds=30),
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.issuer = issuer
        self._reuse_grace = reuse_grace
        self._clock = clock
        self._locks: weakref.WeakValueDictionary[uuid.UUID, asyncio.Lock] = weakref.WeakValueDictionary()

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs) -> "SessionRegistry":
        return cls(
            TokenIssuer(settings),
            reuse_grace=timedelta(seconds=settings.refresh_reuse_grace_seconds),
            **kwargs,
        )

    def now(self) -> datetime:
        return self._clock()

    def _lock_for(self, session_id: uuid.UUID) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[session_id] = lock
        return lock

    async def get(self, session: AsyncSession, session_id: str | uuid.UUID) -> AuthSession | None:
        """Load a session row, bypassing any stale identity-map copy."""
        stmt = (
            select(AuthSession)
            .where(AuthSession.id == uuid.UUID(str(session_id)))
            .execution_options(populate_existing=True)
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    def _extended_expiry(self, record: AuthSession, now: datetime) -> datetime:
        lifetime = self.issuer.refresh_lifetime(record.remember_me, record.connection_quality)
        return max(ensure_timezone(record.expires_at), now + lifetime)

    def _within_grace(self, record: AuthSession, now: datetime) -> bool:
        rotated_at = ensure_timezone(record.rotated_at)
        return rotated_at is not None and now - rotated_at <= self._reuse_grace

    def _mint(self, account: Account, record: AuthSession, refresh_id: str, now: datetime) -> TokenPair:
        return self.issuer.issue(
            account,
            record.remember_me,
            session_id=record.id,
            refresh_id=refresh_id,
            connection_quality=record.connection_quality,
            refresh_expires_at=ensure_timezone(record.expires_at),
            now=now,
        )

    async def begin_session(
        self,
        session: AsyncSession,
        account: Account,
        remember_me: bool,
        device: DeviceMeta | None = None,
    ) -> IssuedSession:
        """Create an active session and its first token pair."""
        device = device or DeviceMeta()
        now = self.now()
        quality = normalize_quality(device.connection_quality)
        refresh_id = _new_refresh_id()
        record = AuthSession(
            id=uuid.uuid4(),
            account_id=account.id,
            refresh_jti=refresh_id,
            remember_me=remember_me,
            connection_quality=quality,
            user_agent=device.user_agent[:512] if device.user_agent else None,
            ip_address=device.ip_address,
            created_at=now,
            last_seen_at=now,
            expires_at=now + self.issuer.refresh_lifetime(remember_me, quality),
        )
        session.add(record)
        await session.commit()
        tokens = self._mint(account, record, refresh_id, now)
        logger.info(
            "Session %s started for account %s (remember_me=%s, quality=%s)",
            record.id,
            account.id,
            remember_me,
            quality,
        )
        return IssuedSession(record=record, account=account, tokens=tokens)

    async def rotate(self, session: AsyncSession, presented_refresh_token: str) -> IssuedSession:
        """Swap the session's refresh identifier for a new one and mint a new pair."""
        now = self.now()
        claims = self.issuer.verify_refresh(presented_refresh_token, now=now, allow_expired=True)
        if isinstance(claims, InvalidToken):
            raise TokenInvalidSignature()
        session_id = _parse_session_id(claims.session_id)

        async with self._lock_for(session_id):
            record = await self.get(session, session_id)
            if record is None:
                if claims.expires_at <= now:
                    raise RefreshTokenExpired()
                raise SessionRevoked("Session not found")
            if str(record.account_id) != claims.account_id:
                raise TokenInvalidSignature()
            if record.revoked_at is not None:
                raise SessionRevoked()

            if claims.refresh_id != record.refresh_jti:
                raise await self._reject_mismatch(session, record, claims.refresh_id, now)

            if ensure_timezone(record.expires_at) <= now:
                await self._mark_revoked(session, record.id, reason="expired", now=now)
                raise RefreshTokenExpired()

            account = await session.get(Account, record.account_id)
            if account is None or not account.is_active:
                await self._mark_revoked(session, record.id, reason="account_inactive", now=now)
                raise SessionRevoked("Account is deactivated")

            new_id = _new_refresh_id()
            new_expires_at = self._extended_expiry(record, now)
            result = await session.execute(
                update(AuthSession)
                .where(
                    AuthSession.id == record.id,
                    AuthSession.refresh_jti == claims.refresh_id,
                    AuthSession.revoked_at.is_(None),
                )
                .values(
                    refresh_jti=new_id,
                    previous_refresh_jti=claims.refresh_id,
                    rotated_at=now,
                    rotation_count=AuthSession.rotation_count + 1,
                    last_seen_at=now,
                    expires_at=new_expires_at,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                # Another process committed first; classify against its state.
                await session.rollback()
                current = await self.get(session, session_id)
                if current is None or current.revoked_at is not None:
                    raise SessionRevoked()
                raise await self._reject_mismatch(session, current, claims.refresh_id, now)
            await session.commit()

            record = await self.get(session, session_id)
            tokens = self._mint(account, record, new_id, now)
            logger.info("Session %s rotated (rotation #%d)", record.id, record.rotation_count)
            return IssuedSession(record=record, account=account, tokens=tokens)

    async def _reject_mismatch(
        self, session: AsyncSession, record: AuthSession, presented_id: str, now: datetime
    ) -> Exception:
        """Classify a non-current identifier as a lost race or as replay."""
        if presented_id == record.previous_refresh_jti and self._within_grace(record, now):
            account = await session.get(Account, record.account_id)
            replacement = None
            if account is not None and account.is_active:
                replacement = self._mint(account, record, record.refresh_jti, now)
            logger.info("Session %s: stale refresh within grace window", record.id)
            return RefreshTokenStale(replacement=replacement)
        await self._mark_revoked(session, record.id, reason="reused_token", now=now)
        logger.warning("Session %s revoked: refresh token reuse detected", record.id)
        return RefreshTokenReused()

    async def _mark_revoked(self, session: AsyncSession, session_id: uuid.UUID, *, reason: str, now: datetime) -> int:
        result = await session.execute(
            update(AuthSession)
            .where(AuthSession.id == session_id, AuthSession.revoked_at.is_(None))
            .values(revoked_at=now, revoked_reason=reason)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return result.rowcount or 0

    async def heartbeat(self, session: AsyncSession, session_id: str | uuid.UUID, *, extend: bool = True) -> AuthSession:
        """Record activity and slide the expiry forward without rotating tokens."""
        session_uuid = uuid.UUID(str(session_id))
        now = self.now()
        async with self._lock_for(session_uuid):
            record = await self.get(session, session_uuid)
            if record is None or record.revoked_at is not None:
                raise SessionRevoked()
            if ensure_timezone(record.expires_at) <= now:
                raise RefreshTokenExpired("Session expired")
            values: dict = {"last_seen_at": now}
            if extend:
                values["expires_at"] = self._extended_expiry(record, now)
            result = await session.execute(
                update(AuthSession)
                .where(AuthSession.id == session_uuid, AuthSession.revoked_at.is_(None))
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                await session.rollback()
                raise SessionRevoked()
            await session.commit()
            return await self.get(session, session_uuid)

    async def revoke(
        self,
        session: AsyncSession,
        *,
        session_id: str | uuid.UUID | None = None,
        account_id: str | uuid.UUID | None = None,
        reason: str = "revoked",
    ) -> int:
        """Revoke one session, or every live session of an account."""
        if session_id is None and account_id is None:
            raise ValueError("session_id or account_id is required")
        now = self.now()
        if session_id is not None:
            session_uuid = uuid.UUID(str(session_id))
            async with self._lock_for(session_uuid):
                count = await self._mark_revoked(session, session_uuid, reason=reason, now=now)
        else:
            result = await session.execute(
                update(AuthSession)
                .where(AuthSession.account_id == uuid.UUID(str(account_id)), AuthSession.revoked_at.is_(None))
                .values(revoked_at=now, revoked_reason=reason)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
            count = result.rowcount or 0
        logger.info("Revoked %d session(s) (%s)", count, reason)
        return count

    async def list_sessions(
        self,
        session: AsyncSession,
        account_id: str | uuid.UUID,
        *,
        include_expired: bool = False,
        include_revoked: bool = False,
    ) -> list[AuthSession]:
        """List an account's sessions with optional filters."""
        stmt = select(AuthSession).where(AuthSession.account_id == uuid.UUID(str(account_id)))
        if not include_revoked:
            stmt = stmt.where(AuthSession.revoked_at.is_(None))
        if not include_expired:
            stmt = stmt.where(AuthSession.expires_at > self.now())
        stmt = stmt.order_by(AuthSession.created_at.desc())
        result = await session.execute(stmt)
        return list(result.scalars().all())

    async def sweep_expired(
        self,
        session: AsyncSession,
        *,
        grace: timedelta = timedelta(hours=1),
        revoked_retention: timedelta | None = None,
    ) -> int:
        """Delete sessions past expiry plus grace, and old revoked rows.

        Only ``expires_at``/``revoked_at`` are consulted, never the rotating
        identifier, so an in-flight rotation is unaffected.
        """
        now = self.now()
        conditions = [AuthSession.expires_at < now - grace]
        if revoked_retention is not None:
            conditions.append(AuthSession.revoked_at < now - revoked_retention)
        result = await session.execute(
            delete(AuthSession).where(or_(*conditions)).execution_options(synchronize_session=False)
        )
        await session.commit()
        removed = result.rowcount or 0
        if removed:
            logger.info("Swept %d expired session(s)", removed)
        return removed
