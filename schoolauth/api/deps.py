import logging
from dataclasses import dataclass
from typing import AsyncIterator, Callable

from fastapi import Depends, Header, Request, Response
from fastapi.security import OAuth2PasswordBearer
from sqlalchemy.ext.asyncio import AsyncSession

from schoolauth.core.config import settings
from schoolauth.core.errors import AuthError, InsufficientRole, TokenExpired, TokenInvalidSignature
from schoolauth.core.tokens import AccessClaims, InvalidToken
from schoolauth.db.session import get_session
from schoolauth.models.account import Account, AccountRole
from schoolauth.services import account_service
from schoolauth.services.session_registry import SessionRegistry

logger = logging.getLogger("schoolauth.api.deps")

REFRESH_TOKEN_HEADER = "X-Refresh-Token"
NEW_ACCESS_TOKEN_HEADER = "X-New-Access-Token"
NEW_REFRESH_TOKEN_HEADER = "X-New-Refresh-Token"

oauth2_scheme = OAuth2PasswordBearer(tokenUrl=f"{settings.api_prefix}/auth/signin", auto_error=False)


@dataclass(slots=True)
class CurrentAuth:
    account: Account
    claims: AccessClaims


async def get_db() -> AsyncIterator[AsyncSession]:
    async for session in get_session():
        yield session


def get_registry(request: Request) -> SessionRegistry:
    return request.app.state.session_registry


def get_refresh_header(
    refresh_token: str | None = Header(default=None, alias=REFRESH_TOKEN_HEADER),
) -> str | None:
    return refresh_token.strip() if refresh_token and refresh_token.strip() else None


async def get_access_claims(
    token: str | None = Depends(oauth2_scheme),
    registry: SessionRegistry = Depends(get_registry),
) -> AccessClaims:
    if not token:
        raise TokenInvalidSignature("Missing access token")
    claims = registry.issuer.verify_access(token, now=registry.now())
    if isinstance(claims, InvalidToken):
        if claims.reason == "expired":
            raise TokenExpired()
        raise TokenInvalidSignature()
    return claims


async def _courtesy_rotate(
    request: Request,
    response: Response,
    session: AsyncSession,
    registry: SessionRegistry,
    claims: AccessClaims,
    refresh_token: str,
) -> None:
    """Rotate ahead of access expiry and hand the pair back in response headers."""
    remaining = (claims.expires_at - registry.now()).total_seconds()
    if remaining > settings.courtesy_rotation_threshold_seconds:
        return
    refresh_claims = registry.issuer.verify_refresh(refresh_token, now=registry.now(), allow_expired=True)
    if isinstance(refresh_claims, InvalidToken) or refresh_claims.session_id != claims.session_id:
        return
    try:
        issued = await registry.rotate(session, refresh_token)
    except AuthError as exc:
        logger.info("Courtesy rotation skipped for session %s: %s", claims.session_id, exc.code)
        return
    # The rotation is committed; error responses built later pick the pair up from request state.
    request.state.rotated_tokens = issued.tokens
    response.headers[NEW_ACCESS_TOKEN_HEADER] = issued.tokens.access_token
    response.headers[NEW_REFRESH_TOKEN_HEADER] = issued.tokens.refresh_token


async def get_current_auth(
    request: Request,
    response: Response,
    session: AsyncSession = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
    claims: AccessClaims = Depends(get_access_claims),
    refresh_token: str | None = Depends(get_refresh_header),
) -> CurrentAuth:
    account = await account_service.require_active_account(session, claims.account_id)
    if refresh_token and claims.session_id:
        await _courtesy_rotate(request, response, session, registry, claims, refresh_token)
    return CurrentAuth(account=account, claims=claims)


async def get_current_account(auth: CurrentAuth = Depends(get_current_auth)) -> Account:
    return auth.account


def require_roles(*roles: AccountRole) -> Callable[..., Account]:
    """Dependency factory restricting a route to the given roles."""
    allowed = set(roles)

    async def _require(account: Account = Depends(get_current_account)) -> Account:
        if account.role not in allowed:
            raise InsufficientRole()
        return account

    return _require


require_super_admin = require_roles(AccountRole.SUPER_ADMIN)
require_admin = require_roles(AccountRole.SUPER_ADMIN, AccountRole.ADMIN)
