import logging
from datetime import datetime
from uuid import UUID

from fastapi import APIRouter, Body, Depends, HTTPException, Query, Request, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from schoolauth.api.deps import (
    CurrentAuth,
    get_current_account,
    get_current_auth,
    get_db,
    get_refresh_header,
    get_registry,
    oauth2_scheme,
    require_admin,
)
from schoolauth.core.errors import SessionRevoked, TokenInvalidSignature
from schoolauth.core.tokens import InvalidToken
from schoolauth.models.account import Account
from schoolauth.models.auth import AuthSession
from schoolauth.schema.account import (
    AccountRead,
    ChangePasswordRequest,
    FirstLoginTokenRead,
    FirstLoginTokenRequest,
    FirstPasswordSetup,
)
from schoolauth.schema.auth import (
    ConnectionStatusRead,
    CurrentSessionRead,
    ErrorResponse,
    HeartbeatResponse,
    LogoutRequest,
    RefreshResponse,
    SessionMetadata,
    SessionRead,
    SignInRequest,
    SignInResponse,
)
from schoolauth.services import account_service
from schoolauth.services.connection_quality import (
    QUALITIES,
    describe_duration,
    detect_connection_quality,
    detected_factors,
)
from schoolauth.services.session_registry import DeviceMeta, IssuedSession, SessionRegistry, session_is_active
from schoolauth.utils.datetime import ensure_timezone

logger = logging.getLogger("schoolauth.api.routes.auth")

router = APIRouter()

UNAUTHORIZED = {status.HTTP_401_UNAUTHORIZED: {"model": ErrorResponse}}


def _device_meta(request: Request) -> DeviceMeta:
    return DeviceMeta(
        connection_quality=detect_connection_quality(request.headers),
        user_agent=request.headers.get("user-agent"),
        ip_address=request.client.host if request.client else None,
    )


def _session_metadata(registry: SessionRegistry, issued: IssuedSession, *, refreshed: bool = False) -> SessionMetadata:
    record = issued.record
    lifetime = registry.issuer.refresh_lifetime(record.remember_me, record.connection_quality)
    return SessionMetadata(
        session_id=record.id,
        connection_quality=record.connection_quality,
        remember_me=record.remember_me,
        expires_at=ensure_timezone(record.expires_at),
        access_expires_at=issued.tokens.access_expires_at,
        duration=describe_duration(int(lifetime.total_seconds() // 60)),
        refreshed_at=registry.now() if refreshed else None,
    )


async def _signin_response(
    session: AsyncSession, registry: SessionRegistry, issued: IssuedSession
) -> SignInResponse:
    await account_service.touch_last_login(session, issued.account)
    return SignInResponse(
        access_token=issued.tokens.access_token,
        refresh_token=issued.tokens.refresh_token,
        account=AccountRead.model_validate(issued.account),
        session_metadata=_session_metadata(registry, issued),
    )


def _serialize_session(record: AuthSession, current_session_id: str | None, now: datetime) -> SessionRead:
    data = SessionRead.model_validate(record)
    return data.model_copy(
        update={
            "created_at": ensure_timezone(record.created_at),
            "expires_at": ensure_timezone(record.expires_at),
            "last_seen_at": ensure_timezone(record.last_seen_at),
            "revoked_at": ensure_timezone(record.revoked_at),
            "is_active": session_is_active(record, now),
            "is_current": current_session_id == str(record.id),
        }
    )


@router.post("/signin", response_model=SignInResponse, responses=UNAUTHORIZED)
async def signin(
    payload: SignInRequest,
    request: Request,
    session: AsyncSession = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
) -> SignInResponse:
    account = await account_service.authenticate_account(session, payload.email, payload.password)
    issued = await registry.begin_session(session, account, payload.remember_me, _device_meta(request))
    return await _signin_response(session, registry, issued)


@router.post("/refresh-token", response_model=RefreshResponse, responses=UNAUTHORIZED)
async def refresh_token(
    session: AsyncSession = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
    presented: str | None = Depends(get_refresh_header),
) -> RefreshResponse:
    if not presented:
        raise TokenInvalidSignature("Missing refresh token")
    issued = await registry.rotate(session, presented)
    return RefreshResponse(
        access_token=issued.tokens.access_token,
        refresh_token=issued.tokens.refresh_token,
        account=AccountRead.model_validate(issued.account),
        session=_session_metadata(registry, issued, refreshed=True),
    )


@router.post("/logout", status_code=status.HTTP_204_NO_CONTENT, responses=UNAUTHORIZED)
async def logout(
    payload: LogoutRequest | None = Body(default=None),
    session: AsyncSession = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
    access_token: str | None = Depends(oauth2_scheme),
    presented: str | None = Depends(get_refresh_header),
) -> Response:
    """Revoke the caller's session; an expired access token is fine if the refresh token is sent."""
    session_id: str | None = None
    account_id: str | None = None
    if presented:
        refresh_claims = registry.issuer.verify_refresh(presented, allow_expired=True)
        if not isinstance(refresh_claims, InvalidToken):
            session_id, account_id = refresh_claims.session_id, refresh_claims.account_id
    if not session_id and access_token:
        claims = registry.issuer.verify_access(access_token, now=registry.now())
        if not isinstance(claims, InvalidToken):
            session_id, account_id = claims.session_id, claims.account_id
    if not account_id:
        raise TokenInvalidSignature("A valid access or refresh token is required")

    if payload and payload.all_devices:
        count = await registry.revoke(session, account_id=account_id, reason="logout_all")
        logger.info("Account %s signed out of %d session(s)", account_id, count)
    elif session_id:
        await registry.revoke(session, session_id=session_id, reason="logout")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/heartbeat", response_model=HeartbeatResponse, responses=UNAUTHORIZED)
async def heartbeat(
    auth: CurrentAuth = Depends(get_current_auth),
    session: AsyncSession = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
) -> HeartbeatResponse:
    if not auth.claims.session_id:
        raise SessionRevoked("Access token is not bound to a session")
    record = await registry.heartbeat(session, auth.claims.session_id)
    now = registry.now()
    expires_at = ensure_timezone(record.expires_at)
    return HeartbeatResponse(
        session_id=record.id,
        expires_at=expires_at,
        last_seen_at=ensure_timezone(record.last_seen_at),
        time_remaining=max(0, int((expires_at - now).total_seconds())),
        connection_quality=record.connection_quality,
        server_time=now,
    )


@router.get("/me", response_model=CurrentSessionRead, responses=UNAUTHORIZED)
async def read_me(auth: CurrentAuth = Depends(get_current_auth)) -> CurrentSessionRead:
    return CurrentSessionRead(
        account=AccountRead.model_validate(auth.account),
        session_id=auth.claims.session_id,
        access_expires_at=auth.claims.expires_at,
    )


@router.get("/connection-status", response_model=ConnectionStatusRead)
async def connection_status(request: Request, registry: SessionRegistry = Depends(get_registry)) -> ConnectionStatusRead:
    quality = detect_connection_quality(request.headers)

    def _label(remember_me: bool) -> str:
        minutes = int(registry.issuer.refresh_lifetime(remember_me, quality).total_seconds() // 60)
        return describe_duration(minutes)

    return ConnectionStatusRead(
        connection_quality=quality,
        recommendations={"short": _label(False), "long": _label(True), "qualities": ", ".join(QUALITIES)},
        detected_factors=detected_factors(request.headers),
    )


@router.get("/sessions", response_model=list[SessionRead])
async def list_sessions(
    include_expired: bool = Query(default=False),
    include_revoked: bool = Query(default=False),
    auth: CurrentAuth = Depends(get_current_auth),
    session: AsyncSession = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
) -> list[SessionRead]:
    records = await registry.list_sessions(
        session,
        auth.account.id,
        include_expired=include_expired,
        include_revoked=include_revoked,
    )
    now = registry.now()
    return [_serialize_session(record, auth.claims.session_id, now) for record in records]


@router.post("/sessions/{session_id}/revoke", status_code=status.HTTP_204_NO_CONTENT)
async def revoke_session(
    session_id: UUID,
    current_account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
) -> Response:
    record = await registry.get(session, session_id)
    if not record or record.account_id != current_account.id or record.revoked_at is not None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    await registry.revoke(session, session_id=session_id, reason="user_revoked")
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/change-password", status_code=status.HTTP_204_NO_CONTENT)
async def change_password(
    payload: ChangePasswordRequest,
    current_account: Account = Depends(get_current_account),
    session: AsyncSession = Depends(get_db),
) -> Response:
    await account_service.change_password(session, current_account, payload.current_password, payload.new_password)
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.post("/generate-first-login-token", response_model=FirstLoginTokenRead)
async def generate_first_login_token(
    payload: FirstLoginTokenRequest,
    _: Account = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
) -> FirstLoginTokenRead:
    account = await account_service.get_account_by_email(session, payload.email)
    if not account or not account.is_active:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    if not account.is_first_login:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Account is already activated")
    token, expires_at = registry.issuer.issue_first_login_token(account, now=registry.now())
    return FirstLoginTokenRead(setup_token=token, expires_at=expires_at)


@router.post("/setup-first-password", response_model=SignInResponse, responses=UNAUTHORIZED)
async def setup_first_password(
    payload: FirstPasswordSetup,
    request: Request,
    session: AsyncSession = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
) -> SignInResponse:
    account_id = registry.issuer.verify_first_login_token(payload.setup_token, now=registry.now())
    if isinstance(account_id, InvalidToken):
        raise TokenInvalidSignature("Invalid or expired setup token")
    account = await account_service.set_first_password(session, account_id, payload.new_password)
    issued = await registry.begin_session(session, account, payload.remember_me, _device_meta(request))
    return await _signin_response(session, registry, issued)
