"""Authentication-related request/response schemas."""

from datetime import datetime
from typing import Literal
from uuid import UUID

from pydantic import EmailStr, Field

from schoolauth.schema.account import AccountRead
from schoolauth.schema.base import CamelModel, ORMModel

ConnectionQuality = Literal["stable", "unstable", "offline"]


class SignInRequest(CamelModel):
    """Credentials plus the remember-me choice made on the login form."""
    email: EmailStr
    password: str = Field(min_length=1)
    remember_me: bool = False


class SessionMetadata(CamelModel):
    """Session facts the client stores next to its tokens."""
    session_id: UUID
    connection_quality: ConnectionQuality
    remember_me: bool
    expires_at: datetime
    access_expires_at: datetime
    duration: str
    can_refresh: bool = True
    refreshed_at: datetime | None = None


class SignInResponse(CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    account: AccountRead
    session_metadata: SessionMetadata


class RefreshResponse(CamelModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    account: AccountRead
    session: SessionMetadata


class LogoutRequest(CamelModel):
    all_devices: bool = False


class HeartbeatResponse(CamelModel):
    session_id: UUID
    expires_at: datetime
    last_seen_at: datetime
    time_remaining: int = Field(description="Seconds until the session expires")
    connection_quality: ConnectionQuality
    server_time: datetime


class ErrorResponse(CamelModel):
    detail: str
    code: str


class ConnectionStatusRead(CamelModel):
    connection_quality: ConnectionQuality
    recommendations: dict[str, str]
    detected_factors: dict[str, str | bool | None]


class CurrentSessionRead(CamelModel):
    account: AccountRead
    session_id: UUID | None = None
    access_expires_at: datetime


class SessionRead(ORMModel):
    """Session metadata for listing and revocation views."""
    id: UUID
    created_at: datetime
    expires_at: datetime
    last_seen_at: datetime
    remember_me: bool
    connection_quality: ConnectionQuality
    user_agent: str | None = None
    ip_address: str | None = None
    rotation_count: int = 0
    revoked_at: datetime | None = None
    revoked_reason: str | None = None
    is_active: bool = Field(default=False)
    is_current: bool = Field(default=False)
