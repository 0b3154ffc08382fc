"""Account request/response schemas."""

from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import EmailStr, Field, field_validator

from schoolauth.core.security import is_strong_password
from schoolauth.models.account import AccountRole
from schoolauth.schema.base import CamelModel, ORMModel

PASSWORD_RULE_MESSAGE = (
    "Password must be at least 8 characters and include upper and lower case letters, a digit and a symbol"
)


def _check_strength(value: str) -> str:
    if not is_strong_password(value):
        raise ValueError(PASSWORD_RULE_MESSAGE)
    return value


class AccountRead(ORMModel):
    """Account profile fields exposed in API responses and cached by clients."""
    id: UUID
    email: EmailStr
    role: AccountRole
    first_name: str | None = None
    last_name: str | None = None
    is_active: bool = True
    is_first_login: bool = False
    last_login_at: datetime | None = None


class AccountCreate(CamelModel):
    """Payload for provisioning an account; the holder sets a password on first login."""
    email: EmailStr
    role: AccountRole = AccountRole.ADMIN
    first_name: str | None = Field(default=None, max_length=120)
    last_name: str | None = Field(default=None, max_length=120)


class ChangePasswordRequest(CamelModel):
    current_password: str
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _strong(cls, value: str) -> str:
        return _check_strength(value)


class FirstLoginTokenRequest(CamelModel):
    email: EmailStr


class FirstLoginTokenRead(CamelModel):
    setup_token: str
    expires_at: datetime


class FirstPasswordSetup(CamelModel):
    """Completes first-login setup and opens a session like a sign-in."""
    setup_token: str
    new_password: str
    remember_me: bool = False

    @field_validator("new_password")
    @classmethod
    def _strong(cls, value: str) -> str:
        return _check_strength(value)
