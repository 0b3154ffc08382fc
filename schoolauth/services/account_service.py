from __future__ import annotations

import logging
import uuid

from fastapi import HTTPException, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from schoolauth.core.errors import AccountInactive, FirstLoginRequired, InvalidCredentials
from schoolauth.core.security import get_password_hash, verify_password
from schoolauth.models.account import Account, AccountRole
from schoolauth.utils.datetime import utcnow

logger = logging.getLogger("schoolauth.services.account_service")


async def get_account_by_email(session: AsyncSession, email: str) -> Account | None:
    result = await session.execute(select(Account).where(Account.email == email.strip().lower()))
    return result.scalar_one_or_none()


async def get_account_by_id(session: AsyncSession, account_id: str | uuid.UUID) -> Account | None:
    try:
        account_uuid = uuid.UUID(str(account_id))
    except ValueError:
        return None
    return await session.get(Account, account_uuid)


async def list_accounts(session: AsyncSession, *, include_inactive: bool = False) -> list[Account]:
    stmt = select(Account).order_by(Account.created_at.asc())
    if not include_inactive:
        stmt = stmt.where(Account.is_active.is_(True))
    result = await session.execute(stmt)
    return list(result.scalars().all())


async def create_account(
    session: AsyncSession,
    email: str,
    *,
    role: AccountRole = AccountRole.ADMIN,
    password: str | None = None,
    first_name: str | None = None,
    last_name: str | None = None,
) -> Account:
    """Create an account; without a password it stays in first-login state."""
    existing = await get_account_by_email(session, email)
    if existing:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Email already registered")
    account = Account(
        email=email.strip().lower(),
        role=role,
        first_name=first_name,
        last_name=last_name,
        hashed_password=get_password_hash(password) if password else None,
        is_first_login=password is None,
    )
    session.add(account)
    await session.commit()
    await session.refresh(account)
    logger.info("Created %s account %s", account.role.value, account.id)
    return account


async def authenticate_account(session: AsyncSession, email: str, password: str) -> Account:
    """Resolve credentials to an active account ready to sign in."""
    account = await get_account_by_email(session, email)
    if not account or not account.is_active:
        raise InvalidCredentials()
    if account.is_first_login or not account.hashed_password:
        raise FirstLoginRequired()
    if not verify_password(password, account.hashed_password):
        raise InvalidCredentials()
    return account


async def require_active_account(session: AsyncSession, account_id: str | uuid.UUID) -> Account:
    account = await get_account_by_id(session, account_id)
    if not account:
        raise InvalidCredentials("Account not found")
    if not account.is_active:
        raise AccountInactive()
    return account


async def touch_last_login(session: AsyncSession, account: Account) -> None:
    account.last_login_at = utcnow()
    await session.commit()


async def set_first_password(session: AsyncSession, account_id: str | uuid.UUID, new_password: str) -> Account:
    """Set the initial password and leave first-login state."""
    account = await require_active_account(session, account_id)
    if not account.is_first_login:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Account is already activated")
    account.hashed_password = get_password_hash(new_password)
    account.is_first_login = False
    await session.commit()
    await session.refresh(account)
    logger.info("First password configured for account %s", account.id)
    return account


async def change_password(session: AsyncSession, account: Account, current_password: str, new_password: str) -> None:
    if not account.hashed_password or not verify_password(current_password, account.hashed_password):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Current password is incorrect")
    if current_password == new_password:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="New password must differ")
    account.hashed_password = get_password_hash(new_password)
    await session.commit()


async def deactivate_account(session: AsyncSession, account_id: str | uuid.UUID) -> Account:
    account = await get_account_by_id(session, account_id)
    if not account:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    account.is_active = False
    await session.commit()
    await session.refresh(account)
    return account
