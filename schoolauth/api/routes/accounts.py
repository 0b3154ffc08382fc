"""Account administration endpoints (provisioning and deactivation)."""

from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from schoolauth.api.deps import get_db, get_registry, require_admin, require_super_admin
from schoolauth.models.account import Account
from schoolauth.schema.account import AccountCreate, AccountRead
from schoolauth.services import account_service
from schoolauth.services.session_registry import SessionRegistry

router = APIRouter()


@router.post("", response_model=AccountRead, status_code=status.HTTP_201_CREATED)
async def create_account(
    payload: AccountCreate,
    _: Account = Depends(require_super_admin),
    session: AsyncSession = Depends(get_db),
) -> Account:
    """Provision an account in first-login state."""
    return await account_service.create_account(
        session,
        payload.email,
        role=payload.role,
        first_name=payload.first_name,
        last_name=payload.last_name,
    )


@router.get("", response_model=list[AccountRead])
async def list_accounts(
    include_inactive: bool = Query(default=False),
    _: Account = Depends(require_admin),
    session: AsyncSession = Depends(get_db),
) -> list[Account]:
    return await account_service.list_accounts(session, include_inactive=include_inactive)


@router.post("/{account_id}/deactivate", response_model=AccountRead)
async def deactivate_account(
    account_id: UUID,
    current_account: Account = Depends(require_super_admin),
    session: AsyncSession = Depends(get_db),
    registry: SessionRegistry = Depends(get_registry),
) -> Account:
    """Deactivate an account and revoke every session it holds."""
    if account_id == current_account.id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Cannot deactivate your own account")
    account = await account_service.deactivate_account(session, account_id)
    await registry.revoke(session, account_id=account.id, reason="account_deactivated")
    return account
