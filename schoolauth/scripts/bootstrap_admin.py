"""Create the first super administrator for a fresh deployment."""

from __future__ import annotations

import argparse
import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from schoolauth.core.config import settings
from schoolauth.db.session import async_session
from schoolauth.models.account import Account, AccountRole
from schoolauth.services import account_service

logger = logging.getLogger("schoolauth.scripts.bootstrap_admin")


async def bootstrap(
    email: str,
    password: str | None = None,
    *,
    session: AsyncSession | None = None,
) -> Account:
    """Ensure a super admin exists for ``email``; reruns leave it untouched."""
    if session is None:
        async with async_session() as managed_session:
            return await _bootstrap_session(managed_session, email, password)
    return await _bootstrap_session(session, email, password)


async def _bootstrap_session(session: AsyncSession, email: str, password: str | None) -> Account:
    existing = await account_service.get_account_by_email(session, email)
    if existing:
        logger.info("Account %s already exists; nothing to do", existing.id)
        return existing
    return await account_service.create_account(
        session, email, role=AccountRole.SUPER_ADMIN, password=password
    )


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("email")
    parser.add_argument(
        "--password",
        help="initial password; omit to require first-login setup",
    )
    args = parser.parse_args(argv)
    logging.basicConfig(level=settings.log_level)
    account = asyncio.run(bootstrap(args.email, args.password))
    state = "awaiting first login" if account.is_first_login else "ready"
    print(f"{account.email} ({account.role.value}) {state}")


if __name__ == "__main__":
    main()
