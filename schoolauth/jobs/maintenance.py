"""Maintenance jobs for session retention."""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta

from schoolauth.core.config import settings
from schoolauth.db.session import async_session
from schoolauth.services.session_registry import SessionRegistry

logger = logging.getLogger("schoolauth.jobs.maintenance")


async def sweep_expired_sessions(registry: SessionRegistry | None = None, *, grace_minutes: int | None = None) -> int:
    """Remove sessions whose expiry grace window has elapsed."""
    registry = registry or SessionRegistry.from_settings(settings)
    grace = timedelta(minutes=settings.session_sweep_grace_minutes if grace_minutes is None else grace_minutes)
    retention = (
        timedelta(days=settings.revoked_session_retention_days)
        if settings.revoked_session_retention_days > 0
        else None
    )
    async with async_session() as session:
        return await registry.sweep_expired(session, grace=grace, revoked_retention=retention)


def sweep_expired_sessions_job(grace_minutes: int | None = None) -> dict[str, int]:
    """Scheduled cleanup for expired and long-revoked sessions."""
    removed = asyncio.run(sweep_expired_sessions(grace_minutes=grace_minutes))
    logger.info(
        "Swept %d sessions older than %s minutes past expiry",
        removed,
        settings.session_sweep_grace_minutes if grace_minutes is None else grace_minutes,
    )
    return {"removed": removed}
