from __future__ import annotations

from fastapi import APIRouter, Depends, Query

from schoolauth.api.deps import get_registry, require_super_admin
from schoolauth.jobs.maintenance import sweep_expired_sessions, sweep_expired_sessions_job
from schoolauth.models.account import Account
from schoolauth.services.session_registry import SessionRegistry
from schoolauth.services.task_queue import task_queue

router = APIRouter()


@router.get("/queues", tags=["ops"])
async def queue_health(_: Account = Depends(require_super_admin)) -> dict:
    """
    Minimal operations view of Redis/RQ connectivity.

    Restricted to super admins so queue details are not exposed to other roles.
    """

    return task_queue.snapshot()


@router.post("/sessions/sweep", tags=["ops"])
async def sweep_sessions(
    grace_minutes: int | None = Query(default=None, ge=0),
    _: Account = Depends(require_super_admin),
    registry: SessionRegistry = Depends(get_registry),
) -> dict:
    """Run the expired-session sweep now, on the worker when one is available."""
    result = await task_queue.enqueue_or_run(
        sweep_expired_sessions_job,
        fallback=lambda: sweep_expired_sessions(registry, grace_minutes=grace_minutes),
        queue_name="maintenance" if "maintenance" in task_queue.queue_names else None,
        description="sweep expired sessions",
        grace_minutes=grace_minutes,
    )
    if isinstance(result, dict):
        return result
    return {"removed": result}
