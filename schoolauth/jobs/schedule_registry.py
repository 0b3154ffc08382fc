from __future__ import annotations

import logging
from datetime import datetime, timedelta

from rq_scheduler import Scheduler

from schoolauth.core.config import settings
from schoolauth.jobs.maintenance import sweep_expired_sessions_job
from schoolauth.services.task_queue import task_queue

logger = logging.getLogger("schoolauth.jobs.schedule_registry")


def _schedule_entries() -> list[dict]:
    queue_name = task_queue.queue_names[0] if task_queue.queue_names else "default"
    return [
        {
            "id": "maintenance:sweep_expired_sessions",
            "func": sweep_expired_sessions_job,
            "interval": max(60, settings.session_sweep_interval_seconds),
            "repeat": None,
            "queue_name": "maintenance" if "maintenance" in task_queue.queue_names else queue_name,
        },
    ]


def ensure_schedules() -> None:
    """Idempotently register periodic jobs with rq-scheduler."""
    if settings.environment.lower() == "test":
        return
    if not task_queue.connection:
        logger.info("Skipping scheduler bootstrap; queue connection is unavailable")
        return
    scheduler = Scheduler(connection=task_queue.connection, queue_name=task_queue.queue_names[0])
    for entry in _schedule_entries():
        if entry["id"] in scheduler:
            continue
        scheduler.schedule(
            scheduled_time=datetime.utcnow(),
            func=entry["func"],
            interval=entry["interval"],
            repeat=entry["repeat"],
            id=entry["id"],
            queue_name=entry["queue_name"],
            result_ttl=int(timedelta(hours=1).total_seconds()),
        )
        logger.info("Scheduled job %s every %ss on queue %s", entry["id"], entry["interval"], entry["queue_name"])
