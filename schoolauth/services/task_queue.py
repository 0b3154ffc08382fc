"""RQ task queue wrapper with inline fallback for local/test runs."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable

from redis import Redis
from rq import Queue

from schoolauth.core.config import settings
from schoolauth.utils.redaction import redact_secrets

logger = logging.getLogger("schoolauth.services.task_queue")


def _maybe_async(value: Any) -> Any:
    """Normalize callables/coroutines into an awaitable result."""
    if asyncio.iscoroutine(value):
        return value
    if callable(value):
        return value()
    return value


class TaskQueue:
    """Thin wrapper around RQ that can fall back to inline execution."""

    def __init__(self) -> None:
        self.queue_names: list[str] = settings.worker_queue_names or ["default"]
        self._connection: Redis | None = None
        self._enabled = False
        self._bootstrap()

    @property
    def enabled(self) -> bool:
        return self._enabled

    @property
    def connection(self) -> Redis | None:
        return self._connection

    def _bootstrap(self) -> None:
        """Initialize Redis connectivity unless disabled for tests."""
        if settings.environment.lower() == "test":
            logger.info("Task queue disabled in test environment")
            return
        try:
            connection = Redis.from_url(settings.redis_url)
            connection.ping()
        except Exception as exc:  # pragma: no cover - network/redis specific
            logger.warning("Redis unavailable; running jobs inline: %s", redact_secrets(str(exc)))
            self._connection = None
            self._enabled = False
            return
        self._connection = connection
        self._enabled = True
        logger.info("Task queue ready (queues: %s)", ", ".join(self.queue_names))

    def get_queue(self, queue_name: str | None = None) -> Queue:
        """Return a configured queue instance for enqueuing jobs."""
        if not self._connection:
            raise RuntimeError("Queue connection not initialized")
        target = queue_name or (self.queue_names[0] if self.queue_names else "default")
        return Queue(target, connection=self._connection)

    async def enqueue_or_run(
        self,
        func: Callable[..., Any],
        *,
        fallback: Callable[[], Any] | None = None,
        queue_name: str | None = None,
        timeout_seconds: int = 60,
        description: str | None = None,
        **kwargs: Any,
    ) -> Any:
        """Enqueue a job and wait for the result; fall back to inline execution if needed."""

        async def _run_fallback() -> Any:
            target = fallback or (lambda: func(**kwargs))
            result = _maybe_async(target)
            if asyncio.iscoroutine(result):
                return await result
            return result

        if not self._enabled or not self._connection:
            return await _run_fallback()

        def _enqueue_and_wait() -> Any:
            queue = self.get_queue(queue_name)
            job = queue.enqueue(func, kwargs=kwargs, job_timeout=timeout_seconds, description=description)
            return job.latest_result(timeout=timeout_seconds)

        try:
            result = await asyncio.to_thread(_enqueue_and_wait)
        except Exception as exc:  # pragma: no cover - network/redis specific
            logger.warning("Falling back to inline execution after queue failure: %s", redact_secrets(str(exc)))
            return await _run_fallback()
        if result is None:  # pragma: no cover - redis specific
            raise TimeoutError(f"Job {description or func.__name__} did not finish in {timeout_seconds}s")
        return result.return_value

    def snapshot(self) -> dict[str, Any]:
        """Return a small diagnostic view of queue connectivity."""
        if not self._connection:
            return {"status": "offline", "queues": [], "redis_url": redact_secrets(settings.redis_url)}
        queues = [{"name": name, "size": Queue(name, connection=self._connection).count} for name in self.queue_names]
        return {"status": "online", "queues": queues, "redis_url": redact_secrets(settings.redis_url)}


task_queue = TaskQueue()
