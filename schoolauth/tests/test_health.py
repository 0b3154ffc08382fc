from __future__ import annotations

import pytest

from schoolauth.services.task_queue import task_queue


@pytest.mark.asyncio
async def test_health_reports_ok_without_auth(client):
    for path in ("/health", "/api/health"):
        response = await client.get(path)
        assert response.status_code == 200
        payload = response.json()
        assert payload["status"] == "ok"
        assert payload["environment"] == "test"


@pytest.mark.asyncio
async def test_health_reports_inline_queue_when_redis_is_unavailable(client, monkeypatch):
    monkeypatch.setattr(task_queue, "_connection", None)
    monkeypatch.setattr(task_queue, "_enabled", False)

    response = await client.get("/health")
    assert response.json()["queue"] == "inline"
