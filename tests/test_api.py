from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator

import httpx
import pytest

from sentra.main import create_app
from tests.helpers.stubs import build_runtime, make_settings

PREFIX = "/api/v1"


@asynccontextmanager
async def _client() -> AsyncIterator[httpx.AsyncClient]:
    app = create_app(make_settings(), runtime_factory=lambda settings: build_runtime(settings=settings))
    transport = httpx.ASGITransport(app=app)
    try:
        async with app.router.lifespan_context(app):
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
                yield client
    finally:
        await transport.aclose()


async def _wait_for(client: httpx.AsyncClient, path: str, predicate, timeout: float = 2.0):
    async def _poll():
        while True:
            response = await client.get(path)
            body = response.json()
            if predicate(body):
                return body
            await asyncio.sleep(0.02)

    return await asyncio.wait_for(_poll(), timeout=timeout)


@pytest.mark.asyncio
async def test_routes_require_a_started_runtime() -> None:
    app = create_app(make_settings(), runtime_factory=lambda settings: build_runtime(settings=settings))
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
            root = await client.get("/")
            status_response = await client.get(f"{PREFIX}/status")
    finally:
        await transport.aclose()

    assert root.status_code == 200
    assert status_response.status_code == 503


@pytest.mark.asyncio
async def test_submitted_task_is_assigned_and_completes() -> None:
    async with _client() as client:
        response = await client.post(
            f"{PREFIX}/tasks",
            json={"id": "docs-1", "title": "Update documentation manual", "priority": "high"},
        )

        assert response.status_code == 202
        assert response.json() == {"task_id": "docs-1", "assigned_worker": "technical-writer", "status": "pending"}

        task = await _wait_for(client, f"{PREFIX}/tasks/docs-1", lambda body: body["status"] == "completed")
        assert task["assigned_worker"] == "technical-writer"
        assert task["result"]["persona"] == "technical-writer"

        listed = await client.get(f"{PREFIX}/tasks")
        assert [item["task_id"] for item in listed.json()] == ["docs-1"]

        events = await client.get(f"{PREFIX}/events", params={"type": "task.completed"})
        assert [event["payload"]["task_id"] for event in events.json()] == ["docs-1"]

        summary = await client.get(f"{PREFIX}/metrics/summary")
        assert summary.json()["completed"] == 1

        missing = await client.get(f"{PREFIX}/tasks/unknown")
        assert missing.status_code == 404


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [
        {"id": "t1"},
        {"id": "t1", "title": "Negative", "resource_requirement": -5},
        {"id": "t1", "title": "Loop", "dependencies": ["t1"]},
        {"id": "t1", "title": "Ghost", "assigned_worker": "ghost"},
    ],
)
async def test_invalid_task_submissions_return_422(payload: dict) -> None:
    async with _client() as client:
        response = await client.post(f"{PREFIX}/tasks", json=payload)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_approval_round_trip_over_http() -> None:
    async with _client() as client:
        response = await client.post(
            f"{PREFIX}/tasks",
            json={
                "id": "cleanup",
                "title": "Clean build output",
                "command": "rm -rf /tmp/build",
                "assigned_worker": "devops-engineer",
            },
        )
        assert response.status_code == 202

        status_body = await _wait_for(
            client,
            f"{PREFIX}/status",
            lambda body: any(worker["status"] == "blocked" for worker in body["workers"]),
        )
        assert status_body["pending_approvals"] == 1
        blocked = [worker for worker in status_body["workers"] if worker["status"] == "blocked"]
        assert [worker["worker_id"] for worker in blocked] == ["devops-engineer"]

        pending = (await client.get(f"{PREFIX}/approvals")).json()
        request_id = pending[0]["request_id"]
        assert pending[0]["risk_level"] == "critical"
        assert pending[0]["task_id"] == "cleanup"

        approved = await client.post(
            f"{PREFIX}/approvals/{request_id}/respond",
            json={"approved": True, "reason": "expected cleanup", "responder": "ops"},
        )
        assert approved.status_code == 200
        assert approved.json()["status"] == "approved"
        assert approved.json()["response"]["responded_by"] == "ops"

        again = await client.post(f"{PREFIX}/approvals/{request_id}/respond", json={"approved": False})
        assert again.status_code == 409
        assert again.json()["detail"]["code"] == "REQUEST_ALREADY_RESOLVED"

        unknown = await client.post(f"{PREFIX}/approvals/ffffffffffffffff/respond", json={"approved": True})
        assert unknown.status_code == 404

        await _wait_for(client, f"{PREFIX}/tasks/cleanup", lambda body: body["status"] == "completed")
        history = await client.get(f"{PREFIX}/approvals/history")
        assert [item["request_id"] for item in history.json()] == [request_id]


@pytest.mark.asyncio
async def test_emergency_stop_rejects_new_work() -> None:
    async with _client() as client:
        first = await client.post(f"{PREFIX}/emergency-stop")
        second = await client.post(f"{PREFIX}/emergency-stop")
        rejected = await client.post(f"{PREFIX}/tasks", json={"title": "Update documentation manual"})
        status_body = (await client.get(f"{PREFIX}/status")).json()

    assert first.status_code == 200
    assert first.json()["already_stopped"] is False
    assert first.json()["cancelled_approvals"] == 0
    assert second.json() == {"stopped": True, "already_stopped": True}
    assert rejected.status_code == 409
    assert rejected.json()["detail"]["code"] == "DISPATCHER_STOPPED"
    assert status_body["stopped"] is True


@pytest.mark.asyncio
async def test_ledger_and_prometheus_endpoints() -> None:
    async with _client() as client:
        ledger = await client.get(f"{PREFIX}/ledger")
        metrics = await client.get("/metrics")

    assert ledger.status_code == 200
    assert ledger.json()["aggregate_usage"] == 0.0
    assert metrics.status_code == 200
    assert metrics.headers.get("content-type", "").startswith("text/plain")
    assert "sentra_task_queue_depth" in metrics.text
