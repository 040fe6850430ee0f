from __future__ import annotations

import asyncio

import pytest

from sentra.orchestration.enums import ApprovalStatus, TaskStatus, WorkerStatus
from sentra.orchestration.models import Task
from sentra.orchestration.store import InMemoryStateStore
from tests.helpers.stubs import build_runtime


async def _until(predicate, timeout: float = 2.0) -> None:
    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0.01)

    await asyncio.wait_for(_poll(), timeout=timeout)


def _cleanup_task(task_id: str = "cleanup") -> Task:
    return Task(
        task_id=task_id,
        title="Clean build output",
        command="rm -rf /tmp/build",
        assigned_worker="devops-engineer",
    )


@pytest.mark.asyncio
async def test_emergency_stop_cancels_pending_approvals() -> None:
    runtime = build_runtime()
    async with runtime.lifecycle():
        task = await runtime.submit_task(_cleanup_task())
        worker = runtime.workers.get("devops-engineer")
        await _until(lambda: worker.status is WorkerStatus.BLOCKED)

        summary = await runtime.emergency_stop()

        assert summary["cancelled_approvals"] == 1
        assert summary["errored_workers"] == ["devops-engineer"]
        request = runtime.gate.history()[0]
        assert request.status is ApprovalStatus.EXPIRED
        assert request.response.reason == "Emergency stop"

        await _until(lambda: task.status is TaskStatus.FAILED)
        assert task.error == "Permission denied for command: rm -rf /tmp/build (Emergency stop)"
        assert worker.status is WorkerStatus.ERRORED
        assert runtime.status()["pending_approvals"] == 0


@pytest.mark.asyncio
async def test_pending_approval_survives_a_restart() -> None:
    store = InMemoryStateStore()
    first = build_runtime(store=store)
    async with first.lifecycle():
        await first.submit_task(_cleanup_task())
        await _until(lambda: bool(first.gate.pending()))
        request_id = first.gate.pending()[0].request_id

    assert list(await store.load_requests()) == [request_id]

    second = build_runtime(store=store)
    async with second.lifecycle():
        assert [request.request_id for request in second.gate.pending()] == [request_id]
        resolved = await second.respond(request_id, approved=False, reason="stale")
        assert resolved.status is ApprovalStatus.DENIED

    assert await store.load_requests() == {}


@pytest.mark.asyncio
async def test_stop_fails_in_flight_tasks_and_is_idempotent() -> None:
    runtime = build_runtime()
    await runtime.start()
    await runtime.start()
    task = await runtime.submit_task(_cleanup_task())
    await _until(lambda: task.status is TaskStatus.IN_PROGRESS)

    await runtime.stop()
    await runtime.stop()

    assert task.status is TaskStatus.FAILED
    assert "cancelled" in task.error
    assert runtime.started is False


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_stop_the_runtime() -> None:
    async def broken(event) -> None:
        raise RuntimeError("subscriber down")

    runtime = build_runtime()
    runtime.events.subscribe(broken)
    async with runtime.lifecycle():
        task = await runtime.submit_task(Task(task_id="t1", title="write tests"))
        await _until(lambda: task.status is TaskStatus.COMPLETED)

        assert runtime.dispatcher.queued_tasks() == []
        assert runtime.status()["running"] is True
