from __future__ import annotations

import asyncio
from typing import Iterable

from ..agents.base import ExecutionContext, StrategyRegistry
from ..core.errors import DependencyFailed, DispatcherStopped, PermissionDenied, SentraError, TaskExecutionError
from ..core.logging import get_logger
from ..core.metrics import observe_task_duration, record_task_event
from .approval import ApprovalGate
from .enums import EventType, ItemKind, TaskStatus, WorkerStatus
from .events import EventBus
from .ledger import ResourceLedger
from .models import ApprovalResponse, ConsumptionItem, Task, Worker, utcnow
from .workers import WorkerPool

logger = get_logger(name=__name__)


def task_reservation_key(task_id: str) -> str:
    return f"task:{task_id}"


class ExecutionPipeline:
    """Runs one dispatched task: budget admission, approval, strategy, cleanup.

    ``execute`` never raises for task failures; the outcome is recorded on the
    task. The worker's ledger window is always reset afterwards.
    """

    def __init__(
        self,
        *,
        ledger: ResourceLedger,
        gate: ApprovalGate,
        workers: WorkerPool,
        strategies: StrategyRegistry,
        events: EventBus | None = None,
    ) -> None:
        self._ledger = ledger
        self._gate = gate
        self._workers = workers
        self._strategies = strategies
        self._events = events

    async def execute(self, task: Task, worker: Worker, *, dependencies: Iterable[Task] = ()) -> Task:
        try:
            if worker.status is WorkerStatus.ERRORED:
                raise DispatcherStopped(
                    f"Worker {worker.worker_id} is stopped",
                    context={"task_id": task.task_id, "worker_id": worker.worker_id},
                )
            for dependency in dependencies:
                if dependency.status is TaskStatus.FAILED:
                    raise DependencyFailed(task.task_id, dependency.task_id, dependency.error)

            task.status = TaskStatus.IN_PROGRESS
            task.assigned_worker = worker.worker_id
            task.started_at = utcnow()
            task.touch()
            record_task_event(worker=worker.worker_id, event="started")
            logger.info(
                "task_started",
                task_id=task.task_id,
                worker=worker.worker_id,
                priority=task.priority.value,
            )
            await self._publish(EventType.TASK_STARTED, task_id=task.task_id, worker_id=worker.worker_id)

            await self._ledger.reserve(
                worker.worker_id,
                ConsumptionItem(
                    key=task_reservation_key(task.task_id),
                    kind=ItemKind.TASK,
                    size=task.resource_requirement,
                ),
            )

            approval: ApprovalResponse | None = None
            if task.command:
                approval = await self._authorize(task, worker, task.command)

            strategy = self._strategies.get(worker.persona)
            context = ExecutionContext(
                task=task,
                worker=worker,
                ledger=self._ledger,
                events=self._events,
                approval=approval,
            )
            task.result = await strategy.run(context)
        except asyncio.CancelledError:
            await self._fail(task, worker, TaskExecutionError(task.task_id, "cancelled"))
            raise
        except Exception as exc:
            await self._fail(task, worker, exc)
        else:
            await self._complete(task, worker)
        finally:
            await self._ledger.reset_worker(worker.worker_id)
            if worker.status is not WorkerStatus.ERRORED:
                await self._workers.set_status(worker.worker_id, WorkerStatus.IDLE)
        return task

    async def _authorize(self, task: Task, worker: Worker, command: str) -> ApprovalResponse:
        ticket = await self._gate.submit_request(
            worker.worker_id,
            command,
            task.context,
            task_id=task.task_id,
        )
        task.approval_request_id = ticket.request_id
        if ticket.done():
            response = await ticket.wait()
        else:
            await self._workers.set_status(
                worker.worker_id,
                WorkerStatus.BLOCKED,
                task_id=task.task_id,
                reason="awaiting approval",
            )
            response = await ticket.wait()
            if worker.status is WorkerStatus.BLOCKED:
                await self._workers.set_status(worker.worker_id, WorkerStatus.BUSY, task_id=task.task_id)
        if not response.approved:
            raise PermissionDenied(command, response.reason, request_id=ticket.request_id)
        return response

    async def _complete(self, task: Task, worker: Worker) -> None:
        task.status = TaskStatus.COMPLETED
        task.completed_at = utcnow()
        task.error = None
        task.touch()
        duration = task.duration_seconds or 0.0
        record_task_event(worker=worker.worker_id, event="completed")
        observe_task_duration(worker=worker.worker_id, status="completed", seconds=duration)
        logger.info(
            "task_completed",
            task_id=task.task_id,
            worker=worker.worker_id,
            duration_seconds=round(duration, 3),
        )
        await self._publish(
            EventType.TASK_COMPLETED,
            task_id=task.task_id,
            worker_id=worker.worker_id,
            duration_seconds=duration,
        )

    async def _fail(self, task: Task, worker: Worker, exc: Exception) -> None:
        task.status = TaskStatus.FAILED
        task.completed_at = utcnow()
        task.error = str(exc) or type(exc).__name__
        task.touch()
        code = exc.code if isinstance(exc, SentraError) else type(exc).__name__
        duration = task.duration_seconds or 0.0
        record_task_event(worker=worker.worker_id, event="failed")
        observe_task_duration(worker=worker.worker_id, status="failed", seconds=duration)
        logger.error(
            "task_failed",
            task_id=task.task_id,
            worker=worker.worker_id,
            operation="execute",
            code=code,
            error=task.error,
            exc_info=not isinstance(exc, SentraError),
        )
        await self._publish(
            EventType.TASK_FAILED,
            task_id=task.task_id,
            worker_id=worker.worker_id,
            error=task.error,
            code=code,
        )

    async def _publish(self, event_type: EventType, **payload: object) -> None:
        if self._events is not None:
            await self._events.publish(event_type, **payload)


__all__ = ["ExecutionPipeline", "task_reservation_key"]
