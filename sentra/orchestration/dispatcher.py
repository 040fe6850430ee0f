from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass
from typing import Any

from ..core.config import DispatchSettings
from ..core.errors import DependencyFailed, DispatcherStopped, InvalidTask, NoEligibleWorker, SentraError
from ..core.logging import get_logger
from ..core.metrics import record_task_event, set_queue_depth
from .enums import EventType, TaskStatus, WorkerStatus
from .events import EventBus
from .ledger import ResourceLedger
from .models import Task, Worker, utcnow
from .pipeline import ExecutionPipeline
from .roster import match_capabilities
from .workers import WorkerPool

logger = get_logger(name=__name__)

EMERGENCY_STOP_REASON = "Emergency stop"


@dataclass(slots=True)
class _QueueEntry:
    task_id: str
    priority_rank: int
    sequence: int

    @property
    def sort_key(self) -> tuple[int, int]:
        return (-self.priority_rank, self.sequence)


class Dispatcher:
    """Selects workers for tasks and drains the priority queue.

    Queue order is ``(priority desc, submission sequence asc)``. A task waits
    while any dependency is incomplete, fails as soon as one has failed and is
    launched at most once.
    """

    def __init__(
        self,
        *,
        workers: WorkerPool,
        ledger: ResourceLedger,
        pipeline: ExecutionPipeline,
        settings: DispatchSettings,
        events: EventBus | None = None,
    ) -> None:
        self._workers = workers
        self._ledger = ledger
        self._pipeline = pipeline
        self._settings = settings
        self._events = events
        self._tasks: dict[str, Task] = {}
        self._queue: dict[str, _QueueEntry] = {}
        self._sequence = itertools.count(1)
        self._running: dict[str, asyncio.Task[Task]] = {}
        self._launched: set[str] = set()
        self._wakeup = asyncio.Event()
        self._drain_lock = asyncio.Lock()
        self._loop_task: asyncio.Task[None] | None = None
        self._stopped = False

    @property
    def stopped(self) -> bool:
        return self._stopped

    @property
    def running(self) -> bool:
        return self._loop_task is not None and not self._loop_task.done() and not self._stopped

    def score(self, worker: Worker, task: Task) -> int:
        matched = match_capabilities(worker.capabilities, task.routing_text)
        score = 10 * len(matched)
        if worker.status is WorkerStatus.IDLE:
            score += 8
        elif worker.status is WorkerStatus.BUSY:
            score -= 5
        if self._ledger.consumption(worker.worker_id) < worker.capacity * self._settings.consumption_headroom_ratio:
            score += 5
        return score

    def select_worker(self, task: Task) -> Worker:
        best: Worker | None = None
        best_score = 0
        for worker in self._workers:
            if not worker.selectable or self._ledger.limit_units(worker.worker_id) < task.resource_requirement:
                continue
            score = self.score(worker, task)
            if best is None or score > best_score:
                best = worker
                best_score = score
        if best is None or best_score <= 0:
            raise NoEligibleWorker(
                f"No suitable worker available for task {task.task_id}",
                context={"task_id": task.task_id},
            )
        return best

    async def submit(self, task: Task) -> Task:
        if self._stopped:
            raise DispatcherStopped("Dispatcher has been emergency stopped", context={"task_id": task.task_id})
        self._validate(task)

        if task.assigned_worker:
            if task.assigned_worker not in self._workers:
                raise InvalidTask(
                    f"Assigned worker not found: {task.assigned_worker}",
                    context={"task_id": task.task_id, "worker_id": task.assigned_worker},
                )
            worker = self._workers.get(task.assigned_worker)
            if not worker.selectable:
                raise NoEligibleWorker(
                    f"Assigned worker {worker.worker_id} is unavailable",
                    context={"task_id": task.task_id, "worker_id": worker.worker_id},
                )
        else:
            worker = self.select_worker(task)

        task.assigned_worker = worker.worker_id
        task.status = TaskStatus.PENDING
        task.touch()
        self._tasks[task.task_id] = task
        self._queue[task.task_id] = _QueueEntry(task.task_id, task.priority.rank, next(self._sequence))
        set_queue_depth(len(self._queue))
        record_task_event(worker=worker.worker_id, event="queued")
        logger.info(
            "task_queued",
            task_id=task.task_id,
            worker=worker.worker_id,
            priority=task.priority.value,
            dependencies=list(task.dependencies),
            queue_length=len(self._queue),
        )
        await self._publish(EventType.TASK_QUEUED, task_id=task.task_id, priority=task.priority.value)
        await self._publish(EventType.TASK_ASSIGNED, task_id=task.task_id, worker_id=worker.worker_id)
        self._wakeup.set()
        return task

    async def drain_once(self) -> list[str]:
        """Launch every runnable queued task; returns the launched task ids."""
        async with self._drain_lock:
            launched: list[str] = []
            changed = True
            while changed and not self._stopped:
                changed = False
                for entry in sorted(self._queue.values(), key=lambda item: item.sort_key):
                    if self._stopped or entry.task_id not in self._queue:
                        continue
                    task = self._tasks[entry.task_id]

                    failed_dependency = self._failed_dependency(task)
                    if failed_dependency is not None:
                        await self._fail_queued(
                            task,
                            DependencyFailed(task.task_id, failed_dependency.task_id, failed_dependency.error),
                        )
                        changed = True
                        continue
                    if not self._dependencies_completed(task):
                        continue

                    worker = self._workers.get(task.assigned_worker or "")
                    if not worker.selectable:
                        try:
                            worker = self.select_worker(task)
                        except NoEligibleWorker as exc:
                            await self._fail_queued(task, exc)
                            changed = True
                            continue
                        task.assigned_worker = worker.worker_id
                        task.touch()
                        logger.info("task_reassigned", task_id=task.task_id, worker=worker.worker_id)
                        await self._publish(EventType.TASK_ASSIGNED, task_id=task.task_id, worker_id=worker.worker_id)
                        changed = True

                    if worker.status is not WorkerStatus.IDLE:
                        continue
                    if len(self._running) >= self._settings.max_concurrent_tasks:
                        return launched

                    await self._launch(task, worker)
                    launched.append(task.task_id)
                    changed = True
            return launched

    async def run(self) -> None:
        logger.info("dispatcher_started", max_concurrent_tasks=self._settings.max_concurrent_tasks)
        while not self._stopped:
            self._wakeup.clear()
            try:
                await self.drain_once()
            except Exception:
                logger.exception("dispatch_drain_failed", queued=len(self._queue), running=len(self._running))
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=self._settings.poll_interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("dispatcher_loop_exited")

    def start(self) -> asyncio.Task[None]:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self.run())
        return self._loop_task

    async def stop(self) -> None:
        """Stop the loop and cancel in-flight tasks; queued tasks stay queued."""
        if self._loop_task is not None:
            self._loop_task.cancel()
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None
        runners = list(self._running.values())
        for runner in runners:
            runner.cancel()
        if runners:
            await asyncio.gather(*runners, return_exceptions=True)

    async def join(self, timeout: float | None = None) -> None:
        """Drain until nothing is running and no queued task can be launched."""

        async def _settle() -> None:
            while True:
                launched = await self.drain_once()
                if self._running:
                    await asyncio.wait(list(self._running.values()), return_when=asyncio.FIRST_COMPLETED)
                    continue
                if not launched:
                    return

        await asyncio.wait_for(_settle(), timeout=timeout)

    async def emergency_stop(self) -> dict[str, Any]:
        if self._stopped:
            return {"stopped": True, "already_stopped": True}
        self._stopped = True
        self._wakeup.set()
        if self._loop_task is not None and self._loop_task is not asyncio.current_task():
            self._loop_task.cancel()

        failed_tasks: list[str] = []
        for task_id in list(self._queue):
            task = self._tasks[task_id]
            await self._fail_queued(task, DispatcherStopped(EMERGENCY_STOP_REASON), message=EMERGENCY_STOP_REASON)
            failed_tasks.append(task_id)

        errored_workers: list[str] = []
        for worker in self._workers:
            if worker.status in {WorkerStatus.BUSY, WorkerStatus.BLOCKED}:
                await self._workers.set_status(worker.worker_id, WorkerStatus.ERRORED, reason=EMERGENCY_STOP_REASON)
                errored_workers.append(worker.worker_id)

        items_cleared = await self._ledger.reset_all()
        logger.critical(
            "emergency_stop_executed",
            failed_tasks=len(failed_tasks),
            errored_workers=errored_workers,
            items_cleared=items_cleared,
        )
        await self._publish(
            EventType.EMERGENCY_STOPPED,
            failed_tasks=failed_tasks,
            errored_workers=errored_workers,
            items_cleared=items_cleared,
        )
        return {
            "stopped": True,
            "already_stopped": False,
            "failed_tasks": failed_tasks,
            "errored_workers": errored_workers,
            "items_cleared": items_cleared,
        }

    def get_task(self, task_id: str) -> Task | None:
        return self._tasks.get(task_id)

    def list_tasks(self, *, status: TaskStatus | None = None) -> list[Task]:
        return [task for task in self._tasks.values() if status is None or task.status is status]

    def queued_tasks(self) -> list[Task]:
        ordered = sorted(self._queue.values(), key=lambda entry: entry.sort_key)
        return [self._tasks[entry.task_id] for entry in ordered]

    def status(self) -> dict[str, Any]:
        workers = []
        for worker in self._workers:
            payload = worker.to_dict()
            payload["consumption"] = self._ledger.consumption(worker.worker_id)
            payload["usage_percent"] = round(self._ledger.usage(worker.worker_id), 4)
            workers.append(payload)
        return {
            "running": self.running,
            "stopped": self._stopped,
            "workers": workers,
            "active_workers": len(self._workers.active()),
            "queue_length": len(self._queue),
            "running_tasks": len(self._running),
            "aggregate_usage": round(self._ledger.aggregate_usage, 4),
        }

    def metrics(self) -> dict[str, Any]:
        completed = [task for task in self._tasks.values() if task.status is TaskStatus.COMPLETED]
        failed = [task for task in self._tasks.values() if task.status is TaskStatus.FAILED]
        finished = len(completed) + len(failed)
        durations = [task.duration_seconds for task in completed if task.duration_seconds is not None]
        return {
            "total_tasks": len(self._tasks),
            "completed": len(completed),
            "failed": len(failed),
            "success_rate": len(completed) / finished if finished else 0.0,
            "average_duration_seconds": sum(durations) / len(durations) if durations else 0.0,
            "worker_utilization": {
                worker.worker_id: round(self._ledger.usage(worker.worker_id), 4) for worker in self._workers
            },
        }

    def _validate(self, task: Task) -> None:
        if not task.task_id or not task.task_id.strip():
            raise InvalidTask("Task id must not be empty")
        if not task.title or not task.title.strip():
            raise InvalidTask(f"Task {task.task_id} must have a title", context={"task_id": task.task_id})
        if task.task_id in task.dependencies:
            raise InvalidTask(f"Task {task.task_id} cannot depend on itself", context={"task_id": task.task_id})
        if task.task_id in self._tasks:
            raise InvalidTask(f"Duplicate task id: {task.task_id}", context={"task_id": task.task_id})
        if task.resource_requirement < 0:
            raise InvalidTask(
                f"Task {task.task_id} has a negative resource requirement",
                context={"task_id": task.task_id},
            )
        ceiling = max((self._ledger.limit_units(worker.worker_id) for worker in self._workers), default=0.0)
        if task.resource_requirement > ceiling:
            raise InvalidTask(
                f"Task {task.task_id} requires {task.resource_requirement} units, "
                f"more than any worker's budget ceiling ({ceiling:.0f})",
                context={"task_id": task.task_id, "requirement": task.resource_requirement},
            )

    def _failed_dependency(self, task: Task) -> Task | None:
        for dependency_id in task.dependencies:
            dependency = self._tasks.get(dependency_id)
            if dependency is not None and dependency.status is TaskStatus.FAILED:
                return dependency
        return None

    def _dependencies_completed(self, task: Task) -> bool:
        for dependency_id in task.dependencies:
            dependency = self._tasks.get(dependency_id)
            if dependency is None or dependency.status is not TaskStatus.COMPLETED:
                return False
        return True

    async def _launch(self, task: Task, worker: Worker) -> None:
        if task.task_id in self._launched:
            raise SentraError(f"Task {task.task_id} was already launched", context={"task_id": task.task_id})
        await self._workers.set_status(worker.worker_id, WorkerStatus.BUSY, task_id=task.task_id)
        dependencies = [self._tasks[dependency_id] for dependency_id in task.dependencies if dependency_id in self._tasks]
        runner = asyncio.create_task(self._pipeline.execute(task, worker, dependencies=dependencies))
        self._queue.pop(task.task_id, None)
        self._launched.add(task.task_id)
        set_queue_depth(len(self._queue))
        self._running[task.task_id] = runner
        runner.add_done_callback(lambda finished, task_id=task.task_id: self._on_finished(task_id, finished))
        logger.debug("task_launched", task_id=task.task_id, worker=worker.worker_id, running=len(self._running))

    def _on_finished(self, task_id: str, finished: asyncio.Task[Task]) -> None:
        self._running.pop(task_id, None)
        self._wakeup.set()
        if finished.cancelled():
            logger.warning("task_runner_cancelled", task_id=task_id)
            return
        exc = finished.exception()
        if exc is not None:
            logger.error("task_runner_crashed", task_id=task_id, error=str(exc), exc_info=exc)

    async def _fail_queued(self, task: Task, exc: SentraError, *, message: str | None = None) -> None:
        self._queue.pop(task.task_id, None)
        set_queue_depth(len(self._queue))
        task.status = TaskStatus.FAILED
        task.error = message or str(exc)
        task.completed_at = utcnow()
        task.touch()
        record_task_event(worker=task.assigned_worker, event="failed")
        logger.warning(
            "task_failed_in_queue",
            task_id=task.task_id,
            worker=task.assigned_worker,
            operation="dispatch",
            code=exc.code,
            error=task.error,
        )
        await self._publish(
            EventType.TASK_FAILED,
            task_id=task.task_id,
            worker_id=task.assigned_worker,
            error=task.error,
            code=exc.code,
        )

    async def _publish(self, event_type: EventType, **payload: Any) -> None:
        if self._events is not None:
            await self._events.publish(event_type, **payload)


__all__ = ["Dispatcher", "EMERGENCY_STOP_REASON"]
