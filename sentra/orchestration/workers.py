from __future__ import annotations

from typing import Iterable

from ..core.errors import UnknownWorker
from ..core.logging import get_logger
from ..core.metrics import set_worker_status
from .enums import EventType, WorkerStatus
from .events import EventBus
from .models import Worker

logger = get_logger(name=__name__)

_STATUSES = tuple(status.value for status in WorkerStatus)


class WorkerPool:
    """Fixed roster of workers in declaration order.

    Status changes go through :meth:`set_status` so every transition is logged,
    mirrored into the worker status gauge and published on the event bus.
    """

    def __init__(self, workers: Iterable[Worker], *, events: EventBus | None = None) -> None:
        self._workers: dict[str, Worker] = {}
        for worker in workers:
            if worker.worker_id in self._workers:
                raise ValueError(f"duplicate worker id: {worker.worker_id}")
            self._workers[worker.worker_id] = worker
            set_worker_status(worker=worker.worker_id, status=worker.status.value, statuses=_STATUSES)
        if not self._workers:
            raise ValueError("worker pool requires at least one worker")
        self._events = events

    def __iter__(self):
        return iter(self._workers.values())

    def __len__(self) -> int:
        return len(self._workers)

    def __contains__(self, worker_id: object) -> bool:
        return worker_id in self._workers

    def get(self, worker_id: str) -> Worker:
        worker = self._workers.get(worker_id)
        if worker is None:
            raise UnknownWorker(worker_id)
        return worker

    def workers(self) -> list[Worker]:
        return list(self._workers.values())

    def active(self) -> list[Worker]:
        return [
            worker
            for worker in self._workers.values()
            if worker.status in {WorkerStatus.BUSY, WorkerStatus.BLOCKED}
        ]

    async def set_status(
        self,
        worker_id: str,
        status: WorkerStatus,
        *,
        task_id: str | None = None,
        reason: str | None = None,
    ) -> Worker:
        worker = self.get(worker_id)
        previous = worker.status
        worker.status = status
        if status is WorkerStatus.IDLE:
            worker.current_task_id = None
        elif task_id is not None:
            worker.current_task_id = task_id
        if previous is status:
            return worker
        set_worker_status(worker=worker_id, status=status.value, statuses=_STATUSES)
        logger.info(
            "worker_status_changed",
            worker=worker_id,
            previous=previous.value,
            status=status.value,
            task_id=worker.current_task_id,
            reason=reason,
        )
        if self._events is not None:
            await self._events.publish(
                EventType.WORKER_STATUS_CHANGED,
                worker_id=worker_id,
                previous=previous.value,
                status=status.value,
                task_id=worker.current_task_id,
                reason=reason,
            )
        return worker


__all__ = ["WorkerPool"]
