from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Any, AsyncIterator, Iterable

import httpx

from ..agents.base import StrategyRegistry
from ..agents.personas import build_default_registry
from ..core.config import Settings, get_settings
from ..core.logging import get_logger
from ..services.notifications import NotificationChannel, NotificationService, build_channels
from .approval import ApprovalGate
from .dispatcher import EMERGENCY_STOP_REASON, Dispatcher
from .events import EventBus, log_event
from .ledger import ResourceLedger
from .models import ApprovalRequest, Task, Worker
from .pipeline import ExecutionPipeline
from .risk import RiskAssessor, RiskRule
from .roster import build_default_roster
from .store import StateStore, build_state_store
from .workers import WorkerPool

logger = get_logger(name=__name__)


class SentraRuntime:
    """Owns one fully wired set of components and their background loops."""

    def __init__(
        self,
        *,
        settings: Settings,
        events: EventBus,
        store: StateStore,
        workers: WorkerPool,
        ledger: ResourceLedger,
        gate: ApprovalGate,
        notifier: NotificationService,
        pipeline: ExecutionPipeline,
        dispatcher: Dispatcher,
    ) -> None:
        self.settings = settings
        self.events = events
        self.store = store
        self.workers = workers
        self.ledger = ledger
        self.gate = gate
        self.notifier = notifier
        self.pipeline = pipeline
        self.dispatcher = dispatcher
        self._monitor_task: asyncio.Task[None] | None = None
        self._started = False

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        roster: Iterable[Worker] | None = None,
        strategies: StrategyRegistry | None = None,
        channels: Iterable[NotificationChannel] | None = None,
        store: StateStore | None = None,
        rules: Iterable[RiskRule] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> "SentraRuntime":
        settings = settings or get_settings()
        events = EventBus(history_limit=settings.observability.event_history_limit)
        events.subscribe(log_event)
        store = store or build_state_store(settings)
        workers = WorkerPool(
            roster if roster is not None else build_default_roster(settings.ledger.base_capacity),
            events=events,
        )
        ledger = ResourceLedger(
            settings=settings.ledger,
            capacities={worker.worker_id: worker.capacity for worker in workers},
            store=store,
            events=events,
        )
        notifier = NotificationService(
            channels if channels is not None else build_channels(settings.notifications, transport=transport),
            settings=settings.notifications,
        )
        gate = ApprovalGate(
            settings=settings.approvals,
            assessor=RiskAssessor(rules),
            notifier=notifier,
            store=store,
            events=events,
        )
        pipeline = ExecutionPipeline(
            ledger=ledger,
            gate=gate,
            workers=workers,
            strategies=strategies or build_default_registry(),
            events=events,
        )
        dispatcher = Dispatcher(
            workers=workers,
            ledger=ledger,
            pipeline=pipeline,
            settings=settings.dispatch,
            events=events,
        )
        return cls(
            settings=settings,
            events=events,
            store=store,
            workers=workers,
            ledger=ledger,
            gate=gate,
            notifier=notifier,
            pipeline=pipeline,
            dispatcher=dispatcher,
        )

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        if self._started:
            return
        windows = await self.ledger.restore()
        requests = await self.gate.restore()
        self.dispatcher.start()
        self._monitor_task = asyncio.create_task(self._monitor_loop())
        self._started = True
        logger.info(
            "runtime_started",
            workers=len(self.workers),
            restored_windows=windows,
            restored_requests=requests,
            environment=self.settings.environment,
        )

    async def stop(self) -> None:
        if not self._started:
            return
        if self._monitor_task is not None:
            self._monitor_task.cancel()
            with suppress(asyncio.CancelledError):
                await self._monitor_task
            self._monitor_task = None
        await self.dispatcher.stop()
        await self.gate.aclose()
        await self.store.close()
        self._started = False
        logger.info("runtime_stopped")

    @asynccontextmanager
    async def lifecycle(self) -> AsyncIterator["SentraRuntime"]:
        await self.start()
        try:
            yield self
        finally:
            await self.stop()

    async def submit_task(self, submission: Any) -> Task:
        """Accepts a ``TaskSubmission`` (or an already built ``Task``)."""
        task = submission if isinstance(submission, Task) else submission.to_task()
        return await self.dispatcher.submit(task)

    async def respond(
        self,
        request_id: str,
        approved: bool,
        reason: str | None = None,
        responder: str = "user",
    ) -> ApprovalRequest:
        return await self.gate.respond(request_id, approved, reason, responder)

    async def cancel_approval(self, request_id: str, reason: str = "Cancelled by user") -> ApprovalRequest:
        return await self.gate.cancel(request_id, reason)

    async def emergency_stop(self) -> dict[str, Any]:
        summary = await self.dispatcher.emergency_stop()
        if not summary.get("already_stopped"):
            summary["cancelled_approvals"] = await self.gate.cancel_all(EMERGENCY_STOP_REASON)
        return summary

    def status(self) -> dict[str, Any]:
        status = self.dispatcher.status()
        status["started"] = self._started
        status["pending_approvals"] = len(self.gate.pending())
        status["ledger"] = self.ledger.status()
        return status

    async def _monitor_loop(self) -> None:
        interval = self.settings.ledger.monitor_interval_seconds
        while True:
            await asyncio.sleep(interval)
            try:
                await self.ledger.analyze()
            except Exception as exc:  # pragma: no cover - background error logging
                logger.exception("budget_monitor_failed", error=str(exc))


__all__ = ["SentraRuntime"]
