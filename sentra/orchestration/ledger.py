from __future__ import annotations

import asyncio
import itertools
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable, Mapping

from ..core.config import LedgerSettings
from ..core.errors import BudgetExceeded, UnknownWorker
from ..core.logging import get_logger
from ..core.metrics import increment_budget_eviction, increment_budget_rejection, record_budget_usage
from .enums import EventType, ItemKind
from .events import EventBus
from .models import ConsumptionItem, utcnow
from .store import StateStore

logger = get_logger(name=__name__)

DEFAULT_KIND_SIZES: Mapping[ItemKind, int] = {
    ItemKind.FILE: 100,
    ItemKind.INTERFACE: 50,
    ItemKind.DEPENDENCY: 25,
    ItemKind.CONFIG: 30,
    ItemKind.TASK: 50,
}


@dataclass(slots=True)
class ResourceWindow:
    worker_id: str
    capacity: int
    items: list[ConsumptionItem] = field(default_factory=list)
    total: int = 0
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def percent(self) -> float:
        if self.capacity <= 0:
            return 0.0
        return self.total / self.capacity * 100.0

    def find(self, key: str) -> ConsumptionItem | None:
        for item in self.items:
            if item.key == key:
                return item
        return None

    def recompute(self) -> None:
        self.total = sum(item.size or 0 for item in self.items)
        self.updated_at = utcnow()

    def snapshot(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "capacity": self.capacity,
            "total": self.total,
            "updated_at": self.updated_at.isoformat(),
            "items": [item.to_dict() for item in self.items],
        }


@dataclass(slots=True)
class _PendingEvent:
    event_type: EventType
    payload: dict[str, Any]


class ResourceLedger:
    """Sole owner of per-worker budget consumption.

    Every mutation of a worker's window happens under that worker's lock, so
    concurrent admissions for the same worker serialize and the running total
    never exceeds ``capacity * max_percentage`` after a successful reservation.
    """

    def __init__(
        self,
        *,
        settings: LedgerSettings,
        capacities: Mapping[str, int] | None = None,
        store: StateStore | None = None,
        events: EventBus | None = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._events = events
        self._windows: dict[str, ResourceWindow] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._sequence = itertools.count(1)
        self._aggregate = 0.0
        for worker_id, capacity in (capacities or {}).items():
            self.register(worker_id, capacity)

    @property
    def settings(self) -> LedgerSettings:
        return self._settings

    def register(self, worker_id: str, capacity: int) -> None:
        if capacity <= 0:
            raise ValueError(f"capacity must be positive for worker {worker_id}")
        self._windows[worker_id] = ResourceWindow(worker_id=worker_id, capacity=capacity)
        self._locks[worker_id] = asyncio.Lock()
        self._recompute_aggregate()

    @property
    def worker_ids(self) -> list[str]:
        return list(self._windows)

    @property
    def aggregate_usage(self) -> float:
        return self._aggregate

    def capacity(self, worker_id: str) -> int:
        return self._window(worker_id).capacity

    def consumption(self, worker_id: str) -> int:
        return self._window(worker_id).total

    def usage(self, worker_id: str) -> float:
        return self._window(worker_id).percent

    def limit_units(self, worker_id: str) -> float:
        return self._window(worker_id).capacity * self._settings.max_percentage / 100.0

    def items(self, worker_id: str) -> list[ConsumptionItem]:
        return list(self._window(worker_id).items)

    def size_of(self, item: ConsumptionItem) -> int:
        if item.size is not None:
            if item.size < 0:
                raise ValueError("consumption item size must not be negative")
            return int(item.size)
        ratio = self._settings.units_per_char
        size = len(item.key) * ratio
        if item.content:
            size += len(item.content) * ratio
        else:
            size += DEFAULT_KIND_SIZES.get(item.kind, 50)
        return int(round(size))

    async def reserve(self, worker_id: str, item: ConsumptionItem) -> ConsumptionItem:
        """Admit ``item`` into the worker's window, evicting lower priority items if needed."""
        window = self._window(worker_id)
        size = self.size_of(item)
        pending: list[_PendingEvent] = []
        async with self._locks[worker_id]:
            previous = window.find(item.key)
            base_total = window.total - (previous.size or 0 if previous is not None else 0)
            base_count = len(window.items) - (1 if previous is not None else 0)
            limit = window.capacity * self._settings.max_percentage / 100.0
            overflow = base_total + size - limit
            needs_slot = base_count >= self._settings.max_items

            evicted: list[ConsumptionItem] = []
            if overflow > 0 or needs_slot:
                plan = self._plan_eviction(window, overflow=overflow, needs_slot=needs_slot, exclude=item.key)
                if plan is None:
                    attempted = (base_total + size) / window.capacity * 100.0
                    increment_budget_rejection(worker=worker_id)
                    logger.warning(
                        "budget_reservation_rejected",
                        worker=worker_id,
                        item=item.key,
                        kind=item.kind.value,
                        size=size,
                        attempted_percent=round(attempted, 2),
                        limit_percent=self._settings.max_percentage,
                    )
                    raise BudgetExceeded(attempted, self._settings.max_percentage, worker_id=worker_id)
                evicted = plan

            removed_keys = {candidate.key for candidate in evicted}
            if previous is not None:
                removed_keys.add(previous.key)
            window.items = [existing for existing in window.items if existing.key not in removed_keys]
            stored = ConsumptionItem(
                key=item.key,
                kind=item.kind,
                size=size,
                created_at=utcnow(),
                sequence=next(self._sequence),
            )
            window.items.append(stored)
            window.recompute()
            percent = window.percent
            self._recompute_aggregate()
            record_budget_usage(worker=worker_id, percent=percent, aggregate=self._aggregate)
            await self._persist(window)

            for candidate in evicted:
                increment_budget_eviction(worker=worker_id, kind=candidate.kind.value)
            if evicted:
                logger.info(
                    "budget_items_evicted",
                    worker=worker_id,
                    items_removed=len(evicted),
                    space_freed=sum(candidate.size or 0 for candidate in evicted),
                    remaining_items=len(window.items),
                )
                pending.append(
                    _PendingEvent(
                        EventType.BUDGET_EVICTED,
                        {
                            "worker_id": worker_id,
                            "evicted": [candidate.key for candidate in evicted],
                            "space_freed": sum(candidate.size or 0 for candidate in evicted),
                        },
                    )
                )
            logger.debug(
                "budget_item_reserved",
                worker=worker_id,
                item=stored.key,
                kind=stored.kind.value,
                size=size,
                usage_percent=round(percent, 2),
                total_items=len(window.items),
            )
            if percent >= self._settings.warning_threshold:
                pending.append(
                    _PendingEvent(
                        EventType.BUDGET_WARNING,
                        {
                            "worker_id": worker_id,
                            "usage": round(percent, 2),
                            "threshold": self._settings.warning_threshold,
                            "recommendation": "Consider cleanup or task decomposition",
                        },
                    )
                )

        await self._publish(pending)
        return stored

    async def release(self, worker_id: str, key: str) -> bool:
        window = self._windows.get(worker_id)
        if window is None:
            return False
        async with self._locks[worker_id]:
            item = window.find(key)
            if item is None:
                return False
            window.items.remove(item)
            window.recompute()
            self._recompute_aggregate()
            record_budget_usage(worker=worker_id, percent=window.percent, aggregate=self._aggregate)
            await self._persist(window)
        logger.debug("budget_item_released", worker=worker_id, item=key, size=item.size)
        return True

    async def reset_worker(self, worker_id: str) -> int:
        """Clear one worker's window and return the number of items removed."""
        window = self._window(worker_id)
        async with self._locks[worker_id]:
            removed = await self._clear(window)
        if removed:
            logger.info("budget_window_reset", worker=worker_id, items_removed=removed)
        return removed

    async def reset_all(self) -> int:
        removed = 0
        for worker_id in sorted(self._windows):
            async with self._locks[worker_id]:
                removed += await self._clear(self._windows[worker_id])
        self._recompute_aggregate()
        logger.warning("budget_emergency_reset", items_removed=removed)
        return removed

    def status(self) -> dict[str, Any]:
        usage = {worker_id: round(window.percent, 4) for worker_id, window in self._windows.items()}
        warning = self._settings.warning_threshold
        recommendations: list[str] = []
        high = [worker_id for worker_id, percent in usage.items() if percent > warning]
        if high:
            recommendations.append(f"High budget usage detected for: {', '.join(high)}")
            recommendations.append("Consider decomposing tasks or cleaning up unused context")
        if self._aggregate > warning:
            recommendations.append("Total budget usage is approaching critical levels")
            recommendations.append("Emergency cleanup may be required soon")
        return {
            "aggregate_usage": round(self._aggregate, 4),
            "worker_usage": usage,
            "consumption": {worker_id: window.total for worker_id, window in self._windows.items()},
            "limits": {
                "max_percentage": self._settings.max_percentage,
                "warning_threshold": warning,
                "max_items": self._settings.max_items,
            },
            "recommendations": recommendations,
        }

    async def analyze(self) -> dict[str, Any]:
        status = self.status()
        highest = max(status["worker_usage"].values(), default=0.0)
        logger.debug(
            "budget_analysis_completed",
            aggregate_usage=status["aggregate_usage"],
            highest_usage=highest,
            recommendation_count=len(status["recommendations"]),
        )
        critical_level = self._settings.max_percentage * self._settings.critical_ratio
        if self._aggregate > critical_level:
            await self._publish(
                [
                    _PendingEvent(
                        EventType.BUDGET_CRITICAL,
                        {
                            "aggregate_usage": status["aggregate_usage"],
                            "threshold": critical_level,
                            "message": "Budget usage approaching critical levels - immediate action required",
                        },
                    )
                ]
            )
        return status

    async def restore(self) -> int:
        """Reload persisted windows for registered workers and return the number restored."""
        if self._store is None:
            return 0
        snapshots = await self._store.load_windows()
        restored = 0
        highest_sequence = 0
        for worker_id, snapshot in snapshots.items():
            window = self._windows.get(worker_id)
            if window is None:
                logger.warning("budget_window_unknown_worker", worker=worker_id)
                continue
            try:
                items = [ConsumptionItem.from_dict(raw) for raw in snapshot.get("items") or []]
            except (KeyError, ValueError, TypeError) as exc:
                logger.warning("budget_window_restore_failed", worker=worker_id, error=str(exc))
                continue
            async with self._locks[worker_id]:
                window.items = items
                window.recompute()
            highest_sequence = max([highest_sequence, *(item.sequence for item in items)])
            if window.total > window.capacity * self._settings.max_percentage / 100.0:
                logger.warning("budget_window_restored_over_limit", worker=worker_id, usage_percent=window.percent)
            restored += 1
        self._sequence = itertools.count(highest_sequence + 1)
        self._recompute_aggregate()
        logger.info("budget_state_restored", windows=restored, aggregate_usage=round(self._aggregate, 4))
        return restored

    def _plan_eviction(
        self,
        window: ResourceWindow,
        *,
        overflow: float,
        needs_slot: bool,
        exclude: str,
    ) -> list[ConsumptionItem] | None:
        candidates = sorted(
            (
                item
                for item in window.items
                if item.kind.eviction_priority is not None and item.key != exclude
            ),
            key=lambda item: (item.kind.eviction_priority, item.sequence),
        )
        plan: list[ConsumptionItem] = []
        freed = 0
        for item in candidates:
            if freed >= overflow and (plan or not needs_slot):
                break
            plan.append(item)
            freed += item.size or 0
        if freed < overflow or (needs_slot and not plan):
            return None
        return plan

    async def _clear(self, window: ResourceWindow) -> int:
        removed = len(window.items)
        window.items = []
        window.recompute()
        self._recompute_aggregate()
        record_budget_usage(worker=window.worker_id, percent=0.0, aggregate=self._aggregate)
        if self._store is not None:
            await self._store.delete_window(window.worker_id)
        return removed

    def _window(self, worker_id: str) -> ResourceWindow:
        window = self._windows.get(worker_id)
        if window is None:
            raise UnknownWorker(worker_id)
        return window

    def _recompute_aggregate(self) -> None:
        windows: Iterable[ResourceWindow] = self._windows.values()
        percentages = [window.percent for window in windows]
        self._aggregate = sum(percentages) / len(percentages) if percentages else 0.0

    async def _persist(self, window: ResourceWindow) -> None:
        if self._store is None:
            return
        await self._store.save_window(window.worker_id, window.snapshot())

    async def _publish(self, pending: list[_PendingEvent]) -> None:
        if self._events is None:
            return
        for entry in pending:
            await self._events.publish(entry.event_type, **entry.payload)


__all__ = ["DEFAULT_KIND_SIZES", "ResourceLedger", "ResourceWindow"]
