from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Protocol

from ..orchestration.enums import ItemKind, Persona
from ..orchestration.events import EventBus
from ..orchestration.ledger import ResourceLedger
from ..orchestration.models import ApprovalResponse, ConsumptionItem, Task, Worker


@dataclass
class ExecutionContext:
    """Context handed to a persona strategy while it executes a task."""

    task: Task
    worker: Worker
    ledger: ResourceLedger
    events: EventBus | None = None
    approval: ApprovalResponse | None = None

    async def reserve(
        self,
        key: str,
        kind: ItemKind,
        *,
        content: str | None = None,
        size: int | None = None,
    ) -> ConsumptionItem:
        """Charge an item to the worker's window; may evict or raise ``BudgetExceeded``."""
        return await self.ledger.reserve(
            self.worker.worker_id,
            ConsumptionItem(key=key, kind=kind, content=content, size=size),
        )

    async def release(self, key: str) -> bool:
        return await self.ledger.release(self.worker.worker_id, key)

    @property
    def usage(self) -> float:
        return self.ledger.usage(self.worker.worker_id)


class WorkerStrategy(Protocol):
    persona: Persona

    async def run(self, context: ExecutionContext) -> dict[str, Any]:
        ...


class StrategyRegistry:
    """Maps every persona to exactly one strategy; incomplete registries are rejected."""

    def __init__(self, strategies: Iterable[WorkerStrategy]) -> None:
        self._strategies: dict[Persona, WorkerStrategy] = {}
        for strategy in strategies:
            if strategy.persona in self._strategies:
                raise ValueError(f"duplicate strategy for persona {strategy.persona.value}")
            self._strategies[strategy.persona] = strategy
        missing = [persona.value for persona in Persona if persona not in self._strategies]
        if missing:
            raise ValueError(f"no strategy registered for personas: {', '.join(missing)}")

    def get(self, persona: Persona) -> WorkerStrategy:
        return self._strategies[persona]

    def replace(self, strategy: WorkerStrategy) -> "StrategyRegistry":
        strategies = dict(self._strategies)
        strategies[strategy.persona] = strategy
        return StrategyRegistry(strategies.values())

    def __iter__(self):
        return iter(self._strategies.values())


__all__ = ["ExecutionContext", "StrategyRegistry", "WorkerStrategy"]
