from __future__ import annotations

import asyncio

import pytest
from prometheus_client import REGISTRY

from sentra.core.config import LedgerSettings
from sentra.core.errors import BudgetExceeded, UnknownWorker
from sentra.orchestration.enums import EventType, ItemKind
from sentra.orchestration.events import EventBus
from sentra.orchestration.ledger import ResourceLedger
from sentra.orchestration.models import ConsumptionItem
from sentra.orchestration.store import InMemoryStateStore


def _ledger(**kwargs) -> ResourceLedger:
    settings = kwargs.pop("settings", None) or LedgerSettings()
    capacities = kwargs.pop("capacities", None) or {"worker-a": 100}
    return ResourceLedger(settings=settings, capacities=capacities, **kwargs)


@pytest.mark.asyncio
async def test_reservation_evicts_lowest_priority_item_to_fit() -> None:
    events = EventBus()
    ledger = _ledger(events=events)

    await ledger.reserve("worker-a", ConsumptionItem(key="iface", kind=ItemKind.INTERFACE, size=15))
    await ledger.reserve("worker-a", ConsumptionItem(key="settings", kind=ItemKind.CONFIG, size=10))
    assert ledger.usage("worker-a") == pytest.approx(25.0)

    await ledger.reserve("worker-a", ConsumptionItem(key="module", kind=ItemKind.FILE, size=20))

    assert ledger.consumption("worker-a") == 35
    assert [item.key for item in ledger.items("worker-a")] == ["iface", "module"]
    evicted = events.history(types=[EventType.BUDGET_EVICTED])
    assert len(evicted) == 1
    assert evicted[0].payload["evicted"] == ["settings"]
    warnings = events.history(types=[EventType.BUDGET_WARNING])
    assert warnings and warnings[-1].payload["usage"] == pytest.approx(35.0)


@pytest.mark.asyncio
async def test_reservation_that_cannot_fit_changes_nothing() -> None:
    ledger = _ledger()
    await ledger.reserve("worker-a", ConsumptionItem(key="task:one", kind=ItemKind.TASK, size=30))
    await ledger.reserve("worker-a", ConsumptionItem(key="cfg", kind=ItemKind.CONFIG, size=5))

    with pytest.raises(BudgetExceeded) as excinfo:
        await ledger.reserve("worker-a", ConsumptionItem(key="task:two", kind=ItemKind.TASK, size=20))

    assert excinfo.value.attempted == pytest.approx(55.0)
    assert excinfo.value.limit == pytest.approx(40.0)
    assert ledger.consumption("worker-a") == 35
    assert {item.key for item in ledger.items("worker-a")} == {"task:one", "cfg"}


@pytest.mark.asyncio
async def test_eviction_prefers_lower_kinds_then_oldest() -> None:
    ledger = _ledger()
    await ledger.reserve("worker-a", ConsumptionItem(key="dep", kind=ItemKind.DEPENDENCY, size=10))
    await ledger.reserve("worker-a", ConsumptionItem(key="cfg-old", kind=ItemKind.CONFIG, size=10))
    await ledger.reserve("worker-a", ConsumptionItem(key="cfg-new", kind=ItemKind.CONFIG, size=10))
    await ledger.reserve("worker-a", ConsumptionItem(key="file", kind=ItemKind.FILE, size=10))

    await ledger.reserve("worker-a", ConsumptionItem(key="big", kind=ItemKind.INTERFACE, size=25))

    remaining = [item.key for item in ledger.items("worker-a")]
    assert remaining == ["file", "big"]
    assert ledger.consumption("worker-a") == 35


@pytest.mark.asyncio
async def test_eviction_frees_only_what_is_needed() -> None:
    ledger = _ledger()
    await ledger.reserve("worker-a", ConsumptionItem(key="cfg-1", kind=ItemKind.CONFIG, size=10))
    await ledger.reserve("worker-a", ConsumptionItem(key="cfg-2", kind=ItemKind.CONFIG, size=10))
    await ledger.reserve("worker-a", ConsumptionItem(key="cfg-3", kind=ItemKind.CONFIG, size=10))

    await ledger.reserve("worker-a", ConsumptionItem(key="file", kind=ItemKind.FILE, size=15))

    assert [item.key for item in ledger.items("worker-a")] == ["cfg-2", "cfg-3", "file"]
    assert ledger.consumption("worker-a") == 35


@pytest.mark.asyncio
async def test_size_is_derived_from_content_or_kind_default() -> None:
    ledger = _ledger(capacities={"worker-a": 10_000})

    with_content = await ledger.reserve(
        "worker-a",
        ConsumptionItem(key="abcd", kind=ItemKind.FILE, content="x" * 40),
    )
    defaulted = await ledger.reserve("worker-a", ConsumptionItem(key="abcdefgh", kind=ItemKind.FILE))
    dependency = await ledger.reserve("worker-a", ConsumptionItem(key="left-pad", kind=ItemKind.DEPENDENCY))

    assert with_content.size == 11
    assert defaulted.size == 102
    assert dependency.size == 27
    assert ledger.consumption("worker-a") == 11 + 102 + 27


@pytest.mark.asyncio
async def test_reserving_an_existing_key_replaces_the_item() -> None:
    ledger = _ledger()
    await ledger.reserve("worker-a", ConsumptionItem(key="spec", kind=ItemKind.INTERFACE, size=30))
    await ledger.reserve("worker-a", ConsumptionItem(key="spec", kind=ItemKind.INTERFACE, size=35))

    items = ledger.items("worker-a")
    assert len(items) == 1
    assert items[0].size == 35
    assert ledger.consumption("worker-a") == 35


@pytest.mark.asyncio
async def test_release_and_reset_are_idempotent() -> None:
    ledger = _ledger(capacities={"worker-a": 100, "worker-b": 100})
    await ledger.reserve("worker-a", ConsumptionItem(key="one", kind=ItemKind.FILE, size=20))
    await ledger.reserve("worker-b", ConsumptionItem(key="two", kind=ItemKind.FILE, size=10))
    assert ledger.aggregate_usage == pytest.approx(15.0)

    assert await ledger.release("worker-a", "missing") is False
    assert await ledger.release("nobody", "one") is False
    assert await ledger.release("worker-a", "one") is True
    assert ledger.consumption("worker-a") == 0

    assert await ledger.reset_worker("worker-b") == 1
    assert await ledger.reset_worker("worker-b") == 0

    await ledger.reserve("worker-a", ConsumptionItem(key="three", kind=ItemKind.FILE, size=10))
    await ledger.reset_all()
    assert ledger.aggregate_usage == 0.0
    assert ledger.items("worker-a") == []


@pytest.mark.asyncio
async def test_window_item_limit_triggers_eviction() -> None:
    ledger = _ledger(settings=LedgerSettings(max_items=2))
    await ledger.reserve("worker-a", ConsumptionItem(key="a", kind=ItemKind.CONFIG, size=1))
    await ledger.reserve("worker-a", ConsumptionItem(key="b", kind=ItemKind.CONFIG, size=1))
    await ledger.reserve("worker-a", ConsumptionItem(key="c", kind=ItemKind.CONFIG, size=1))

    assert [item.key for item in ledger.items("worker-a")] == ["b", "c"]


@pytest.mark.asyncio
async def test_concurrent_reservations_never_exceed_the_ceiling() -> None:
    ledger = _ledger()

    results = await asyncio.gather(
        *(
            ledger.reserve("worker-a", ConsumptionItem(key=f"task:{index}", kind=ItemKind.TASK, size=10))
            for index in range(10)
        ),
        return_exceptions=True,
    )

    accepted = [result for result in results if isinstance(result, ConsumptionItem)]
    rejected = [result for result in results if isinstance(result, BudgetExceeded)]
    assert len(accepted) == 4
    assert len(rejected) == 6
    assert ledger.consumption("worker-a") == 40
    assert ledger.consumption("worker-a") == sum(item.size for item in ledger.items("worker-a"))


@pytest.mark.asyncio
async def test_analyze_publishes_critical_event_above_ratio() -> None:
    events = EventBus()
    ledger = _ledger(events=events)
    await ledger.reserve("worker-a", ConsumptionItem(key="task:x", kind=ItemKind.TASK, size=38))

    status = await ledger.analyze()

    assert status["aggregate_usage"] == pytest.approx(38.0)
    assert status["recommendations"]
    critical = events.history(types=[EventType.BUDGET_CRITICAL])
    assert len(critical) == 1
    assert critical[0].payload["threshold"] == pytest.approx(36.0)


@pytest.mark.asyncio
async def test_restore_reloads_persisted_windows() -> None:
    store = InMemoryStateStore()
    first = _ledger(store=store)
    await first.reserve("worker-a", ConsumptionItem(key="iface", kind=ItemKind.INTERFACE, size=15))
    await first.reserve("worker-a", ConsumptionItem(key="cfg", kind=ItemKind.CONFIG, size=10))

    second = _ledger(store=store)
    restored = await second.restore()

    assert restored == 1
    assert second.consumption("worker-a") == 25
    assert [item.key for item in second.items("worker-a")] == ["iface", "cfg"]

    await second.reserve("worker-a", ConsumptionItem(key="file", kind=ItemKind.FILE, size=10))
    assert [item.key for item in second.items("worker-a")][-1] == "file"


@pytest.mark.asyncio
async def test_unknown_worker_is_rejected() -> None:
    ledger = _ledger()
    with pytest.raises(UnknownWorker):
        await ledger.reserve("ghost", ConsumptionItem(key="x", kind=ItemKind.FILE, size=1))


@pytest.mark.asyncio
async def test_rejections_are_counted() -> None:
    ledger = _ledger(capacities={"worker-metrics": 100})
    labels = {"worker": "worker-metrics"}
    before = REGISTRY.get_sample_value("sentra_budget_rejections_total", labels) or 0.0

    with pytest.raises(BudgetExceeded):
        await ledger.reserve("worker-metrics", ConsumptionItem(key="task:huge", kind=ItemKind.TASK, size=90))

    after = REGISTRY.get_sample_value("sentra_budget_rejections_total", labels)
    assert after == pytest.approx(before + 1.0)
