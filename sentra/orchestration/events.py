from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Iterable

from pydantic import BaseModel, Field

from ..core.logging import get_logger
from .enums import EventType

logger = get_logger(name=__name__)


class SentraEvent(BaseModel):
    type: EventType
    payload: dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def to_payload(self) -> dict[str, Any]:
        return {
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }


Subscriber = Callable[[SentraEvent], Awaitable[None]]


class EventBus:
    """Fans typed events out to async subscribers and keeps a bounded history."""

    def __init__(self, *, history_limit: int = 500) -> None:
        self._subscribers: list[tuple[Subscriber, frozenset[EventType] | None]] = []
        self._history: deque[SentraEvent] = deque(maxlen=history_limit)

    def subscribe(self, subscriber: Subscriber, *, types: Iterable[EventType] | None = None) -> None:
        selected = frozenset(types) if types is not None else None
        self._subscribers.append((subscriber, selected))

    def unsubscribe(self, subscriber: Subscriber) -> None:
        self._subscribers = [entry for entry in self._subscribers if entry[0] is not subscriber]

    async def publish(self, event_type: EventType, **payload: Any) -> SentraEvent:
        event = SentraEvent(type=event_type, payload=payload)
        self._history.append(event)
        targets = [subscriber for subscriber, types in self._subscribers if types is None or event_type in types]
        if not targets:
            return event
        results = await asyncio.gather(*(subscriber(event) for subscriber in targets), return_exceptions=True)
        for subscriber, result in zip(targets, results):
            if isinstance(result, Exception):
                logger.warning(
                    "event_subscriber_failed",
                    subscriber=getattr(subscriber, "__qualname__", repr(subscriber)),
                    event_type=event_type.value,
                    error=str(result),
                )
        return event

    def history(self, *, limit: int | None = None, types: Iterable[EventType] | None = None) -> list[SentraEvent]:
        selected = frozenset(types) if types is not None else None
        events = [event for event in self._history if selected is None or event.type in selected]
        if limit is not None:
            events = events[-limit:]
        return events


async def log_event(event: SentraEvent) -> None:
    logger.info("sentra_event", event_type=event.type.value, payload=event.payload)


__all__ = ["EventBus", "SentraEvent", "Subscriber", "log_event"]
