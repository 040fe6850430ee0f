from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

from .enums import ApprovalStatus, ItemKind, Persona, Priority, RiskLevel, TaskStatus, WorkerStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_datetime(value: Any) -> datetime | None:
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value))


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


@dataclass(slots=True)
class Worker:
    worker_id: str
    persona: Persona
    name: str
    capabilities: tuple[str, ...]
    capacity: int
    status: WorkerStatus = WorkerStatus.IDLE
    current_task_id: str | None = None

    @property
    def selectable(self) -> bool:
        return self.status is not WorkerStatus.ERRORED

    def to_dict(self) -> dict[str, Any]:
        return {
            "worker_id": self.worker_id,
            "persona": self.persona.value,
            "name": self.name,
            "capabilities": list(self.capabilities),
            "capacity": self.capacity,
            "status": self.status.value,
            "current_task_id": self.current_task_id,
        }


@dataclass(slots=True)
class Task:
    task_id: str
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    dependencies: tuple[str, ...] = ()
    resource_requirement: int = 0
    acceptance_criteria: tuple[str, ...] = ()
    command: str | None = None
    context: str = ""
    assigned_worker: str | None = None
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    result: dict[str, Any] | None = None
    approval_request_id: str | None = None

    @property
    def routing_text(self) -> str:
        return " ".join([self.title, self.description, *self.acceptance_criteria]).lower()

    def touch(self) -> None:
        self.updated_at = utcnow()

    @property
    def duration_seconds(self) -> float | None:
        if self.started_at is None or self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "title": self.title,
            "description": self.description,
            "priority": self.priority.value,
            "dependencies": list(self.dependencies),
            "resource_requirement": self.resource_requirement,
            "acceptance_criteria": list(self.acceptance_criteria),
            "command": self.command,
            "context": self.context,
            "assigned_worker": self.assigned_worker,
            "status": self.status.value,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "error": self.error,
            "result": self.result,
            "approval_request_id": self.approval_request_id,
        }


@dataclass(slots=True)
class ConsumptionItem:
    """A unit of budget consumption held in a worker's resource window.

    ``size`` may be left as ``None`` on reservation; the ledger then derives it
    from ``content`` (or a per-kind default) and stores the computed value.
    """

    key: str
    kind: ItemKind
    size: int | None = None
    content: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    sequence: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "kind": self.kind.value,
            "size": self.size,
            "created_at": _iso(self.created_at),
            "sequence": self.sequence,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ConsumptionItem":
        return cls(
            key=str(payload["key"]),
            kind=ItemKind(payload["kind"]),
            size=int(payload.get("size") or 0),
            created_at=_parse_datetime(payload.get("created_at")) or utcnow(),
            sequence=int(payload.get("sequence") or 0),
        )


@dataclass(slots=True)
class ApprovalResponse:
    approved: bool
    responded_by: str
    responded_at: datetime = field(default_factory=utcnow)
    reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "approved": self.approved,
            "responded_by": self.responded_by,
            "responded_at": _iso(self.responded_at),
            "reason": self.reason,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ApprovalResponse":
        return cls(
            approved=bool(payload["approved"]),
            responded_by=str(payload.get("responded_by") or "system"),
            responded_at=_parse_datetime(payload.get("responded_at")) or utcnow(),
            reason=payload.get("reason"),
        )


@dataclass(slots=True)
class ApprovalRequest:
    request_id: str
    worker_id: str
    command: str
    context: str
    risk_level: RiskLevel
    risk_score: int
    timeout_ms: int
    factors: tuple[str, ...] = ()
    task_id: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    status: ApprovalStatus = ApprovalStatus.PENDING
    response: ApprovalResponse | None = None

    @property
    def deadline(self) -> datetime:
        return self.created_at + timedelta(milliseconds=self.timeout_ms)

    def to_dict(self) -> dict[str, Any]:
        return {
            "request_id": self.request_id,
            "worker_id": self.worker_id,
            "command": self.command,
            "context": self.context,
            "risk_level": self.risk_level.value,
            "risk_score": self.risk_score,
            "timeout_ms": self.timeout_ms,
            "factors": list(self.factors),
            "task_id": self.task_id,
            "created_at": _iso(self.created_at),
            "deadline": _iso(self.deadline),
            "status": self.status.value,
            "response": self.response.to_dict() if self.response is not None else None,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> "ApprovalRequest":
        response_payload = payload.get("response")
        return cls(
            request_id=str(payload["request_id"]),
            worker_id=str(payload["worker_id"]),
            command=str(payload["command"]),
            context=str(payload.get("context") or ""),
            risk_level=RiskLevel(payload["risk_level"]),
            risk_score=int(payload.get("risk_score") or 0),
            timeout_ms=int(payload["timeout_ms"]),
            factors=tuple(payload.get("factors") or ()),
            task_id=payload.get("task_id"),
            created_at=_parse_datetime(payload.get("created_at")) or utcnow(),
            status=ApprovalStatus(payload.get("status") or ApprovalStatus.PENDING.value),
            response=ApprovalResponse.from_dict(response_payload) if response_payload else None,
        )


__all__ = [
    "ApprovalRequest",
    "ApprovalResponse",
    "ConsumptionItem",
    "Task",
    "Worker",
    "utcnow",
]
