from __future__ import annotations

from enum import Enum


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in-progress"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in {TaskStatus.COMPLETED, TaskStatus.FAILED}


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def rank(self) -> int:
        return _PRIORITY_RANK[self]


_PRIORITY_RANK = {
    Priority.LOW: 1,
    Priority.MEDIUM: 2,
    Priority.HIGH: 3,
    Priority.CRITICAL: 4,
}


class WorkerStatus(str, Enum):
    IDLE = "idle"
    BUSY = "busy"
    BLOCKED = "blocked"
    ERRORED = "errored"


class Persona(str, Enum):
    REQUIREMENTS_ANALYST = "requirements-analyst"
    UI_UX_DESIGNER = "ui-ux-designer"
    FRONTEND_DEVELOPER = "frontend-developer"
    BACKEND_ARCHITECT = "backend-architect"
    QA_ENGINEER = "qa-engineer"
    SECURITY_ANALYST = "security-analyst"
    TECHNICAL_WRITER = "technical-writer"
    DEVOPS_ENGINEER = "devops-engineer"


class ItemKind(str, Enum):
    CONFIG = "config"
    DEPENDENCY = "dependency"
    FILE = "file"
    INTERFACE = "interface"
    TASK = "task"

    @property
    def eviction_priority(self) -> int | None:
        """Lower values are evicted first; ``None`` marks items that are never evicted."""
        return _EVICTION_PRIORITY.get(self)


_EVICTION_PRIORITY = {
    ItemKind.CONFIG: 1,
    ItemKind.DEPENDENCY: 2,
    ItemKind.FILE: 3,
    ItemKind.INTERFACE: 4,
}


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"

    @property
    def score(self) -> int:
        return _RISK_SCORE[self]


_RISK_SCORE = {
    RiskLevel.LOW: 10,
    RiskLevel.MEDIUM: 30,
    RiskLevel.HIGH: 60,
    RiskLevel.CRITICAL: 100,
}


class ApprovalStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DENIED = "denied"
    EXPIRED = "expired"

    @property
    def is_terminal(self) -> bool:
        return self is not ApprovalStatus.PENDING


class Urgency(str, Enum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    EMERGENCY = "emergency"


class EventType(str, Enum):
    TASK_QUEUED = "task.queued"
    TASK_ASSIGNED = "task.assigned"
    TASK_STARTED = "task.started"
    TASK_COMPLETED = "task.completed"
    TASK_FAILED = "task.failed"
    WORKER_STATUS_CHANGED = "worker.status_changed"
    BUDGET_WARNING = "budget.warning"
    BUDGET_CRITICAL = "budget.critical"
    BUDGET_EVICTED = "budget.evicted"
    APPROVAL_REQUESTED = "approval.requested"
    APPROVAL_RESOLVED = "approval.resolved"
    EMERGENCY_STOPPED = "orchestrator.emergency_stopped"


__all__ = [
    "ApprovalStatus",
    "EventType",
    "ItemKind",
    "Persona",
    "Priority",
    "RiskLevel",
    "TaskStatus",
    "Urgency",
    "WorkerStatus",
]
