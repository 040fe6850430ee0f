from __future__ import annotations

from typing import Any


class SentraError(RuntimeError):
    """Base class for orchestration failures."""

    code = "SENTRA_ERROR"

    def __init__(self, message: str, *, code: str | None = None, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        if code is not None:
            self.code = code
        self.context: dict[str, Any] = dict(context or {})


class SentraValidationError(SentraError):
    """Raised for bad input. Never retried."""

    code = "VALIDATION_ERROR"


class InvalidTask(SentraValidationError):
    code = "INVALID_TASK"


class UnknownWorker(SentraValidationError):
    code = "UNKNOWN_WORKER"

    def __init__(self, worker_id: str) -> None:
        super().__init__(f"Worker not found: {worker_id}", context={"worker_id": worker_id})
        self.worker_id = worker_id


class NoEligibleWorker(SentraError):
    """Raised when no worker can take a task; the caller may resubmit later."""

    code = "NO_ELIGIBLE_WORKER"


class DispatcherStopped(SentraError):
    code = "DISPATCHER_STOPPED"


class BudgetExceeded(SentraError):
    """Raised when a reservation does not fit even after eviction."""

    code = "BUDGET_EXCEEDED"

    def __init__(self, attempted: float, limit: float, *, worker_id: str | None = None) -> None:
        super().__init__(
            f"Budget usage {attempted:.2f}% exceeds limit of {limit:.2f}%",
            context={"attempted": attempted, "limit": limit, "worker_id": worker_id},
        )
        self.attempted = attempted
        self.limit = limit
        self.worker_id = worker_id


class RequestNotFound(SentraError):
    code = "REQUEST_NOT_FOUND"

    def __init__(self, request_id: str) -> None:
        super().__init__(f"Approval request not found: {request_id}", context={"request_id": request_id})
        self.request_id = request_id


class RequestAlreadyResolved(SentraError):
    code = "REQUEST_ALREADY_RESOLVED"

    def __init__(self, request_id: str, status: str | None = None) -> None:
        super().__init__(
            f"Approval request already resolved: {request_id}",
            context={"request_id": request_id, "status": status},
        )
        self.request_id = request_id
        self.status = status


class PermissionDenied(SentraError):
    """Raised when an operation is denied or its approval expired."""

    code = "PERMISSION_DENIED"

    def __init__(self, command: str, reason: str | None = None, *, request_id: str | None = None) -> None:
        message = f"Permission denied for command: {command}"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, context={"command": command, "reason": reason, "request_id": request_id})
        self.command = command
        self.reason = reason
        self.request_id = request_id


class DependencyFailed(SentraError):
    code = "DEPENDENCY_FAILED"

    def __init__(self, task_id: str, dependency_id: str, detail: str | None = None) -> None:
        message = f"Dependency failed: {dependency_id}"
        if detail:
            message = f"{message} - {detail}"
        super().__init__(message, context={"task_id": task_id, "dependency_id": dependency_id})
        self.task_id = task_id
        self.dependency_id = dependency_id


class TaskExecutionError(SentraError):
    code = "TASK_EXECUTION_FAILED"

    def __init__(self, task_id: str, details: str) -> None:
        super().__init__(f"Task execution failed: {task_id}: {details}", context={"task_id": task_id, "details": details})
        self.task_id = task_id
        self.details = details


__all__ = [
    "BudgetExceeded",
    "DependencyFailed",
    "DispatcherStopped",
    "InvalidTask",
    "NoEligibleWorker",
    "PermissionDenied",
    "RequestAlreadyResolved",
    "RequestNotFound",
    "SentraError",
    "SentraValidationError",
    "TaskExecutionError",
    "UnknownWorker",
]
