from __future__ import annotations

from datetime import datetime
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from ..orchestration.enums import Priority, TaskStatus
from ..orchestration.models import Task


class TaskSubmission(BaseModel):
    id: str = Field(default_factory=lambda: uuid4().hex)
    title: str
    description: str = ""
    priority: Priority = Priority.MEDIUM
    dependencies: list[str] = Field(default_factory=list)
    resource_requirement: int = Field(0, description="Budget units reserved on the worker for the task itself.")
    acceptance_criteria: list[str] = Field(default_factory=list)
    command: str | None = Field(default=None, description="Operation routed through the approval gate before execution.")
    context: str = ""
    assigned_worker: str | None = None

    def to_task(self) -> Task:
        return Task(
            task_id=self.id,
            title=self.title,
            description=self.description,
            priority=self.priority,
            dependencies=tuple(dict.fromkeys(self.dependencies)),
            resource_requirement=self.resource_requirement,
            acceptance_criteria=tuple(self.acceptance_criteria),
            command=self.command or None,
            context=self.context,
            assigned_worker=self.assigned_worker,
        )


class TaskAccepted(BaseModel):
    task_id: str
    assigned_worker: str | None
    status: TaskStatus


class TaskModel(BaseModel):
    task_id: str
    title: str
    description: str
    priority: Priority
    status: TaskStatus
    dependencies: list[str]
    resource_requirement: int
    acceptance_criteria: list[str]
    command: str | None
    assigned_worker: str | None
    approval_request_id: str | None
    error: str | None
    result: dict[str, Any] | None
    created_at: datetime
    updated_at: datetime
    started_at: datetime | None
    completed_at: datetime | None

    @classmethod
    def from_domain(cls, task: Task) -> "TaskModel":
        return cls(
            task_id=task.task_id,
            title=task.title,
            description=task.description,
            priority=task.priority,
            status=task.status,
            dependencies=list(task.dependencies),
            resource_requirement=task.resource_requirement,
            acceptance_criteria=list(task.acceptance_criteria),
            command=task.command,
            assigned_worker=task.assigned_worker,
            approval_request_id=task.approval_request_id,
            error=task.error,
            result=task.result,
            created_at=task.created_at,
            updated_at=task.updated_at,
            started_at=task.started_at,
            completed_at=task.completed_at,
        )


class EventModel(BaseModel):
    type: str
    timestamp: datetime
    payload: dict[str, Any] = Field(default_factory=dict)
