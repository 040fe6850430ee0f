from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query, status

from ..core.errors import (
    DispatcherStopped,
    InvalidTask,
    NoEligibleWorker,
    RequestAlreadyResolved,
    RequestNotFound,
    SentraError,
)
from ..core.logging import get_logger
from ..dependencies import get_runtime
from ..orchestration.enums import EventType
from ..orchestration.runtime import SentraRuntime
from ..schemas.approvals import ApprovalCancellation, ApprovalDecision, ApprovalRequestModel
from ..schemas.tasks import EventModel, TaskAccepted, TaskModel, TaskSubmission

logger = get_logger(name=__name__)

router = APIRouter()

_STATUS_BY_ERROR: tuple[tuple[type[SentraError], int], ...] = (
    (InvalidTask, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (NoEligibleWorker, status.HTTP_409_CONFLICT),
    (DispatcherStopped, status.HTTP_409_CONFLICT),
    (RequestNotFound, status.HTTP_404_NOT_FOUND),
    (RequestAlreadyResolved, status.HTTP_409_CONFLICT),
)


def _to_http(exc: SentraError) -> HTTPException:
    for error_type, status_code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return HTTPException(status_code=status_code, detail={"code": exc.code, "message": str(exc)})
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"code": exc.code, "message": str(exc)},
    )


@router.get("/health", tags=["health"])
async def health() -> dict[str, str]:
    return {"status": "ok"}


@router.post("/tasks", response_model=TaskAccepted, status_code=status.HTTP_202_ACCEPTED, tags=["tasks"])
async def submit_task(
    payload: TaskSubmission,
    runtime: SentraRuntime = Depends(get_runtime),
) -> TaskAccepted:
    try:
        task = await runtime.submit_task(payload)
    except SentraError as exc:
        logger.warning("task_submission_rejected", task_id=payload.id, code=exc.code, error=str(exc))
        raise _to_http(exc) from exc
    return TaskAccepted(task_id=task.task_id, assigned_worker=task.assigned_worker, status=task.status)


@router.get("/tasks", response_model=list[TaskModel], tags=["tasks"])
async def list_tasks(runtime: SentraRuntime = Depends(get_runtime)) -> list[TaskModel]:
    return [TaskModel.from_domain(task) for task in runtime.dispatcher.list_tasks()]


@router.get("/tasks/{task_id}", response_model=TaskModel, tags=["tasks"])
async def get_task(task_id: str, runtime: SentraRuntime = Depends(get_runtime)) -> TaskModel:
    task = runtime.dispatcher.get_task(task_id)
    if task is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Task not found")
    return TaskModel.from_domain(task)


@router.get("/events", response_model=list[EventModel], tags=["events"])
async def list_events(
    limit: int = Query(100, ge=1, le=1000),
    event_type: list[EventType] | None = Query(default=None, alias="type"),
    runtime: SentraRuntime = Depends(get_runtime),
) -> list[EventModel]:
    events = runtime.events.history(limit=limit, types=event_type)
    return [EventModel(type=event.type.value, timestamp=event.timestamp, payload=event.payload) for event in events]


@router.get("/approvals", response_model=list[ApprovalRequestModel], tags=["approvals"])
async def list_pending_approvals(runtime: SentraRuntime = Depends(get_runtime)) -> list[ApprovalRequestModel]:
    return [ApprovalRequestModel.from_domain(request) for request in runtime.gate.pending()]


@router.get("/approvals/history", response_model=list[ApprovalRequestModel], tags=["approvals"])
async def approval_history(
    limit: int = Query(100, ge=1, le=1000),
    runtime: SentraRuntime = Depends(get_runtime),
) -> list[ApprovalRequestModel]:
    return [ApprovalRequestModel.from_domain(request) for request in runtime.gate.history(limit)]


@router.get("/approvals/{request_id}", response_model=ApprovalRequestModel, tags=["approvals"])
async def get_approval(request_id: str, runtime: SentraRuntime = Depends(get_runtime)) -> ApprovalRequestModel:
    try:
        request = runtime.gate.get(request_id)
    except SentraError as exc:
        raise _to_http(exc) from exc
    return ApprovalRequestModel.from_domain(request)


@router.post("/approvals/{request_id}/respond", response_model=ApprovalRequestModel, tags=["approvals"])
async def respond_to_approval(
    request_id: str,
    payload: ApprovalDecision,
    runtime: SentraRuntime = Depends(get_runtime),
) -> ApprovalRequestModel:
    try:
        request = await runtime.respond(request_id, payload.approved, payload.reason, payload.responder)
    except SentraError as exc:
        logger.info("approval_response_rejected", request_id=request_id, code=exc.code)
        raise _to_http(exc) from exc
    return ApprovalRequestModel.from_domain(request)


@router.post("/approvals/{request_id}/cancel", response_model=ApprovalRequestModel, tags=["approvals"])
async def cancel_approval(
    request_id: str,
    payload: ApprovalCancellation | None = None,
    runtime: SentraRuntime = Depends(get_runtime),
) -> ApprovalRequestModel:
    reason = payload.reason if payload is not None else "Cancelled by user"
    try:
        request = await runtime.cancel_approval(request_id, reason)
    except SentraError as exc:
        raise _to_http(exc) from exc
    return ApprovalRequestModel.from_domain(request)


@router.post("/emergency-stop", tags=["control"])
async def emergency_stop(runtime: SentraRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return await runtime.emergency_stop()


@router.get("/status", tags=["control"])
async def runtime_status(runtime: SentraRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return runtime.status()


@router.get("/ledger", tags=["control"])
async def ledger_status(runtime: SentraRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return runtime.ledger.status()


@router.get("/metrics/summary", tags=["control"])
async def dispatch_metrics(runtime: SentraRuntime = Depends(get_runtime)) -> dict[str, Any]:
    return runtime.dispatcher.metrics()
