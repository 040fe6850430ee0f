from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field

from ..orchestration.enums import ApprovalStatus, RiskLevel
from ..orchestration.models import ApprovalRequest, ApprovalResponse


class ApprovalResponseModel(BaseModel):
    approved: bool
    responded_by: str
    responded_at: datetime
    reason: str | None = None

    @classmethod
    def from_domain(cls, response: ApprovalResponse) -> "ApprovalResponseModel":
        return cls(
            approved=response.approved,
            responded_by=response.responded_by,
            responded_at=response.responded_at,
            reason=response.reason,
        )


class ApprovalRequestModel(BaseModel):
    request_id: str
    worker_id: str
    task_id: str | None
    command: str
    context: str
    risk_level: RiskLevel
    risk_score: int
    factors: list[str]
    timeout_ms: int
    created_at: datetime
    deadline: datetime
    status: ApprovalStatus
    response: ApprovalResponseModel | None = None

    @classmethod
    def from_domain(cls, request: ApprovalRequest) -> "ApprovalRequestModel":
        return cls(
            request_id=request.request_id,
            worker_id=request.worker_id,
            task_id=request.task_id,
            command=request.command,
            context=request.context,
            risk_level=request.risk_level,
            risk_score=request.risk_score,
            factors=list(request.factors),
            timeout_ms=request.timeout_ms,
            created_at=request.created_at,
            deadline=request.deadline,
            status=request.status,
            response=ApprovalResponseModel.from_domain(request.response) if request.response is not None else None,
        )


class ApprovalDecision(BaseModel):
    approved: bool
    reason: str | None = Field(default=None)
    responder: str = Field(default="user", min_length=1)


class ApprovalCancellation(BaseModel):
    reason: str = Field(default="Cancelled by user", min_length=1)
