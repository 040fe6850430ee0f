from __future__ import annotations

import asyncio
import secrets
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable

from ..core.config import ApprovalSettings
from ..core.errors import PermissionDenied, RequestAlreadyResolved, RequestNotFound
from ..core.logging import get_logger
from ..core.metrics import record_approval_outcome, set_pending_approvals
from .enums import ApprovalStatus, EventType, RiskLevel, Urgency
from .events import EventBus
from .models import ApprovalRequest, ApprovalResponse, utcnow
from .risk import RiskAssessment, RiskAssessor
from .store import StateStore

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..services.notifications import NotificationService

logger = get_logger(name=__name__)

AUTO_APPROVAL_REASON = "Auto-approved: {level} risk operation"
TIMEOUT_REASON = "Request timeout"

_URGENCY_BY_RISK = {
    RiskLevel.LOW: Urgency.NORMAL,
    RiskLevel.MEDIUM: Urgency.NORMAL,
    RiskLevel.HIGH: Urgency.HIGH,
    RiskLevel.CRITICAL: Urgency.EMERGENCY,
}


def generate_request_id() -> str:
    return secrets.token_hex(8)


@dataclass(slots=True)
class _PendingEntry:
    request: ApprovalRequest
    future: asyncio.Future[ApprovalResponse]
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    timer: asyncio.Task[None] | None = None


class ApprovalTicket:
    """Handle returned by :meth:`ApprovalGate.submit_request`.

    ``wait()`` resolves once the request leaves ``pending``. Auto-approved
    operations get a ticket that is already resolved and carries no request.
    """

    def __init__(
        self,
        *,
        assessment: RiskAssessment,
        future: asyncio.Future[ApprovalResponse],
        request: ApprovalRequest | None = None,
    ) -> None:
        self.assessment = assessment
        self.request = request
        self._future = future

    @property
    def request_id(self) -> str | None:
        return self.request.request_id if self.request is not None else None

    @property
    def auto_approved(self) -> bool:
        return self.request is None

    def done(self) -> bool:
        return self._future.done()

    async def wait(self) -> ApprovalResponse:
        return await asyncio.shield(self._future)


class ApprovalGate:
    """State machine for approval requests keyed by request id.

    The gate is the only writer of request status. Every transition out of
    ``pending`` happens under the request's lock, so a request resolves exactly
    once whether the winner is a responder, a cancellation or the expiry timer.
    """

    def __init__(
        self,
        *,
        settings: ApprovalSettings,
        assessor: RiskAssessor | None = None,
        notifier: "NotificationService | None" = None,
        store: StateStore | None = None,
        events: EventBus | None = None,
        id_factory: Callable[[], str] = generate_request_id,
    ) -> None:
        self._settings = settings
        self._assessor = assessor or RiskAssessor()
        self._notifier = notifier
        self._store = store
        self._events = events
        self._id_factory = id_factory
        self._pending: dict[str, _PendingEntry] = {}
        self._history: OrderedDict[str, ApprovalRequest] = OrderedDict()
        self._background: set[asyncio.Task[Any]] = set()

    @property
    def assessor(self) -> RiskAssessor:
        return self._assessor

    def assess(self, command: str, context: str = "") -> RiskAssessment:
        return self._assessor.assess(command, context)

    def timeout_for(self, level: RiskLevel) -> int:
        return {
            RiskLevel.LOW: self._settings.timeout_low_ms,
            RiskLevel.MEDIUM: self._settings.timeout_medium_ms,
            RiskLevel.HIGH: self._settings.timeout_high_ms,
            RiskLevel.CRITICAL: self._settings.timeout_critical_ms,
        }[level]

    async def submit_request(
        self,
        worker_id: str,
        command: str,
        context: str = "",
        *,
        timeout_ms: int | None = None,
        task_id: str | None = None,
    ) -> ApprovalTicket:
        loop = asyncio.get_running_loop()
        assessment = self._assessor.assess(command, context)
        if not self._assessor.requires_approval(command, assessment.level):
            reason = AUTO_APPROVAL_REASON.format(level=assessment.level.value)
            response = ApprovalResponse(approved=True, responded_by="system", reason=reason)
            future: asyncio.Future[ApprovalResponse] = loop.create_future()
            future.set_result(response)
            record_approval_outcome(risk_level=assessment.level.value, outcome="auto_approved")
            logger.info(
                "approval_auto_granted",
                worker=worker_id,
                task_id=task_id,
                command=command[: self._settings.command_preview_chars],
                risk_level=assessment.level.value,
            )
            return ApprovalTicket(assessment=assessment, future=future)

        request = ApprovalRequest(
            request_id=self._id_factory(),
            worker_id=worker_id,
            command=command,
            context=context,
            risk_level=assessment.level,
            risk_score=assessment.score,
            timeout_ms=timeout_ms if timeout_ms is not None else self.timeout_for(assessment.level),
            factors=tuple(assessment.factors),
            task_id=task_id,
        )
        entry = _PendingEntry(request=request, future=loop.create_future())
        self._pending[request.request_id] = entry
        set_pending_approvals(len(self._pending))
        if self._store is not None:
            await self._store.save_request(request.request_id, request.to_dict())
        entry.timer = asyncio.create_task(self._expire_after(request.request_id, request.timeout_ms / 1000.0))
        logger.info(
            "approval_requested",
            request_id=request.request_id,
            worker=worker_id,
            task_id=task_id,
            risk_level=request.risk_level.value,
            risk_score=request.risk_score,
            timeout_ms=request.timeout_ms,
        )
        if self._events is not None:
            await self._events.publish(
                EventType.APPROVAL_REQUESTED,
                request_id=request.request_id,
                worker_id=worker_id,
                task_id=task_id,
                risk_level=request.risk_level.value,
                risk_score=request.risk_score,
                factors=list(request.factors),
                timeout_ms=request.timeout_ms,
                recommendation=assessment.recommendation,
            )
        self._spawn(self._notify_requested(request))
        return ApprovalTicket(assessment=assessment, future=entry.future, request=request)

    async def request(
        self,
        worker_id: str,
        command: str,
        context: str = "",
        *,
        timeout_ms: int | None = None,
        task_id: str | None = None,
    ) -> ApprovalResponse:
        """Submit and wait; raises :class:`PermissionDenied` unless approved."""
        ticket = await self.submit_request(worker_id, command, context, timeout_ms=timeout_ms, task_id=task_id)
        response = await ticket.wait()
        if not response.approved:
            raise PermissionDenied(command, response.reason, request_id=ticket.request_id)
        return response

    async def respond(
        self,
        request_id: str,
        approved: bool,
        reason: str | None = None,
        responder: str = "user",
    ) -> ApprovalRequest:
        entry = self._lookup(request_id)
        status = ApprovalStatus.APPROVED if approved else ApprovalStatus.DENIED
        response = ApprovalResponse(approved=approved, responded_by=responder, reason=reason)
        request = await self._resolve(entry, status, response)
        if self._settings.notify_on_resolution:
            self._spawn(self._notify_resolved(request))
        return request

    async def cancel(self, request_id: str, reason: str = "Cancelled by user") -> ApprovalRequest:
        entry = self._lookup(request_id)
        response = ApprovalResponse(approved=False, responded_by="system", reason=reason)
        return await self._resolve(entry, ApprovalStatus.EXPIRED, response)

    async def cancel_all(self, reason: str) -> int:
        cancelled = 0
        for request_id in list(self._pending):
            try:
                await self.cancel(request_id, reason)
            except (RequestNotFound, RequestAlreadyResolved):
                continue
            cancelled += 1
        return cancelled

    def pending(self) -> list[ApprovalRequest]:
        return [entry.request for entry in self._pending.values()]

    def get(self, request_id: str) -> ApprovalRequest:
        entry = self._pending.get(request_id)
        if entry is not None:
            return entry.request
        request = self._history.get(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    def history(self, limit: int = 100) -> list[ApprovalRequest]:
        ordered = sorted(self._history.values(), key=lambda request: request.created_at, reverse=True)
        return ordered[:limit]

    async def restore(self) -> int:
        """Re-arm persisted pending requests; those past their deadline expire immediately."""
        if self._store is None:
            return 0
        loop = asyncio.get_running_loop()
        snapshots = await self._store.load_requests()
        restored = 0
        for request_id, snapshot in snapshots.items():
            try:
                request = ApprovalRequest.from_dict(snapshot)
            except (KeyError, ValueError, TypeError) as exc:
                logger.warning("approval_restore_failed", request_id=request_id, error=str(exc))
                continue
            if request.status.is_terminal:
                await self._store.delete_request(request.request_id)
                continue
            if request.request_id in self._pending:
                continue
            entry = _PendingEntry(request=request, future=loop.create_future())
            self._pending[request.request_id] = entry
            restored += 1
            remaining = (request.deadline - utcnow()).total_seconds()
            if remaining <= 0:
                await self._resolve(
                    entry,
                    ApprovalStatus.EXPIRED,
                    ApprovalResponse(approved=False, responded_by="system", reason=TIMEOUT_REASON),
                )
                continue
            entry.timer = asyncio.create_task(self._expire_after(request.request_id, remaining))
        set_pending_approvals(len(self._pending))
        logger.info("approval_state_restored", restored=restored, pending=len(self._pending))
        return restored

    async def flush(self) -> None:
        """Wait for in-flight notification deliveries."""
        while self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    async def aclose(self) -> None:
        tasks: list[asyncio.Task[Any]] = [entry.timer for entry in self._pending.values() if entry.timer is not None]
        tasks.extend(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

    def _lookup(self, request_id: str) -> _PendingEntry:
        entry = self._pending.get(request_id)
        if entry is not None:
            return entry
        resolved = self._history.get(request_id)
        if resolved is not None:
            raise RequestAlreadyResolved(request_id, resolved.status.value)
        raise RequestNotFound(request_id)

    async def _resolve(
        self,
        entry: _PendingEntry,
        status: ApprovalStatus,
        response: ApprovalResponse,
    ) -> ApprovalRequest:
        request = entry.request
        async with entry.lock:
            if request.status.is_terminal:
                raise RequestAlreadyResolved(request.request_id, request.status.value)
            request.status = status
            request.response = response
            self._pending.pop(request.request_id, None)
            self._history[request.request_id] = request
            while len(self._history) > self._settings.history_limit:
                self._history.popitem(last=False)
            if entry.timer is not None and entry.timer is not asyncio.current_task():
                entry.timer.cancel()
            if not entry.future.done():
                entry.future.set_result(response)
            set_pending_approvals(len(self._pending))
            if self._store is not None:
                await self._store.delete_request(request.request_id)

        wait_seconds = (response.responded_at - request.created_at).total_seconds()
        record_approval_outcome(risk_level=request.risk_level.value, outcome=status.value, wait_seconds=wait_seconds)
        logger.info(
            "approval_resolved",
            request_id=request.request_id,
            worker=request.worker_id,
            task_id=request.task_id,
            status=status.value,
            responded_by=response.responded_by,
            reason=response.reason,
        )
        if self._events is not None:
            await self._events.publish(
                EventType.APPROVAL_RESOLVED,
                request_id=request.request_id,
                worker_id=request.worker_id,
                task_id=request.task_id,
                status=status.value,
                approved=response.approved,
                responded_by=response.responded_by,
                reason=response.reason,
            )
        return request

    async def _expire_after(self, request_id: str, delay_seconds: float) -> None:
        await asyncio.sleep(max(0.0, delay_seconds))
        entry = self._pending.get(request_id)
        if entry is None:
            return
        try:
            await self._resolve(
                entry,
                ApprovalStatus.EXPIRED,
                ApprovalResponse(approved=False, responded_by="system", reason=TIMEOUT_REASON),
            )
        except RequestAlreadyResolved:
            logger.debug("approval_timer_lost_race", request_id=request_id)

    def _spawn(self, coroutine: Any) -> None:
        if self._notifier is None:
            coroutine.close()
            return
        task = asyncio.create_task(coroutine)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def _notify_requested(self, request: ApprovalRequest) -> None:
        if self._notifier is None:
            return
        preview_chars = self._settings.command_preview_chars
        command = request.command
        if len(command) > preview_chars:
            command = f"{command[:preview_chars]}..."
        level = request.risk_level.value.upper()
        body = "\n".join(
            [
                f"Agent: {request.worker_id}",
                f"Risk: {level}",
                f"Command: {command}",
                "",
                "Reply with:",
                f"APPROVE {request.request_id} - to approve",
                f"DENY {request.request_id} - to deny",
                "",
                f"Expires in {round(request.timeout_ms / 60000)} minutes",
            ]
        )
        try:
            await self._notifier.notify(
                f"Sentra Permission Request ({level})",
                body,
                _URGENCY_BY_RISK[request.risk_level],
            )
        except Exception as exc:  # pragma: no cover - notifier already isolates channel failures
            logger.warning("approval_notification_failed", request_id=request.request_id, error=str(exc))

    async def _notify_resolved(self, request: ApprovalRequest) -> None:
        if self._notifier is None or request.response is None:
            return
        status = "APPROVED" if request.response.approved else "DENIED"
        body = "\n".join(
            [
                f"Request {request.request_id} has been {status.lower()}",
                f"Agent: {request.worker_id}",
                f"Reason: {request.response.reason or 'No reason provided'}",
            ]
        )
        try:
            await self._notifier.notify(
                f"Sentra Permission {status}",
                body,
                Urgency.NORMAL if request.response.approved else Urgency.HIGH,
            )
        except Exception as exc:  # pragma: no cover - notifier already isolates channel failures
            logger.warning("approval_confirmation_failed", request_id=request.request_id, error=str(exc))


__all__ = [
    "AUTO_APPROVAL_REASON",
    "ApprovalGate",
    "ApprovalTicket",
    "TIMEOUT_REASON",
    "generate_request_id",
]
