from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

TASK_EVENTS_TOTAL = Counter(
    "sentra_task_events_total",
    "Task lifecycle transitions grouped by worker and outcome",
    labelnames=("worker", "event"),
)

TASK_DURATION_SECONDS = Histogram(
    "sentra_task_duration_seconds",
    "Wall-clock duration of executed tasks",
    labelnames=("worker", "status"),
    buckets=(0.1, 0.5, 1, 2, 5, 10, 30, 60, 120, 300, 600, float("inf")),
)

TASK_QUEUE_DEPTH = Gauge(
    "sentra_task_queue_depth",
    "Tasks waiting in the dispatcher queue",
)

WORKER_STATUS_GAUGE = Gauge(
    "sentra_worker_status",
    "1 when a worker is in the labelled status, 0 otherwise",
    labelnames=("worker", "status"),
)

BUDGET_USAGE_PERCENT = Gauge(
    "sentra_budget_usage_percent",
    "Per-worker budget usage as a percentage of capacity",
    labelnames=("worker",),
)

BUDGET_AGGREGATE_PERCENT = Gauge(
    "sentra_budget_aggregate_percent",
    "Mean budget usage across all workers",
)

BUDGET_EVICTIONS_TOTAL = Counter(
    "sentra_budget_evictions_total",
    "Consumption items evicted to make room for new reservations",
    labelnames=("worker", "kind"),
)

BUDGET_REJECTIONS_TOTAL = Counter(
    "sentra_budget_rejections_total",
    "Reservations rejected because they did not fit after eviction",
    labelnames=("worker",),
)

APPROVAL_REQUESTS_TOTAL = Counter(
    "sentra_approval_requests_total",
    "Approval requests by risk level and outcome",
    labelnames=("risk_level", "outcome"),
)

APPROVAL_WAIT_SECONDS = Histogram(
    "sentra_approval_wait_seconds",
    "Time between an approval request and its resolution",
    labelnames=("outcome",),
    buckets=(0.1, 1, 5, 15, 30, 60, 120, 300, 600, float("inf")),
)

APPROVALS_PENDING = Gauge(
    "sentra_approvals_pending",
    "Approval requests awaiting a response",
)

NOTIFICATION_DELIVERIES_TOTAL = Counter(
    "sentra_notification_deliveries_total",
    "Notification channel deliveries by outcome",
    labelnames=("channel", "outcome"),
)


def record_task_event(*, worker: str | None, event: str) -> None:
    TASK_EVENTS_TOTAL.labels(worker=worker or "unassigned", event=event).inc()


def observe_task_duration(*, worker: str, status: str, seconds: float) -> None:
    TASK_DURATION_SECONDS.labels(worker=worker, status=status).observe(max(0.0, seconds))


def set_queue_depth(depth: int) -> None:
    TASK_QUEUE_DEPTH.set(max(0, depth))


def set_worker_status(*, worker: str, status: str, statuses: tuple[str, ...]) -> None:
    for candidate in statuses:
        WORKER_STATUS_GAUGE.labels(worker=worker, status=candidate).set(1 if candidate == status else 0)


def record_budget_usage(*, worker: str, percent: float, aggregate: float) -> None:
    BUDGET_USAGE_PERCENT.labels(worker=worker).set(percent)
    BUDGET_AGGREGATE_PERCENT.set(aggregate)


def increment_budget_eviction(*, worker: str, kind: str) -> None:
    BUDGET_EVICTIONS_TOTAL.labels(worker=worker, kind=kind).inc()


def increment_budget_rejection(*, worker: str) -> None:
    BUDGET_REJECTIONS_TOTAL.labels(worker=worker).inc()


def record_approval_outcome(*, risk_level: str, outcome: str, wait_seconds: float | None = None) -> None:
    APPROVAL_REQUESTS_TOTAL.labels(risk_level=risk_level, outcome=outcome).inc()
    if wait_seconds is not None:
        APPROVAL_WAIT_SECONDS.labels(outcome=outcome).observe(max(0.0, wait_seconds))


def set_pending_approvals(count: int) -> None:
    APPROVALS_PENDING.set(max(0, count))


def record_notification_delivery(*, channel: str, outcome: str) -> None:
    NOTIFICATION_DELIVERIES_TOTAL.labels(channel=channel, outcome=outcome).inc()
