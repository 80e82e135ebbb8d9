from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, start_http_server

completion_requests_total = Counter(
    "ai_completion_requests_total",
    "Completion calls by model and final status",
    labelnames=["model", "status"],
)

completion_retries_total = Counter(
    "ai_completion_retries_total",
    "Completion retries scheduled, by upstream failure kind",
    labelnames=["kind"],
)

completion_latency_seconds = Histogram(
    "ai_completion_latency_seconds",
    "Latency of a single completion call including retries",
    buckets=[0.1, 0.3, 0.5, 1, 2, 5, 10, 30, 60, 120],
    labelnames=["model"],
)

completion_tokens_total = Counter(
    "ai_completion_tokens_total",
    "Tokens consumed by successful completions",
    labelnames=["model", "kind"],
)

rate_limit_decisions_total = Counter(
    "ai_rate_limit_decisions_total",
    "Rate limiter decisions",
    labelnames=["backend", "outcome"],
)

queue_pending_tasks = Gauge(
    "ai_queue_pending_tasks",
    "Tasks waiting in the AI task queue",
)

queue_tasks_total = Counter(
    "ai_queue_tasks_total",
    "Tasks reaching a terminal state",
    labelnames=["type", "state"],
)

enrichment_steps_total = Counter(
    "ai_enrichment_steps_total",
    "Outcomes of enrich_new_bookmark sub-operations",
    labelnames=["operation", "outcome"],
)


def maybe_start_metrics(*, enable: bool, bind: str, port: int) -> None:
    if not enable:
        return
    start_http_server(port, addr=bind)
