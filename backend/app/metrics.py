from __future__ import annotations

from typing import Optional

from prometheus_client import Counter, Gauge, Histogram

from orchestration.io_types import ExecutionState, GenerationOutcome

jobs_created = Counter("tryon_jobs_created_total", "Total try-on requests submitted", ["strategy"])
jobs_completed = Counter("tryon_jobs_completed_total", "Total try-on requests completed", ["strategy"])
jobs_failed = Counter("tryon_jobs_failed_total", "Total try-on requests failed", ["strategy"])
jobs_in_flight = Gauge("tryon_jobs_in_flight", "Requests currently being orchestrated")
provider_attempts = Counter(
    "tryon_provider_attempts_total", "Provider calls by outcome", ["provider", "status", "error_kind"]
)
provider_latency = Histogram(
    "tryon_provider_latency_seconds",
    "Provider call duration",
    ["provider"],
    buckets=(1, 2.5, 5, 10, 20, 35, 60, 90, 120, 180),
)
token_exchanges = Counter("tryon_token_exchanges_total", "Service account token exchanges", ["provider", "result"])


def record_execution(execution, outcome: Optional[GenerationOutcome]) -> None:
    """Orchestrator listener: one call per state transition or provider outcome."""
    strategy = execution.request.strategy.value
    if outcome is not None:
        provider_attempts.labels(outcome.provider, outcome.status.value, outcome.error_kind or "").inc()
        if outcome.duration_ms is not None:
            provider_latency.labels(outcome.provider).observe(outcome.duration_ms / 1000.0)
        return
    if execution.state is ExecutionState.PREPROCESSING:
        jobs_created.labels(strategy).inc()
        jobs_in_flight.inc()
    elif execution.state is ExecutionState.COMPLETED:
        jobs_completed.labels(strategy).inc()
        jobs_in_flight.dec()
    elif execution.state is ExecutionState.FAILED:
        jobs_failed.labels(strategy).inc()
        jobs_in_flight.dec()


def record_token_exchange(provider: str, ok: bool) -> None:
    token_exchanges.labels(provider, "ok" if ok else "error").inc()
