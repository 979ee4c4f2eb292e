"""Prometheus metrics for the AI gateway."""

from prometheus_client import Counter, Histogram, generate_latest

GATEWAY_ATTEMPTS = Counter(
    "ai_gateway_attempts_total",
    "Provider attempts made by the AI gateway",
    ["provider", "operation", "outcome"],
)

GATEWAY_ATTEMPT_DURATION = Histogram(
    "ai_gateway_attempt_duration_seconds",
    "Duration of a single provider attempt in seconds",
    ["provider", "operation"],
    buckets=[0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30, 60, 120],
)

GATEWAY_FAILURES = Counter(
    "ai_gateway_failures_total",
    "Logical requests that exhausted every provider",
    ["operation"],
)

PARSE_RETRIES = Counter(
    "ai_gateway_parse_retries_total",
    "Structured-output requests re-issued after unparseable model output",
    ["operation"],
)


def record_attempt(provider: str, operation: str, outcome: str, duration_s: float) -> None:
    GATEWAY_ATTEMPTS.labels(provider=provider, operation=operation, outcome=outcome).inc()
    GATEWAY_ATTEMPT_DURATION.labels(provider=provider, operation=operation).observe(duration_s)


def metrics_payload() -> bytes:
    """Prometheus exposition text for the default registry."""
    return generate_latest()
