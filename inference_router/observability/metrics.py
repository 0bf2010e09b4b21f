from prometheus_client import (
    Counter,
    Gauge,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)
from fastapi import Response


routed_requests = Counter(
    "router_requests_total",
    "Requests handled by the inference router, by terminal outcome",
    ["operation", "outcome"],
)

provider_attempts = Counter(
    "router_provider_attempts_total",
    "Provider attempts issued by the retry executor",
    ["provider", "outcome"],
)

provider_latency = Histogram(
    "router_provider_latency_seconds",
    "Latency of provider calls",
    ["provider", "operation"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
)

llm_tokens = Counter(
    "llm_tokens_total",
    "Total LLM tokens consumed",
    ["provider", "direction"],
)

provider_available = Gauge(
    "router_provider_available",
    "1 when the health monitor considers the provider available",
    ["provider"],
)

scanner_verdicts = Counter(
    "router_scanner_verdicts_total",
    "Injection scanner verdicts",
    ["verdict"],
)

audit_records = Counter(
    "router_audit_records_total",
    "Audit records appended, by outcome",
    ["outcome"],
)


def record_usage(provider: str, prompt_tokens: int, completion_tokens: int) -> None:
    if prompt_tokens:
        llm_tokens.labels(provider=provider, direction="prompt").inc(prompt_tokens)
    if completion_tokens:
        llm_tokens.labels(provider=provider, direction="completion").inc(completion_tokens)


def metrics_response() -> Response:
    return Response(
        content=generate_latest(),
        media_type=CONTENT_TYPE_LATEST,
    )
