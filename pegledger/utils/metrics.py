from __future__ import annotations

from prometheus_client import CONTENT_TYPE_LATEST, Counter, Gauge, Histogram, generate_latest


HTTP_REQUESTS_TOTAL = Counter(
    "pegledger_http_requests_total",
    "Total HTTP requests",
    ["method", "path", "status"],
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "pegledger_http_request_duration_seconds",
    "HTTP request duration (seconds)",
    ["method", "path"],
)


SYNC_EVENTS_TOTAL = Counter(
    "pegledger_sync_events_total",
    "Sync engine runs by outcome",
    ["engine", "result"],
)

SYNC_HEIGHT = Gauge(
    "pegledger_sync_height",
    "Last committed progress cursor value",
    ["cursor"],
)

AUDIT_CHECKS_TOTAL = Counter(
    "pegledger_audit_checks_total",
    "Federation UTXO verifications",
    ["path", "result"],
)

RPC_CALLS_TOTAL = Counter(
    "pegledger_rpc_calls_total",
    "Chain node RPC calls",
    ["chain", "method", "result"],
)


def render_metrics() -> tuple[bytes, str]:
    return generate_latest(), CONTENT_TYPE_LATEST
