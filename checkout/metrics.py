"""Prometheus metrics for the checkout service.

Exposed by the FastAPI app at /metrics (see api/index.py).
"""

from prometheus_client import Counter, Histogram

GATEWAY_REQUESTS = Counter(
    "qpay_gateway_requests_total",
    "Gateway calls by operation and outcome",
    ["operation", "outcome"],
)

GATEWAY_LATENCY = Histogram(
    "qpay_gateway_request_seconds",
    "Gateway call latency",
    ["operation", "outcome"],
)

CREDENTIAL_EXCHANGES = Counter(
    "qpay_credential_exchanges_total",
    "Upstream bearer credential exchanges",
    ["outcome"],
)

WEBHOOK_OUTCOMES = Counter(
    "qpay_webhook_outcomes_total",
    "Webhook calls by source and reason",
    ["source", "reason"],
)

SETTLEMENT_OUTCOMES = Counter(
    "qpay_settlement_outcomes_total",
    "Verify-and-materialize results by trigger and reason",
    ["trigger", "reason"],
)

SWEEP_TICKS = Counter(
    "qpay_sweep_ticks_total",
    "Periodic sweep ticks",
    ["job", "outcome"],
)

SESSIONS_EXPIRED = Counter(
    "qpay_sessions_expired_total",
    "PENDING sessions moved to EXPIRED",
)

ROWS_DELETED = Counter(
    "qpay_retention_rows_deleted_total",
    "Rows removed by retention cleanup",
    ["table"],
)

RECEIPTS = Counter(
    "qpay_receipts_total",
    "Tax e-receipt issuance outcomes",
    ["status"],
)
