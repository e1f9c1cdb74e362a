"""
Prometheus metrics definitions for the API and the reconciliation worker.
All metrics are registered here and can be imported by other modules.
"""
from prometheus_client import Counter, Histogram, Gauge

# HTTP request metrics
http_requests_total = Counter(
    'http_requests_total',
    'Total HTTP requests',
    ['method', 'path', 'status']
)

http_request_duration_seconds = Histogram(
    'http_request_duration_seconds',
    'HTTP request duration in seconds',
    ['method', 'path'],
    buckets=[0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]
)

# Error metrics
errors_total = Counter(
    'errors_total',
    'Total errors',
    ['error_type']
)

# Payment metrics
payments_created_total = Counter(
    'payments_created_total',
    'Total payments created',
    ['gateway']
)

payments_settled_total = Counter(
    'payments_settled_total',
    'Total payments settled (processing -> completed)',
    ['gateway']
)

payment_settlement_noops_total = Counter(
    'payment_settlement_noops_total',
    'Settlement attempts on payments that were already settled',
    ['gateway']
)

payments_failed_total = Counter(
    'payments_failed_total',
    'Total payments that ended failed or cancelled',
    ['gateway', 'status']
)

# Gateway metrics
gateway_requests_total = Counter(
    'gateway_requests_total',
    'Total payment gateway requests',
    ['gateway', 'operation']
)

gateway_failures_total = Counter(
    'gateway_failures_total',
    'Total payment gateway failures',
    ['gateway', 'operation']
)

gateway_latency_seconds = Histogram(
    'gateway_latency_seconds',
    'Payment gateway request latency in seconds',
    ['gateway', 'operation'],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.0, 5.0, 10.0, 30.0]
)

# Webhook metrics
webhooks_received_total = Counter(
    'webhooks_received_total',
    'Total webhooks received',
    ['gateway', 'result']
)

# Refund metrics
refunds_total = Counter(
    'refunds_total',
    'Total refunds processed',
    ['gateway', 'status']
)

# Background job metrics
jobs_processing = Gauge(
    'jobs_processing',
    'Number of background jobs currently processing',
    ['job_type']
)

jobs_completed_total = Counter(
    'jobs_completed_total',
    'Total background jobs completed',
    ['job_type', 'status']
)

jobs_failed_total = Counter(
    'jobs_failed_total',
    'Total background jobs failed',
    ['job_type']
)

reconciled_payments_total = Counter(
    'reconciled_payments_total',
    'Stale processing payments re-verified by the reconciliation job',
    ['result']
)
