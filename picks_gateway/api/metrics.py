"""Prometheus metrics for the picks gateway."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram, generate_latest

REQUEST_COUNT = Counter(
    "picks_gateway_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status"],
)

REQUEST_LATENCY = Histogram(
    "picks_gateway_request_latency_seconds",
    "Request latency in seconds",
    ["endpoint"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

AUTH_ATTEMPTS = Counter(
    "picks_gateway_auth_attempts_total",
    "Wallet and admin authentication attempts",
    ["method", "result"],  # method: wallet, admin, dev_fallback
)

NONCES_ISSUED = Counter(
    "picks_gateway_nonces_issued_total",
    "Login challenges issued",
)

TOOLKIT_RUNS = Counter(
    "picks_gateway_toolkit_runs_total",
    "Deployment toolkit invocations",
    ["script", "result"],  # result: success, deploy_failed, parse_error, config_missing
)

TOOLKIT_DURATION = Histogram(
    "picks_gateway_toolkit_duration_seconds",
    "Wall time of toolkit runs",
    ["script"],
    buckets=(5.0, 15.0, 30.0, 60.0, 120.0, 300.0, 600.0),
)

TOOLKIT_IN_FLIGHT = Gauge(
    "picks_gateway_toolkit_in_flight",
    "Toolkit processes currently running",
)

RECONCILE_RESULTS = Counter(
    "picks_gateway_reconcile_total",
    "Datastore reconciliation outcomes",
    ["result"],  # ok, skipped, failed
)

RATE_LIMIT_REJECTIONS = Counter(
    "picks_gateway_rate_limit_rejections_total",
    "Requests rejected by rate limiter",
    ["scope"],  # general, credential
)


def metrics_response() -> bytes:
    """Generate Prometheus-compatible metrics text."""
    return generate_latest()
