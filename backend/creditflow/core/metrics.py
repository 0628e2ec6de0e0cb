"""Prometheus metrics for the ledger, job lifecycle, webhooks and breakers."""

import os

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    Info,
    generate_latest,
    multiprocess,
)

REGISTRY = CollectorRegistry()

# Gunicorn / multi-worker deployments aggregate through the shared directory
if "PROMETHEUS_MULTIPROC_DIR" in os.environ or "prometheus_multiproc_dir" in os.environ:
    multiprocess.MultiProcessCollector(REGISTRY)


# ============================================
# Application Info
# ============================================
APP_INFO = Info(
    "creditflow_app",
    "Application information",
    registry=REGISTRY,
)


# ============================================
# HTTP Request Metrics
# ============================================
HTTP_REQUESTS_TOTAL = Counter(
    "http_requests_total",
    "Total HTTP requests",
    ["method", "endpoint", "status_code"],
    registry=REGISTRY,
)

HTTP_REQUEST_DURATION_SECONDS = Histogram(
    "http_request_duration_seconds",
    "HTTP request duration in seconds",
    ["method", "endpoint"],
    buckets=[0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
    registry=REGISTRY,
)


# ============================================
# Credit Ledger Metrics
# ============================================
LEDGER_MUTATIONS_TOTAL = Counter(
    "ledger_mutations_total",
    "Balance mutations applied by the credit ledger",
    ["operation", "reason"],
    registry=REGISTRY,
)

LEDGER_DUPLICATE_PAYMENTS_TOTAL = Counter(
    "ledger_duplicate_payments_total",
    "Payment or refund deliveries recognised as already processed",
    registry=REGISTRY,
)

LEDGER_REFUND_CLAMPED_TOTAL = Counter(
    "ledger_refund_clamped_total",
    "Refunds where fewer credits were deducted than requested",
    registry=REGISTRY,
)


# ============================================
# Generation Job Metrics
# ============================================
JOB_TRANSITIONS_TOTAL = Counter(
    "job_transitions_total",
    "Generation job state transitions",
    ["from_state", "to_state"],
    registry=REGISTRY,
)

JOB_LEASES_RECLAIMED_TOTAL = Counter(
    "job_leases_reclaimed_total",
    "Processing jobs reclaimed after their lease expired",
    registry=REGISTRY,
)


# ============================================
# Webhook Metrics
# ============================================
WEBHOOK_EVENTS_TOTAL = Counter(
    "webhook_events_total",
    "Payment webhook events by type and outcome",
    ["event_type", "outcome"],
    registry=REGISTRY,
)


# ============================================
# Circuit Breaker Metrics
# ============================================
CIRCUIT_BREAKER_STATE = Gauge(
    "circuit_breaker_state",
    "Circuit breaker state (0=closed, 1=half_open, 2=open)",
    ["dependency"],
    registry=REGISTRY,
)

CIRCUIT_BREAKER_REJECTIONS_TOTAL = Counter(
    "circuit_breaker_rejections_total",
    "Calls rejected without reaching the dependency",
    ["dependency"],
    registry=REGISTRY,
)

CIRCUIT_BREAKER_FAILURES_TOTAL = Counter(
    "circuit_breaker_failures_total",
    "Dependency failures counted toward tripping the breaker",
    ["dependency"],
    registry=REGISTRY,
)


def set_app_info(version: str, environment: str) -> None:
    APP_INFO.info({"version": version, "environment": environment})


def get_metrics() -> bytes:
    """Render all metrics in the Prometheus text format."""
    return generate_latest(REGISTRY)


def get_metrics_content_type() -> str:
    return CONTENT_TYPE_LATEST
