"""
Lightweight metrics collection for the match thread service.
Wraps prometheus_client with async-safe patterns.
"""
from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

from prometheus_client import Counter, Gauge, Histogram, start_http_server

from shared.config import get_settings
from shared.utils.logging import get_logger

logger = get_logger(__name__)

# ── Counters ────────────────────────────────────────────────────────────
SOURCE_REQUESTS = Counter(
    "mt_source_requests_total",
    "Total outbound HTTP requests per upstream",
    ["upstream", "status"],
)
RECONCILE_ACTIONS = Counter(
    "mt_reconcile_actions_total",
    "Reconciliation decisions by action",
    ["action"],
)
CACHE_LOOKUPS = Counter(
    "mt_cache_lookups_total",
    "Cache lookups by tier and result",
    ["tier", "result"],
)
THREAD_OPERATIONS = Counter(
    "mt_thread_operations_total",
    "Thread lifecycle operations performed on the platform",
    ["op"],
)
RSVP_SYNC = Counter(
    "mt_rsvp_sync_total",
    "RSVP view synchronization outcomes",
    ["outcome"],
)
RSVP_SUBMISSIONS = Counter(
    "mt_rsvp_submissions_total",
    "RSVP submissions by result",
    ["result"],
)

# ── Histograms ──────────────────────────────────────────────────────────
SOURCE_LATENCY = Histogram(
    "mt_source_latency_seconds",
    "Upstream request latency in seconds",
    ["upstream"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)
LOCK_WAIT = Histogram(
    "mt_lock_wait_seconds",
    "Time spent waiting to acquire a mutation lock",
    buckets=(0.001, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0),
)
CHECK_DURATION = Histogram(
    "mt_check_duration_seconds",
    "Duration of a full check_matches pass",
    buckets=(0.5, 1, 2.5, 5, 10, 30, 60, 120),
)

# ── Gauges ──────────────────────────────────────────────────────────────
CACHE_PHASE = Gauge(
    "mt_cache_phase",
    "Current adaptive cache phase (1 for the active phase)",
    ["phase"],
)
TRACKED_MATCHES = Gauge(
    "mt_tracked_matches",
    "Number of matches considered by the last check pass",
)


@asynccontextmanager
async def atrack_latency(histogram: Histogram, **labels: str) -> AsyncIterator[None]:
    """Async context manager to track operation latency."""
    start = time.perf_counter()
    try:
        yield
    finally:
        elapsed = time.perf_counter() - start
        if labels:
            histogram.labels(**labels).observe(elapsed)
        else:
            histogram.observe(elapsed)


def start_metrics_server(port: int | None = None) -> None:
    """Start the Prometheus metrics HTTP server."""
    settings = get_settings()
    if not settings.metrics_enabled:
        return
    metrics_port = port or settings.metrics_port
    try:
        start_http_server(metrics_port)
        logger.info("metrics_server_started", port=metrics_port)
    except OSError as exc:
        logger.warning("metrics_server_failed", error=str(exc), port=metrics_port)
