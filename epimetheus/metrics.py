"""Prometheus metrics for the Epimetheus service.

This module centralises counters and histograms so that the fan-out invoker,
the connection managers and the HTTP handlers can record lightweight
telemetry without each managing its own metric instances. The metrics are
exposed on the anonymous /metrics route.
"""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Histogram


RPC_ATTEMPTS: Final[Counter] = Counter(
    "epimetheus_rpc_attempts_total",
    (
        "Total number of fan-out attempts, labeled by operation and outcome "
        "(success, error, timeout, exhausted, fatal)."
    ),
    labelnames=("operation", "outcome"),
)

FANOUT_LATENCY: Final[Histogram] = Histogram(
    "epimetheus_fanout_latency_seconds",
    "Wall time of one logical fan-out call including retries, labeled by operation.",
    labelnames=("operation",),
    # Retry budget is 10s by default; the top buckets show calls that ran
    # into the deadline.
    buckets=(
        0.05,
        0.1,
        0.25,
        0.5,
        1.0,
        2.5,
        5.0,
        10.0,
        15.0,
    ),
)

CONNECTION_RECONNECTS: Final[Counter] = Counter(
    "epimetheus_connection_reconnects_total",
    "Total replacements of a stale client connection, labeled by connection and outcome.",
    labelnames=("connection", "outcome"),
)

HEALTH_JUDGEMENTS: Final[Counter] = Counter(
    "epimetheus_health_judgements_total",
    "Total health evaluations served, labeled by domain and judgement.",
    labelnames=("domain", "judgement"),
)

HTTP_REQUESTS: Final[Counter] = Counter(
    "epimetheus_http_requests_total",
    "Total HTTP requests, labeled by method and status code.",
    labelnames=("method", "status"),
)


def observe_judgement(domain: str, judgement: str) -> None:
    """Record the judgement served for one health evaluation."""
    HEALTH_JUDGEMENTS.labels(domain, judgement).inc()
