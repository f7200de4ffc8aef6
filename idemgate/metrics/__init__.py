"""Prometheus metric helpers and idempotency metrics."""
from __future__ import annotations

from typing import Iterable, Tuple

from prometheus_client import Counter, Gauge, Histogram


def _label_tuple(labels: Iterable[str] | None) -> Tuple[str, ...]:
    return tuple(labels) if labels else ()


def metric_counter(
    name: str,
    documentation: str,
    labels: Iterable[str] | None = None,
) -> Counter:
    return Counter(name, documentation, _label_tuple(labels))


def metric_gauge(
    name: str,
    documentation: str,
    labels: Iterable[str] | None = None,
) -> Gauge:
    return Gauge(name, documentation, _label_tuple(labels))


def metric_histogram(
    name: str,
    documentation: str,
    labels: Iterable[str] | None = None,
) -> Histogram:
    return Histogram(name, documentation, _label_tuple(labels))


IDEMP_HITS = metric_counter(
    "idemgate_hits_total",
    "Idempotency cache hits",
    ["method"],
)
IDEMP_MISSES = metric_counter(
    "idemgate_misses_total",
    "Idempotency cache misses (handler executed)",
    ["method"],
)
IDEMP_PASSTHROUGH = metric_counter(
    "idemgate_passthrough_total",
    "Requests that bypassed the idempotency path",
    ["reason"],
)
IDEMP_CONFLICTS = metric_counter(
    "idemgate_conflicts_total",
    "Requests rejected because the same fingerprint was in progress",
    ["method"],
)
IDEMP_ERRORS = metric_counter(
    "idemgate_errors_total",
    "Errors during idempotency phases",
    ["phase"],
)
IDEMP_LOCK_WAIT = metric_histogram(
    "idemgate_lock_wait_seconds",
    "Time spent acquiring the per-fingerprint lock",
    ["backend"],
)
IDEMP_EVICTIONS = metric_counter(
    "idemgate_evictions_total",
    "Expired or explicitly deleted entries removed from the store",
    ["backend"],
)
IDEMP_MEMORY_ENTRIES = metric_gauge(
    "idemgate_memory_entries",
    "Cached responses currently held by an in-process store",
    ["store"],
)
