"""Prometheus collectors for the report generation stream."""

from __future__ import annotations

from typing import Any, Optional, Sequence

from prometheus_client import REGISTRY, Counter, Gauge, Histogram

from core.logging import get_logger

logger = get_logger(__name__)

OUTCOMES = ("complete", "error", "cancelled", "timeout", "persistence_error", "replayed")


def _collector(kind: type, name: str, documentation: str, labelnames: Sequence[str] = (), **kwargs: Any) -> Optional[Any]:
    """Register a collector, reusing the existing one when the module is re-imported."""
    try:
        return kind(name, documentation, tuple(labelnames), **kwargs)
    except ValueError:
        existing = getattr(REGISTRY, "_names_to_collectors", {}).get(name)
        if existing is None:
            logger.debug("Collector %s already registered but not found in registry.", name)
        return existing


_GENERATION_OUTCOME_COUNTER = _collector(
    Counter,
    "report_generation_total",
    "Report generations grouped by terminal outcome.",
    ("outcome",),
)
_GENERATION_DURATION_HISTOGRAM = _collector(
    Histogram,
    "report_generation_duration_seconds",
    "Wall-clock duration of report generations.",
    ("outcome",),
    buckets=(1, 5, 10, 30, 60, 120, 300, 600),
)
_GENERATION_IN_FLIGHT_GAUGE = _collector(
    Gauge,
    "report_generation_in_flight",
    "Report generations currently streaming.",
)
_REJECTION_COUNTER = _collector(
    Counter,
    "report_generation_rejected_total",
    "Generation requests rejected before streaming, grouped by reason.",
    ("reason",),
)


def observe_generation(outcome: str, duration_seconds: float) -> None:
    """Record one finished generation."""

    normalized = outcome if outcome in OUTCOMES else "unknown"
    if _GENERATION_OUTCOME_COUNTER is not None:
        _GENERATION_OUTCOME_COUNTER.labels(outcome=normalized).inc()
    if _GENERATION_DURATION_HISTOGRAM is not None:
        _GENERATION_DURATION_HISTOGRAM.labels(outcome=normalized).observe(max(duration_seconds, 0.0))


def generation_started() -> None:
    if _GENERATION_IN_FLIGHT_GAUGE is not None:
        _GENERATION_IN_FLIGHT_GAUGE.inc()


def generation_finished() -> None:
    if _GENERATION_IN_FLIGHT_GAUGE is not None:
        _GENERATION_IN_FLIGHT_GAUGE.dec()


def observe_rejection(reason: str) -> None:
    if _REJECTION_COUNTER is None:
        return
    _REJECTION_COUNTER.labels(reason=reason or "unknown").inc()


__all__ = [
    "OUTCOMES",
    "generation_finished",
    "generation_started",
    "observe_generation",
    "observe_rejection",
]
