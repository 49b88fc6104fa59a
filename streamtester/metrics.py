"""Prometheus metrics for stream-tester.

Provides a `configure_metrics()` function that registers the tester metrics.
Every recording function is a no-op until metrics are configured and
enabled, so library code can call them unconditionally.

Environment Variables:
    RT_METRICS_ENABLED: Enable/disable metrics collection (default: true)

Metric Naming Convention:
    stream_tester_{metric_name}_{unit}
"""

from __future__ import annotations

import os
from typing import Any

# Global state
_metrics_enabled: bool = False
_service_name: str = ""
_metrics_initialized: bool = False

_tester_metrics: dict[str, Any] = {}
_alert_metrics: dict[str, Any] = {}


def is_metrics_enabled() -> bool:
    """Check if metrics collection is enabled."""
    return _metrics_enabled


def get_service_name() -> str:
    """Get the configured service name."""
    return _service_name


def configure_metrics(service_name: str, enabled: bool | None = None) -> None:
    """Configure Prometheus metrics.

    Args:
        service_name: Identifier for this process (e.g. "stream-tester").
        enabled: Overrides RT_METRICS_ENABLED when given.
    """
    global _metrics_enabled, _service_name, _metrics_initialized

    if enabled is None:
        enabled = os.environ.get("RT_METRICS_ENABLED", "true").lower() == "true"
    _metrics_enabled = enabled
    _service_name = service_name

    if not enabled or _metrics_initialized:
        return

    _metrics_initialized = True
    _init_tester_metrics()
    _init_alert_metrics()


def _init_tester_metrics() -> None:
    """Initialize cycle and phase metrics."""
    from prometheus_client import Counter, Gauge, Histogram

    _tester_metrics["cycles_total"] = Counter(
        "stream_tester_cycles_total",
        "Test cycles by outcome",
        ["tester", "status"],
    )

    _tester_metrics["cycle_duration_seconds"] = Histogram(
        "stream_tester_cycle_duration_seconds",
        "Wall time of one test cycle",
        ["tester"],
        buckets=(10, 30, 60, 120, 300, 600, 900, 1800, 3600),
    )

    _tester_metrics["failing"] = Gauge(
        "stream_tester_failing",
        "Tester health (1 = failing, 0 = ok)",
        ["tester"],
    )

    _tester_metrics["phase_failures_total"] = Counter(
        "stream_tester_phase_failures_total",
        "Cycle failures by failing phase and error kind",
        ["tester", "phase", "kind"],
    )


def _init_alert_metrics() -> None:
    """Initialize alert delivery metrics."""
    from prometheus_client import Counter

    _alert_metrics["alerts_sent_total"] = Counter(
        "stream_tester_alerts_sent_total",
        "Alert deliveries by transport and outcome",
        ["transport", "status"],
    )


# =============================================================================
# Tester Metrics
# =============================================================================


def inc_cycles(tester: str, status: str) -> None:
    """Increment the cycles counter.

    Args:
        tester: Tester name (record, vod, transcode)
        status: "success" or "failure"
    """
    if not _metrics_enabled or "cycles_total" not in _tester_metrics:
        return
    _tester_metrics["cycles_total"].labels(tester=tester, status=status).inc()


def observe_cycle_duration(tester: str, duration: float) -> None:
    """Record the wall time of a cycle in seconds."""
    if not _metrics_enabled or "cycle_duration_seconds" not in _tester_metrics:
        return
    _tester_metrics["cycle_duration_seconds"].labels(tester=tester).observe(duration)


def set_failing(tester: str, failing: bool) -> None:
    if not _metrics_enabled or "failing" not in _tester_metrics:
        return
    _tester_metrics["failing"].labels(tester=tester).set(1 if failing else 0)


def inc_phase_failures(tester: str, phase: str, kind: str) -> None:
    """Increment the phase failures counter.

    Args:
        tester: Tester name
        phase: Phase the cycle failed in ("unknown" when not attributed)
        kind: Error kind value
    """
    if not _metrics_enabled or "phase_failures_total" not in _tester_metrics:
        return
    _tester_metrics["phase_failures_total"].labels(
        tester=tester, phase=phase, kind=kind
    ).inc()


# =============================================================================
# Alert Metrics
# =============================================================================


def inc_alerts_sent(transport: str, status: str) -> None:
    """Increment the alert deliveries counter.

    Args:
        transport: Notifier name (discord, pagerduty)
        status: "success", "failure" or "timeout"
    """
    if not _metrics_enabled or "alerts_sent_total" not in _alert_metrics:
        return
    _alert_metrics["alerts_sent_total"].labels(
        transport=transport, status=status
    ).inc()
