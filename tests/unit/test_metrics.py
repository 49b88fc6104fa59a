"""Unit tests for the metrics module."""

import os
from unittest.mock import patch

from prometheus_client import REGISTRY


def _reset_metrics_module():
    """Reset the metrics module and clear Prometheus registry.

    This is needed because Prometheus doesn't allow re-registering metrics,
    and importlib.reload() only resets the module state, not the registry.
    """
    import importlib

    import streamtester.metrics

    collectors_to_remove = []
    for collector in set(REGISTRY._names_to_collectors.values()):
        name = getattr(collector, "_name", "")
        if name.startswith("stream_tester_"):
            collectors_to_remove.append(collector)

    for collector in collectors_to_remove:
        REGISTRY.unregister(collector)

    importlib.reload(streamtester.metrics)


class TestMetricsConfiguration:
    """Tests for metrics configuration."""

    def setup_method(self):
        _reset_metrics_module()

    def test_disabled_until_configured(self):
        """Metrics are off before configure_metrics() is called."""
        import streamtester.metrics

        assert not streamtester.metrics.is_metrics_enabled()

    def test_enabled_by_environment(self):
        """RT_METRICS_ENABLED=true enables collection."""
        import streamtester.metrics

        with patch.dict(os.environ, {"RT_METRICS_ENABLED": "true"}):
            streamtester.metrics.configure_metrics("stream-tester")

        assert streamtester.metrics.is_metrics_enabled()
        assert streamtester.metrics.get_service_name() == "stream-tester"

    def test_disabled_by_environment(self):
        """RT_METRICS_ENABLED=false disables collection."""
        import streamtester.metrics

        with patch.dict(os.environ, {"RT_METRICS_ENABLED": "false"}):
            streamtester.metrics.configure_metrics("stream-tester")

        assert not streamtester.metrics.is_metrics_enabled()

    def test_argument_overrides_environment(self):
        """An explicit flag wins over the environment."""
        import streamtester.metrics

        with patch.dict(os.environ, {"RT_METRICS_ENABLED": "true"}):
            streamtester.metrics.configure_metrics("stream-tester", enabled=False)

        assert not streamtester.metrics.is_metrics_enabled()

    def test_configure_twice(self):
        """Reconfiguring does not register the metrics twice."""
        import streamtester.metrics

        streamtester.metrics.configure_metrics("stream-tester", enabled=True)
        streamtester.metrics.configure_metrics("stream-tester", enabled=True)

    def test_noop_when_disabled(self):
        """Recording functions do nothing while disabled."""
        import streamtester.metrics

        streamtester.metrics.inc_cycles("vod", "success")
        streamtester.metrics.set_failing("vod", True)

        assert REGISTRY.get_sample_value(
            "stream_tester_cycles_total", {"tester": "vod", "status": "success"}
        ) is None


class TestTesterMetrics:
    """Tests for tester metric functions."""

    def setup_method(self):
        _reset_metrics_module()

        import streamtester.metrics

        streamtester.metrics.configure_metrics("stream-tester", enabled=True)

    def test_inc_cycles(self):
        """Cycles are counted per tester and status."""
        import streamtester.metrics

        streamtester.metrics.inc_cycles("vod", "success")
        streamtester.metrics.inc_cycles("vod", "success")
        streamtester.metrics.inc_cycles("vod", "failure")

        assert REGISTRY.get_sample_value(
            "stream_tester_cycles_total", {"tester": "vod", "status": "success"}
        ) == 2
        assert REGISTRY.get_sample_value(
            "stream_tester_cycles_total", {"tester": "vod", "status": "failure"}
        ) == 1

    def test_observe_cycle_duration(self):
        """Cycle durations land in the histogram."""
        import streamtester.metrics

        streamtester.metrics.observe_cycle_duration("record", 95.0)

        assert REGISTRY.get_sample_value(
            "stream_tester_cycle_duration_seconds_count", {"tester": "record"}
        ) == 1
        assert REGISTRY.get_sample_value(
            "stream_tester_cycle_duration_seconds_sum", {"tester": "record"}
        ) == 95.0

    def test_set_failing(self):
        """The failing gauge follows the health state."""
        import streamtester.metrics

        streamtester.metrics.set_failing("record", True)
        assert REGISTRY.get_sample_value(
            "stream_tester_failing", {"tester": "record"}
        ) == 1

        streamtester.metrics.set_failing("record", False)
        assert REGISTRY.get_sample_value(
            "stream_tester_failing", {"tester": "record"}
        ) == 0

    def test_inc_phase_failures(self):
        """Failures are labelled with phase and kind."""
        import streamtester.metrics

        streamtester.metrics.inc_phase_failures(
            "vod", "direct_upload", "remote_failure"
        )

        assert REGISTRY.get_sample_value(
            "stream_tester_phase_failures_total",
            {"tester": "vod", "phase": "direct_upload", "kind": "remote_failure"},
        ) == 1


class TestAlertMetrics:
    """Tests for alert metric functions."""

    def setup_method(self):
        _reset_metrics_module()

        import streamtester.metrics

        streamtester.metrics.configure_metrics("stream-tester", enabled=True)

    def test_inc_alerts_sent(self):
        """Alert deliveries are counted per transport and outcome."""
        import streamtester.metrics

        streamtester.metrics.inc_alerts_sent("discord", "success")
        streamtester.metrics.inc_alerts_sent("pagerduty", "timeout")

        assert REGISTRY.get_sample_value(
            "stream_tester_alerts_sent_total",
            {"transport": "pagerduty", "status": "timeout"},
        ) == 1
