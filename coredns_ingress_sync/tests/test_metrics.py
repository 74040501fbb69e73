from __future__ import annotations

from unittest.mock import MagicMock

from coredns_ingress_sync.src.metrics import (
    METRICS,
    MetricEvent,
    NullSink,
    PrometheusSink,
    safe_observe,
)


def test_config_update_records_counter_and_histogram() -> None:
    metrics = MagicMock()

    PrometheusSink(metrics).observe(
        MetricEvent(kind="config_update", result="success", duration_seconds=0.25)
    )

    metrics.config_updates_total.labels.assert_called_once_with(result="success")
    metrics.config_updates_total.labels.return_value.inc.assert_called_once()
    metrics.config_update_duration_seconds.labels.return_value.observe.assert_called_once_with(
        0.25
    )


def test_reconcile_error_counts_by_stage() -> None:
    metrics = MagicMock()

    PrometheusSink(metrics).observe(
        MetricEvent(kind="reconcile", result="error", label="dns_update", duration_seconds=1.0)
    )

    metrics.reconciliation_total.labels.assert_called_once_with(result="error")
    metrics.reconciliation_errors_total.labels.assert_called_once_with(error_type="dns_update")


def test_leader_event_sets_state_and_transition() -> None:
    metrics = MagicMock()

    PrometheusSink(metrics).observe(MetricEvent(kind="leader", label="acquired", value=1.0))

    metrics.leader_state.set.assert_called_once_with(1.0)
    metrics.leader_transitions_total.labels.assert_called_once_with(transition="acquired")


def test_real_collectors_move() -> None:
    before = METRICS.config_drift_total.labels(drift_type="volume_mount")._value.get()

    PrometheusSink().observe(MetricEvent(kind="config_drift", label="volume_mount"))

    after = METRICS.config_drift_total.labels(drift_type="volume_mount")._value.get()
    assert after == before + 1


def test_sink_swallows_collector_failures() -> None:
    metrics = MagicMock()
    metrics.dns_records_managed.set.side_effect = RuntimeError("registry broken")

    PrometheusSink(metrics).observe(MetricEvent(kind="dns_records", value=3))


def test_safe_observe_swallows_sink_failures() -> None:
    sink = MagicMock()
    sink.observe.side_effect = RuntimeError("boom")

    safe_observe(sink, MetricEvent(kind="reconcile", result="success"))
    safe_observe(NullSink(), MetricEvent(kind="reconcile", result="success"))

    sink.observe.assert_called_once()
