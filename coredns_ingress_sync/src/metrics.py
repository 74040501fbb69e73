from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Protocol

from prometheus_client import Counter, Gauge, Histogram, Info

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ControllerMetrics:
    """Prometheus metrics exported by the controller on ``/metrics``."""

    reconciliation_total: Counter = field(
        default_factory=lambda: Counter(
            "coredns_ingress_sync_reconciliation_total",
            "Total number of reconciliation attempts",
            ["result"],
        )
    )
    reconciliation_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "coredns_ingress_sync_reconciliation_duration_seconds",
            "Time spent on reconciliation in seconds",
            ["result"],
        )
    )
    reconciliation_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "coredns_ingress_sync_reconciliation_errors_total",
            "Total number of reconciliation errors",
            ["error_type"],
        )
    )
    dns_records_managed: Gauge = field(
        default_factory=lambda: Gauge(
            "coredns_ingress_sync_dns_records_managed",
            "Current number of hostnames with a rewrite rule",
        )
    )
    config_updates_total: Counter = field(
        default_factory=lambda: Counter(
            "coredns_ingress_sync_coredns_config_updates_total",
            "Total number of dynamic ConfigMap write attempts",
            ["result"],
        )
    )
    config_update_duration_seconds: Histogram = field(
        default_factory=lambda: Histogram(
            "coredns_ingress_sync_coredns_config_update_duration_seconds",
            "Time spent writing the dynamic ConfigMap in seconds",
            ["result"],
        )
    )
    config_drift_total: Counter = field(
        default_factory=lambda: Counter(
            "coredns_ingress_sync_coredns_config_drift_total",
            "Total number of times CoreDNS configuration drift was detected and corrected",
            ["drift_type"],
        )
    )
    ingresses_selected: Gauge = field(
        default_factory=lambda: Gauge(
            "coredns_ingress_sync_ingresses_selected",
            "Ingresses currently contributing hostnames",
            ["namespace"],
        )
    )
    watch_errors_total: Counter = field(
        default_factory=lambda: Counter(
            "coredns_ingress_sync_watch_errors_total",
            "Total Kubernetes watch errors",
            ["resource"],
        )
    )
    watch_reconnects_total: Counter = field(
        default_factory=lambda: Counter(
            "coredns_ingress_sync_watch_reconnects_total",
            "Total watch stream reconnects after the initial connection",
            ["resource"],
        )
    )
    leader_transitions_total: Counter = field(
        default_factory=lambda: Counter(
            "coredns_ingress_sync_leader_transitions_total",
            "Total leadership state transitions",
            ["transition"],
        )
    )
    leader_state: Gauge = field(
        default_factory=lambda: Gauge(
            "coredns_ingress_sync_leader_election_status",
            "Leader election status (1 if leader, 0 if not)",
        )
    )
    build_info: Info = field(
        default_factory=lambda: Info(
            "coredns_ingress_sync",
            "Build information for the controller",
        )
    )


METRICS = ControllerMetrics()


@dataclass(frozen=True)
class MetricEvent:
    """A single observation handed to a :class:`MetricsSink`.

    ``kind`` is one of ``config_update``, ``config_drift``, ``reconcile``,
    ``dns_records``, ``ingresses_selected``, ``watch_error``,
    ``watch_reconnect`` or ``leader``.  ``label`` carries the secondary
    dimension (drift type, error stage, namespace, resource, transition).
    """

    kind: str
    result: str = ""
    label: str = ""
    duration_seconds: float | None = None
    value: float | None = None


class MetricsSink(Protocol):
    def observe(self, event: MetricEvent) -> None: ...


class NullSink:
    def observe(self, event: MetricEvent) -> None:
        return None


class PrometheusSink:
    """Records :class:`MetricEvent` observations into :data:`METRICS`.

    Never raises: a broken collector must not fail the write path.
    """

    def __init__(self, metrics: ControllerMetrics = METRICS) -> None:
        self.metrics = metrics

    def observe(self, event: MetricEvent) -> None:
        try:
            self._record(event)
        except Exception:
            LOGGER.debug("Dropping metric event %r", event, exc_info=True)

    def _record(self, event: MetricEvent) -> None:
        m = self.metrics
        if event.kind == "config_update":
            m.config_updates_total.labels(result=event.result).inc()
            if event.duration_seconds is not None:
                m.config_update_duration_seconds.labels(result=event.result).observe(
                    event.duration_seconds
                )
        elif event.kind == "config_drift":
            m.config_drift_total.labels(drift_type=event.label).inc()
        elif event.kind == "reconcile":
            m.reconciliation_total.labels(result=event.result).inc()
            if event.duration_seconds is not None:
                m.reconciliation_duration_seconds.labels(result=event.result).observe(
                    event.duration_seconds
                )
            if event.result == "error" and event.label:
                m.reconciliation_errors_total.labels(error_type=event.label).inc()
        elif event.kind == "dns_records":
            m.dns_records_managed.set(event.value or 0)
        elif event.kind == "ingresses_selected":
            m.ingresses_selected.labels(namespace=event.label).set(event.value or 0)
        elif event.kind == "watch_error":
            m.watch_errors_total.labels(resource=event.label).inc()
        elif event.kind == "watch_reconnect":
            m.watch_reconnects_total.labels(resource=event.label).inc()
        elif event.kind == "leader":
            m.leader_state.set(event.value or 0)
            if event.label:
                m.leader_transitions_total.labels(transition=event.label).inc()
        else:
            LOGGER.debug("Unknown metric event kind %s", event.kind)


def safe_observe(sink: MetricsSink, event: MetricEvent) -> None:
    """Hand *event* to *sink*, swallowing sink failures."""
    try:
        sink.observe(event)
    except Exception:
        LOGGER.debug("Metrics sink rejected %r", event, exc_info=True)
