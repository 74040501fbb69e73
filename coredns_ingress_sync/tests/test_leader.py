from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Any
from unittest.mock import MagicMock, patch

import pytest
from kubernetes.client import V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from coredns_ingress_sync.src.leader import LeaseLeaderElector, default_identity
from coredns_ingress_sync.src.metrics import MetricEvent

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=UTC)


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[MetricEvent] = []

    def observe(self, event: MetricEvent) -> None:
        self.events.append(event)


def _make_elector(
    coordination_api: Any = None,
    identity: str = "pod-1",
    lease_duration_seconds: int = 15,
    renew_deadline_seconds: int = 10,
    retry_period_seconds: int = 0,
    sink: Any = None,
) -> LeaseLeaderElector:
    return LeaseLeaderElector(
        coordination_api=coordination_api or MagicMock(),
        namespace="coredns-ingress-sync",
        lease_name="coredns-ingress-sync-leader",
        identity=identity,
        lease_duration_seconds=lease_duration_seconds,
        renew_deadline_seconds=renew_deadline_seconds,
        retry_period_seconds=retry_period_seconds,
        sink=sink,
        now_fn=lambda: NOW,
    )


def _lease(holder: str | None, renewed_ago: float, acquired_ago: float = 120) -> V1Lease:
    return V1Lease(
        metadata=V1ObjectMeta(name="coredns-ingress-sync-leader", namespace="coredns-ingress-sync"),
        spec=V1LeaseSpec(
            holder_identity=holder,
            lease_duration_seconds=15,
            renew_time=NOW - timedelta(seconds=renewed_ago),
            acquire_time=NOW - timedelta(seconds=acquired_ago),
        ),
    )


def test_creates_lease_when_not_found() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")

    assert _make_elector(api).try_acquire_or_renew() is True

    body = api.create_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.holder_identity == "pod-1"
    assert body.spec.renew_time == NOW


def test_create_conflict_means_another_replica_won() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = ApiException(status=404, reason="Not Found")
    api.create_namespaced_lease.side_effect = ApiException(status=409, reason="Conflict")

    assert _make_elector(api).try_acquire_or_renew() is False


def test_renewal_keeps_acquire_time() -> None:
    existing = _lease("pod-1", renewed_ago=5, acquired_ago=30)
    original_acquire = existing.spec.acquire_time
    api = MagicMock()
    api.read_namespaced_lease.return_value = existing

    assert _make_elector(api).try_acquire_or_renew() is True

    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.acquire_time == original_acquire
    assert body.spec.renew_time == NOW


def test_active_holder_is_respected() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("pod-2", renewed_ago=2)

    assert _make_elector(api).try_acquire_or_renew() is False
    api.replace_namespaced_lease.assert_not_called()


def test_expired_holder_is_taken_over() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("pod-2", renewed_ago=60)

    assert _make_elector(api).try_acquire_or_renew() is True

    body = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert body.spec.holder_identity == "pod-1"
    assert body.spec.acquire_time == NOW


def test_naive_renew_time_is_treated_as_utc() -> None:
    existing = _lease("pod-2", renewed_ago=2)
    existing.spec.renew_time = existing.spec.renew_time.replace(tzinfo=None)
    api = MagicMock()
    api.read_namespaced_lease.return_value = existing

    assert _make_elector(api).try_acquire_or_renew() is False


def test_replace_conflict_loses_round() -> None:
    api = MagicMock()
    api.read_namespaced_lease.return_value = _lease("pod-1", renewed_ago=1)
    api.replace_namespaced_lease.side_effect = ApiException(status=409, reason="Conflict")

    assert _make_elector(api).try_acquire_or_renew() is False


def test_run_calls_on_started_and_releases_on_stop() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [
        ApiException(status=404, reason="Not Found"),
        _lease("pod-1", renewed_ago=0),
    ]
    sink = RecordingSink()
    elector = _make_elector(api, sink=sink)
    stop = threading.Event()
    stopped: list[bool] = []

    elector.run(
        on_started_leading=stop.set,
        on_stopped_leading=lambda: stopped.append(True),
        stop_event=stop,
    )

    assert stopped == [True]
    assert elector.is_leader is False
    released = api.replace_namespaced_lease.call_args.kwargs["body"]
    assert released.spec.holder_identity is None
    assert [(e.label, e.value) for e in sink.events] == [("acquired", 1.0), ("lost", 0.0)]


def test_unexpected_errors_do_not_crash_election_loop() -> None:
    api = MagicMock()
    api.read_namespaced_lease.side_effect = [
        ConnectionError("network blip"),
        ApiException(status=404, reason="Not Found"),
        ApiException(status=404, reason="Not Found"),
    ]
    elector = _make_elector(api)
    stop = threading.Event()
    started = threading.Event()

    def on_started() -> None:
        started.set()
        stop.set()

    elector.run(on_started_leading=on_started, on_stopped_leading=lambda: None, stop_event=stop)

    assert started.is_set()


def test_loses_leadership_after_renew_deadline() -> None:
    elector = _make_elector(renew_deadline_seconds=1)
    stop = threading.Event()
    stopped_calls = 0

    def on_stopped() -> None:
        nonlocal stopped_calls
        stopped_calls += 1
        stop.set()

    with (
        pytest.MonkeyPatch.context() as mp,
        patch.object(elector, "try_acquire_or_renew", side_effect=[True, False]),
        patch.object(elector, "release") as release_mock,
    ):
        mp.setattr(
            "coredns_ingress_sync.src.leader.time.monotonic",
            MagicMock(side_effect=[0.0, 0.1, 1.5]),
        )
        elector.run(on_started_leading=lambda: None, on_stopped_leading=on_stopped, stop_event=stop)

    assert stopped_calls == 1
    release_mock.assert_not_called()


def test_keeps_leadership_within_renew_deadline() -> None:
    elector = _make_elector(renew_deadline_seconds=3)
    stop = threading.Event()
    stopped_calls = 0
    calls = 0

    def on_stopped() -> None:
        nonlocal stopped_calls
        stopped_calls += 1

    def try_cycle() -> bool:
        nonlocal calls
        calls += 1
        if calls == 1:
            return True
        stop.set()
        return False

    with (
        pytest.MonkeyPatch.context() as mp,
        patch.object(elector, "try_acquire_or_renew", side_effect=try_cycle),
        patch.object(elector, "release") as release_mock,
    ):
        mp.setattr(
            "coredns_ingress_sync.src.leader.time.monotonic",
            MagicMock(side_effect=[0.0, 0.1, 0.5]),
        )
        elector.run(on_started_leading=lambda: None, on_stopped_leading=on_stopped, stop_event=stop)

    # Stopped only by shutdown, which releases the lease first.
    assert stopped_calls == 1
    release_mock.assert_called_once()


def test_constructor_rejects_invalid_timing() -> None:
    with pytest.raises(ValueError, match="renew_deadline_seconds"):
        _make_elector(lease_duration_seconds=10, renew_deadline_seconds=10)
    with pytest.raises(ValueError, match="retry_period_seconds"):
        _make_elector(renew_deadline_seconds=5, retry_period_seconds=5)


def test_default_identity_uses_hostname(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("HOSTNAME", "sync-7d9f-abc12")
    monkeypatch.delenv("POD_NAME", raising=False)

    assert default_identity() == "sync-7d9f-abc12"


def test_default_identity_falls_back_to_pod_name(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("HOSTNAME", raising=False)
    monkeypatch.setenv("POD_NAME", "sync-xyz")

    assert default_identity() == "sync-xyz"
