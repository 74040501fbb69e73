from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from datetime import UTC, datetime

from kubernetes.client import CoordinationV1Api, V1Lease, V1LeaseSpec, V1ObjectMeta
from kubernetes.client.exceptions import ApiException

from coredns_ingress_sync.src.metrics import MetricEvent, MetricsSink, NullSink, safe_observe

LOGGER = logging.getLogger(__name__)


class LeaseLeaderElector:
    """Single-writer guarantee across replicas via a ``coordination.k8s.io/v1`` Lease.

    Every ``retry_period_seconds`` the elector reads the Lease and either
    creates it, renews it (we hold it), or takes it over once the holder's
    ``renewTime`` is older than the lease duration.  A 409 on create/replace
    just means another replica won this round.  Leadership is given up after
    ``renew_deadline_seconds`` without a successful renewal, which always
    happens before the lease itself expires for the other replicas.
    """

    def __init__(
        self,
        coordination_api: CoordinationV1Api,
        namespace: str,
        lease_name: str,
        identity: str,
        lease_duration_seconds: int = 15,
        renew_deadline_seconds: int = 10,
        retry_period_seconds: int = 2,
        sink: MetricsSink | None = None,
        now_fn: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        if not 0 <= retry_period_seconds < renew_deadline_seconds < lease_duration_seconds:
            raise ValueError(
                "expected 0 <= retry_period_seconds < renew_deadline_seconds "
                "< lease_duration_seconds"
            )
        self.coordination_api = coordination_api
        self.namespace = namespace
        self.lease_name = lease_name
        self.identity = identity
        self.lease_duration_seconds = lease_duration_seconds
        self.renew_deadline_seconds = renew_deadline_seconds
        self.retry_period_seconds = retry_period_seconds
        self.sink = sink or NullSink()
        self.now_fn = now_fn
        self._is_leader = False

    @property
    def is_leader(self) -> bool:
        return self._is_leader

    def _holder_expired(self, spec: V1LeaseSpec, now: datetime) -> bool:
        if spec.renew_time is None:
            return True
        renewed = spec.renew_time
        if renewed.tzinfo is None:
            renewed = renewed.replace(tzinfo=UTC)
        duration = spec.lease_duration_seconds or self.lease_duration_seconds
        return (now - renewed).total_seconds() >= duration

    def try_acquire_or_renew(self) -> bool:
        """Run one election round; return True if we hold the Lease afterwards."""
        now = self.now_fn()
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                return self._create(now)
            LOGGER.warning("Failed to read lease %s: %s", self.lease_name, exc.reason)
            return False

        spec = lease.spec or V1LeaseSpec()
        held_by_other = spec.holder_identity not in (None, self.identity)
        if held_by_other and not self._holder_expired(spec, now):
            return False

        if spec.holder_identity != self.identity or spec.acquire_time is None:
            spec.acquire_time = now
        spec.holder_identity = self.identity
        spec.renew_time = now
        spec.lease_duration_seconds = self.lease_duration_seconds
        lease.spec = spec
        try:
            self.coordination_api.replace_namespaced_lease(
                name=self.lease_name, namespace=self.namespace, body=lease
            )
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning("Failed to update lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def _create(self, now: datetime) -> bool:
        lease = V1Lease(
            metadata=V1ObjectMeta(name=self.lease_name, namespace=self.namespace),
            spec=V1LeaseSpec(
                holder_identity=self.identity,
                lease_duration_seconds=self.lease_duration_seconds,
                acquire_time=now,
                renew_time=now,
            ),
        )
        try:
            self.coordination_api.create_namespaced_lease(namespace=self.namespace, body=lease)
        except ApiException as exc:
            if exc.status != 409:
                LOGGER.warning("Failed to create lease %s: %s", self.lease_name, exc.reason)
            return False
        return True

    def release(self) -> None:
        """Clear ``holderIdentity`` so a standby replica can take over immediately."""
        try:
            lease = self.coordination_api.read_namespaced_lease(
                name=self.lease_name, namespace=self.namespace
            )
            if lease.spec is not None and lease.spec.holder_identity == self.identity:
                lease.spec.holder_identity = None
                self.coordination_api.replace_namespaced_lease(
                    name=self.lease_name, namespace=self.namespace, body=lease
                )
                LOGGER.info("Released leader lease %s", self.lease_name)
        except ApiException:
            LOGGER.warning("Failed to release leader lease %s", self.lease_name, exc_info=True)

    def _set_leader(self, leader: bool) -> None:
        self._is_leader = leader
        safe_observe(
            self.sink,
            MetricEvent(
                kind="leader",
                value=1.0 if leader else 0.0,
                label="acquired" if leader else "lost",
            ),
        )

    def run(
        self,
        on_started_leading: Callable[[], None],
        on_stopped_leading: Callable[[], None],
        stop_event: threading.Event,
    ) -> None:
        """Run election rounds until *stop_event* is set, invoking the callbacks on transitions."""
        LOGGER.info(
            "Starting leader election for lease %s/%s (identity=%s)",
            self.namespace,
            self.lease_name,
            self.identity,
        )
        last_renewed = time.monotonic()
        while not stop_event.is_set():
            try:
                held = self.try_acquire_or_renew()
            except Exception:
                LOGGER.exception("Unexpected error in leader election round")
                held = False

            if held:
                last_renewed = time.monotonic()
                if not self._is_leader:
                    LOGGER.info("Became leader (identity=%s)", self.identity)
                    self._set_leader(True)
                    on_started_leading()
            elif self._is_leader:
                elapsed = time.monotonic() - last_renewed
                if elapsed >= self.renew_deadline_seconds:
                    LOGGER.warning("Lost leader lease after %.2fs without renewal", elapsed)
                    self._set_leader(False)
                    on_stopped_leading()
            stop_event.wait(timeout=self.retry_period_seconds)

        if self._is_leader:
            self.release()
            self._set_leader(False)
            on_stopped_leading()


def default_identity() -> str:
    """Return the pod name (``HOSTNAME`` via the downward API) as the lease identity."""
    return os.getenv("HOSTNAME", os.getenv("POD_NAME", "unknown"))
