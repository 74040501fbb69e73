from __future__ import annotations

import logging
import random
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from kubernetes import watch
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, NetworkingV1Api

from coredns_ingress_sync.src.config import SyncConfig
from coredns_ingress_sync.src.errors import EnforcementError
from coredns_ingress_sync.src.metrics import MetricEvent, MetricsSink, NullSink, safe_observe
from coredns_ingress_sync.src.predicates import (
    corefile_needs_directive,
    ingress_event_is_relevant,
    should_reconcile_dynamic_config,
    workload_needs_mount,
)
from coredns_ingress_sync.src.reconciler import ConfigurationReconciler, Trigger
from coredns_ingress_sync.src.selector import FilterPolicy


class ReconcileQueue:
    """Coalescing single-slot work queue.

    Every request targets the same global reconcile, so pending requests
    collapse into one entry due at the earliest requested time.  A burst of
    ingress events therefore yields one cycle, and a requeue never postpones
    a reconcile that is already due sooner.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._cond = threading.Condition()
        self._pending: Trigger | None = None
        self._due_at: float | None = None

    def add(self, trigger: Trigger, delay_seconds: float = 0.0) -> None:
        due_at = self._clock() + max(0.0, delay_seconds)
        with self._cond:
            if self._due_at is None or due_at < self._due_at:
                self._due_at = due_at
                self._pending = trigger
            self._cond.notify_all()

    def pending(self) -> bool:
        with self._cond:
            return self._pending is not None

    def get(self, timeout: float) -> Trigger | None:
        """Block until a request is due or *timeout* elapses; return it or None."""
        deadline = self._clock() + timeout
        with self._cond:
            while True:
                now = self._clock()
                if self._due_at is not None and self._due_at <= now:
                    trigger = self._pending
                    self._pending = None
                    self._due_at = None
                    return trigger
                remaining = deadline - now
                if remaining <= 0:
                    return None
                if self._due_at is not None:
                    remaining = min(remaining, self._due_at - now)
                self._cond.wait(timeout=remaining)


@dataclass
class ResourceWatch:
    """One list-then-watch stream and the filter deciding which events enqueue a reconcile."""

    resource: str
    list_fn: Callable[..., Any]
    accepts: Callable[[str, Any], bool]
    list_kwargs: dict[str, Any] = field(default_factory=dict)
    observers: list[Callable[[str, Any], None]] = field(default_factory=list)


def build_watches(
    config: SyncConfig,
    policy: FilterPolicy,
    core_api: CoreV1Api,
    apps_api: AppsV1Api,
    networking_api: NetworkingV1Api,
    workload_observer: Callable[[str, Any], None] | None = None,
) -> list[ResourceWatch]:
    """Return the streams the controller follows.

    Ingresses are watched cluster-wide, or per allowed namespace when an
    allow-list is configured.  The generated ConfigMap goes through the
    self-update guard.  The CoreDNS ConfigMap and Deployment are watched only
    when auto-configuration is on, and only enqueue when our directive or
    mount has disappeared.

    ``workload_observer`` receives every CoreDNS Deployment event, e.g. to keep
    a :class:`CachedWorkloadClient` current.
    """

    def ingress_accepts(event_type: str, obj: Any) -> bool:
        return ingress_event_is_relevant(obj, policy)

    watches: list[ResourceWatch] = []
    if policy.watches_all_namespaces:
        watches.append(
            ResourceWatch(
                resource="ingress",
                list_fn=networking_api.list_ingress_for_all_namespaces,
                accepts=ingress_accepts,
            )
        )
    else:
        for namespace in sorted(policy.watch_namespaces):
            watches.append(
                ResourceWatch(
                    resource=f"ingress/{namespace}",
                    list_fn=networking_api.list_namespaced_ingress,
                    accepts=ingress_accepts,
                    list_kwargs={"namespace": namespace},
                )
            )

    watches.append(
        ResourceWatch(
            resource="dynamic-configmap",
            list_fn=core_api.list_namespaced_config_map,
            accepts=lambda event_type, obj: should_reconcile_dynamic_config(
                event_type,
                obj,
                namespace=config.coredns_namespace,
                name=config.dynamic_configmap_name,
            ),
            list_kwargs={
                "namespace": config.coredns_namespace,
                "field_selector": f"metadata.name={config.dynamic_configmap_name}",
            },
        )
    )

    if config.auto_configure:
        watches.append(
            ResourceWatch(
                resource="coredns-configmap",
                list_fn=core_api.list_namespaced_config_map,
                accepts=lambda event_type, obj: corefile_needs_directive(
                    event_type, obj, config.import_statement
                ),
                list_kwargs={
                    "namespace": config.coredns_namespace,
                    "field_selector": f"metadata.name={config.coredns_configmap_name}",
                },
            )
        )
        watches.append(
            ResourceWatch(
                resource="coredns-deployment",
                list_fn=apps_api.list_namespaced_deployment,
                accepts=lambda event_type, obj: workload_needs_mount(
                    event_type, obj, config.coredns_volume_name, config.coredns_container_name
                ),
                list_kwargs={
                    "namespace": config.coredns_namespace,
                    "field_selector": f"metadata.name={config.coredns_deployment_name}",
                },
                observers=[workload_observer] if workload_observer is not None else [],
            )
        )
    return watches


class SyncController:
    """Runs the watch streams and a single reconcile worker until shutdown.

    Each :class:`ResourceWatch` gets its own thread doing list-then-watch with
    ``410 Gone`` re-list and jittered exponential backoff (1 s to 30 s).
    Accepted events land in a :class:`ReconcileQueue`; the calling thread is
    the only one that reconciles, so cycles never overlap.  Failed cycles are
    requeued after the outcome's ``requeue_after`` and a resync is enqueued
    every ``resync_period_seconds`` as a safety net for missed events.

    ``401`` / ``403`` from any stream are treated as configuration errors
    (RBAC/auth) and stop the controller instead of retrying forever.
    """

    def __init__(
        self,
        reconciler: ConfigurationReconciler,
        watches: list[ResourceWatch],
        queue: ReconcileQueue | None = None,
        resync_period_seconds: int = 300,
        sink: MetricsSink | None = None,
        logger: logging.Logger | None = None,
        watch_factory: Callable[[], watch.Watch] = watch.Watch,
    ) -> None:
        self.reconciler = reconciler
        self.watches = watches
        self.queue = queue or ReconcileQueue()
        self.resync_period_seconds = resync_period_seconds
        self.sink = sink or NullSink()
        self.logger = logger or logging.getLogger(__name__)
        self.watch_factory = watch_factory

        self.ready = threading.Event()
        self.fatal = threading.Event()
        self._external_stop = threading.Event()
        self._active_watchers: set[watch.Watch] = set()
        self._watcher_lock = threading.Lock()

    def request_stop(self) -> None:
        """Request a cooperative stop and immediately interrupt every open watch stream."""
        self._external_stop.set()
        with self._watcher_lock:
            active = list(self._active_watchers)
        for watcher in active:
            watcher.stop()

    def _should_stop(self, stop_event: threading.Event) -> bool:
        return stop_event.is_set() or self._external_stop.is_set() or self.fatal.is_set()

    def _denied(self, spec: ResourceWatch, exc: ApiException, phase: str) -> bool:
        if exc.status not in {401, 403}:
            return False
        self.logger.error(
            "Kubernetes API access denied during %s of %s (status=%s). "
            "Check controller RBAC and service account permissions.",
            phase,
            spec.resource,
            exc.status,
        )
        self.fatal.set()
        return True

    def _list_resource_version(self, spec: ResourceWatch) -> str | None:
        listing = spec.list_fn(**spec.list_kwargs)
        return getattr(getattr(listing, "metadata", None), "resource_version", None)

    def _handle_event(self, spec: ResourceWatch, event: dict[str, Any]) -> str | None:
        """Enqueue a reconcile if the filter accepts the event; return its resourceVersion."""
        obj = event.get("object")
        if obj is None:
            return None
        metadata = getattr(obj, "metadata", None)
        event_type = str(event.get("type", ""))
        for observer in spec.observers:
            observer(event_type, obj)
        if spec.accepts(event_type, obj):
            self.queue.add(
                Trigger(
                    source=spec.resource,
                    event_type=event_type,
                    namespace=getattr(metadata, "namespace", None) or "",
                    name=getattr(metadata, "name", None) or "",
                )
            )
        return getattr(metadata, "resource_version", None)

    def _watch_loop(self, spec: ResourceWatch, stop: threading.Event) -> None:
        resource_version: str | None = None
        backoff_seconds = 1
        listed = False
        stream_count = 0

        while not self._should_stop(stop):
            if not listed:
                try:
                    resource_version = self._list_resource_version(spec)
                    listed = True
                except ApiException as exc:
                    if self._denied(spec, exc, "list"):
                        return
                    self.logger.exception("Initial list of %s failed", spec.resource)
                    safe_observe(self.sink, MetricEvent(kind="watch_error", label=spec.resource))
                except Exception:
                    self.logger.exception("Unexpected error listing %s", spec.resource)
                    safe_observe(self.sink, MetricEvent(kind="watch_error", label=spec.resource))
                if not listed:
                    stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                    backoff_seconds = min(backoff_seconds * 2, 30)
                    continue

            watcher = self.watch_factory()
            with self._watcher_lock:
                self._active_watchers.add(watcher)
            try:
                if stream_count > 0:
                    safe_observe(
                        self.sink, MetricEvent(kind="watch_reconnect", label=spec.resource)
                    )
                stream_count += 1
                for event in watcher.stream(
                    spec.list_fn,
                    resource_version=resource_version,
                    timeout_seconds=30,
                    **spec.list_kwargs,
                ):
                    if self._should_stop(stop):
                        break
                    resource_version = self._handle_event(spec, event) or resource_version
                backoff_seconds = 1
            except ApiException as exc:
                if exc.status == 410:
                    self.logger.warning(
                        "Watch of %s expired, re-listing and requesting a reconcile",
                        spec.resource,
                    )
                    # Anything could have changed while we were behind.
                    listed = False
                    self.queue.add(Trigger(source=spec.resource, event_type="RELIST"))
                    continue
                if self._denied(spec, exc, "watch"):
                    return
                self.logger.exception("Kubernetes API watch error on %s", spec.resource)
                safe_observe(self.sink, MetricEvent(kind="watch_error", label=spec.resource))
                stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            except Exception:
                self.logger.exception("Unexpected watch error on %s", spec.resource)
                safe_observe(self.sink, MetricEvent(kind="watch_error", label=spec.resource))
                stop.wait(timeout=backoff_seconds * (0.5 + random.random()))  # noqa: S311
                backoff_seconds = min(backoff_seconds * 2, 30)
            finally:
                watcher.stop()
                with self._watcher_lock:
                    self._active_watchers.discard(watcher)

    def startup(self) -> None:
        """Repair CoreDNS wiring once and queue the initial reconcile."""
        try:
            self.reconciler.ensure_server_configuration()
        except EnforcementError as exc:
            self.logger.warning("Startup CoreDNS enforcement incomplete: %s", exc)
        except Exception:
            self.logger.exception("Unexpected error during startup CoreDNS enforcement")
        self.queue.add(Trigger(source="startup"))

    def process_next(self, timeout: float) -> bool:
        """Run at most one due reconcile; return True if one ran."""
        trigger = self.queue.get(timeout=timeout)
        if trigger is None:
            return False
        try:
            outcome = self.reconciler.reconcile(trigger)
        except Exception:
            self.logger.exception("Unexpected error reconciling (trigger: %s)", trigger)
            self.queue.add(trigger, delay_seconds=float(self.reconciler.requeue_after_seconds))
            return True

        if outcome.success:
            self.ready.set()
        else:
            self.logger.warning(
                "Reconcile failed at stage %s; requeueing in %.1fs",
                outcome.stage,
                outcome.requeue_after or 0.0,
            )
            self.queue.add(trigger, delay_seconds=outcome.requeue_after or 0.0)
        return True

    def run_forever(self, shutdown_event: threading.Event | None = None) -> None:
        stop = shutdown_event or threading.Event()
        self._external_stop.clear()
        self.fatal.clear()

        self.startup()

        threads = [
            threading.Thread(
                target=self._watch_loop,
                args=(spec, stop),
                name=f"watch-{spec.resource}",
                daemon=True,
            )
            for spec in self.watches
        ]
        for thread in threads:
            thread.start()

        next_resync = (
            time.monotonic() + self.resync_period_seconds if self.resync_period_seconds else None
        )
        while not self._should_stop(stop):
            self.process_next(timeout=1.0)
            if next_resync is not None and time.monotonic() >= next_resync:
                self.queue.add(Trigger(source="resync"))
                next_resync = time.monotonic() + self.resync_period_seconds

        self.request_stop()
        for thread in threads:
            thread.join(timeout=5)
        self.ready.clear()
