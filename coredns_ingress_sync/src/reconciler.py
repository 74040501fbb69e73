from __future__ import annotations

import logging
import time
from collections import Counter
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from kubernetes.client import ApiException, CoreV1Api, NetworkingV1Api

from coredns_ingress_sync.src.config import SyncConfig
from coredns_ingress_sync.src.corefile import DirectivePatcher
from coredns_ingress_sync.src.document import generate_document, utc_now_rfc3339
from coredns_ingress_sync.src.errors import EnforcementError, SyncError, translate_api_exception
from coredns_ingress_sync.src.kube import WorkloadClient
from coredns_ingress_sync.src.metrics import MetricEvent, MetricsSink, NullSink, safe_observe
from coredns_ingress_sync.src.mounts import MountEnforcer
from coredns_ingress_sync.src.selector import FilterPolicy, IngressRecord, select_hostnames
from coredns_ingress_sync.src.writer import DynamicConfigWriter

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class Trigger:
    """Why a reconcile was requested (for logs only; every cycle recomputes everything)."""

    source: str
    event_type: str = ""
    namespace: str = ""
    name: str = ""

    def __str__(self) -> str:
        target = f"{self.namespace}/{self.name}" if self.name else ""
        return " ".join(part for part in (self.source, self.event_type, target) if part)


@dataclass(frozen=True)
class ReconcileOutcome:
    """Result of one reconcile cycle.

    ``stage`` names the failing step (``ingress_list`` or ``dns_update``) and
    ``requeue_after`` is the delay in seconds before the next attempt; both are
    ``None`` on success.
    """

    success: bool
    hostnames: int = 0
    changed: bool = False
    stage: str | None = None
    error: Exception | None = None
    requeue_after: float | None = None


class ConfigurationReconciler:
    """Derives the rewrite rules from ingresses and keeps CoreDNS wired up to them.

    One cycle lists ingresses, selects hostnames, renders and writes the
    generated ConfigMap, then runs the Corefile and Deployment enforcement.
    Only the ConfigMap write can fail the cycle: the rewrite rules must
    converge even when CoreDNS itself is unreachable or forbidden to us.
    """

    def __init__(
        self,
        networking_api: NetworkingV1Api,
        policy: FilterPolicy,
        target: str,
        writer: DynamicConfigWriter,
        patcher: DirectivePatcher | None = None,
        enforcer: MountEnforcer | None = None,
        sink: MetricsSink | None = None,
        requeue_after_seconds: float = 60.0,
        now_fn: Callable[[], str] = utc_now_rfc3339,
    ) -> None:
        self.networking_api = networking_api
        self.policy = policy
        self.target = target
        self.writer = writer
        self.patcher = patcher
        self.enforcer = enforcer
        self.sink = sink or NullSink()
        self.requeue_after_seconds = requeue_after_seconds
        self.now_fn = now_fn
        self._reported_namespaces: set[str] = set()

    def generate_document(self, hostnames: Iterable[str]) -> str:
        return generate_document(hostnames, self.target, now_fn=self.now_fn)

    def list_ingresses(self) -> list[IngressRecord]:
        """List ingresses cluster-wide, or per allowed namespace when an allow-list is set.

        A failing namespace is logged and skipped; a failing cluster-wide list
        raises :class:`SyncError`.
        """
        if self.policy.watches_all_namespaces:
            try:
                response = self.networking_api.list_ingress_for_all_namespaces()
            except ApiException as exc:
                raise translate_api_exception(exc, "listing ingresses") from exc
            return [IngressRecord.from_kube(item) for item in response.items or []]

        records: list[IngressRecord] = []
        for namespace in sorted(self.policy.watch_namespaces):
            try:
                response = self.networking_api.list_namespaced_ingress(namespace=namespace)
            except ApiException as exc:
                LOGGER.warning(
                    "Failed to list ingresses in namespace %s: %s %s",
                    namespace,
                    exc.status,
                    exc.reason,
                )
                continue
            records.extend(IngressRecord.from_kube(item) for item in response.items or [])
        return records

    def _record_selection(self, records: list[IngressRecord]) -> None:
        per_namespace = Counter(
            record.namespace for record in records if self.policy.admits(record)
        )
        # Namespaces that dropped to zero still need their gauge cleared.
        for namespace in self._reported_namespaces - per_namespace.keys():
            per_namespace[namespace] = 0
        for namespace, count in per_namespace.items():
            safe_observe(
                self.sink,
                MetricEvent(kind="ingresses_selected", label=namespace, value=float(count)),
            )
        self._reported_namespaces = {ns for ns, count in per_namespace.items() if count}

    def _failed(self, stage: str, exc: Exception, started: float) -> ReconcileOutcome:
        requeue_after = getattr(exc, "requeue_after", None) or self.requeue_after_seconds
        safe_observe(
            self.sink,
            MetricEvent(
                kind="reconcile",
                result="error",
                label=stage,
                duration_seconds=time.monotonic() - started,
            ),
        )
        return ReconcileOutcome(
            success=False,
            stage=stage,
            error=exc,
            requeue_after=float(requeue_after),
        )

    def _enforce(self) -> dict[str, Exception]:
        steps: list[tuple[str, Callable[[], bool]]] = []
        if self.patcher is not None:
            steps.append(("directive", self.patcher.ensure_directive))
        if self.enforcer is not None:
            steps.append(("mount", self.enforcer.ensure_mount))

        failures: dict[str, Exception] = {}
        for step, ensure in steps:
            try:
                ensure()
            except SyncError as exc:
                failures[step] = exc
            except Exception as exc:
                # Transport errors and anything else the client raises.
                LOGGER.warning("Unexpected error during CoreDNS %s enforcement", step, exc_info=True)
                failures[step] = exc
        return failures

    def ensure_server_configuration(self) -> None:
        """Run directive and mount enforcement; both always run.

        Raises :class:`EnforcementError` naming every step that failed.
        """
        failures = self._enforce()
        if failures:
            raise EnforcementError(failures)

    def reconcile(self, trigger: Trigger) -> ReconcileOutcome:
        started = time.monotonic()
        LOGGER.info("Reconciling (trigger: %s)", trigger)

        try:
            records = self.list_ingresses()
        except SyncError as exc:
            LOGGER.error("Failed to list ingresses: %s", exc)
            return self._failed("ingress_list", exc, started)

        hostnames = select_hostnames(records, self.policy)
        self._record_selection(records)
        document = self.generate_document(hostnames)

        try:
            changed = self.writer.write(document)
        except SyncError as exc:
            LOGGER.error("Failed to update dynamic ConfigMap: %s", exc)
            return self._failed("dns_update", exc, started)

        safe_observe(self.sink, MetricEvent(kind="dns_records", value=float(len(hostnames))))

        for step, exc in self._enforce().items():
            LOGGER.warning(
                "CoreDNS %s enforcement failed; rewrite rules are still up to date: %s",
                step,
                exc,
            )

        safe_observe(
            self.sink,
            MetricEvent(
                kind="reconcile",
                result="success",
                duration_seconds=time.monotonic() - started,
            ),
        )
        LOGGER.info(
            "Reconciled %d hostname(s) from %d ingress(es) (configmap %s)",
            len(hostnames),
            len(records),
            "updated" if changed else "unchanged",
        )
        return ReconcileOutcome(success=True, hostnames=len(hostnames), changed=changed)


def build_reconciler(
    config: SyncConfig,
    core_api: CoreV1Api,
    networking_api: NetworkingV1Api,
    workloads: WorkloadClient,
    sink: MetricsSink | None = None,
) -> ConfigurationReconciler:
    """Wire a :class:`ConfigurationReconciler` from a :class:`SyncConfig`.

    With ``auto_configure`` off the Corefile and Deployment are never touched.
    """
    policy = FilterPolicy.from_strings(
        ingress_class=config.ingress_class,
        watch_namespaces=config.watch_namespaces,
        exclude_namespaces=config.exclude_namespaces,
        exclude_ingresses=config.exclude_ingresses,
        annotation_enabled_key=config.annotation_enabled_key,
    )
    writer = DynamicConfigWriter(
        core_api=core_api,
        namespace=config.coredns_namespace,
        name=config.dynamic_configmap_name,
        key=config.dynamic_config_key,
        sink=sink,
    )
    patcher: DirectivePatcher | None = None
    enforcer: MountEnforcer | None = None
    if config.auto_configure:
        patcher = DirectivePatcher(
            core_api=core_api,
            namespace=config.coredns_namespace,
            configmap_name=config.coredns_configmap_name,
            directive=config.import_statement,
            block_open=config.block_open,
            sink=sink,
        )
        enforcer = MountEnforcer(
            workloads=workloads,
            namespace=config.coredns_namespace,
            deployment_name=config.coredns_deployment_name,
            container_name=config.coredns_container_name,
            volume_name=config.coredns_volume_name,
            dynamic_configmap_name=config.dynamic_configmap_name,
            dynamic_config_key=config.dynamic_config_key,
            mount_path=config.mount_path,
            sink=sink,
        )
    else:
        LOGGER.info("CoreDNS auto-configuration disabled")

    return ConfigurationReconciler(
        networking_api=networking_api,
        policy=policy,
        target=config.target_cname,
        writer=writer,
        patcher=patcher,
        enforcer=enforcer,
        sink=sink,
        requeue_after_seconds=float(config.requeue_after_seconds),
    )
