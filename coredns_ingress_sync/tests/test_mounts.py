from __future__ import annotations

import fnmatch

import pytest
from kubernetes.client import (
    V1ConfigMapVolumeSource,
    V1Container,
    V1Deployment,
    V1DeploymentSpec,
    V1LabelSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1Volume,
    V1VolumeMount,
)

from coredns_ingress_sync.src.errors import (
    ConflictError,
    MalformedDocumentError,
    NotFoundError,
    RetriesExhaustedError,
)
from coredns_ingress_sync.src.kube import CachedWorkloadClient, WorkloadClient
from coredns_ingress_sync.src.metrics import MetricEvent
from coredns_ingress_sync.src.mounts import MountEnforcer
from coredns_ingress_sync.tests.workloads import InMemoryWorkloadClient

VOLUME = "coredns-ingress-sync-volume"


def coredns_deployment(containers: list[V1Container] | None = None) -> V1Deployment:
    return V1Deployment(
        metadata=V1ObjectMeta(name="coredns", namespace="kube-system"),
        spec=V1DeploymentSpec(
            selector=V1LabelSelector(match_labels={"k8s-app": "kube-dns"}),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(labels={"k8s-app": "kube-dns"}),
                spec=V1PodSpec(
                    containers=containers
                    or [
                        V1Container(
                            name="coredns",
                            image="registry.k8s.io/coredns/coredns:v1.11.1",
                            volume_mounts=[
                                V1VolumeMount(
                                    name="config-volume",
                                    mount_path="/etc/coredns",
                                    read_only=True,
                                )
                            ],
                        )
                    ],
                    volumes=[
                        V1Volume(
                            name="config-volume",
                            config_map=V1ConfigMapVolumeSource(name="coredns"),
                        )
                    ],
                ),
            ),
        ),
    )


class RecordingSink:
    def __init__(self) -> None:
        self.events: list[MetricEvent] = []

    def observe(self, event: MetricEvent) -> None:
        self.events.append(event)


def make_enforcer(
    workloads: WorkloadClient,
    sink: RecordingSink | None = None,
    dynamic_config_key: str = "dynamic.server",
) -> MountEnforcer:
    return MountEnforcer(
        workloads=workloads,
        namespace="kube-system",
        deployment_name="coredns",
        container_name="coredns",
        volume_name=VOLUME,
        dynamic_configmap_name="coredns-ingress-sync-rewrite-rules",
        dynamic_config_key=dynamic_config_key,
        mount_path="/etc/coredns/custom",
        sink=sink,
        sleep_fn=lambda s: None,
    )


def pod_spec(workloads: InMemoryWorkloadClient) -> V1PodSpec:
    return workloads.get_workload("kube-system", "coredns").spec.template.spec


def test_adds_volume_and_read_only_mount() -> None:
    workloads = InMemoryWorkloadClient([coredns_deployment()])
    sink = RecordingSink()

    assert make_enforcer(workloads, sink).ensure_mount() is True

    spec = pod_spec(workloads)
    volume = next(v for v in spec.volumes if v.name == VOLUME)
    assert volume.config_map.name == "coredns-ingress-sync-rewrite-rules"
    assert [(i.key, i.path) for i in volume.config_map.items] == [
        ("dynamic.server", "dynamic.server")
    ]
    mount = next(m for m in spec.containers[0].volume_mounts if m.name == VOLUME)
    assert mount.mount_path == "/etc/coredns/custom"
    assert mount.read_only is True
    assert [v.name for v in spec.volumes] == ["config-volume", VOLUME]
    assert [(e.kind, e.label) for e in sink.events] == [("config_drift", "volume_mount")]


def test_custom_key_is_still_mounted_as_a_server_file() -> None:
    workloads = InMemoryWorkloadClient([coredns_deployment()])

    make_enforcer(workloads, dynamic_config_key="rules.conf").ensure_mount()

    volume = next(v for v in pod_spec(workloads).volumes if v.name == VOLUME)
    assert [(i.key, i.path) for i in volume.config_map.items] == [("rules.conf", "dynamic.server")]
    assert fnmatch.fnmatch(volume.config_map.items[0].path, "*.server")


def test_second_run_makes_no_write() -> None:
    workloads = InMemoryWorkloadClient([coredns_deployment()])
    enforcer = make_enforcer(workloads)

    enforcer.ensure_mount()
    assert enforcer.ensure_mount() is False

    assert workloads.update_count == 1
    spec = pod_spec(workloads)
    assert sum(v.name == VOLUME for v in spec.volumes) == 1
    assert sum(m.name == VOLUME for m in spec.containers[0].volume_mounts) == 1


def test_only_missing_mount_is_added() -> None:
    deployment = coredns_deployment()
    deployment.spec.template.spec.volumes.append(
        V1Volume(name=VOLUME, config_map=V1ConfigMapVolumeSource(name="something-else"))
    )
    workloads = InMemoryWorkloadClient([deployment])

    assert make_enforcer(workloads).ensure_mount() is True

    spec = pod_spec(workloads)
    assert sum(v.name == VOLUME for v in spec.volumes) == 1
    # An existing volume with our name is left as the operator configured it.
    assert next(v for v in spec.volumes if v.name == VOLUME).config_map.name == "something-else"
    assert any(m.name == VOLUME for m in spec.containers[0].volume_mounts)


def test_mount_goes_to_named_container_only() -> None:
    sidecar = V1Container(name="metrics-proxy", image="proxy:1")
    main = V1Container(name="coredns", image="coredns:1")
    workloads = InMemoryWorkloadClient([coredns_deployment([sidecar, main])])

    make_enforcer(workloads).ensure_mount()

    containers = {c.name: c for c in pod_spec(workloads).containers}
    assert containers["metrics-proxy"].volume_mounts is None
    assert [m.name for m in containers["coredns"].volume_mounts] == [VOLUME]


def test_missing_container_is_malformed() -> None:
    workloads = InMemoryWorkloadClient(
        [coredns_deployment([V1Container(name="dnsmasq", image="dnsmasq:1")])]
    )

    with pytest.raises(MalformedDocumentError, match="coredns"):
        make_enforcer(workloads).ensure_mount()
    assert workloads.update_count == 0


def test_missing_deployment_is_not_found() -> None:
    with pytest.raises(NotFoundError):
        make_enforcer(InMemoryWorkloadClient()).ensure_mount()


class ConflictingWorkloads(InMemoryWorkloadClient):
    def __init__(self, deployments: list[V1Deployment], conflicts: int) -> None:
        super().__init__(deployments)
        self.conflicts = conflicts
        self.attempts = 0

    def update_workload(self, deployment: V1Deployment) -> None:
        self.attempts += 1
        if self.conflicts > 0:
            self.conflicts -= 1
            raise ConflictError("the object has been modified")
        super().update_workload(deployment)


def test_conflict_is_retried() -> None:
    workloads = ConflictingWorkloads([coredns_deployment()], conflicts=2)

    assert make_enforcer(workloads).ensure_mount() is True
    assert workloads.attempts == 3
    assert workloads.update_count == 1


def test_persistent_conflict_exhausts_after_three_attempts() -> None:
    workloads = ConflictingWorkloads([coredns_deployment()], conflicts=99)

    with pytest.raises(RetriesExhaustedError):
        make_enforcer(workloads).ensure_mount()
    assert workloads.attempts == 3
    assert workloads.update_count == 0


def test_remove_mount_strips_volume_and_mounts() -> None:
    workloads = InMemoryWorkloadClient([coredns_deployment()])
    enforcer = make_enforcer(workloads)
    enforcer.ensure_mount()

    assert enforcer.remove_mount() is True
    assert enforcer.remove_mount() is False

    spec = pod_spec(workloads)
    assert [v.name for v in spec.volumes] == ["config-volume"]
    assert [m.name for m in spec.containers[0].volume_mounts] == ["config-volume"]


# ---------------------------------------------------------------------------
# Watch-fed client
# ---------------------------------------------------------------------------


def test_stale_cached_deployment_converges_on_retry() -> None:
    store = InMemoryWorkloadClient([coredns_deployment()])
    cached = CachedWorkloadClient(store)
    cached.observe("MODIFIED", store.get_workload("kube-system", "coredns"))
    # A rollout lands before the watch delivers it.
    store.put(store.get_workload("kube-system", "coredns"))

    assert make_enforcer(cached).ensure_mount() is True

    assert store.update_count == 1
    assert [v.name for v in pod_spec(store).volumes] == ["config-volume", VOLUME]
