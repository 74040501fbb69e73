from __future__ import annotations

import pytest
from kubernetes.client import (
    V1ConfigMap,
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

from coredns_ingress_sync.src.config import MANAGED_BY_LABEL, MANAGED_BY_VALUE
from coredns_ingress_sync.src.predicates import (
    CREATED,
    DELETED,
    UPDATED,
    corefile_needs_directive,
    ingress_event_is_relevant,
    should_reconcile_dynamic_config,
    workload_needs_mount,
)
from coredns_ingress_sync.src.selector import FilterPolicy

NAMESPACE = "kube-system"
NAME = "coredns-ingress-sync-rewrite-rules"
DIRECTIVE = "import /etc/coredns/custom/*.server"
VOLUME = "coredns-ingress-sync-volume"


def dynamic_configmap(
    labels: dict[str, str] | None = None, name: str = NAME, namespace: str = NAMESPACE
) -> V1ConfigMap:
    return V1ConfigMap(
        metadata=V1ObjectMeta(name=name, namespace=namespace, labels=labels),
        data={"dynamic.server": "rewrite name exact a.example.com target."},
    )


def accepts(event_type: str, obj: V1ConfigMap) -> bool:
    return should_reconcile_dynamic_config(event_type, obj, namespace=NAMESPACE, name=NAME)


# ---------------------------------------------------------------------------
# Self-update guard
# ---------------------------------------------------------------------------


def test_create_never_triggers() -> None:
    assert accepts(CREATED, dynamic_configmap({MANAGED_BY_LABEL: MANAGED_BY_VALUE})) is False
    assert accepts(CREATED, dynamic_configmap()) is False


def test_update_with_our_label_is_our_own_write() -> None:
    assert accepts(UPDATED, dynamic_configmap({MANAGED_BY_LABEL: MANAGED_BY_VALUE})) is False


@pytest.mark.parametrize(
    "labels",
    [None, {}, {MANAGED_BY_LABEL: "helm"}, {"app": "dns"}],
)
def test_update_without_our_label_triggers(labels: dict[str, str] | None) -> None:
    assert accepts(UPDATED, dynamic_configmap(labels)) is True


def test_delete_always_triggers() -> None:
    assert accepts(DELETED, dynamic_configmap({MANAGED_BY_LABEL: MANAGED_BY_VALUE})) is True


def test_other_configmaps_never_trigger() -> None:
    assert accepts(UPDATED, dynamic_configmap(name="coredns")) is False
    assert accepts(DELETED, dynamic_configmap(namespace="default")) is False


def test_unknown_event_type_does_not_trigger() -> None:
    assert accepts("BOOKMARK", dynamic_configmap()) is False


# ---------------------------------------------------------------------------
# Ingress pre-filter
# ---------------------------------------------------------------------------


def test_ingress_events_filtered_by_namespace_only() -> None:
    policy = FilterPolicy.from_strings(
        ingress_class="nginx", watch_namespaces="prod", exclude_namespaces="prod-legacy"
    )

    def ingress(namespace: str) -> V1ConfigMap:
        return V1ConfigMap(metadata=V1ObjectMeta(name="web", namespace=namespace))

    assert ingress_event_is_relevant(ingress("prod"), policy) is True
    assert ingress_event_is_relevant(ingress("dev"), policy) is False
    assert ingress_event_is_relevant(ingress("prod-legacy"), policy) is False


# ---------------------------------------------------------------------------
# CoreDNS drift detection
# ---------------------------------------------------------------------------


def test_corefile_without_directive_needs_patch() -> None:
    coredns = V1ConfigMap(metadata=V1ObjectMeta(name="coredns"), data={"Corefile": ".:53 {\n}\n"})

    assert corefile_needs_directive(UPDATED, coredns, DIRECTIVE) is True
    assert corefile_needs_directive(DELETED, coredns, DIRECTIVE) is False


def test_corefile_with_directive_is_ignored() -> None:
    coredns = V1ConfigMap(
        metadata=V1ObjectMeta(name="coredns"),
        data={"Corefile": f".:53 {{\n    {DIRECTIVE}\n}}\n"},
    )

    assert corefile_needs_directive(UPDATED, coredns, DIRECTIVE) is False


def test_configmap_without_corefile_is_ignored() -> None:
    coredns = V1ConfigMap(metadata=V1ObjectMeta(name="coredns"), data=None)

    assert corefile_needs_directive(UPDATED, coredns, DIRECTIVE) is False


def deployment(volumes: list[str], mounts: list[str]) -> V1Deployment:
    return V1Deployment(
        metadata=V1ObjectMeta(name="coredns", namespace=NAMESPACE),
        spec=V1DeploymentSpec(
            selector=V1LabelSelector(match_labels={"k8s-app": "kube-dns"}),
            template=V1PodTemplateSpec(
                spec=V1PodSpec(
                    containers=[
                        V1Container(
                            name="coredns",
                            volume_mounts=[
                                V1VolumeMount(name=m, mount_path=f"/mnt/{m}") for m in mounts
                            ],
                        )
                    ],
                    volumes=[V1Volume(name=v) for v in volumes],
                )
            ),
        ),
    )


@pytest.mark.parametrize(
    ("volumes", "mounts", "expected"),
    [
        ([VOLUME], [VOLUME], False),
        ([], [VOLUME], True),
        ([VOLUME], [], True),
        (["config-volume"], ["config-volume"], True),
    ],
)
def test_workload_mount_drift(volumes: list[str], mounts: list[str], expected: bool) -> None:
    assert workload_needs_mount(UPDATED, deployment(volumes, mounts), VOLUME, "coredns") is expected


def test_deleted_workload_is_ignored() -> None:
    assert workload_needs_mount(DELETED, deployment([], []), VOLUME, "coredns") is False
