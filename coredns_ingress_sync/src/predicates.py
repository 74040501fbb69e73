from __future__ import annotations

from typing import Any

from coredns_ingress_sync.src.config import MANAGED_BY_LABEL, MANAGED_BY_VALUE
from coredns_ingress_sync.src.corefile import COREFILE_KEY
from coredns_ingress_sync.src.selector import FilterPolicy

# Watch event types as delivered by ``kubernetes.watch.Watch``.
CREATED = "ADDED"
UPDATED = "MODIFIED"
DELETED = "DELETED"


def _identity(obj: Any) -> tuple[str | None, str | None, dict[str, str]]:
    metadata = getattr(obj, "metadata", None)
    labels = getattr(metadata, "labels", None)
    return (
        getattr(metadata, "namespace", None),
        getattr(metadata, "name", None),
        labels if isinstance(labels, dict) else {},
    )


def should_reconcile_dynamic_config(
    event_type: str,
    obj: Any,
    namespace: str,
    name: str,
    label_key: str = MANAGED_BY_LABEL,
    label_value: str = MANAGED_BY_VALUE,
) -> bool:
    """Decide whether a change to the generated ConfigMap should trigger a reconcile.

    Creations are ours and never trigger.  Updates that still carry our
    management label are our own writes landing; updates without it (or with
    another value) mean something else overwrote the ConfigMap.  Deletions
    always trigger so the rules are regenerated.
    """
    obj_namespace, obj_name, labels = _identity(obj)
    if obj_namespace != namespace or obj_name != name:
        return False
    if event_type == CREATED:
        return False
    if event_type == UPDATED:
        return labels.get(label_key) != label_value
    return event_type == DELETED


def ingress_event_is_relevant(obj: Any, policy: FilterPolicy) -> bool:
    """Cheap pre-filter for ingress events.

    Only the namespace is checked: a class change or a new opt-out annotation
    must still trigger a reconcile so the host is dropped.
    """
    obj_namespace, _, _ = _identity(obj)
    return obj_namespace is not None and policy.allows_namespace(obj_namespace)


def corefile_needs_directive(event_type: str, obj: Any, directive: str) -> bool:
    """True when a CoreDNS ConfigMap event shows the import directive missing."""
    if event_type == DELETED:
        return False
    data = getattr(obj, "data", None) or {}
    corefile = data.get(COREFILE_KEY) if isinstance(data, dict) else None
    return corefile is not None and directive not in corefile


def workload_needs_mount(event_type: str, obj: Any, volume_name: str, container_name: str) -> bool:
    """True when a CoreDNS Deployment event shows the volume or its mount missing.

    Status-only updates (replica counts, conditions) arrive constantly and
    are ignored unless the pod template actually lost our volume.
    """
    if event_type == DELETED:
        return False
    pod_spec = getattr(getattr(getattr(obj, "spec", None), "template", None), "spec", None)
    if pod_spec is None:
        return False
    has_volume = any(v.name == volume_name for v in pod_spec.volumes or [])
    containers = [c for c in pod_spec.containers or [] if c.name == container_name]
    has_mount = any(
        m.name == volume_name for c in containers for m in c.volume_mounts or []
    )
    return not (has_volume and has_mount)
