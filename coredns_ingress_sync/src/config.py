from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass

from coredns_ingress_sync.src.selector import is_false_like

MANAGED_BY_LABEL = "app.kubernetes.io/managed-by"
MANAGED_BY_VALUE = "coredns-ingress-sync"


class ConfigError(RuntimeError):
    """Raised when the controller configuration is invalid."""


@dataclass(frozen=True)
class SyncConfig:
    """Immutable controller configuration loaded at startup.

    Attributes:
        ingress_class:          Only ingresses with this ``ingressClassName`` are synced.
        target_cname:           Fully-qualified rewrite target (trailing dot required).
        dynamic_configmap_name: ConfigMap holding the generated rewrite rules.
        dynamic_config_key:     Data key inside that ConfigMap.
        coredns_namespace:      Namespace of CoreDNS and of the generated ConfigMap.
        coredns_configmap_name: ConfigMap carrying the ``Corefile``.
        coredns_deployment_name / coredns_container_name:
                                Workload and container that receive the volume mount.
        coredns_volume_name:    Name shared by the injected volume and its mount.
        mount_path:             Where the generated rules are mounted read-only.
        block_open:             Corefile line after which the import directive goes.
        auto_configure:         When False, the Corefile and Deployment are left alone.
        watch_namespaces:       Allow-list; empty means every namespace.
        exclude_namespaces:     Deny-list, always wins over the allow-list.
        exclude_ingresses:      ``name`` (any namespace) or ``namespace/name`` entries.
        annotation_enabled_key: Annotation whose false-like value opts an ingress out.
        requeue_after_seconds:  Delay before retrying a failed reconcile.
        resync_period_seconds:  Periodic safety-net reconcile (0 disables).
    """

    ingress_class: str = "nginx"
    target_cname: str = "ingress-nginx-controller.ingress-nginx.svc.cluster.local."
    dynamic_configmap_name: str = "coredns-ingress-sync-rewrite-rules"
    dynamic_config_key: str = "dynamic.server"
    coredns_namespace: str = "kube-system"
    coredns_configmap_name: str = "coredns"
    coredns_deployment_name: str = "coredns"
    coredns_container_name: str = "coredns"
    coredns_volume_name: str = "coredns-ingress-sync-volume"
    mount_path: str = "/etc/coredns/custom"
    block_open: str = ".:53 {"
    auto_configure: bool = True
    watch_namespaces: str = ""
    exclude_namespaces: str = ""
    exclude_ingresses: str = ""
    annotation_enabled_key: str = "coredns-ingress-sync-enabled"
    requeue_after_seconds: int = 60
    resync_period_seconds: int = 300

    @property
    def import_statement(self) -> str:
        """The Corefile directive that loads every ``*.server`` file from the mount."""
        return f"import {self.mount_path.rstrip('/')}/*.server"


def parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None or not value.strip():
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def env_int(
    name: str,
    default: int,
    *,
    minimum: int | None = None,
    maximum: int | None = None,
    env: Mapping[str, str] | None = None,
) -> int:
    values = env if env is not None else os.environ
    raw = values.get(name)
    if raw is None or not raw.strip():
        value = default
    else:
        try:
            value = int(raw)
        except ValueError as exc:
            raise ConfigError(f"{name} must be an integer") from exc

    if minimum is not None and value < minimum:
        raise ConfigError(f"{name} must be >= {minimum}, got: {value}")
    if maximum is not None and value > maximum:
        raise ConfigError(f"{name} must be <= {maximum}, got: {value}")
    return value


def _get(values: Mapping[str, str], name: str, default: str) -> str:
    # Unset and empty both mean "use the default".
    raw = values.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


def load_config(env: Mapping[str, str] | None = None) -> SyncConfig:
    """Load controller config from the environment.

    Every setting has a default matching a stock kubeadm/CoreDNS install with
    ingress-nginx.  Raises :class:`ConfigError` for values that would produce
    an invalid Corefile or rewrite rule.
    """
    values = env if env is not None else os.environ
    defaults = SyncConfig()

    target_cname = _get(values, "TARGET_CNAME", defaults.target_cname)
    if any(ch.isspace() for ch in target_cname) or not target_cname.endswith("."):
        raise ConfigError(
            "TARGET_CNAME must be a single fully-qualified name ending in '.', "
            f"got: {target_cname!r}"
        )

    mount_path = _get(values, "COREDNS_MOUNT_PATH", defaults.mount_path)
    if not mount_path.startswith("/"):
        raise ConfigError(f"COREDNS_MOUNT_PATH must be absolute, got: {mount_path!r}")

    return SyncConfig(
        ingress_class=_get(values, "INGRESS_CLASS", defaults.ingress_class),
        target_cname=target_cname,
        dynamic_configmap_name=_get(
            values, "DYNAMIC_CONFIGMAP_NAME", defaults.dynamic_configmap_name
        ),
        dynamic_config_key=_get(values, "DYNAMIC_CONFIG_KEY", defaults.dynamic_config_key),
        coredns_namespace=_get(values, "COREDNS_NAMESPACE", defaults.coredns_namespace),
        coredns_configmap_name=_get(
            values, "COREDNS_CONFIGMAP_NAME", defaults.coredns_configmap_name
        ),
        coredns_deployment_name=_get(
            values, "COREDNS_DEPLOYMENT_NAME", defaults.coredns_deployment_name
        ),
        coredns_container_name=_get(
            values, "COREDNS_CONTAINER_NAME", defaults.coredns_container_name
        ),
        coredns_volume_name=_get(values, "COREDNS_VOLUME_NAME", defaults.coredns_volume_name),
        mount_path=mount_path,
        block_open=_get(values, "COREDNS_BLOCK_OPEN", defaults.block_open),
        # Only an explicit false-like value turns enforcement off.
        auto_configure=not is_false_like(values.get("COREDNS_AUTO_CONFIGURE")),
        watch_namespaces=values.get("WATCH_NAMESPACES", ""),
        exclude_namespaces=values.get("EXCLUDE_NAMESPACES", ""),
        exclude_ingresses=values.get("EXCLUDE_INGRESSES", ""),
        annotation_enabled_key=values.get(
            "ANNOTATION_ENABLED_KEY", defaults.annotation_enabled_key
        ).strip(),
        requeue_after_seconds=env_int(
            "REQUEUE_AFTER_SECONDS", defaults.requeue_after_seconds, minimum=1, env=values
        ),
        resync_period_seconds=env_int(
            "RESYNC_PERIOD_SECONDS", defaults.resync_period_seconds, minimum=0, env=values
        ),
    )
