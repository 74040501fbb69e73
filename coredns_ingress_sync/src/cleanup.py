from __future__ import annotations

import logging

from kubernetes.client import ApiException, CoreV1Api

from coredns_ingress_sync.src.config import SyncConfig
from coredns_ingress_sync.src.corefile import DirectivePatcher
from coredns_ingress_sync.src.errors import SyncError, translate_api_exception
from coredns_ingress_sync.src.kube import WorkloadClient
from coredns_ingress_sync.src.mounts import MountEnforcer

LOGGER = logging.getLogger(__name__)


def delete_dynamic_configmap(core_api: CoreV1Api, namespace: str, name: str) -> bool:
    """Delete the generated ConfigMap; return False if it was already gone."""
    try:
        core_api.delete_namespaced_config_map(name=name, namespace=namespace)
    except ApiException as exc:
        if exc.status == 404:
            LOGGER.info("Dynamic ConfigMap %s/%s not found; already deleted", namespace, name)
            return False
        raise translate_api_exception(exc, f"deleting ConfigMap {namespace}/{name}") from exc
    LOGGER.info("Deleted dynamic ConfigMap %s/%s", namespace, name)
    return True


def run_cleanup(config: SyncConfig, core_api: CoreV1Api, workloads: WorkloadClient) -> None:
    """Undo everything the controller added to the cluster (pre-delete hook).

    The Corefile directive and the Deployment volume are removed best-effort:
    CoreDNS may already be gone or owned by someone else.  Failing to delete
    the generated ConfigMap raises :class:`SyncError`.
    """
    patcher = DirectivePatcher(
        core_api=core_api,
        namespace=config.coredns_namespace,
        configmap_name=config.coredns_configmap_name,
        directive=config.import_statement,
        block_open=config.block_open,
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
    )

    try:
        if patcher.remove_directive():
            LOGGER.info("Removed import directive from CoreDNS Corefile")
        else:
            LOGGER.info("Import directive not found in CoreDNS Corefile; already removed")
    except SyncError:
        LOGGER.warning("Failed to remove import directive from CoreDNS", exc_info=True)

    try:
        if enforcer.remove_mount():
            LOGGER.info("Removed volume %s from CoreDNS deployment", config.coredns_volume_name)
        else:
            LOGGER.info("Volume %s not present on CoreDNS deployment", config.coredns_volume_name)
    except SyncError:
        LOGGER.warning("Failed to remove volume mount from CoreDNS deployment", exc_info=True)

    delete_dynamic_configmap(core_api, config.coredns_namespace, config.dynamic_configmap_name)
    LOGGER.info("Cleanup completed successfully")
