from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from kubernetes.client import (
    V1ConfigMapVolumeSource,
    V1Container,
    V1KeyToPath,
    V1Volume,
    V1VolumeMount,
)

from coredns_ingress_sync.src.errors import MalformedDocumentError, retry_on_conflict
from coredns_ingress_sync.src.kube import WorkloadClient
from coredns_ingress_sync.src.metrics import MetricEvent, MetricsSink, NullSink, safe_observe

LOGGER = logging.getLogger(__name__)

# Must match the `*.server` glob of the Corefile import directive.
MOUNTED_FILE_NAME = "dynamic.server"


class MountEnforcer:
    """Keeps one volume + read-only mount for the generated rules on the CoreDNS pod template.

    The volume projects ``dynamic_config_key`` of the generated ConfigMap to
    :data:`MOUNTED_FILE_NAME`, whatever the key is called, and the mount
    exposes it at ``mount_path`` inside ``container_name``.  Both are matched
    by ``volume_name``; whichever is missing is added, never duplicated.
    """

    def __init__(
        self,
        workloads: WorkloadClient,
        namespace: str,
        deployment_name: str,
        container_name: str,
        volume_name: str,
        dynamic_configmap_name: str,
        dynamic_config_key: str,
        mount_path: str,
        sink: MetricsSink | None = None,
        attempts: int = 3,
        backoff_seconds: float = 0.1,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.workloads = workloads
        self.namespace = namespace
        self.deployment_name = deployment_name
        self.container_name = container_name
        self.volume_name = volume_name
        self.dynamic_configmap_name = dynamic_configmap_name
        self.dynamic_config_key = dynamic_config_key
        self.mount_path = mount_path
        self.sink = sink or NullSink()
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.sleep_fn = sleep_fn

    def _pod_spec(self, deployment: Any) -> Any:
        template = getattr(getattr(deployment, "spec", None), "template", None)
        pod_spec = getattr(template, "spec", None)
        if pod_spec is None:
            raise MalformedDocumentError(
                f"deployment {self.namespace}/{self.deployment_name} has no pod template spec"
            )
        return pod_spec

    def _container(self, pod_spec: Any) -> V1Container:
        for container in pod_spec.containers or []:
            if container.name == self.container_name:
                return container
        raise MalformedDocumentError(
            f"container {self.container_name!r} not found in deployment "
            f"{self.namespace}/{self.deployment_name}"
        )

    def _build_volume(self) -> V1Volume:
        return V1Volume(
            name=self.volume_name,
            config_map=V1ConfigMapVolumeSource(
                name=self.dynamic_configmap_name,
                items=[V1KeyToPath(key=self.dynamic_config_key, path=MOUNTED_FILE_NAME)],
            ),
        )

    def _build_mount(self) -> V1VolumeMount:
        return V1VolumeMount(name=self.volume_name, mount_path=self.mount_path, read_only=True)

    def _ensure_once(self) -> bool:
        deployment = self.workloads.get_workload(self.namespace, self.deployment_name)
        pod_spec = self._pod_spec(deployment)
        container = self._container(pod_spec)

        volumes = list(pod_spec.volumes or [])
        mounts = list(container.volume_mounts or [])
        has_volume = any(volume.name == self.volume_name for volume in volumes)
        has_mount = any(mount.name == self.volume_name for mount in mounts)
        if has_volume and has_mount:
            LOGGER.debug("CoreDNS deployment already mounts %s", self.volume_name)
            return False

        LOGGER.info(
            "Detected missing volume or volume mount on %s/%s (has_volume=%s, has_mount=%s)",
            self.namespace,
            self.deployment_name,
            has_volume,
            has_mount,
        )
        if not has_volume:
            volumes.append(self._build_volume())
            pod_spec.volumes = volumes
        if not has_mount:
            mounts.append(self._build_mount())
            container.volume_mounts = mounts

        self.workloads.update_workload(deployment)
        return True

    def ensure_mount(self) -> bool:
        """Add the volume and/or mount if missing; return True when the Deployment was updated.

        Raises :class:`NotFoundError` when the Deployment is missing,
        :class:`MalformedDocumentError` when the container is missing, and
        :class:`RetriesExhaustedError` when every write lost a version race.
        """
        changed = retry_on_conflict(
            self._ensure_once,
            description=f"mounting {self.volume_name} on {self.namespace}/{self.deployment_name}",
            attempts=self.attempts,
            backoff_seconds=self.backoff_seconds,
            sleep_fn=self.sleep_fn,
        )
        if changed:
            safe_observe(self.sink, MetricEvent(kind="config_drift", label="volume_mount"))
            LOGGER.info(
                "Updated CoreDNS deployment %s/%s with volume %s",
                self.namespace,
                self.deployment_name,
                self.volume_name,
            )
        return changed

    def _remove_once(self) -> bool:
        deployment = self.workloads.get_workload(self.namespace, self.deployment_name)
        pod_spec = self._pod_spec(deployment)
        changed = False

        volumes = pod_spec.volumes or []
        kept_volumes = [volume for volume in volumes if volume.name != self.volume_name]
        if len(kept_volumes) != len(volumes):
            pod_spec.volumes = kept_volumes
            changed = True

        for container in pod_spec.containers or []:
            mounts = container.volume_mounts or []
            kept_mounts = [mount for mount in mounts if mount.name != self.volume_name]
            if len(kept_mounts) != len(mounts):
                container.volume_mounts = kept_mounts
                changed = True

        if changed:
            self.workloads.update_workload(deployment)
        return changed

    def remove_mount(self) -> bool:
        """Remove the volume and every mount of it; return True when something was removed."""
        return retry_on_conflict(
            self._remove_once,
            description=(
                f"unmounting {self.volume_name} from {self.namespace}/{self.deployment_name}"
            ),
            attempts=self.attempts,
            backoff_seconds=self.backoff_seconds,
            sleep_fn=self.sleep_fn,
        )
