from __future__ import annotations

import copy
import logging
import threading
from typing import Any, Protocol

from kubernetes import client, config
from kubernetes.client import ApiException, AppsV1Api, CoreV1Api, NetworkingV1Api, V1Deployment
from kubernetes.config.config_exception import ConfigException

from coredns_ingress_sync.src.errors import ConflictError, NotFoundError, translate_api_exception

LOGGER = logging.getLogger(__name__)


def load_kube_configuration() -> None:
    """Load Kubernetes client configuration.

    Attempts in-cluster config first (running inside a pod), falling back
    to the local kubeconfig for development.
    """
    try:
        config.load_incluster_config()
        LOGGER.info("Loaded in-cluster Kubernetes configuration")
    except ConfigException:
        config.load_kube_config()
        LOGGER.info("Loaded local kubeconfig")


def build_clients() -> tuple[CoreV1Api, AppsV1Api, NetworkingV1Api]:
    """Return CoreV1, AppsV1 and NetworkingV1 API clients using the active kube configuration."""
    return client.CoreV1Api(), client.AppsV1Api(), client.NetworkingV1Api()


class WorkloadClient(Protocol):
    """Read and write the CoreDNS Deployment with optimistic concurrency.

    ``update_workload`` must reject a body whose ``metadata.resource_version``
    is stale by raising :class:`ConflictError`.
    """

    def get_workload(self, namespace: str, name: str) -> V1Deployment: ...

    def update_workload(self, deployment: V1Deployment) -> None: ...


class DeploymentWorkloadClient:
    """:class:`WorkloadClient` backed by the ``apps/v1`` API."""

    def __init__(self, apps_api: AppsV1Api) -> None:
        self.apps_api = apps_api

    def get_workload(self, namespace: str, name: str) -> V1Deployment:
        try:
            return self.apps_api.read_namespaced_deployment(name=name, namespace=namespace)
        except ApiException as exc:
            raise translate_api_exception(
                exc, f"reading deployment {namespace}/{name}"
            ) from exc

    def update_workload(self, deployment: V1Deployment) -> None:
        namespace = deployment.metadata.namespace
        name = deployment.metadata.name
        try:
            self.apps_api.replace_namespaced_deployment(
                name=name,
                namespace=namespace,
                body=deployment,
            )
        except ApiException as exc:
            raise translate_api_exception(
                exc, f"updating deployment {namespace}/{name}"
            ) from exc


class CachedWorkloadClient:
    """:class:`WorkloadClient` that serves reads from the Deployment watch stream.

    ``observe`` is fed every event of the CoreDNS Deployment watch.  Reads fall
    back to ``direct`` on a cache miss; writes always go through ``direct``.
    A conflicting write drops the cached copy so the retry reads fresh state.
    """

    def __init__(self, direct: WorkloadClient) -> None:
        self.direct = direct
        self._lock = threading.Lock()
        self._cache: dict[tuple[str, str], V1Deployment] = {}

    @staticmethod
    def _key(deployment: Any) -> tuple[str, str]:
        return deployment.metadata.namespace, deployment.metadata.name

    def observe(self, event_type: str, obj: Any) -> None:
        if getattr(obj, "metadata", None) is None:
            return
        with self._lock:
            if event_type == "DELETED":
                self._cache.pop(self._key(obj), None)
            elif event_type in ("ADDED", "MODIFIED"):
                self._cache[self._key(obj)] = copy.deepcopy(obj)

    def get_workload(self, namespace: str, name: str) -> V1Deployment:
        with self._lock:
            cached = self._cache.get((namespace, name))
        if cached is not None:
            return copy.deepcopy(cached)
        LOGGER.debug("Deployment %s/%s not cached, reading from API", namespace, name)
        deployment = self.direct.get_workload(namespace, name)
        with self._lock:
            self._cache.setdefault((namespace, name), copy.deepcopy(deployment))
        return deployment

    def update_workload(self, deployment: V1Deployment) -> None:
        key = self._key(deployment)
        try:
            self.direct.update_workload(deployment)
        except (ConflictError, NotFoundError):
            with self._lock:
                self._cache.pop(key, None)
            raise
        # The watch delivers the stored object with its new resourceVersion.
        with self._lock:
            self._cache.pop(key, None)
