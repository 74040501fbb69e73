from __future__ import annotations

import logging
import time
from collections.abc import Callable

from kubernetes.client import ApiException, CoreV1Api, V1ConfigMap, V1ObjectMeta

from coredns_ingress_sync.src.config import MANAGED_BY_LABEL, MANAGED_BY_VALUE
from coredns_ingress_sync.src.document import documents_equal
from coredns_ingress_sync.src.errors import retry_on_conflict, translate_api_exception
from coredns_ingress_sync.src.metrics import MetricEvent, MetricsSink, NullSink, safe_observe

LOGGER = logging.getLogger(__name__)


class DynamicConfigWriter:
    """Create-or-update the ConfigMap holding the generated rewrite rules.

    Each attempt re-reads the ConfigMap straight from the API server (never a
    cache), compares the stored rules against the desired ones ignoring
    comments, and writes only on a real difference.  Skipping no-op writes
    keeps our own updates from generating watch events.  Writes carry the
    read ``resourceVersion``, so a concurrent writer surfaces as a 409 and
    the attempt is repeated from a fresh read.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        name: str,
        key: str,
        sink: MetricsSink | None = None,
        attempts: int = 3,
        backoff_seconds: float = 0.1,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.name = name
        self.key = key
        self.sink = sink or NullSink()
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.sleep_fn = sleep_fn

    def _read(self) -> V1ConfigMap | None:
        try:
            return self.core_api.read_namespaced_config_map(
                name=self.name, namespace=self.namespace
            )
        except ApiException as exc:
            if exc.status == 404:
                return None
            raise translate_api_exception(
                exc, f"reading ConfigMap {self.namespace}/{self.name}"
            ) from exc

    def _create(self, content: str) -> None:
        body = V1ConfigMap(
            metadata=V1ObjectMeta(
                name=self.name,
                namespace=self.namespace,
                labels={MANAGED_BY_LABEL: MANAGED_BY_VALUE},
            ),
            data={self.key: content},
        )
        try:
            self.core_api.create_namespaced_config_map(namespace=self.namespace, body=body)
        except ApiException as exc:
            # 409 here means someone created it first; the retry takes the update path.
            raise translate_api_exception(
                exc, f"creating ConfigMap {self.namespace}/{self.name}"
            ) from exc

    def _attempt(self, content: str) -> str:
        existing = self._read()
        if existing is None:
            self._create(content)
            return "created"

        data = dict(existing.data or {})
        current = data.get(self.key)
        if current is not None and documents_equal(current, content):
            return "unchanged"

        data[self.key] = content
        existing.data = data
        if existing.metadata is None:
            existing.metadata = V1ObjectMeta(name=self.name, namespace=self.namespace)
        labels = dict(existing.metadata.labels or {})
        labels[MANAGED_BY_LABEL] = MANAGED_BY_VALUE
        existing.metadata.labels = labels

        try:
            self.core_api.replace_namespaced_config_map(
                name=self.name,
                namespace=self.namespace,
                body=existing,
            )
        except ApiException as exc:
            raise translate_api_exception(
                exc, f"updating ConfigMap {self.namespace}/{self.name}"
            ) from exc
        return "updated"

    def write(self, content: str) -> bool:
        """Persist *content*; return True when the ConfigMap was created or changed.

        Raises :class:`RetriesExhaustedError` when every attempt hit a version
        conflict, or another :class:`SyncError` for non-retryable API failures.
        """
        started = time.monotonic()
        try:
            action = retry_on_conflict(
                lambda: self._attempt(content),
                description=f"writing ConfigMap {self.namespace}/{self.name}",
                attempts=self.attempts,
                backoff_seconds=self.backoff_seconds,
                sleep_fn=self.sleep_fn,
            )
        except Exception:
            safe_observe(
                self.sink,
                MetricEvent(
                    kind="config_update",
                    result="error",
                    duration_seconds=time.monotonic() - started,
                ),
            )
            raise

        safe_observe(
            self.sink,
            MetricEvent(
                kind="config_update",
                result="success",
                duration_seconds=time.monotonic() - started,
            ),
        )
        if action == "unchanged":
            LOGGER.debug("Dynamic ConfigMap %s/%s already up to date", self.namespace, self.name)
            return False

        LOGGER.info("%s dynamic ConfigMap %s/%s", action.capitalize(), self.namespace, self.name)
        return True
