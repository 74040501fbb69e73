from __future__ import annotations

import enum
import logging
import time
from collections.abc import Callable

from kubernetes.client import ApiException, CoreV1Api, V1ConfigMap

from coredns_ingress_sync.src.errors import (
    MalformedDocumentError,
    retry_on_conflict,
    translate_api_exception,
)
from coredns_ingress_sync.src.metrics import MetricEvent, MetricsSink, NullSink, safe_observe

LOGGER = logging.getLogger(__name__)

COREFILE_KEY = "Corefile"
DIRECTIVE_INDENT = "    "


class _ScanState(enum.Enum):
    BEFORE_BLOCK = "before-block"
    PENDING_INSERT = "pending-insert"
    DONE = "done"


def insert_directive(corefile: str, directive: str, block_open: str = ".:53 {") -> tuple[str, str]:
    """Return ``(new_text, placement)`` with *directive* present exactly once.

    ``placement`` is ``"present"`` when the directive already appears anywhere
    (text returned untouched), ``"inserted"`` when it was placed on the line
    after the first line equal to *block_open* (ignoring surrounding
    whitespace), or ``"appended"`` when no such line exists.  Every other line
    keeps its content and order.  Only the first server block is patched.
    """
    if directive in corefile:
        return corefile, "present"

    lines = corefile.split("\n")
    patched: list[str] = []
    state = _ScanState.BEFORE_BLOCK
    for line in lines:
        patched.append(line)
        if state is _ScanState.BEFORE_BLOCK and line.strip() == block_open:
            state = _ScanState.PENDING_INSERT
        if state is _ScanState.PENDING_INSERT:
            patched.append(DIRECTIVE_INDENT + directive)
            state = _ScanState.DONE

    if state is _ScanState.DONE:
        return "\n".join(patched), "inserted"

    # Keep a trailing newline trailing.
    if patched and patched[-1] == "":
        patched.insert(len(patched) - 1, directive)
    else:
        patched.append(directive)
    return "\n".join(patched), "appended"


def remove_directive(corefile: str, directive: str) -> tuple[str, bool]:
    """Drop every line containing *directive*; return ``(new_text, changed)``."""
    if directive not in corefile:
        return corefile, False
    kept = [line for line in corefile.split("\n") if directive not in line]
    return "\n".join(kept), True


class DirectivePatcher:
    """Keeps the ``import`` directive for the generated rules in the CoreDNS Corefile.

    The Corefile belongs to whoever installed CoreDNS (kubeadm, Helm,
    Terraform...) and is routinely rewritten without our line.  We put it back
    without touching anything else, and only write when the text changed.
    """

    def __init__(
        self,
        core_api: CoreV1Api,
        namespace: str,
        configmap_name: str,
        directive: str,
        block_open: str = ".:53 {",
        sink: MetricsSink | None = None,
        attempts: int = 3,
        backoff_seconds: float = 0.1,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.core_api = core_api
        self.namespace = namespace
        self.configmap_name = configmap_name
        self.directive = directive
        self.block_open = block_open
        self.sink = sink or NullSink()
        self.attempts = attempts
        self.backoff_seconds = backoff_seconds
        self.sleep_fn = sleep_fn

    def _read(self) -> tuple[V1ConfigMap, str]:
        try:
            config_map = self.core_api.read_namespaced_config_map(
                name=self.configmap_name, namespace=self.namespace
            )
        except ApiException as exc:
            raise translate_api_exception(
                exc, f"reading CoreDNS ConfigMap {self.namespace}/{self.configmap_name}"
            ) from exc

        corefile = (config_map.data or {}).get(COREFILE_KEY)
        if corefile is None:
            raise MalformedDocumentError(
                f"{COREFILE_KEY} not found in ConfigMap {self.namespace}/{self.configmap_name}"
            )
        return config_map, corefile

    def _write(self, config_map: V1ConfigMap, corefile: str) -> None:
        config_map.data = {**(config_map.data or {}), COREFILE_KEY: corefile}
        try:
            self.core_api.replace_namespaced_config_map(
                name=self.configmap_name,
                namespace=self.namespace,
                body=config_map,
            )
        except ApiException as exc:
            raise translate_api_exception(
                exc, f"updating CoreDNS ConfigMap {self.namespace}/{self.configmap_name}"
            ) from exc

    def _ensure_once(self) -> bool:
        config_map, corefile = self._read()
        patched, placement = insert_directive(corefile, self.directive, self.block_open)
        if placement == "present":
            LOGGER.debug("Import directive already present in %s", self.configmap_name)
            return False

        if placement == "appended":
            LOGGER.warning(
                "No %r line in %s/%s; appending import directive at the end",
                self.block_open,
                self.namespace,
                self.configmap_name,
            )
        self._write(config_map, patched)
        return True

    def ensure_directive(self) -> bool:
        """Insert the directive if missing; return True when the Corefile was changed."""
        changed = retry_on_conflict(
            self._ensure_once,
            description=f"patching Corefile in {self.namespace}/{self.configmap_name}",
            attempts=self.attempts,
            backoff_seconds=self.backoff_seconds,
            sleep_fn=self.sleep_fn,
        )
        if changed:
            safe_observe(self.sink, MetricEvent(kind="config_drift", label="import_statement"))
            LOGGER.info(
                "Restored import directive in CoreDNS ConfigMap %s/%s",
                self.namespace,
                self.configmap_name,
            )
        return changed

    def _remove_once(self) -> bool:
        config_map, corefile = self._read()
        cleaned, changed = remove_directive(corefile, self.directive)
        if changed:
            self._write(config_map, cleaned)
        return changed

    def remove_directive(self) -> bool:
        """Strip the directive from the Corefile; return True when something was removed."""
        return retry_on_conflict(
            self._remove_once,
            description=f"removing import from {self.namespace}/{self.configmap_name}",
            attempts=self.attempts,
            backoff_seconds=self.backoff_seconds,
            sleep_fn=self.sleep_fn,
        )
