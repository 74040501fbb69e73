from __future__ import annotations

import argparse
import json
import logging
import os
import re
import signal
import sys
import threading

from coredns_ingress_sync.src.cleanup import run_cleanup
from coredns_ingress_sync.src.config import (
    ConfigError,
    SyncConfig,
    env_int,
    load_config,
    parse_bool,
)
from coredns_ingress_sync.src.errors import SyncError
from coredns_ingress_sync.src.health import start_health_server
from coredns_ingress_sync.src.kube import (
    CachedWorkloadClient,
    DeploymentWorkloadClient,
    build_clients,
    load_kube_configuration,
)
from coredns_ingress_sync.src.metrics import METRICS, PrometheusSink
from coredns_ingress_sync.src.reconciler import build_reconciler
from coredns_ingress_sync.src.watcher import SyncController, build_watches

RUNTIME_VERSION = "0.1.0"
LOGGER = logging.getLogger(__name__)

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
)


def redact_sensitive_text(value: str) -> str:
    for pattern, replacement in _REDACTION_RULES:
        value = pattern.sub(replacement, value)
    return value


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "msg": redact_sensitive_text(record.getMessage()),
        }
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry)


def configure_logging() -> None:
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(getattr(logging, log_level, logging.INFO))


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="coredns-ingress-sync",
        description="Sync ingress hostnames into CoreDNS rewrite rules.",
    )
    parser.add_argument(
        "--mode",
        choices=("controller", "cleanup"),
        default=os.getenv("MODE", "controller"),
        help="controller: run the sync loop; cleanup: remove everything the controller added",
    )
    return parser.parse_args(argv)


def run_controller(config: SyncConfig) -> int:
    core_api, apps_api, networking_api = build_clients()
    sink = PrometheusSink()
    direct = DeploymentWorkloadClient(apps_api)
    # The CoreDNS Deployment is only watched when auto-configuration is on.
    cached = CachedWorkloadClient(direct) if config.auto_configure else None
    reconciler = build_reconciler(
        config,
        core_api=core_api,
        networking_api=networking_api,
        workloads=cached or direct,
        sink=sink,
    )
    watches = build_watches(
        config,
        reconciler.policy,
        core_api,
        apps_api,
        networking_api,
        workload_observer=cached.observe if cached is not None else None,
    )
    controller = SyncController(
        reconciler=reconciler,
        watches=watches,
        resync_period_seconds=config.resync_period_seconds,
        sink=sink,
    )

    leader_election_enabled = parse_bool(os.getenv("LEADER_ELECTION_ENABLED"), default=True)
    leading = threading.Event() if leader_election_enabled else None
    health_server = start_health_server(
        synced=controller.ready,
        port=env_int("HEALTH_PORT", 8081, minimum=1, maximum=65535),
        leading=leading,
    )

    shutdown_event = threading.Event()

    def _handle_signal(signum: int, frame: object) -> None:
        LOGGER.info("Received signal %d, shutting down", signum)
        shutdown_event.set()

    signal.signal(signal.SIGTERM, _handle_signal)
    signal.signal(signal.SIGINT, _handle_signal)

    if leader_election_enabled:
        run_with_leader_election(controller, shutdown_event, leading, sink)
    else:
        controller.run_forever(shutdown_event=shutdown_event)

    health_server.shutdown()
    LOGGER.info("Controller stopped")
    return 1 if controller.fatal.is_set() else 0


def run_with_leader_election(
    controller: SyncController,
    shutdown_event: threading.Event,
    leading: threading.Event | None,
    sink: PrometheusSink,
) -> None:
    """Run the controller only while this replica holds the lease.

    Losing the lease stops the loop and terminates the process so the
    Deployment restarts it as a clean standby.
    """
    from kubernetes.client import CoordinationV1Api

    from coredns_ingress_sync.src.leader import LeaseLeaderElector, default_identity

    elector = LeaseLeaderElector(
        coordination_api=CoordinationV1Api(),
        namespace=os.getenv("POD_NAMESPACE", "coredns-ingress-sync"),
        lease_name=os.getenv("LEADER_ELECTION_LEASE_NAME", "coredns-ingress-sync-leader"),
        identity=os.getenv("LEADER_ELECTION_IDENTITY", default_identity()),
        lease_duration_seconds=env_int("LEADER_ELECTION_LEASE_DURATION_SECONDS", 15, minimum=1),
        renew_deadline_seconds=env_int("LEADER_ELECTION_RENEW_DEADLINE_SECONDS", 10, minimum=1),
        retry_period_seconds=env_int("LEADER_ELECTION_RETRY_PERIOD_SECONDS", 2, minimum=1),
        sink=sink,
    )
    controller_stop = threading.Event()
    controller_thread: threading.Thread | None = None

    def _run_controller() -> None:
        try:
            controller.run_forever(shutdown_event=controller_stop)
        except Exception:
            LOGGER.exception("Controller thread crashed")
        finally:
            if not controller_stop.is_set():
                shutdown_event.set()

    def on_started_leading() -> None:
        nonlocal controller_thread
        if leading is not None:
            leading.set()
        controller_thread = threading.Thread(target=_run_controller, name="controller", daemon=True)
        controller_thread.start()

    def on_stopped_leading() -> None:
        if leading is not None:
            leading.clear()
        controller_stop.set()
        controller.request_stop()
        if controller_thread is not None:
            controller_thread.join(timeout=45)
        shutdown_event.set()

    elector.run(
        on_started_leading=on_started_leading,
        on_stopped_leading=on_stopped_leading,
        stop_event=shutdown_event,
    )


def main(argv: list[str] | None = None) -> int:
    """Entry point: configure logging, load config, and run the selected mode."""
    configure_logging()
    args = parse_args(argv)
    METRICS.build_info.info(
        {
            "version": os.getenv("APP_VERSION", RUNTIME_VERSION),
            "revision": os.getenv("GIT_SHA", "unknown"),
        }
    )

    try:
        config = load_config()
    except ConfigError as exc:
        LOGGER.error("Invalid configuration: %s", exc)
        return 2

    load_kube_configuration()
    if args.mode == "cleanup":
        core_api, apps_api, _ = build_clients()
        try:
            run_cleanup(config, core_api, DeploymentWorkloadClient(apps_api))
        except SyncError:
            LOGGER.exception("Cleanup failed")
            return 1
        return 0

    LOGGER.info(
        "Starting controller (ingress_class=%s, target=%s, namespaces=%s)",
        config.ingress_class,
        config.target_cname,
        config.watch_namespaces or "<all>",
    )
    return run_controller(config)


if __name__ == "__main__":
    sys.exit(main())
