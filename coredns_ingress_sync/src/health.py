from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)


class ProbeHandler(BaseHTTPRequestHandler):
    """Liveness (``/healthz``), readiness (``/readyz``), leadership (``/leadz``) and ``/metrics``.

    Readiness means the controller finished a successful reconcile and, when
    leader election is on, holds the lease.
    """

    synced: threading.Event
    leading: threading.Event | None = None

    def _is_leader(self) -> bool:
        return self.leading is None or self.leading.is_set()

    def _send(self, status: int, body: bytes, content_type: str = "text/plain; charset=utf-8") -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._send(200, b"ok")
        elif self.path == "/leadz":
            if self._is_leader():
                self._send(200, b"ok")
            else:
                self._send(503, b"standby")
        elif self.path == "/readyz":
            synced = self.synced.is_set()
            leader = self._is_leader()
            body = f"synced={str(synced).lower()} leader={str(leader).lower()}".encode()
            self._send(200 if synced and leader else 503, body)
        elif self.path == "/metrics":
            self._send(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._send(404, b"not found")

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def start_health_server(
    synced: threading.Event, port: int, leading: threading.Event | None = None
) -> ThreadingHTTPServer:
    """Serve probes and metrics from a daemon thread; return the server for shutdown."""
    handler = type(
        "BoundProbeHandler",
        (ProbeHandler,),
        {"synced": synced, "leading": leading},
    )
    server = ThreadingHTTPServer(("0.0.0.0", port), handler)  # noqa: S104
    server.daemon_threads = True
    threading.Thread(target=server.serve_forever, name="health", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
