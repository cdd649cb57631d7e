from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)

Probe = Callable[["_ProbeHandler"], tuple[int, bytes, str | None]]


def _healthz(handler: _ProbeHandler) -> tuple[int, bytes, str | None]:
    return 200, b"ok", None


def _readyz(handler: _ProbeHandler) -> tuple[int, bytes, str | None]:
    # Ready once the first ClusterManager list has been delivered to the queue.
    if handler.ready_event.is_set():
        return 200, b"ready=true", None
    return 503, b"ready=false", None


def _metrics(handler: _ProbeHandler) -> tuple[int, bytes, str | None]:
    return 200, generate_latest(), CONTENT_TYPE_LATEST


class _ProbeHandler(BaseHTTPRequestHandler):
    """Serves the operator's kubelet probes and the Prometheus scrape endpoint."""

    ready_event: threading.Event
    routes: dict[str, Probe] = {
        "/healthz": _healthz,
        "/readyz": _readyz,
        "/metrics": _metrics,
    }

    def do_GET(self) -> None:
        probe = self.routes.get(self.path.split("?", 1)[0])
        if probe is None:
            status, body, content_type = 404, b"", None
        else:
            status, body, content_type = probe(self)
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(ready: threading.Event) -> type[_ProbeHandler]:
    """Bind ``ready`` onto a handler subclass; HTTPServer builds handlers without arguments."""
    return type("_BoundProbeHandler", (_ProbeHandler,), {"ready_event": ready})


def start_health_server(ready: threading.Event, port: int) -> ThreadingHTTPServer:
    """Start the probe server on a daemon thread and return it for shutdown."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True, name="health").start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
