from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)

_PLAIN_TEXT = "text/plain; charset=utf-8"


class ProbeHandler(BaseHTTPRequestHandler):
    """Serves the kubelet probes and the Prometheus scrape endpoint.

    ``/readyz`` follows the controller's cache: it only reports ready once the
    informer's initial list has landed and workers are running.
    """

    cache_synced: threading.Event

    def _send(self, status: int, body: bytes, content_type: str = _PLAIN_TEXT) -> None:
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _liveness(self) -> None:
        self._send(200, b"ok")

    def _readiness(self) -> None:
        if self.cache_synced.is_set():
            self._send(200, b"synced=true")
        else:
            self._send(503, b"synced=false")

    def _metrics(self) -> None:
        self._send(200, generate_latest(), CONTENT_TYPE_LATEST)

    _ROUTES = {
        "/healthz": _liveness,
        "/readyz": _readiness,
        "/metrics": _metrics,
    }

    def do_GET(self) -> None:
        route = self._ROUTES.get(self.path.split("?", 1)[0])
        if route is None:
            self._send(404, b"not found")
            return
        route(self)

    do_HEAD = do_GET

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(ready: threading.Event) -> type[ProbeHandler]:
    """Bind *ready* to a handler class; the stdlib server builds handlers without arguments."""
    return type("BoundProbeHandler", (ProbeHandler,), {"cache_synced": ready})


def start_health_server(ready: threading.Event, port: int) -> ThreadingHTTPServer:
    """Serve probes and metrics on *port* from a daemon thread; port 0 picks a free port."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Probe server listening on :%d", server.server_address[1])
    return server
