from __future__ import annotations

import logging
import threading
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest


class _HealthHandler(BaseHTTPRequestHandler):
    """Serves liveness, readiness and Prometheus metrics.

    ``/readyz`` reports ready only after the deployment cache has synced and
    workers are running, and goes back to 503 during shutdown.
    """

    ready_event: threading.Event

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            if self.ready_event.is_set():
                self._respond(200, b"ready=true")
            else:
                self._respond(503, b"ready=false")
        elif self.path == "/metrics":
            self._respond(200, generate_latest(), CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("exposer.health").debug(fmt, *args)


def make_health_handler(ready: threading.Event) -> type[_HealthHandler]:
    # HTTPServer instantiates handlers itself, so the event is bound on the class.
    class _BoundHealthHandler(_HealthHandler):
        ready_event = ready

    return _BoundHealthHandler


def start_health_server(ready: threading.Event, port: int) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="health", daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
