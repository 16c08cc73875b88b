from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

import prometheus_client

ReadyCheck = Callable[[], bool]
StatusProvider = Callable[[], list[dict[str, Any]]]


class _HealthHandler(BaseHTTPRequestHandler):
    """HTTP handler serving liveness, readiness, status and Prometheus metrics endpoints."""

    ready_check: ReadyCheck
    leader_event: threading.Event | None
    status_provider: StatusProvider | None

    def _leader_ready(self) -> bool:
        return self.leader_event is None or self.leader_event.is_set()

    def _respond(
        self, status: int, body: bytes = b"", content_type: str | None = None
    ) -> None:
        """Send an HTTP response with optional body and content type."""
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/leadz":
            if self._leader_ready():
                self._respond(200, b"ok")
            else:
                self._respond(503, b"not leader")
        elif self.path == "/readyz":
            ready = self.ready_check()
            leader_ready = self._leader_ready()
            if ready and leader_ready:
                self._respond(200, b"ready=true leader=true")
            else:
                ready_text = "true" if ready else "false"
                leader_text = "true" if leader_ready else "false"
                self._respond(503, f"ready={ready_text} leader={leader_text}".encode())
        elif self.path == "/statusz":
            provider = self.status_provider
            services = provider() if provider is not None else []
            body = json.dumps({"services": services}, sort_keys=True).encode()
            self._respond(200, body, "application/json")
        elif self.path == "/metrics":
            output = prometheus_client.generate_latest()
            self._respond(200, output, prometheus_client.CONTENT_TYPE_LATEST)
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("leaderlane.health").debug(fmt, *args)


def make_health_handler(
    ready: ReadyCheck,
    leader: threading.Event | None = None,
    statuses: StatusProvider | None = None,
) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness check.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        ready_check = staticmethod(ready)
        leader_event = leader
        status_provider = staticmethod(statuses) if statuses is not None else None

    return _BoundHealthHandler


def start_health_server(
    ready: ReadyCheck,
    port: int,
    leader: threading.Event | None = None,
    statuses: StatusProvider | None = None,
) -> ThreadingHTTPServer:
    """Start the health/metrics HTTP server in a daemon thread and return it."""
    handler_class = make_health_handler(ready, leader=leader, statuses=statuses)
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server
