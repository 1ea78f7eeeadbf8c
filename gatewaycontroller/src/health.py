from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Mapping
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any

from prometheus_client import start_http_server

ReadinessCheck = Callable[[], bool]


class _HealthHandler(BaseHTTPRequestHandler):
    """Liveness and readiness probes.

    ``/readyz`` succeeds only when every named check passes and reports each
    check as ``name=true|false`` so a failing probe explains itself.
    """

    checks: Mapping[str, ReadinessCheck]

    def _respond(self, status: int, body: bytes = b"") -> None:
        self.send_response(status)
        self.send_header("Content-Type", "text/plain; charset=utf-8")
        self.end_headers()
        if body:
            self.wfile.write(body)

    def do_GET(self) -> None:
        if self.path == "/healthz":
            self._respond(200, b"ok")
        elif self.path == "/readyz":
            results = {name: bool(check()) for name, check in self.checks.items()}
            body = " ".join(
                f"{name}={'true' if ok else 'false'}" for name, ok in results.items()
            ).encode()
            self._respond(200 if all(results.values()) else 503, body or b"ok")
        else:
            self._respond(404)

    def log_message(self, fmt: str, *args: Any) -> None:
        logging.getLogger("gatewaycontroller.health").debug(fmt, *args)


def event_check(event: threading.Event) -> ReadinessCheck:
    return event.is_set


def make_health_handler(checks: Mapping[str, ReadinessCheck]) -> type[_HealthHandler]:
    """Return a handler class bound to the given readiness checks.

    Uses class-level attribute binding so the stdlib HTTPServer can
    instantiate handlers without constructor arguments.
    """

    class _BoundHealthHandler(_HealthHandler):
        pass

    _BoundHealthHandler.checks = dict(checks)
    return _BoundHealthHandler


def start_health_server(checks: Mapping[str, ReadinessCheck], port: int) -> ThreadingHTTPServer:
    """Start the probe HTTP server in a daemon thread and return it."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(checks))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, daemon=True).start()
    logging.getLogger(__name__).info("Health server listening on :%d", port)
    return server


def start_metrics_server(port: int) -> None:
    """Expose the default Prometheus registry on ``:<port>/metrics``."""
    start_http_server(port)
    logging.getLogger(__name__).info("Metrics server listening on :%d", port)
