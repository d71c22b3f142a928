from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, ClassVar

from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

LOGGER = logging.getLogger(__name__)

Probe = tuple[int, bytes, str | None]


class _ProbeHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz`` and ``/metrics`` for the controller process.

    ``/healthz`` follows the reconcile loop thread, ``/readyz`` the watcher's
    initial sync.
    """

    ready_event: threading.Event
    alive_check: Callable[[], bool]
    routes: ClassVar[dict[str, str]] = {
        "/healthz": "_liveness",
        "/readyz": "_readiness",
        "/metrics": "_metrics",
    }

    def _liveness(self) -> Probe:
        if self.alive_check():
            return 200, b"ok", None
        return 503, b"reconcile loop stopped", None

    def _readiness(self) -> Probe:
        if self.ready_event.is_set():
            return 200, b"ready=true", None
        return 503, b"ready=false", None

    def _metrics(self) -> Probe:
        return 200, generate_latest(), CONTENT_TYPE_LATEST

    def do_GET(self) -> None:
        route = self.routes.get(self.path.split("?", 1)[0])
        status, body, content_type = getattr(self, route)() if route else (404, b"", None)

        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if body:
            self.wfile.write(body)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def make_health_handler(
    ready: threading.Event, alive: Callable[[], bool] | None = None
) -> type[_ProbeHandler]:
    """Bind ``ready`` and ``alive`` to a fresh handler class.

    HTTPServer instantiates handlers itself, so the probes' inputs are set
    as class attributes. Without ``alive`` the process always reports live.
    """

    class _BoundProbeHandler(_ProbeHandler):
        ready_event = ready
        alive_check = staticmethod(alive or (lambda: True))

    return _BoundProbeHandler


def start_health_server(
    ready: threading.Event, port: int, alive: Callable[[], bool] | None = None
) -> ThreadingHTTPServer:
    """Serve the probes from a daemon thread; ``port=0`` picks a free port."""
    server = ThreadingHTTPServer(("0.0.0.0", port), make_health_handler(ready, alive))  # noqa: S104
    server.daemon_threads = True
    server.block_on_close = False
    threading.Thread(target=server.serve_forever, name="fnctl-health", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
