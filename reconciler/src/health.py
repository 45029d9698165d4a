from __future__ import annotations

import json
import logging
import threading
from collections.abc import Callable
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any
from urllib.parse import urlsplit

import prometheus_client

LOGGER = logging.getLogger(__name__)

StatusProvider = Callable[[], dict[str, Any]]
Response = tuple[int, bytes, str | None]

_TEXT = "text/plain; charset=utf-8"
_JSON = "application/json"


class ReconcilerProbeHandler(BaseHTTPRequestHandler):
    """Serves ``/healthz``, ``/readyz``, ``/statusz`` and ``/metrics``.

    ``/statusz`` renders the JSON summary of the last sync pass; it is 404
    when no status source is wired in.
    """

    ready_event: threading.Event
    status_provider: StatusProvider | None = None

    def _healthz(self) -> Response:
        return 200, b"ok", _TEXT

    def _readyz(self) -> Response:
        if self.ready_event.is_set():
            return 200, b"ready=true", _TEXT
        return 503, b"ready=false", _TEXT

    def _statusz(self) -> Response:
        provider = type(self).status_provider
        if provider is None:
            return 404, b"", None
        try:
            summary = provider()
        except Exception:
            LOGGER.exception("Failed to build sync status summary")
            return 500, b"", None
        return 200, json.dumps(summary, sort_keys=True, default=str).encode(), _JSON

    def _metrics(self) -> Response:
        return 200, prometheus_client.generate_latest(), prometheus_client.CONTENT_TYPE_LATEST

    _ROUTES: dict[str, Callable[[ReconcilerProbeHandler], Response]] = {
        "/healthz": _healthz,
        "/readyz": _readyz,
        "/statusz": _statusz,
        "/metrics": _metrics,
    }

    def do_GET(self) -> None:
        route = self._ROUTES.get(urlsplit(self.path).path)
        status, body, content_type = route(self) if route else (404, b"", None)
        self.send_response(status)
        if content_type:
            self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)

    def log_message(self, fmt: str, *args: Any) -> None:
        LOGGER.debug(fmt, *args)


def start_health_server(
    ready: threading.Event, port: int, status_provider: StatusProvider | None = None
) -> ThreadingHTTPServer:
    """Serve probes and metrics from a daemon thread; call ``shutdown()`` to stop."""
    handler_class = type(
        "BoundProbeHandler",
        (ReconcilerProbeHandler,),
        {"ready_event": ready, "status_provider": status_provider},
    )
    server = ThreadingHTTPServer(("0.0.0.0", port), handler_class)  # noqa: S104
    server.daemon_threads = True
    threading.Thread(target=server.serve_forever, name="health-server", daemon=True).start()
    LOGGER.info("Health server listening on :%d", server.server_address[1])
    return server
