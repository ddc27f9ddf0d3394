"""Prometheus metrics for the operator process."""

from __future__ import annotations

import threading
from typing import Any
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from prometheus_client import Counter, make_wsgi_app

__all__ = ("BUILDS", "DESTROYS", "start_metrics_server")

BUILDS = Counter(
    "previewenv_builds_total",
    "Environment build requests, by outcome.",
    ["outcome"],
)

DESTROYS = Counter(
    "previewenv_destroys_total",
    "Environment destroy requests, by outcome.",
    ["outcome"],
)


class _QuietHandler(WSGIRequestHandler):
    def log_message(self, format: str, *args: Any) -> None:
        pass


def start_metrics_server(port: int, path: str = "/metrics") -> WSGIServer:
    """Serve the default Prometheus registry at ``path`` on ``port`` from a
    daemon thread.
    """
    metrics_app = make_wsgi_app()

    def app(environ: dict[str, Any], start_response: Any) -> Any:
        if environ.get("PATH_INFO") == path:
            return metrics_app(environ, start_response)
        start_response("404 Not Found", [("Content-Type", "text/plain")])
        return [b"Not Found\n"]

    server = make_server("", port, app, handler_class=_QuietHandler)
    thread = threading.Thread(
        target=server.serve_forever, name="metrics", daemon=True
    )
    thread.start()
    return server
