"""Pytest fixtures: a local HTTP server that serves scripted blocklists."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Dict, List, Optional, Tuple

import pytest


@dataclass
class Route:
    body: bytes = b""
    status: int = 200
    etag: Optional[str] = None
    delay: float = 0.0
    send_length: bool = True
    headers: Dict[str, str] = field(default_factory=dict)


class BlocklistServer:
    """Threaded HTTP server with per-path responses and request recording."""

    def __init__(self) -> None:
        self.routes: Dict[str, Route] = {}
        self.requests: List[Tuple[str, Dict[str, str]]] = []
        self._lock = threading.Lock()
        self.httpd = ThreadingHTTPServer(("127.0.0.1", 0), _make_handler(self))
        self.httpd.daemon_threads = True
        self._thread = threading.Thread(target=self.httpd.serve_forever, daemon=True)

    def start(self) -> None:
        self._thread.start()

    def stop(self) -> None:
        self.httpd.shutdown()
        self.httpd.server_close()

    def url(self, path: str) -> str:
        host, port = self.httpd.server_address[:2]
        return f"http://{host}:{port}{path}"

    def serve(self, path: str, body: str | bytes = b"", **kwargs) -> str:
        if isinstance(body, str):
            body = body.encode("utf-8")
        self.routes[path] = Route(body=body, **kwargs)
        return self.url(path)

    def record(self, path: str, headers: Dict[str, str]) -> None:
        with self._lock:
            self.requests.append((path, headers))

    def hits(self, path: str) -> int:
        with self._lock:
            return sum(1 for requested, _ in self.requests if requested == path)

    def headers_for(self, path: str) -> List[Dict[str, str]]:
        with self._lock:
            return [headers for requested, headers in self.requests if requested == path]


def _make_handler(server: BlocklistServer):
    class Handler(BaseHTTPRequestHandler):
        def do_GET(self) -> None:  # noqa: N802
            headers = {key.lower(): value for key, value in self.headers.items()}
            server.record(self.path, headers)

            route = server.routes.get(self.path)
            if route is None:
                self._respond(404, b"not found")
                return
            if route.delay:
                time.sleep(route.delay)

            if route.etag and headers.get("if-none-match") == route.etag:
                self.send_response(304)
                self.send_header("ETag", route.etag)
                self.end_headers()
                return

            extra = dict(route.headers)
            if route.etag:
                extra["ETag"] = route.etag
            self._respond(route.status, route.body, extra, route.send_length)

        def _respond(self, status: int, body: bytes, headers: Optional[Dict[str, str]] = None,
                     send_length: bool = True) -> None:
            self.send_response(status)
            for key, value in (headers or {}).items():
                self.send_header(key, value)
            if send_length:
                self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            self.wfile.write(body)

        def log_message(self, format: str, *args) -> None:  # noqa: A002
            pass

    return Handler


@pytest.fixture
def blocklist_server():
    """Yield a running BlocklistServer bound to an ephemeral local port."""
    server = BlocklistServer()
    server.start()
    yield server
    server.stop()
