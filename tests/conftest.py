from __future__ import annotations

import json
import socket
import threading
import time
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from pathlib import Path

import pytest

from endpoint_monitoring.storage import MonitoringStore


class _TargetHandler(BaseHTTPRequestHandler):
    received: list[dict] = []

    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def _send(self, status: int, body: str, content_type: str = "text/plain; charset=utf-8") -> None:
        body_bytes = body.encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", content_type)
        self.send_header("Content-Length", str(len(body_bytes)))
        self.end_headers()
        self.wfile.write(body_bytes)

    def _record(self) -> dict:
        n = int(self.headers.get("Content-Length") or "0")
        raw = self.rfile.read(n) if n > 0 else b""
        entry = {
            "method": self.command,
            "path": self.path,
            "headers": {k.lower(): v for k, v in self.headers.items()},
            "body": raw.decode("utf-8"),
        }
        type(self).received.append(entry)
        return entry

    def _route(self) -> None:
        entry = self._record()
        if self.path == "/ok":
            self._send(200, "hello")
        elif self.path == "/unicode":
            self._send(200, "héllo")
        elif self.path == "/created":
            self._send(201, "created")
        elif self.path == "/error":
            self._send(500, "Internal Server Error")
        elif self.path == "/slow":
            time.sleep(2.0)
            self._send(200, "late")
        elif self.path == "/echo":
            self._send(200, json.dumps(entry), "application/json")
        elif self.path == "/hook":
            self._send(204, "")
        elif self.path == "/hook-reject":
            self._send(400, "invalid_payload")
        else:
            self._send(404, "Not Found")

    def do_GET(self) -> None:  # noqa: N802
        self._route()

    def do_POST(self) -> None:  # noqa: N802
        self._route()

    def do_PUT(self) -> None:  # noqa: N802
        self._route()


@pytest.fixture(scope="session")
def target_base_url() -> str:
    httpd = ThreadingHTTPServer(("127.0.0.1", 0), _TargetHandler)
    httpd.daemon_threads = True
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()

    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


@pytest.fixture()
def received_requests() -> list[dict]:
    _TargetHandler.received.clear()
    return _TargetHandler.received


@pytest.fixture()
def closed_port_url() -> str:
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    port = sock.getsockname()[1]
    sock.close()
    return f"http://127.0.0.1:{port}/"


@pytest.fixture()
def store(tmp_path: Path) -> MonitoringStore:
    s = MonitoringStore(str(tmp_path / "monitoring.db"))
    s.ensure_schema()
    return s
