import json
import socket
import threading
import time
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Optional

import pytest

from reqkit.config import TIMEOUT_ENV, VERIFY_TLS_ENV


@dataclass
class Reply:
    status: int = 200
    body: bytes = b"{}"
    headers: dict[str, str] = field(default_factory=dict)
    delay_s: float = 0.0


@dataclass
class Recorded:
    method: str
    path: str
    headers: Any # email.message.Message, case-insensitive get()
    body: bytes


class RecordingServer:
    """Scripted JSON server on localhost that remembers every request."""

    def __init__(self):
        self.replies: dict[str, Reply] = {}
        self.requests: list[Recorded] = []
        self._lock = threading.Lock()
        self._httpd = ThreadingHTTPServer(("127.0.0.1", 0), _Handler)
        self._httpd.recorder = self
        self._thread = threading.Thread(target=self._httpd.serve_forever, daemon=True)

    @property
    def base_url(self) -> str:
        host, port = self._httpd.server_address[:2]
        return f"http://{host}:{port}"

    def url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def reply(self, path: str, status: int = 200, body: Any = None, *, raw: Optional[bytes] = None,
              headers: Optional[dict[str, str]] = None, delay_s: float = 0.0) -> str:
        content = raw if raw is not None else json.dumps(body).encode("utf-8")
        self.replies[path] = Reply(status, content, dict(headers or {}), delay_s)
        return self.url(path)

    def record(self, request: Recorded) -> None:
        with self._lock:
            self.requests.append(request)

    @property
    def last(self) -> Recorded:
        return self.requests[-1]

    def start(self):
        self._thread.start()

    def stop(self):
        self._httpd.shutdown()
        self._httpd.server_close()


class _Handler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    def do_GET(self):
        self._handle()

    def do_POST(self):
        self._handle()

    def _handle(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length) if length else b""
        recorder = self.server.recorder
        recorder.record(Recorded(self.command, self.path, self.headers, body))

        reply = recorder.replies.get(self.path, Reply(404, b'{"error": "not found"}'))
        if reply.delay_s:
            time.sleep(reply.delay_s)

        # 1xx responses carry no body
        content = b"" if 100 <= reply.status < 200 else reply.body

        self.send_response(reply.status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(content)))
        for key, value in reply.headers.items():
            self.send_header(key, value)
        self.end_headers()
        self.wfile.write(content)

    def log_message(self, format, *args):
        pass


@pytest.fixture
def server():
    srv = RecordingServer()
    srv.start()
    yield srv
    srv.stop()


class SlowBodyServer:
    """Answers with full headers, then writes the body piece by piece."""

    def __init__(self, content_length: int, pieces: list[bytes], pause_s: float):
        self.content_length = content_length
        self.pieces = pieces
        self.pause_s = pause_s
        self._listener = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._listener.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._listener.bind(("127.0.0.1", 0))
        self._listener.listen(1)
        self._thread = threading.Thread(target=self._serve, daemon=True)

    @property
    def url(self) -> str:
        host, port = self._listener.getsockname()[:2]
        return f"http://{host}:{port}/slow-body"

    def _serve(self):
        try:
            conn, _ = self._listener.accept()
        except OSError:
            return
        with conn:
            request = b""
            while b"\r\n\r\n" not in request:
                data = conn.recv(4096)
                if not data:
                    return
                request += data
            head = (
                "HTTP/1.1 200 OK\r\n"
                "Content-Type: application/json\r\n"
                f"Content-Length: {self.content_length}\r\n"
                "\r\n"
            )
            try:
                conn.sendall(head.encode("ascii"))
                for piece in self.pieces:
                    conn.sendall(piece)
                    time.sleep(self.pause_s)
            except OSError:
                # client gave up
                return

    def start(self):
        self._thread.start()

    def stop(self):
        self._listener.close()


@pytest.fixture
def slow_body_server():
    servers = []

    def _make(content_length: int, pieces: list[bytes], pause_s: float) -> SlowBodyServer:
        srv = SlowBodyServer(content_length, pieces, pause_s)
        srv.start()
        servers.append(srv)
        return srv

    yield _make
    for srv in servers:
        srv.stop()


@pytest.fixture
def unused_url() -> str:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind(("127.0.0.1", 0))
        port = s.getsockname()[1]
    return f"http://127.0.0.1:{port}/nothing-here"


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch):
    # also removes anything a .env file loaded during the test
    monkeypatch.delenv(TIMEOUT_ENV, raising=False)
    monkeypatch.delenv(VERIFY_TLS_ENV, raising=False)
