"""Shared fixtures for reqchain scenario tests."""

import json
import threading
import time
from dataclasses import replace
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, urlsplit

import pytest
from click.testing import CliRunner
from requests.structures import CaseInsensitiveDict

from reqchain import core
from reqchain.executor import RequestEngine, ResponseEnvelope, SizeInfo
from reqchain.scope import RuntimeScope


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def global_reqchain_dir(tmp_path, monkeypatch):
    """Override the global ~/.reqchain directory to a temp location."""
    fake_global = tmp_path / "fake_home" / ".reqchain"
    fake_global.mkdir(parents=True)
    monkeypatch.setattr(core, "GLOBAL_DIR", fake_global)
    monkeypatch.setattr(core, "GLOBAL_CONFIG", fake_global / "config.yaml")
    monkeypatch.setattr(core, "GLOBAL_ENV_DIR", fake_global / "env")
    monkeypatch.setattr(core, "GLOBAL_VARS_FILE", fake_global / "vars.yaml")
    monkeypatch.setattr(core, "GLOBAL_COLLECTIONS_DIR", fake_global / "collections")
    return fake_global


@pytest.fixture
def project(tmp_path, monkeypatch, global_reqchain_dir):
    """Empty working directory with an isolated global dir."""
    work = tmp_path / "project"
    work.mkdir()
    monkeypatch.chdir(work)
    return work


def make_response(
    status=200,
    json_body=None,
    text=None,
    headers=None,
    duration_ms=42.0,
    status_message="OK",
):
    """Factory for ResponseEnvelope objects."""
    headers = dict(headers or {})
    if json_body is not None:
        body = json.dumps(json_body).encode("utf-8")
        headers.setdefault("Content-Type", "application/json")
    else:
        body = (text or "").encode("utf-8")
    return ResponseEnvelope(
        status=status,
        status_message=status_message,
        duration_ms=duration_ms,
        headers=CaseInsensitiveDict(headers),
        raw_headers=list(headers.items()),
        body=body,
        json=json_body,
        size=SizeInfo(body_bytes=len(body), headers_bytes=0, total_bytes=len(body)),
    )


class FakeTransport:
    """Records outgoing requests and answers from a queue (the last answer repeats)."""

    def __init__(self, *responses, handler=None):
        self.sent = []
        self.calls = []
        self._responses = list(responses)
        self._handler = handler

    def send(self, request, timeout_ms=None, insecure=False):
        self.sent.append(request)
        self.calls.append({"timeout_ms": timeout_ms, "insecure": insecure})
        if self._handler is not None:
            response = self._handler(request)
        elif len(self._responses) > 1:
            response = self._responses.pop(0)
        else:
            response = self._responses[0]
        return replace(response, request=request)


@pytest.fixture
def scope():
    return RuntimeScope({"global": {}, "env": {}, "runtime": {}, "sequence": {}, "filter": {}})


def engine_with(*responses, handler=None):
    transport = FakeTransport(*responses, handler=handler)
    return RequestEngine(transport=transport), transport


# ── Local HTTP server ────────────────────────────────────────────────────


class _Handler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"

    def log_message(self, format, *args):
        pass

    def _send(self, status, payload=None, headers=None, raw=None):
        if raw is not None:
            body = raw
        elif payload is not None:
            body = json.dumps(payload).encode("utf-8")
        else:
            body = b""
        self.send_response(status)
        for key, value in (headers or {}).items():
            self.send_header(key, value)
        if payload is not None:
            self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        if self.command != "HEAD":
            self.wfile.write(body)

    def _route(self):
        length = int(self.headers.get("Content-Length") or 0)
        body = self.rfile.read(length).decode("utf-8") if length else ""
        parts = urlsplit(self.path)
        query = parse_qs(parts.query)
        path = parts.path

        if path == "/json":
            self._send(
                200,
                {"items": [{"id": 1, "name": "a"}, {"id": 2, "name": "b"}], "total": 2},
                headers={"X-Request-Id": "req-1"},
            )
        elif path == "/echo":
            self._send(
                200,
                {
                    "method": self.command,
                    "path": self.path,
                    "body": body,
                    "headers": {k.lower(): v for k, v in self.headers.items()},
                },
            )
        elif path.startswith("/redirect/"):
            code = int(path.rsplit("/", 1)[1])
            self._send(code, headers={"Location": query.get("to", ["/echo"])[0]})
        elif path.startswith("/chain/"):
            remaining = int(path.rsplit("/", 1)[1])
            if remaining <= 0:
                self._send(200, {"done": True})
            else:
                self._send(302, headers={"Location": f"/chain/{remaining - 1}"})
        elif path == "/no-location":
            self._send(302)
        elif path == "/slow":
            time.sleep(float(query.get("delay", ["1"])[0]))
            self._send(200, {"slow": True})
        elif path == "/trickle":
            self.send_response(200)
            self.send_header("Content-Length", "10")
            self.end_headers()
            for _ in range(10):
                self.wfile.write(b"x")
                self.wfile.flush()
                time.sleep(0.3)
        elif path == "/text":
            self._send(200, raw=b"plain text", headers={"Content-Type": "text/plain"})
        elif path == "/status":
            code = int(query.get("code", ["200"])[0])
            self._send(code, {"status": code})
        else:
            self._send(404, {"error": "not found"})

    do_GET = _route
    do_POST = _route
    do_PUT = _route
    do_PATCH = _route
    do_DELETE = _route
    do_HEAD = _route
    do_OPTIONS = _route


class _QuietServer(ThreadingHTTPServer):
    daemon_threads = True
    block_on_close = False

    def handle_error(self, request, client_address):
        pass


@pytest.fixture
def http_server():
    """Base URL of a threaded HTTP/1.1 server on 127.0.0.1."""
    server = _QuietServer(("127.0.0.1", 0), _Handler)
    thread = threading.Thread(target=server.serve_forever, daemon=True)
    thread.start()
    host, port = server.server_address[:2]
    yield f"http://{host}:{port}"
    server.shutdown()
    server.server_close()
