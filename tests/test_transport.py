"""End-to-end tests of the requests-backed transport against a local server."""

import socket
import time

import pytest

from reqchain.errors import NetworkError, RedirectError, ReqchainError, RequestTimeoutError
from reqchain.executor import HttpTransport, RequestEngine, RequestInfo, RequestSpec


@pytest.fixture
def engine():
    engine = RequestEngine()
    yield engine
    engine.transport.close()


def _free_port():
    with socket.socket() as s:
        s.bind(("127.0.0.1", 0))
        return s.getsockname()[1]


class TestEnvelope:
    def test_json_response(self, engine, scope, http_server):
        response = engine.execute(RequestSpec(url=f"{http_server}/json"), scope)
        assert response.status == 200
        assert response.status_message == "OK"
        assert response.http_version == "1.1"
        assert response.json["total"] == 2
        assert response.headers["x-request-id"] == "req-1"
        assert ("X-Request-Id", "req-1") in response.raw_headers
        assert response.duration_ms > 0
        assert response.timestamp

    def test_size(self, engine, scope, http_server):
        response = engine.execute(RequestSpec(url=f"{http_server}/json"), scope)
        size = response.size
        assert size.body_bytes == len(response.body)
        assert size.headers_bytes > 0
        assert size.total_bytes == size.body_bytes + size.headers_bytes

    def test_connection_info_and_reuse(self, engine, scope, http_server):
        first = engine.execute(RequestSpec(url=f"{http_server}/json"), scope)
        second = engine.execute(RequestSpec(url=f"{http_server}/json"), scope)
        assert first.connection.remote_address == "127.0.0.1"
        assert first.connection.reused is False
        assert second.connection.reused is True
        assert first.tls is None

    def test_text_response(self, engine, scope, http_server):
        response = engine.execute(RequestSpec(url=f"{http_server}/text"), scope)
        assert response.json is None
        assert response.text == "plain text"

    def test_post_echo(self, engine, scope, http_server):
        spec = RequestSpec(
            url=f"{http_server}/echo",
            method="POST",
            headers=("X-Trace: t-1",),
            body={"name": "x"},
        )
        response = engine.execute(spec, scope)
        echoed = response.json
        assert echoed["method"] == "POST"
        assert echoed["body"] == '{"name": "x"}'
        assert echoed["headers"]["x-trace"] == "t-1"
        assert echoed["headers"]["content-type"] == "application/json"

    def test_error_status(self, engine, scope, http_server):
        response = engine.execute(RequestSpec(url=f"{http_server}/status?code=503"), scope)
        assert response.status == 503
        assert response.status_class == "server_error"

    def test_send_directly(self, http_server):
        transport = HttpTransport()
        try:
            response = transport.send(RequestInfo(method="GET", url=f"{http_server}/json"))
        finally:
            transport.close()
        assert response.request.url.endswith("/json")


class TestRedirects:
    def test_307_keeps_post(self, engine, scope, http_server):
        spec = RequestSpec(
            url=f"{http_server}/redirect/307?to=/echo",
            method="POST",
            body="hi",
            follow_redirects=True,
        )
        response = engine.execute(spec, scope)
        assert response.json["method"] == "POST"
        assert response.json["body"] == "hi"

    def test_302_becomes_get(self, engine, scope, http_server):
        spec = RequestSpec(
            url=f"{http_server}/redirect/302?to=/echo",
            method="POST",
            body="hi",
            follow_redirects=True,
        )
        response = engine.execute(spec, scope)
        assert response.json["method"] == "GET"
        assert response.json["body"] == ""

    def test_four_hops(self, engine, scope, http_server):
        response = engine.execute(RequestSpec(url=f"{http_server}/chain/4", follow_redirects=True), scope)
        assert response.json == {"done": True}
        assert response.request.url.endswith("/chain/0")

    def test_five_hops_fail(self, engine, scope, http_server):
        with pytest.raises(RedirectError) as exc_info:
            engine.execute(RequestSpec(url=f"{http_server}/chain/5", follow_redirects=True), scope)
        assert exc_info.value.code == "MAX_REDIRECTS"

    def test_missing_location(self, engine, scope, http_server):
        with pytest.raises(RedirectError) as exc_info:
            engine.execute(RequestSpec(url=f"{http_server}/no-location", follow_redirects=True), scope)
        assert exc_info.value.code == "MISSING_LOCATION_HEADER"


class TestFailures:
    def test_timeout(self, engine, scope, http_server):
        with pytest.raises(RequestTimeoutError) as exc_info:
            engine.execute(RequestSpec(url=f"{http_server}/slow?delay=1", timeout_ms=100), scope)
        assert exc_info.value.category == "timeout"

    def test_timeout_covers_a_slow_body(self, engine, scope, http_server):
        start = time.monotonic()
        with pytest.raises(RequestTimeoutError) as exc_info:
            engine.execute(RequestSpec(url=f"{http_server}/trickle", timeout_ms=1000), scope)
        assert time.monotonic() - start < 2.5
        assert exc_info.value.message == "Request timeout after 1000ms"

    def test_unexpected_send_error_is_wrapped(self, engine, scope, http_server):
        with pytest.raises(ReqchainError) as exc_info:
            engine.execute(RequestSpec(url=f"{http_server}/echo", headers=("X-Name: 日本",)), scope)
        assert "latin-1" in exc_info.value.message
        assert exc_info.value.category == "general"
        assert isinstance(exc_info.value.__cause__, UnicodeEncodeError)

    def test_connection_refused(self, engine, scope):
        url = f"http://127.0.0.1:{_free_port()}/"
        with pytest.raises(NetworkError) as exc_info:
            engine.execute(RequestSpec(url=url), scope)
        assert exc_info.value.code == "ECONNREFUSED"
        assert exc_info.value.category == "network"

    def test_bad_timeout_value_is_wrapped(self):
        transport = HttpTransport()
        try:
            with pytest.raises(ReqchainError) as exc_info:
                transport.send(RequestInfo(method="GET", url="http://127.0.0.1:9/"), timeout_ms="500")
        finally:
            transport.close()
        assert isinstance(exc_info.value.__cause__, TypeError)
