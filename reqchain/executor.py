"""reqchain executor - HTTP request execution.

The engine turns a :class:`RequestSpec` plus a :class:`RuntimeScope` into a
:class:`ResponseEnvelope`:

    resolve templates -> validate -> pre-script -> encode body -> send
    -> follow redirects -> post-script

Validation happens before any network I/O. Transport failures are mapped onto
the error taxonomy in :mod:`reqchain.errors` and are never retried.
"""

from __future__ import annotations

import base64
import contextlib
import copy
import json
import logging
import re
import socket
import ssl
import threading
import time
from dataclasses import asdict, dataclass, field, replace
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urljoin, urlsplit

import requests
from requests.structures import CaseInsensitiveDict

from reqchain.errors import (
    RedirectError,
    ReqchainError,
    RequestTimeoutError,
    ValidationError,
    classify_exception,
)
from reqchain.hooks import DEFAULT_TIMEOUT_MS, build_hook_context, run_hook
from reqchain.scope import RuntimeScope, resolve, resolve_in_obj

logger = logging.getLogger(__name__)

METHODS = ("GET", "POST", "PUT", "DELETE", "PATCH", "HEAD", "OPTIONS")
REDIRECT_STATUSES = (301, 302, 303, 307, 308)
MAX_REDIRECTS = 4

_SCHEME_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.-]*://")
_HEADER_KEY_RE = re.compile(r"^[A-Za-z0-9_-]+$")
_HTTP_VERSIONS = {9: "0.9", 10: "1.0", 11: "1.1", 20: "2"}


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Auth:
    kind: str  # "bearer" or "basic"
    value: str

    @classmethod
    def bearer(cls, token: str) -> Auth:
        return cls("bearer", token)

    @classmethod
    def basic(cls, credentials: str) -> Auth:
        """*credentials* is ``user:password``."""
        return cls("basic", credentials)

    def header_value(self, scope: RuntimeScope | None = None) -> str:
        value = resolve(self.value, scope) if scope is not None else self.value
        if self.kind == "basic":
            return "Basic " + base64.b64encode(value.encode("utf-8")).decode("ascii")
        return f"Bearer {value}"


@dataclass(frozen=True)
class RequestSpec:
    url: str
    method: str = "GET"
    headers: tuple[str, ...] = ()
    body: Any = None
    auth: Auth | None = None
    timeout_ms: int | None = None
    insecure: bool = False
    follow_redirects: bool = False
    benchmark_runs: int = 1
    pre_script: str | None = None
    post_script: str | None = None


@dataclass(frozen=True)
class RequestInfo:
    """The request actually put on the wire."""

    method: str
    url: str
    headers: tuple[tuple[str, str], ...] = ()
    body: str | None = None

    def header_lines(self) -> list[str]:
        return [f"{k}: {v}" for k, v in self.headers]


@dataclass(frozen=True)
class SizeInfo:
    body_bytes: int
    headers_bytes: int
    total_bytes: int


@dataclass(frozen=True)
class ConnectionInfo:
    local_address: str | None = None
    local_port: int | None = None
    remote_address: str | None = None
    remote_port: int | None = None
    reused: bool = False
    bytes_read: int | None = None
    bytes_written: int | None = None


@dataclass(frozen=True)
class TLSInfo:
    authorized: bool
    authorization_error: str | None = None
    protocol: str | None = None
    cipher: str | None = None
    certificate: dict | None = None


@dataclass(frozen=True)
class ResponseEnvelope:
    status: int
    status_message: str = ""
    http_version: str = "1.1"
    duration_ms: float = 0.0
    timestamp: str = ""
    headers: CaseInsensitiveDict = field(default_factory=CaseInsensitiveDict)
    raw_headers: list[tuple[str, str]] = field(default_factory=list)
    body: bytes = b""
    json: Any = None
    encoding: str = "utf-8"
    size: SizeInfo | None = None
    connection: ConnectionInfo | None = None
    tls: TLSInfo | None = None
    request: RequestInfo | None = None

    @property
    def text(self) -> str:
        return self.body.decode(self.encoding, errors="replace")

    @property
    def status_class(self) -> str | None:
        if 400 <= self.status < 500:
            return "client_error"
        if self.status >= 500:
            return "server_error"
        return None

    def as_dict(self) -> dict[str, Any]:
        """Copy handed to post-scripts; edits to it never reach the envelope."""
        return {
            "status": self.status,
            "status_message": self.status_message,
            "http_version": self.http_version,
            "duration_ms": self.duration_ms,
            "timestamp": self.timestamp,
            "headers": {k.lower(): v for k, v in self.headers.items()},
            "body": self.text,
            "json": copy.deepcopy(self.json),
            "size": asdict(self.size) if self.size else None,
        }


# ---------------------------------------------------------------------------
# Validation helpers
# ---------------------------------------------------------------------------


def normalize_url(url: Any) -> str:
    """Add ``http://`` when no scheme is given; only http/https are accepted."""
    if not isinstance(url, str) or not url.strip():
        raise ValidationError("URL is required", code="ERR_INVALID_URL")
    url = url.strip()
    if not _SCHEME_RE.match(url):
        url = f"http://{url}"
    try:
        parts = urlsplit(url)
        parts.port  # noqa: B018 - raises ValueError on a malformed port
    except ValueError as e:
        raise ValidationError(f'Invalid URL format: "{url}"', code="ERR_INVALID_URL", url=url) from e
    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        raise ValidationError(
            f'Unsupported protocol: "{scheme}". Only http and https are supported',
            code="ERR_UNSUPPORTED_PROTOCOL",
            url=url,
        )
    if not parts.hostname:
        raise ValidationError(f'Invalid URL format: "{url}"', code="ERR_INVALID_URL", url=url)
    return url


def validate_method(method: Any) -> str:
    upper = str(method or "").strip().upper()
    if upper not in METHODS:
        raise ValidationError(
            f'Invalid HTTP method: "{method}"',
            code="ERR_INVALID_METHOD",
            details=f"Allowed methods: {', '.join(METHODS)}",
        )
    return upper


def parse_header(line: Any) -> tuple[str, str]:
    """'Key: Value' -> ('Key', 'Value'). The value may contain colons."""
    if not isinstance(line, str) or ":" not in line:
        raise ValidationError(f'Invalid header format: "{line}". Must be "Key: Value"')
    key, value = line.split(":", 1)
    key, value = key.strip(), value.strip()
    if not key or not value:
        raise ValidationError(f'Invalid header: "{line}". Key and Value cannot be empty')
    if not _HEADER_KEY_RE.match(key):
        raise ValidationError(f'Invalid header key: "{key}". Contains invalid characters')
    return key, value


def parse_headers(lines) -> list[tuple[str, str]]:
    return [parse_header(line) for line in lines or []]


def headers_to_lines(headers: Any) -> list[str]:
    """Hooks may hand headers back as a dict; normalize to 'Key: Value' lines."""
    if isinstance(headers, dict):
        return [f"{k}: {v}" for k, v in headers.items()]
    return list(headers or [])


def apply_auth(headers: list[tuple[str, str]], auth_value: str | None) -> list[tuple[str, str]]:
    if not auth_value:
        return headers
    kept = [(k, v) for k, v in headers if k.lower() != "authorization"]
    kept.append(("Authorization", auth_value))
    return kept


def has_header(headers: list[tuple[str, str]], name: str) -> bool:
    return any(k.lower() == name.lower() for k, _ in headers)


def encode_body(body: Any, headers: list[tuple[str, str]]) -> tuple[str | None, list[tuple[str, str]]]:
    """Return the wire text for *body* and the headers to send with it.

    Strings that parse as JSON are sent as written; strings that only look
    like JSON are sent as-is with a warning. ``Content-Type`` is added for
    object or array bodies unless one was given.
    """
    if body is None or body == "":
        return None, headers
    if isinstance(body, str):
        try:
            parsed = json.loads(body)
        except ValueError:
            if body.lstrip().startswith(("{", "[")):
                logger.warning("Data looks like JSON but failed to parse. Sending as string.")
            return body, headers
        text = body
    else:
        parsed = body
        text = json.dumps(body)
    if isinstance(parsed, dict | list) and not has_header(headers, "content-type"):
        headers = [*headers, ("Content-Type", "application/json")]
    return text, headers


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


def _socket_of(raw) -> Any:
    conn = getattr(raw, "connection", None) or getattr(raw, "_connection", None)
    return getattr(conn, "sock", None)


def _abort(resp, expired: threading.Event) -> None:
    """Deadline timer callback: unblock the pending read by shutting the socket down."""
    expired.set()
    sock = _socket_of(resp.raw)
    with contextlib.suppress(OSError, AttributeError):
        if sock is not None:
            sock.shutdown(socket.SHUT_RDWR)
        else:
            resp.raw.close()


def _timeout_error(url: str, timeout_ms: int | None) -> RequestTimeoutError:
    return RequestTimeoutError(
        f"Request timeout after {timeout_ms}ms",
        code="ETIMEDOUT",
        url=url,
        details={"timeout_ms": timeout_ms},
    )


def _certificate_summary(cert: dict | None) -> dict | None:
    if not cert:
        return None

    def _name(entries) -> dict:
        return {k: v for rdn in entries or () for k, v in rdn}

    return {
        "subject": _name(cert.get("subject")),
        "issuer": _name(cert.get("issuer")),
        "valid_from": cert.get("notBefore"),
        "valid_to": cert.get("notAfter"),
        "serial_number": cert.get("serialNumber"),
    }


class HttpTransport:
    """Sends one request over a keep-alive :class:`requests.Session`."""

    def __init__(self, session: requests.Session | None = None):
        self.session = session or requests.Session()
        self._seen_sockets: set[tuple] = set()

    def close(self) -> None:
        self.session.close()

    def send(
        self,
        request: RequestInfo,
        timeout_ms: int | None = None,
        insecure: bool = False,
    ) -> ResponseEnvelope:
        timestamp = datetime.now(timezone.utc).isoformat()
        start = time.perf_counter()
        try:
            timeout = timeout_ms / 1000 if timeout_ms else None
            deadline = time.monotonic() + timeout if timeout else None
            resp = self.session.request(
                request.method,
                request.url,
                headers=dict(request.headers),
                data=request.body.encode("utf-8") if request.body is not None else None,
                timeout=timeout,
                allow_redirects=False,
                stream=True,
                verify=not insecure,
            )
        except Exception as e:
            raise classify_exception(e, url=request.url, timeout_ms=timeout_ms) from e

        # The socket is only reachable until the body has been consumed.
        connection, tls = self._connection_details(resp, insecure)

        # requests bounds each socket operation; the timer bounds the whole body.
        expired = threading.Event()
        timer = None
        if deadline is not None:
            timer = threading.Timer(max(deadline - time.monotonic(), 0), _abort, (resp, expired))
            timer.daemon = True
            timer.start()

        chunks: list[bytes] = []
        try:
            for chunk in resp.iter_content(chunk_size=65536):
                chunks.append(chunk)
            if expired.is_set():
                raise _timeout_error(request.url, timeout_ms)
        except ReqchainError:
            raise
        except Exception as e:
            if expired.is_set():
                raise _timeout_error(request.url, timeout_ms) from e
            raise classify_exception(e, url=request.url, timeout_ms=timeout_ms) from e
        finally:
            if timer is not None:
                timer.cancel()
            resp.close()
        duration_ms = (time.perf_counter() - start) * 1000

        body = b"".join(chunks)
        encoding = resp.encoding or "utf-8"
        parsed = None
        if body:
            try:
                parsed = json.loads(body.decode(encoding, errors="replace"))
            except ValueError:
                parsed = None

        raw_headers = self._raw_headers(resp)
        http_version = _HTTP_VERSIONS.get(getattr(resp.raw, "version", 11), "1.1")
        status_line = f"HTTP/{http_version} {resp.status_code} {resp.reason or ''}"
        headers_bytes = len((status_line + "\r\n").encode("latin-1", errors="replace")) + sum(
            len(f"{k}: {v}\r\n".encode("latin-1", errors="replace")) for k, v in raw_headers
        ) + 2

        return ResponseEnvelope(
            status=resp.status_code,
            status_message=resp.reason or "",
            http_version=http_version,
            duration_ms=duration_ms,
            timestamp=timestamp,
            headers=CaseInsensitiveDict(resp.headers),
            raw_headers=raw_headers,
            body=body,
            json=parsed,
            encoding=encoding,
            size=SizeInfo(
                body_bytes=len(body),
                headers_bytes=headers_bytes,
                total_bytes=len(body) + headers_bytes,
            ),
            connection=connection,
            tls=tls,
            request=request,
        )

    @staticmethod
    def _raw_headers(resp) -> list[tuple[str, str]]:
        raw = getattr(resp.raw, "headers", None)
        if raw is not None and hasattr(raw, "items"):
            return [(str(k), str(v)) for k, v in raw.items()]
        return list(resp.headers.items())

    def _connection_details(self, resp, insecure: bool) -> tuple[ConnectionInfo | None, TLSInfo | None]:
        sock = _socket_of(resp.raw)
        if sock is None:
            return None, None

        connection = None
        with contextlib.suppress(OSError, AttributeError, ValueError):
            local = sock.getsockname()
            remote = sock.getpeername()
            key = (local[0], local[1], remote[0], remote[1])
            reused = key in self._seen_sockets
            self._seen_sockets.add(key)
            connection = ConnectionInfo(
                local_address=local[0],
                local_port=local[1],
                remote_address=remote[0],
                remote_port=remote[1],
                reused=reused,
            )

        tls = None
        if isinstance(sock, ssl.SSLSocket):
            with contextlib.suppress(OSError, AttributeError, ValueError):
                cipher = sock.cipher()
                tls = TLSInfo(
                    authorized=not insecure,
                    authorization_error="verification disabled (--insecure)" if insecure else None,
                    protocol=sock.version(),
                    cipher=cipher[0] if cipher else None,
                    certificate=_certificate_summary(sock.getpeercert()),
                )
        return connection, tls


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _status_hint(response: ResponseEnvelope, url: str) -> str | None:
    status = response.status
    if status == 401:
        return f"Unauthorized (401): authentication required for {url}. Check --bearer/--basic credentials"
    if status == 403:
        return f"Forbidden (403): access to {url} was denied"
    if status == 404:
        return f"Not Found (404): {url}"
    if response.status_class == "client_error":
        return f"Client error ({status} {response.status_message})"
    if response.status_class == "server_error":
        return f"Server error ({status} {response.status_message})"
    return None


class RequestEngine:
    """Executes request specs against a transport.

    One engine is shared by every attempt of an invocation so that benchmark
    runs and sequence steps reuse the same keep-alive session.
    """

    def __init__(
        self,
        transport: HttpTransport | None = None,
        script_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        evaluator=None,
        max_redirects: int = MAX_REDIRECTS,
    ):
        self.transport = transport or HttpTransport()
        self.script_timeout_ms = script_timeout_ms
        self.evaluator = evaluator
        self.max_redirects = max_redirects

    def prepare(self, spec: RequestSpec, scope: RuntimeScope) -> dict[str, Any]:
        """Resolve templates and validate. Returns the hook-visible request dict."""
        url = normalize_url(resolve(spec.url, scope))
        method = validate_method(resolve(spec.method, scope))
        headers = parse_headers(resolve(line, scope) for line in spec.headers)
        if spec.auth is not None:
            headers = apply_auth(headers, spec.auth.header_value(scope))
        body = resolve_in_obj(spec.body, scope)
        return {
            "url": url,
            "method": method,
            "headers": [f"{k}: {v}" for k, v in headers],
            "body": body,
        }

    def _revalidate(self, request: dict[str, Any]) -> dict[str, Any]:
        return {
            "url": normalize_url(request.get("url")),
            "method": validate_method(request.get("method")),
            "headers": [f"{k}: {v}" for k, v in parse_headers(headers_to_lines(request.get("headers")))],
            "body": request.get("body"),
        }

    def execute(self, spec: RequestSpec, scope: RuntimeScope) -> ResponseEnvelope:
        request = self.prepare(spec, scope)

        if spec.pre_script:
            run_hook(
                spec.pre_script,
                build_hook_context(request, None, scope),
                label="pre-script",
                timeout_ms=self.script_timeout_ms,
                evaluator=self.evaluator,
            )
            request = self._revalidate(request)

        text, headers = encode_body(request["body"], parse_headers(request["headers"]))
        outgoing = RequestInfo(
            method=request["method"],
            url=request["url"],
            headers=tuple(headers),
            body=text,
        )
        response = self._send(outgoing, spec)

        hint = _status_hint(response, response.request.url if response.request else outgoing.url)
        if hint:
            logger.warning(hint)

        if spec.post_script:
            final = response.request or outgoing
            run_hook(
                spec.post_script,
                build_hook_context(
                    {
                        "url": final.url,
                        "method": final.method,
                        "headers": final.header_lines(),
                        "body": final.body,
                    },
                    response.as_dict(),
                    scope,
                ),
                label="post-script",
                timeout_ms=self.script_timeout_ms,
                evaluator=self.evaluator,
            )
        return response

    def _send(self, request: RequestInfo, spec: RequestSpec) -> ResponseEnvelope:
        """Send *request*, following redirects when ``spec.follow_redirects`` is set."""
        logger.debug("%s %s", request.method, request.url)
        response = self.transport.send(request, spec.timeout_ms, spec.insecure)
        if not spec.follow_redirects:
            return response

        hops = 0
        while response.status in REDIRECT_STATUSES:
            if hops >= self.max_redirects:
                raise RedirectError(
                    f"Too many redirects (max {self.max_redirects})",
                    code="MAX_REDIRECTS",
                    status_code=response.status,
                    url=request.url,
                )
            location = response.headers.get("location")
            if not location:
                raise RedirectError(
                    f"Redirect response ({response.status}) is missing a Location header",
                    code="MISSING_LOCATION_HEADER",
                    status_code=response.status,
                    url=request.url,
                )
            target = normalize_url(urljoin(request.url, location))
            if response.status in (301, 302, 303):
                request = replace(
                    request,
                    method="GET",
                    url=target,
                    body=None,
                    headers=tuple(
                        (k, v) for k, v in request.headers if k.lower() not in ("content-type", "content-length")
                    ),
                )
            else:
                request = replace(request, url=target)
            hops += 1
            logger.debug("redirect %d (%d) -> %s %s", hops, response.status, request.method, target)
            response = self.transport.send(request, spec.timeout_ms, spec.insecure)
        return response


def execute_request(
    spec: RequestSpec,
    scope: RuntimeScope | None = None,
    engine: RequestEngine | None = None,
) -> ResponseEnvelope:
    """One-shot convenience wrapper around :meth:`RequestEngine.execute`."""
    engine = engine or RequestEngine()
    return engine.execute(spec, scope if scope is not None else RuntimeScope())
