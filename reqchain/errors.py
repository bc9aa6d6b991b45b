"""reqchain errors - categorized failures raised by the engine."""

from __future__ import annotations

import errno
import json
import socket
import ssl
from typing import Any
from urllib.parse import urlsplit

import requests


class ReqchainError(Exception):
    """Base error. Every failure carries a category, optional code and message."""

    category = "general"

    def __init__(
        self,
        message: str,
        *,
        category: str | None = None,
        code: str | None = None,
        details: Any = None,
        status_code: int | None = None,
        url: str | None = None,
    ):
        super().__init__(message)
        self.message = message
        if category:
            self.category = category
        self.code = code
        self.details = details
        self.status_code = status_code
        self.url = url

    def format(self) -> str:
        """Message plus whatever context is attached, one item per line."""
        lines = [self.message]
        if self.url:
            lines.append(f"  URL: {self.url}")
        if self.status_code:
            lines.append(f"  HTTP Status: {self.status_code}")
        if self.code:
            lines.append(f"  Error Code: {self.code}")
        if self.details:
            if isinstance(self.details, str):
                lines.append(f"  Details: {self.details}")
            elif isinstance(self.details, list):
                lines.extend(f"  - {d}" for d in self.details)
            else:
                lines.append(f"  Details: {json.dumps(self.details, default=str)}")
        return "\n".join(lines)


class ValidationError(ReqchainError):
    category = "validation"


class NetworkError(ReqchainError):
    category = "network"


class RequestTimeoutError(ReqchainError):
    category = "timeout"


class TLSError(ReqchainError):
    category = "tls"


class RedirectError(ReqchainError):
    category = "http"


class ScriptError(ReqchainError):
    category = "script"


class FileError(ReqchainError):
    category = "file"


class AssertionsFailedError(ReqchainError):
    category = "assertion"

    def __init__(self, report, **kwargs):
        failed = sum(1 for r in report.results if not r.passed)
        super().__init__(f"{failed} of {len(report.results)} assertions failed", **kwargs)
        self.report = report


# urllib3 wraps socket timeouts in these when reading a streamed body
_TIMEOUT_NAMES = ("ReadTimeoutError", "ConnectTimeoutError")

# errno -> (code, message)
_UNREACHABLE = {
    errno.ECONNREFUSED: ("ECONNREFUSED", "Connection refused"),
    errno.EHOSTUNREACH: ("EHOSTUNREACH", "Host unreachable"),
    errno.ENETUNREACH: ("ENETUNREACH", "Network unreachable"),
}


def _cause_chain(exc: BaseException):
    """Walk wrapped exceptions: requests -> urllib3 -> socket errors."""
    seen: set[int] = set()
    stack = [exc]
    while stack:
        current = stack.pop()
        if current is None or id(current) in seen:
            continue
        seen.add(id(current))
        yield current
        stack.extend(a for a in getattr(current, "args", ()) if isinstance(a, BaseException))
        reason = getattr(current, "reason", None)
        if isinstance(reason, BaseException):
            stack.append(reason)
        stack.append(current.__cause__)
        stack.append(current.__context__)


def classify_exception(
    exc: BaseException,
    url: str | None = None,
    timeout_ms: int | None = None,
) -> ReqchainError:
    """Map a transport-level exception onto the error taxonomy.

    Unknown exceptions are wrapped as a generic ReqchainError, never dropped.
    """
    if isinstance(exc, ReqchainError):
        return exc

    hostname = None
    if url:
        hostname = urlsplit(url).hostname

    if isinstance(exc, requests.exceptions.SSLError):
        return TLSError(
            f"SSL/TLS error: {exc}",
            code="CERT_VERIFY_FAILED",
            url=url,
        )
    if isinstance(exc, requests.exceptions.Timeout):
        return RequestTimeoutError(
            "Connection timeout",
            code="ETIMEDOUT",
            url=url,
            details={"timeout_ms": timeout_ms} if timeout_ms else None,
        )

    for cause in _cause_chain(exc):
        if isinstance(cause, socket.gaierror) or type(cause).__name__ == "NameResolutionError":
            return NetworkError(
                "Could not resolve host",
                category="dns",
                code="ENOTFOUND",
                url=url,
                details={"hostname": hostname},
            )
        if isinstance(cause, ssl.SSLError):
            return TLSError(f"SSL/TLS error: {cause}", code="CERT_VERIFY_FAILED", url=url)
        if isinstance(cause, socket.timeout) or type(cause).__name__ in _TIMEOUT_NAMES:
            return RequestTimeoutError("Connection timeout", code="ETIMEDOUT", url=url)
        if isinstance(cause, OSError) and cause.errno in _UNREACHABLE:
            code, message = _UNREACHABLE[cause.errno]
            return NetworkError(message, code=code, url=url, details={"hostname": hostname})

    if isinstance(exc, requests.exceptions.InvalidURL):
        return ValidationError(f"Invalid URL format: \"{url}\"", code="ERR_INVALID_URL", url=url)
    if isinstance(exc, requests.exceptions.ConnectionError):
        return NetworkError(f"Connection error: {exc}", url=url)

    return ReqchainError(str(exc) or "Request failed", url=url)
