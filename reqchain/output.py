"""reqchain output - text rendering of responses, extractions and sequence summaries."""

import json
from dataclasses import asdict
from typing import Any

from reqchain.jsonpath import UNDEFINED

VIEWS = ("body", "headers", "raw", "size", "info", "connection", "tls", "debug")


def _pretty(value: Any) -> str:
    if isinstance(value, dict | list):
        return json.dumps(value, indent=2)
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, str):
        return value
    return json.dumps(value)


def format_status_line(response) -> str:
    return f"HTTP/{response.http_version} {response.status} {response.status_message}".rstrip()


def format_headers(response) -> str:
    lines = [format_status_line(response)]
    lines.extend(f"{key}: {value}" for key, value in response.raw_headers)
    return "\n".join(lines)


def format_body(response) -> str:
    if response.json is not None:
        return json.dumps(response.json, indent=2)
    return response.text


def format_size(response) -> str:
    size = response.size
    if size is None:
        return "No size info available"
    return "\n".join(
        [
            f"Body:   {size.body_bytes} bytes",
            f"Header: {size.headers_bytes} bytes",
            f"Total:  {size.total_bytes} bytes",
        ],
    )


def format_info(response) -> str:
    request = response.request
    return "\n".join(
        [
            f"Method:   {request.method if request else '-'}",
            f"URL:      {request.url if request else '-'}",
            f"Status:   {response.status} {response.status_message}".rstrip(),
            f"Time:     {response.duration_ms:.2f} ms",
        ],
    )


def format_connection(response) -> str:
    if response.connection is None:
        return "No connection info available"
    return json.dumps(asdict(response.connection), indent=2)


def format_tls(response) -> str:
    if response.tls is None:
        return "TLS data only available for HTTPS requests"
    return json.dumps(asdict(response.tls), indent=2)


def format_debug(response) -> str:
    """Everything the envelope holds, as one JSON document."""
    data = response.as_dict()
    data["raw_headers"] = [list(pair) for pair in response.raw_headers]
    data["connection"] = asdict(response.connection) if response.connection else None
    data["tls"] = asdict(response.tls) if response.tls else None
    data["request"] = asdict(response.request) if response.request else None
    return json.dumps(data, indent=2, default=str)


def format_response(response, view: str = "body", filter_result: Any = None) -> str:
    """Render *response* in one of :data:`VIEWS`.

    When a filter ran, its result replaces the body in the body, headers and
    raw views.
    """
    filtered = filter_result is not None

    def body_text() -> str:
        if filtered:
            return _pretty(filter_result)
        return format_body(response)

    if view == "raw":
        return _pretty(filter_result) if filtered else response.text
    if view == "headers":
        return f"{format_headers(response)}\n\n{body_text()}"
    if view == "size":
        return format_size(response)
    if view == "info":
        return format_info(response)
    if view == "connection":
        return format_connection(response)
    if view == "tls":
        return format_tls(response)
    if view == "debug":
        return format_debug(response)
    return body_text()


def format_extraction(printed: list[tuple[str, Any]], scope_name: str = "runtime") -> str:
    return "\n".join(f"EXTRACTED: {scope_name}.{name}={_pretty(value)}" for name, value in printed)


def format_sequence_summary(results) -> str:
    if not results:
        return ""
    lines = ["Sequence Summary"]
    for index, item in enumerate(results, start=1):
        if item.error:
            lines.append(f"{index}. {item.label} -> ERROR ({item.error})")
        else:
            lines.append(f"{index}. {item.label} -> {item.status} ({item.duration_ms:.2f} ms)")
    return "\n".join(lines)


def format_variables(scopes: dict[str, dict]) -> str:
    if not scopes:
        return "No variables set."
    lines = []
    for scope, values in scopes.items():
        lines.append(f"{scope}:")
        if not values:
            lines.append("  (empty)")
        lines.extend(f"  {key} = {_pretty(value)}" for key, value in values.items())
    return "\n".join(lines)

