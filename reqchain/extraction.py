"""reqchain extraction - capture response values into scope via name=source rules."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from reqchain.jsonpath import UNDEFINED, evaluate

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ExtractionResult:
    values: dict[str, Any] = field(default_factory=dict)
    printed: list[tuple[str, Any]] = field(default_factory=list)


def parse_rule(rule: str) -> tuple[str, str] | None:
    """'token=json.data.token' -> ('token', 'json.data.token')."""
    if "=" not in rule:
        return None
    name, source = rule.split("=", 1)
    name, source = name.strip(), source.strip()
    if not name or not source:
        return None
    return name, source


def read_source(response, source: str, derived: dict | None = None) -> Any:
    derived = derived or {}
    if source.startswith("json."):
        if response.json is None:
            return UNDEFINED
        return evaluate(response.json, source)
    if source.startswith("header."):
        return response.headers.get(source[7:].lower(), UNDEFINED)
    if source == "status":
        return response.status
    if source in ("duration", "durationMs"):
        return response.duration_ms
    if source == "filter" or source.startswith("filter."):
        payload = derived.get("filter_result", UNDEFINED)
        path = source[len("filter.") :] if source.startswith("filter.") else ""
        return evaluate(payload, path) if path else payload
    if source == "body":
        return response.text
    return UNDEFINED


def extract_values(response, rules: list[str] | None, derived: dict | None = None) -> ExtractionResult:
    """Apply every rule; sources that resolve to nothing are skipped."""
    values: dict[str, Any] = {}
    printed: list[tuple[str, Any]] = []
    for rule in rules or []:
        parsed = parse_rule(rule)
        if parsed is None:
            logger.warning("ignoring extraction rule %r (expected name=source)", rule)
            continue
        name, source = parsed
        value = read_source(response, source, derived)
        if value is UNDEFINED:
            logger.debug("extraction %s: %s resolved to nothing", name, source)
            continue
        values[name] = value
        printed.append((name, value))
    return ExtractionResult(values=values, printed=printed)
