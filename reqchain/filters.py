"""reqchain filters - pipe-delimited projection/selection over a JSON body."""

from __future__ import annotations

from typing import Any

from reqchain.jsonpath import UNDEFINED, JsonKind, ensure_list, evaluate, kind_of

# ---------------------------------------------------------------------------
# Step grammar:
#   items[]                 -> path query, broadcast over the current array
#   json.meta.total         -> path query against the original payload
#   {id, title:name}        -> projection; alias:path, alias alone = same path
#   {id, owner:json.user}   -> projection path read from the original payload
#   {first:.tags[0]}        -> projection path relative to the element
# ---------------------------------------------------------------------------


def _is_missing(value: Any) -> bool:
    return value is None or value is UNDEFINED


def parse_projection(step: str) -> list[tuple[str, str]]:
    """Parse ``{alias:path, ...}`` into (alias, path) pairs."""
    inner = step.strip()[1:-1]
    entries: list[tuple[str, str]] = []
    for fragment in inner.split(","):
        fragment = fragment.strip()
        if not fragment:
            continue
        if ":" in fragment:
            alias, path = (part.strip() for part in fragment.split(":", 1))
        else:
            alias = path = fragment
        entries.append((alias, path))
    return entries


def _resolve_against(element: Any, root: Any, path: str) -> Any:
    if path.startswith("json."):
        return evaluate(root, path)
    if path.startswith("."):
        return evaluate(element, path[1:])
    return evaluate(element, path)


def _project(current: Any, step: str, root: Any) -> Any:
    entries = parse_projection(step)
    if not entries:
        return current
    projected = []
    for element in ensure_list(current):
        mapped = {}
        for alias, path in entries:
            value = _resolve_against(element, root, path)
            if value is not UNDEFINED:
                mapped[alias] = value
        projected.append(mapped)
    if kind_of(current) is JsonKind.ARRAY:
        return projected
    return projected[0] if projected else UNDEFINED


def _select(current: Any, step: str, root: Any) -> Any:
    if step.startswith("json."):
        return evaluate(root, step)
    if kind_of(current) is not JsonKind.ARRAY:
        return evaluate(current, step)
    results: list[Any] = []
    for element in current:
        value = evaluate(element, step)
        if value is UNDEFINED:
            continue
        if kind_of(value) is JsonKind.ARRAY:
            results.extend(value)
        else:
            results.append(value)
    return results if results else UNDEFINED


def split_steps(expression: str) -> list[str]:
    return [step.strip() for step in expression.split("|") if step.strip()]


def run_filter(payload: Any, expression: str | None) -> Any:
    """Run a filter pipeline over *payload*.

    Examples:
        run_filter(data, "items[] | {id, title:name}")
        run_filter(data, "json.meta.total")
        run_filter(data, "users.*.email")

    Returns UNDEFINED as soon as a step yields null or nothing.
    """
    if not expression or _is_missing(payload):
        return payload
    steps = split_steps(expression)
    if not steps:
        return payload

    current = payload
    for step in steps:
        if step.startswith("{") and step.endswith("}"):
            current = _project(current, step, payload)
        else:
            current = _select(current, step, payload)
        if _is_missing(current):
            return UNDEFINED
    return current
