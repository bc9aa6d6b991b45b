"""reqchain scope - named variable scopes and {{scope.key}} substitution."""

from __future__ import annotations

import contextlib
import json
import logging
import re
from collections.abc import Iterator, Mapping
from typing import Any

logger = logging.getLogger(__name__)

DEFAULT_SCOPE = "global"
PLACEHOLDER_RE = re.compile(r"\{\{(.*?)\}\}")


def parse_scoped_key(expr: str) -> tuple[str, str]:
    """Split ``scope.key`` on the first dot. A bare key belongs to ``global``."""
    if "." not in expr:
        return DEFAULT_SCOPE, expr.strip()
    scope, key = expr.split(".", 1)
    return scope.strip(), key.strip()


class RuntimeScope:
    """Scope name -> flat key/value mapping, shared by reference for one invocation.

    Extraction and hooks write through :meth:`set`; the sequence runner layers
    per-step values with :meth:`overlay`.
    """

    def __init__(self, scopes: Mapping[str, Mapping[str, Any]] | None = None):
        self._scopes: dict[str, dict[str, Any]] = {}
        for name, values in (scopes or {}).items():
            self._scopes[name] = dict(values or {})

    def __contains__(self, name: str) -> bool:
        return name in self._scopes

    def __getitem__(self, name: str) -> dict[str, Any]:
        return self._scopes[name]

    def names(self) -> list[str]:
        return list(self._scopes)

    def scope(self, name: str) -> dict[str, Any]:
        """Return the named scope, creating it empty if needed."""
        return self._scopes.setdefault(name, {})

    def lookup(self, name: str, key: str) -> tuple[bool, Any]:
        values = self._scopes.get(name)
        if values is None or key not in values:
            return False, None
        return True, values[key]

    def get(self, name: str, key: str, default: Any = None) -> Any:
        found, value = self.lookup(name, key)
        return value if found else default

    def set(self, name: str, key: str, value: Any) -> None:
        if not name or not key:
            raise ValueError("scope name and key must be non-empty")
        self.scope(name)[key] = value

    def update(self, name: str, values: Mapping[str, Any]) -> None:
        self.scope(name).update(values)

    def as_dict(self) -> dict[str, dict[str, Any]]:
        """Shallow copy of every scope."""
        return {name: dict(values) for name, values in self._scopes.items()}

    @contextlib.contextmanager
    def overlay(self, name: str, values: Mapping[str, Any] | None) -> Iterator[dict[str, Any]]:
        """Layer *values* over scope *name* for the duration of the block.

        The previous mapping is put back on every exit path.
        """
        had_scope = name in self._scopes
        previous = self._scopes.get(name)
        if values:
            self._scopes[name] = {**(previous or {}), **values}
        try:
            yield self.scope(name)
        finally:
            if had_scope:
                self._scopes[name] = previous
            else:
                self._scopes.pop(name, None)


def _render(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def resolve(text: Any, scope: RuntimeScope) -> Any:
    """Replace every ``{{expr}}`` in *text* using *scope*.

    Unknown scopes or keys are logged and left as written, so resolving the
    result again yields the same text. Non-strings pass through unchanged.
    """
    if not isinstance(text, str):
        return text

    def _replace(m: re.Match) -> str:
        expr = m.group(1)
        name, key = parse_scoped_key(expr)
        found, value = scope.lookup(name, key)
        if found:
            return _render(value)
        logger.warning("variable \"{{%s}}\" not found", expr)
        return m.group(0)

    return PLACEHOLDER_RE.sub(_replace, text)


def resolve_in_obj(obj: Any, scope: RuntimeScope) -> Any:
    """Recursively resolve placeholders in dicts, lists, and strings."""
    if isinstance(obj, str):
        return resolve(obj, scope)
    if isinstance(obj, dict):
        return {k: resolve_in_obj(v, scope) for k, v in obj.items()}
    if isinstance(obj, list):
        return [resolve_in_obj(item, scope) for item in obj]
    return obj
