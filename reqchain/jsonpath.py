"""reqchain jsonpath - reduced dot/bracket path queries over parsed JSON."""

from __future__ import annotations

import enum
import re
from typing import Any


class _Undefined:
    """Marker for 'no value', distinct from JSON null."""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "UNDEFINED"

    def __bool__(self) -> bool:
        return False


UNDEFINED = _Undefined()


class JsonKind(enum.Enum):
    NULL = "null"
    BOOL = "bool"
    NUMBER = "number"
    STRING = "string"
    ARRAY = "array"
    OBJECT = "object"


def kind_of(value: Any) -> JsonKind:
    """Classify a decoded JSON value. bool is checked before int on purpose."""
    match value:
        case None:
            return JsonKind.NULL
        case bool():
            return JsonKind.BOOL
        case int() | float():
            return JsonKind.NUMBER
        case str():
            return JsonKind.STRING
        case list() | tuple():
            return JsonKind.ARRAY
        case dict():
            return JsonKind.OBJECT
    raise TypeError(f"Not a JSON value: {type(value).__name__}")


_MARKER_RE = re.compile(r"^json\.?", re.IGNORECASE)
_INDEX_RE = re.compile(r"\[(\d+)\]")
_QUOTED_KEY_RE = re.compile(r"\[\"([^\"]+)\"\]")


def normalize(path: str) -> str:
    """``json.items[0]["k"]`` -> ``items.0.k``; ``data[]`` -> ``data.*``."""
    path = _MARKER_RE.sub("", path.strip())
    path = path.replace("[]", ".*")
    path = _INDEX_RE.sub(r".\1", path)
    return _QUOTED_KEY_RE.sub(r".\1", path)


def tokenize(path: str) -> list[str]:
    return [seg.strip() for seg in normalize(path).split(".") if seg.strip()]


def _step(target: Any, token: str) -> list[Any]:
    """Apply one token to one working-set member. Misses yield nothing."""
    match kind_of(target):
        case JsonKind.ARRAY:
            if token == "*":
                return list(target)
            if token.isdigit() and int(token) < len(target):
                return [target[int(token)]]
            return []
        case JsonKind.OBJECT:
            if token != "*" and token in target:
                return [target[token]]
            return []
        case JsonKind.NULL | JsonKind.BOOL | JsonKind.NUMBER | JsonKind.STRING:
            return []


def evaluate(value: Any, path: str | None) -> Any:
    """Evaluate *path* against *value*.

    Returns UNDEFINED when nothing matched, the value itself when exactly one
    matched, otherwise the list of all matches.
    """
    if value is UNDEFINED:
        return UNDEFINED
    if not path:
        return value
    tokens = tokenize(path)
    if not tokens:
        return value

    current = [value]
    for token in tokens:
        current = [hit for target in current for hit in _step(target, token)]
        if not current:
            return UNDEFINED
    return current[0] if len(current) == 1 else current


def ensure_list(value: Any) -> list[Any]:
    if value is None or value is UNDEFINED:
        return []
    return list(value) if kind_of(value) is JsonKind.ARRAY else [value]


def path_exists(value: Any, path: str) -> bool:
    return evaluate(value, path) is not UNDEFINED
