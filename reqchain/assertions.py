"""reqchain assertions - comparator rules against a response, TAP/JUnit reports."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any
from xml.sax.saxutils import escape, quoteattr

from reqchain.jsonpath import UNDEFINED, evaluate

# Checked in this order; the first one contained in the rule wins.
OPERATORS = (">=", "<=", "!=", "=", ">", "<", "~=", "~", " !contains ", " contains ")

_NUMBER_RE = re.compile(r"^\s*[-+]?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?\s*$")


@dataclass(frozen=True)
class AssertionResult:
    id: int
    description: str
    operator: str
    expected: Any
    actual: Any
    passed: bool
    message: str = ""


@dataclass(frozen=True)
class AssertionReport:
    passed: bool
    results: list[AssertionResult] = field(default_factory=list)
    output: str = ""


def parse_assert(rule: str) -> tuple[str, str, str]:
    """Parse 'status=200' or 'json.items contains "x"' into (target, op, expected).

    Splits on the first occurrence of the detected operator.
    """
    for op in OPERATORS:
        idx = rule.find(op)
        if idx == -1:
            continue
        if op == "=" and idx > 0 and rule[idx - 1] == "~":
            op, idx = "~=", idx - 1
        target = rule[:idx].strip()
        if not target:
            break
        return target, op, strip_quotes(rule[idx + len(op) :])
    raise ValueError(f"Invalid assertion syntax: {rule}")


def strip_quotes(value: str) -> str:
    trimmed = value.strip()
    if len(trimmed) >= 2 and trimmed[0] == trimmed[-1] and trimmed[0] in "\"'":
        return trimmed[1:-1]
    return trimmed


def normalize_value(value: Any) -> Any:
    """Numeric-looking strings -> numbers, true/false -> bools, else trimmed."""
    if value is None or value is UNDEFINED or isinstance(value, bool | int | float):
        return value
    if isinstance(value, str):
        if _NUMBER_RE.match(value):
            number = float(value)
            return int(number) if number.is_integer() and "." not in value else number
        if value.lower() == "true":
            return True
        if value.lower() == "false":
            return False
        return value.strip()
    return value


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, int | float):
        return float(value)
    if isinstance(value, str) and _NUMBER_RE.match(value):
        return float(value)
    return None


def _equal(actual: Any, expected: Any) -> bool:
    # True == 1 in Python; a boolean must only match a boolean.
    if isinstance(actual, bool) != isinstance(expected, bool):
        return False
    return actual == expected


def _regex(expected: Any) -> re.Pattern:
    pattern = str(expected)
    if pattern.startswith("/") and pattern.rfind("/") > 0:
        pattern = pattern[1 : pattern.rfind("/")]
    return re.compile(pattern)


def _stringify(value: Any) -> str:
    if value is None:
        return "null"
    if value is UNDEFINED:
        return "undefined"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, dict | list):
        return json.dumps(value)
    return str(value)


def compare(actual: Any, expected: Any, op: str) -> bool:
    if op == "=":
        return _equal(actual, expected)
    if op == "!=":
        return not _equal(actual, expected)
    if op in (">", "<", ">=", "<="):
        a, e = _to_number(actual), _to_number(expected)
        if a is None or e is None:
            return False
        return {">": a > e, "<": a < e, ">=": a >= e, "<=": a <= e}[op]
    if op.strip() in ("contains", "!contains"):
        if isinstance(actual, str):
            hit = _stringify(expected) in actual
        elif isinstance(actual, list):
            hit = any(_equal(item, expected) for item in actual)
        else:
            return False
        return hit if op.strip() == "contains" else not hit
    if op in ("~", "~="):
        try:
            return _regex(expected).search(_stringify(actual)) is not None
        except re.error:
            return False
    return _equal(actual, expected)


def read_actual(response, target: str) -> tuple[Any, str]:
    """Resolve the left side of a rule against a ResponseEnvelope."""
    if target == "status":
        return response.status, "status"
    if target in ("duration", "time", "durationMs"):
        return response.duration_ms, "duration"
    if target.startswith("header."):
        name = target[7:].lower()
        return response.headers.get(name, UNDEFINED), f"header.{name}"
    if target.startswith("json."):
        payload = response.json
        if payload is None:
            return UNDEFINED, target
        return evaluate(payload, target), target
    if target == "body":
        return response.text, "body"
    return UNDEFINED, target


def evaluate_rule(index: int, rule: str, response) -> AssertionResult:
    try:
        target, op, expected_raw = parse_assert(rule)
    except ValueError:
        return AssertionResult(
            id=index,
            description=rule,
            operator="=",
            expected=None,
            actual=None,
            passed=False,
            message="Invalid assertion syntax",
        )
    actual, description = read_actual(response, target)
    actual = normalize_value(actual)
    expected = normalize_value(expected_raw)
    passed = compare(actual, expected, op)
    message = ""
    if not passed:
        message = (
            f"Expected {description} {op.strip()} {_stringify(expected)}, "
            f"received {_stringify(actual)}"
        )
    return AssertionResult(
        id=index,
        description=description,
        operator=op.strip(),
        expected=expected,
        actual=actual,
        passed=passed,
        message=message,
    )


def run_assertions(response, rules: list[str] | None, fmt: str = "tap") -> AssertionReport:
    """Evaluate every rule; never raises for failing or malformed rules."""
    rules = [r for r in (rules or []) if isinstance(r, str) and r.strip()]
    if not rules:
        return AssertionReport(passed=True)
    results = [evaluate_rule(i, rule, response) for i, rule in enumerate(rules, start=1)]
    output = format_junit(results) if fmt == "junit" else format_tap(results)
    return AssertionReport(
        passed=all(r.passed for r in results),
        results=results,
        output=output,
    )


def _json_literal(value: Any) -> str:
    if value is UNDEFINED:
        return "undefined"
    return json.dumps(value)


def format_tap(results: list[AssertionResult]) -> str:
    if not results:
        return ""
    lines = ["TAP version 13", f"1..{len(results)}"]
    for r in results:
        lines.append(f"{'ok' if r.passed else 'not ok'} {r.id} {r.description}")
        if not r.passed:
            lines.append("  ---")
            lines.append(f"  operator: {r.operator}")
            lines.append(f"  expected: {_json_literal(r.expected)}")
            lines.append(f"  actual: {_json_literal(r.actual)}")
            if r.message:
                lines.append(f"  message: {r.message}")
            lines.append("  ...")
    return "\n".join(lines)


def format_junit(results: list[AssertionResult]) -> str:
    failures = sum(1 for r in results if not r.passed)
    lines = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        f'<testsuite name="reqchain" tests="{len(results)}" failures="{failures}">',
    ]
    for r in results:
        lines.append(f'  <testcase classname="assertions" name={quoteattr(r.description)}>')
        if not r.passed:
            lines.append(f"    <failure message={quoteattr(r.message or 'Assertion failed')}>")
            lines.append(
                "      "
                + escape(
                    f"Expected {r.description} {r.operator} {_stringify(r.expected)}, "
                    f"got {_stringify(r.actual)}",
                ),
            )
            lines.append("    </failure>")
        lines.append("  </testcase>")
    lines.append("</testsuite>")
    return "\n".join(lines)
