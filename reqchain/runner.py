"""reqchain runner - one request through execute, filter, assert and extract."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from reqchain.assertions import AssertionReport, run_assertions
from reqchain.benchmark import BenchmarkSummary, run_benchmark, summarize
from reqchain.errors import AssertionsFailedError
from reqchain.executor import RequestEngine, RequestSpec, ResponseEnvelope
from reqchain.extraction import ExtractionResult, extract_values
from reqchain.filters import run_filter
from reqchain.jsonpath import UNDEFINED
from reqchain.scope import RuntimeScope

logger = logging.getLogger(__name__)


@dataclass
class RunResult:
    response: ResponseEnvelope
    filter_result: Any = UNDEFINED
    assertions: AssertionReport = field(default_factory=lambda: AssertionReport(passed=True))
    extraction: ExtractionResult = field(default_factory=ExtractionResult)
    benchmark: BenchmarkSummary | None = None
    samples: list[float] = field(default_factory=list)


def run_request(
    spec: RequestSpec,
    scope: RuntimeScope,
    engine: RequestEngine | None = None,
    filter_expr: str | None = None,
    assertions: list[str] | None = None,
    assert_format: str = "tap",
    extract: list[str] | None = None,
    extract_scope: str = "runtime",
    on_result: Callable[[RunResult], None] | None = None,
) -> RunResult:
    """Execute *spec* (``benchmark_runs`` times) and post-process the last response.

    Extracted values are written into *extract_scope*. *on_result* sees the
    result before a failing assertion report is escalated.
    """
    engine = engine or RequestEngine()
    runs = max(1, spec.benchmark_runs or 1)

    responses: list[ResponseEnvelope] = []

    def attempt() -> float:
        response = engine.execute(spec, scope)
        responses.append(response)
        return response.duration_ms

    samples = run_benchmark(attempt, runs)
    response = responses[-1]

    filter_result: Any = UNDEFINED
    if filter_expr:
        filter_result = run_filter(response.json, filter_expr)
        scope.set("filter", "result", None if filter_result is UNDEFINED else filter_result)

    report = run_assertions(response, assertions, assert_format)
    extraction = extract_values(response, extract, {"filter_result": filter_result})
    if extraction.values:
        scope.update(extract_scope, extraction.values)

    result = RunResult(
        response=response,
        filter_result=filter_result,
        assertions=report,
        extraction=extraction,
        benchmark=summarize(samples) if runs > 1 else None,
        samples=samples,
    )
    if on_result is not None:
        on_result(result)
    ensure_passed(result)
    return result


def ensure_passed(result: RunResult) -> None:
    if not result.assertions.passed:
        request = result.response.request
        raise AssertionsFailedError(result.assertions, url=request.url if request else None)
