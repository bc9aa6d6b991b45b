"""reqchain benchmark - sequential repetition and latency summary."""

from __future__ import annotations

import logging
import math
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BenchmarkSummary:
    count: int
    min: float
    max: float
    avg: float
    median: float
    p90: float
    p95: float
    p99: float


def percentile(sorted_values: list[float], p: float) -> float:
    if not sorted_values:
        return 0
    rank = math.ceil(p / 100 * len(sorted_values)) - 1
    return sorted_values[min(max(rank, 0), len(sorted_values) - 1)]


def summarize(samples: list[float]) -> BenchmarkSummary | None:
    if not samples:
        return None
    ordered = sorted(samples)
    return BenchmarkSummary(
        count=len(ordered),
        min=ordered[0],
        max=ordered[-1],
        avg=sum(ordered) / len(ordered),
        median=percentile(ordered, 50),
        p90=percentile(ordered, 90),
        p95=percentile(ordered, 95),
        p99=percentile(ordered, 99),
    )


def run_benchmark(attempt: Callable[[], float], runs: int) -> list[float]:
    """Call *attempt* ``runs`` times, one after another, collecting durations.

    Each call must return the attempt's duration in ms. Runs never overlap.
    """
    samples = []
    for i in range(runs):
        duration = attempt()
        logger.debug("benchmark run %d/%d: %.2f ms", i + 1, runs, duration)
        samples.append(duration)
    return samples


def format_benchmark_summary(summary: BenchmarkSummary | None) -> str:
    if summary is None:
        return ""

    def ms(value: float) -> str:
        return f"{value:.2f} ms"

    return "\n".join(
        [
            "Benchmark Summary:",
            f"  Samples: {summary.count}",
            f"  Min:     {ms(summary.min)}",
            f"  Max:     {ms(summary.max)}",
            f"  Median:  {ms(summary.median)}",
            f"  Avg:     {ms(summary.avg)}",
            f"  P90:     {ms(summary.p90)}",
            f"  P95:     {ms(summary.p95)}",
            f"  P99:     {ms(summary.p99)}",
        ],
    )
