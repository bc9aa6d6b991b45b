"""Tests for benchmark repetition and the latency summary."""

import pytest

from reqchain.benchmark import (
    format_benchmark_summary,
    percentile,
    run_benchmark,
    summarize,
)


class TestSummarize:
    def test_five_samples(self):
        summary = summarize([30, 10, 50, 20, 40])
        assert summary.count == 5
        assert summary.min == 10
        assert summary.max == 50
        assert summary.avg == 30
        assert summary.median == 30
        assert summary.p90 == 50
        assert summary.p95 == 50
        assert summary.p99 == 50

    def test_single_sample(self):
        summary = summarize([7.5])
        assert summary.min == summary.max == summary.median == summary.p99 == 7.5

    def test_empty(self):
        assert summarize([]) is None

    def test_percentile_rank_is_clamped(self):
        values = [1, 2, 3]
        assert percentile(values, 0) == 1
        assert percentile(values, 100) == 3
        assert percentile([], 50) == 0

    def test_nearest_rank(self):
        values = list(range(1, 11))
        assert percentile(values, 90) == 9
        assert percentile(values, 95) == 10


class TestRunBenchmark:
    def test_runs_sequentially_in_order(self):
        calls = []

        def attempt():
            calls.append(len(calls))
            return float(len(calls) * 10)

        assert run_benchmark(attempt, 3) == [10.0, 20.0, 30.0]
        assert calls == [0, 1, 2]

    def test_error_stops_the_run(self):
        def attempt():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            run_benchmark(attempt, 3)


class TestFormat:
    def test_format(self):
        text = format_benchmark_summary(summarize([10, 20]))
        lines = text.splitlines()
        assert lines[0] == "Benchmark Summary:"
        assert "  Samples: 2" in lines
        assert "  Min:     10.00 ms" in lines
        assert "  Avg:     15.00 ms" in lines

    def test_format_none(self):
        assert format_benchmark_summary(None) == ""
