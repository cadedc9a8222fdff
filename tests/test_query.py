"""
Test suite for the query engine.

Tests cover:
- Parsing and parse errors
- Instant selectors and lookback
- Counter-aware rate / increase
- Aggregations, binary operators and vector matching
- Range queries and the resolution ceiling
"""

import math

import pytest

from metricstore.errors import ExecutionError, ParseError
from metricstore.index import MetricKind
from metricstore.query import QueryEngine

from .conftest import T0

GAUGE = MetricKind.GAUGE


class TestParser:
    """Tests for expression parsing."""

    @pytest.mark.parametrize("expression", [
        "",
        "1 > 2",
        "rate(x)",
        "{}",
        '{job=~".*"}',
        "no_such_function(x[5m])",
        "sum(x",
        "x[5m] + 1",
        "(x + 1)[5m]",
        "x and 1",
        'x{job=~"("}',
    ])
    def test_rejected(self, query_engine, expression):
        """Malformed expressions raise ParseError before touching storage."""
        with pytest.raises(ParseError):
            query_engine.evaluate(expression, T0)

    def test_error_has_position(self, query_engine):
        """Parse errors carry the offending position."""
        with pytest.raises(ParseError) as exc_info:
            query_engine.evaluate("sum(x) +", T0)
        assert exc_info.value.position is not None

    def test_scalar_comparison_with_bool(self, query_engine):
        """Scalar comparisons are allowed with the bool modifier."""
        result = query_engine.evaluate("1 < bool 2", T0)
        assert result.result_type == "scalar"
        assert result.scalar == 1.0

    def test_grouping_after_argument(self, write, query_engine):
        """by () may follow the aggregated expression."""
        write("x", {"job": "a"}, [(T0, 1)], kind=GAUGE)
        result = query_engine.evaluate("sum(x) by (job)", T0)
        assert result.series_values() == [({"job": "a"}, 1.0)]


class TestInstantQuery:
    """Tests for instant vector selection."""

    def test_latest_sample_within_lookback(self, write, query_engine):
        """The newest sample at or before the evaluation time wins."""
        write("x", {"job": "a"}, [(T0 - 30, 1), (T0 - 15, 2), (T0 + 15, 3)], kind=GAUGE)
        result = query_engine.evaluate("x", T0)
        assert result.series_values() == [({"__name__": "x", "job": "a"}, 2.0)]

    def test_stale_series_dropped(self, write, query_engine):
        """Series with no sample inside the lookback window are absent."""
        write("x", {"job": "old"}, [(T0 - 400, 1)], kind=GAUGE)
        write("x", {"job": "new"}, [(T0 - 10, 1)], kind=GAUGE)
        result = query_engine.evaluate("x", T0)
        assert [labels["job"] for labels, _ in result.series_values()] == ["new"]

    def test_offset(self, write, query_engine):
        """offset shifts the evaluation time back."""
        write("x", {}, [(T0 - 120, 1), (T0, 2)], kind=GAUGE)
        result = query_engine.evaluate("x offset 2m", T0)
        assert result.series_values()[0][1] == 1.0

    def test_matchers(self, write, query_engine):
        """Label matchers narrow the selection."""
        write("up", {"job": "api"}, [(T0, 1)], kind=GAUGE)
        write("up", {"job": "db"}, [(T0, 0)], kind=GAUGE)
        result = query_engine.evaluate('up{job!="api"}', T0)
        assert result.series_values() == [({"__name__": "up", "job": "db"}, 0.0)]

    def test_result_envelope(self, write, query_engine):
        """Results serialize to the API envelope."""
        write("x", {"job": "a"}, [(T0, 1.5)], kind=GAUGE)
        body = query_engine.evaluate("x", T0).to_dict()
        assert body["status"] == "success"
        assert body["data"]["resultType"] == "vector"
        assert body["data"]["result"] == [{"metric": {"__name__": "x", "job": "a"}, "value": [T0, "1.5"]}]


class TestRate:
    """Tests for counter-aware functions."""

    POINTS = [(T0 - 240, 0), (T0 - 180, 10), (T0 - 120, 20), (T0 - 60, 0), (T0, 5)]

    def test_increase_handles_reset(self, write, query_engine):
        """A reset adds the pre-reset value instead of going negative."""
        write("requests_total", {}, self.POINTS)
        result = query_engine.evaluate("increase(requests_total[4m])", T0)
        assert result.vector[0].value == pytest.approx(25.0)

    def test_increase_equals_rate_times_window(self, write, query_engine):
        """increase() is rate() scaled by the window length."""
        write("requests_total", {}, self.POINTS)
        rate = query_engine.evaluate("rate(requests_total[5m])", T0).vector[0].value
        increase = query_engine.evaluate("increase(requests_total[5m])", T0).vector[0].value
        assert increase == pytest.approx(rate * 300)
        assert rate > 0

    def test_gauge_delta_can_go_negative(self, write, query_engine):
        """Gauges are not reset-corrected."""
        write("temperature", {}, [(T0 - 60, 20), (T0, 10)], kind=GAUGE)
        result = query_engine.evaluate("delta(temperature[1m])", T0)
        assert result.vector[0].value == pytest.approx(-10.0)

    def test_single_sample_has_no_rate(self, write, query_engine):
        """A window with one sample yields nothing."""
        write("requests_total", {}, [(T0, 5)])
        assert query_engine.evaluate("rate(requests_total[1m])", T0).vector == []

    def test_rate_drops_metric_name(self, write, query_engine):
        """Functions drop __name__ from their output."""
        write("requests_total", {"job": "a"}, [(T0 - 60, 0), (T0, 60)])
        result = query_engine.evaluate("rate(requests_total[1m])", T0)
        assert result.series_values() == [({"job": "a"}, pytest.approx(1.0))]

    def test_over_time(self, write, query_engine):
        """*_over_time folds every sample in the window."""
        write("x", {}, [(T0 - 20, 1), (T0 - 10, 2), (T0, 6)], kind=GAUGE)
        assert query_engine.evaluate("avg_over_time(x[1m])", T0).vector[0].value == pytest.approx(3.0)
        assert query_engine.evaluate("max_over_time(x[1m])", T0).vector[0].value == 6.0
        assert query_engine.evaluate("count_over_time(x[1m])", T0).vector[0].value == 3.0


class TestOperators:
    """Tests for aggregation and binary operators."""

    def test_sum_by(self, write, query_engine):
        """sum by (job) collapses the other labels."""
        write("x", {"job": "a", "inst": "1"}, [(T0, 1)], kind=GAUGE)
        write("x", {"job": "a", "inst": "2"}, [(T0, 3)], kind=GAUGE)
        result = query_engine.evaluate("sum by (job) (x)", T0)
        assert result.series_values() == [({"job": "a"}, 4.0)]

    def test_count_without(self, write, query_engine):
        """without drops the named labels and the metric name."""
        write("x", {"job": "a", "inst": "1"}, [(T0, 1)], kind=GAUGE)
        write("x", {"job": "b", "inst": "1"}, [(T0, 1)], kind=GAUGE)
        result = query_engine.evaluate("count without (job) (x)", T0)
        assert result.series_values() == [({"inst": "1"}, 2.0)]

    def test_vector_scalar_filter(self, write, query_engine):
        """Comparison without bool filters the vector."""
        write("x", {"job": "a"}, [(T0, 1)], kind=GAUGE)
        write("x", {"job": "b"}, [(T0, 5)], kind=GAUGE)
        result = query_engine.evaluate("x > 2", T0)
        assert [labels["job"] for labels, _ in result.series_values()] == ["b"]

    def test_vector_scalar_bool(self, write, query_engine):
        """Comparison with bool returns 0/1 for every element."""
        write("x", {"job": "a"}, [(T0, 1)], kind=GAUGE)
        result = query_engine.evaluate("x > bool 2", T0)
        assert result.series_values() == [({"job": "a"}, 0.0)]

    def test_vector_vector_matching(self, write, query_engine):
        """Elements match on identical labels apart from the name."""
        write("errors", {"job": "a"}, [(T0, 2)], kind=GAUGE)
        write("errors", {"job": "b"}, [(T0, 1)], kind=GAUGE)
        write("requests", {"job": "a"}, [(T0, 10)], kind=GAUGE)
        result = query_engine.evaluate("errors / requests", T0)
        assert result.series_values() == [({"job": "a"}, pytest.approx(0.2))]

    def test_division_by_zero(self, write, query_engine):
        """Dividing by zero follows IEEE semantics."""
        write("x", {}, [(T0, 1)], kind=GAUGE)
        assert math.isinf(query_engine.evaluate("x / 0", T0).vector[0].value)

    def test_many_to_many_rejected(self, write, query_engine):
        """Duplicate match signatures are an execution error."""
        write("a", {"job": "x"}, [(T0, 1)], kind=GAUGE)
        write("b", {"job": "x"}, [(T0, 2)], kind=GAUGE)
        write("c", {"job": "x"}, [(T0, 3)], kind=GAUGE)
        with pytest.raises(ExecutionError):
            query_engine.evaluate('{__name__=~"a|b"} + c', T0)

    def test_set_operators(self, write, query_engine):
        """and / unless / or select by label set."""
        write("x", {"job": "a"}, [(T0, 1)], kind=GAUGE)
        write("x", {"job": "b"}, [(T0, 1)], kind=GAUGE)
        write("y", {"job": "a"}, [(T0, 1)], kind=GAUGE)
        jobs = lambda expr: sorted(l["job"] for l, _ in query_engine.evaluate(expr, T0).series_values())  # noqa: E731
        assert jobs("x and y") == ["a"]
        assert jobs("x unless y") == ["b"]
        assert jobs("y or x") == ["a", "b"]

    def test_histogram_quantile(self, write, query_engine):
        """Quantiles interpolate linearly inside a bucket."""
        for le, count in (("0.1", 10), ("0.5", 20), ("+Inf", 20)):
            write("latency_bucket", {"le": le}, [(T0, count)])
        result = query_engine.evaluate("histogram_quantile(0.75, latency_bucket)", T0)
        assert result.vector[0].value == pytest.approx(0.3)


class TestRangeQuery:
    """Tests for range evaluation."""

    def test_points_per_step(self, write, query_engine):
        """One point per step from start through end inclusive."""
        write("x", {}, [(T0 - 60 + i * 15, i) for i in range(5)], kind=GAUGE)
        result = query_engine.evaluate_range("x", T0 - 60, T0, 15)
        assert result.result_type == "matrix"
        assert len(result.matrix) == 1
        assert [s.value for s in result.matrix[0].samples] == [0.0, 1.0, 2.0, 3.0, 4.0]

    def test_scalar_range(self, query_engine):
        """Scalar expressions produce a single unlabelled series."""
        result = query_engine.evaluate_range("1 + 1", T0, T0 + 30, 10)
        assert len(result.matrix) == 1
        assert len(result.matrix[0].samples) == 4

    def test_too_many_points(self, index, storage, clock):
        """Exceeding the resolution ceiling is an execution error."""
        engine = QueryEngine(index, storage, max_points=10, clock=clock)
        with pytest.raises(ExecutionError):
            engine.evaluate_range("1", T0, T0 + 100, 1)

    def test_invalid_step(self, query_engine):
        """Non-positive steps are rejected."""
        with pytest.raises(ExecutionError):
            query_engine.evaluate_range("1", T0, T0 + 10, 0)

    def test_failures_counted(self, query_engine):
        """Failed queries show up in the statistics."""
        with pytest.raises(ParseError):
            query_engine.evaluate("sum(", T0)
        stats = query_engine.get_statistics()
        assert stats["queries_total"] == 1
        assert stats["queries_failed"] == 1
