"""
Test suite for the exposition format parser and renderer.
"""

import math

import pytest

from metricstore.errors import ParseError
from metricstore.index import MetricKind
from metricstore.ingestion import ParsedSample, parse_exposition, parse_line, render_exposition

PAYLOAD = """\
# HELP http_requests_total Requests served
# TYPE http_requests_total counter
http_requests_total{method="GET",code="200"} 1027 1700000000000
http_requests_total{method="POST",code="500"} 3
# TYPE latency_seconds histogram
latency_seconds_bucket{le="0.1"} 5
latency_seconds_bucket{le="+Inf"} 7
latency_seconds_sum 1.25
latency_seconds_count 7
temperature 21.5
"""


class TestParseLine:
    """Tests for single line parsing."""

    def test_name_labels_value_timestamp(self):
        """All parts of a full line are read."""
        sample = parse_line('up{job="api",instance="a:9100"} 1 1700000000000')
        assert sample.name == "up"
        assert sample.labels == {"job": "api", "instance": "a:9100"}
        assert sample.value == 1.0
        assert sample.timestamp == 1700000000000

    def test_escapes(self):
        """Quoted values support \\\\, \\" and \\n escapes."""
        sample = parse_line(r'x{path="C:\\dir",msg="say \"hi\"\n"} 0')
        assert sample.labels == {"path": "C:\\dir", "msg": 'say "hi"\n'}

    def test_special_values(self):
        """NaN and infinities parse as floats."""
        assert math.isnan(parse_line("x NaN").value)
        assert parse_line("x +Inf").value == math.inf
        assert parse_line("x -Inf").value == -math.inf

    def test_empty_label_set(self):
        """Braces without labels are allowed."""
        assert parse_line("x{} 2").labels == {}

    @pytest.mark.parametrize("line", [
        "1x 1",
        "x",
        "x{job=api} 1",
        'x{job="api} 1',
        "x abc",
        "x 1 not-a-timestamp",
        'x{1job="a"} 1',
        "bad{ 2",
    ])
    def test_malformed(self, line):
        """Malformed lines raise ParseError with the line number."""
        with pytest.raises(ParseError) as exc_info:
            parse_line(line, line_no=4)
        assert exc_info.value.line == 4


class TestParseExposition:
    """Tests for whole payload parsing."""

    def test_types_applied(self):
        """# TYPE sets the kind, histogram suffixes inherit it."""
        batch = parse_exposition(PAYLOAD)
        assert batch.ok
        kinds = {s.name: s.kind for s in batch.samples}
        assert kinds["http_requests_total"] == MetricKind.COUNTER
        assert kinds["latency_seconds_bucket"] == MetricKind.HISTOGRAM
        assert kinds["latency_seconds_count"] == MetricKind.HISTOGRAM
        assert kinds["temperature"] == MetricKind.UNTYPED
        assert len(batch.samples) == 7

    def test_bad_lines_skipped(self):
        """Bad lines are reported without dropping the good ones."""
        batch = parse_exposition("good 1\nbad{ 2\nalso_good 3\n")
        assert [s.name for s in batch.samples] == ["good", "also_good"]
        assert len(batch.errors) == 1
        assert batch.errors[0].line == 2
        assert not batch.ok


class TestRender:
    """Tests for exposition rendering."""

    def test_render_parses_back(self):
        """Rendered text is accepted by the parser."""
        samples = [
            ParsedSample("jobs_total", {"queue": 'a"b'}, 3.0, 1700000000000),
            ParsedSample("temperature", {}, 21.5),
        ]
        text = render_exposition(samples, {"jobs_total": MetricKind.COUNTER})
        assert "# TYPE jobs_total counter\n" in text
        batch = parse_exposition(text)
        assert batch.ok
        assert batch.samples[0].labels == {"queue": 'a"b'}
        assert batch.samples[0].kind == MetricKind.COUNTER
        assert batch.samples[0].timestamp is None
        assert batch.samples[1].value == 21.5

    def test_histogram_family(self):
        """Histogram series render under one family and keep their kind."""
        samples = [
            ParsedSample("latency_seconds_bucket", {"le": "+Inf"}, 7.0),
            ParsedSample("latency_seconds_count", {}, 7.0),
        ]
        text = render_exposition(samples, {"latency_seconds": MetricKind.HISTOGRAM})
        assert text.count("# TYPE") == 1
        batch = parse_exposition(text)
        assert {s.name: s.kind for s in batch.samples} == {
            "latency_seconds_bucket": MetricKind.HISTOGRAM,
            "latency_seconds_count": MetricKind.HISTOGRAM,
        }

    def test_render_empty(self):
        assert render_exposition([]) == ""
