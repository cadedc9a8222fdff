"""
Exposition Format

Provides:
- Line parser for `name{label="value",...} value [timestamp_ms]` on top of
  prometheus_client's text parser, one line at a time
- # TYPE handling (histogram / summary suffixes inherit the kind)
- Renderer producing exposition text through a collector and generate_latest
"""

import re
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from prometheus_client import CollectorRegistry, generate_latest
from prometheus_client.core import Metric
from prometheus_client.parser import text_string_to_metric_families

from ..errors import ParseError
from ..index import MetricKind

_NAME_RE = re.compile(r"[a-zA-Z_:][a-zA-Z0-9_:]*")
_LABEL_NAME_RE = re.compile(r"[a-zA-Z_][a-zA-Z0-9_]*")

HISTOGRAM_SUFFIXES = ("_bucket", "_sum", "_count")
SUMMARY_SUFFIXES = ("_sum", "_count")

# MetricKind -> family type understood by prometheus_client
_FAMILY_TYPES = {
    MetricKind.COUNTER: "counter",
    MetricKind.GAUGE: "gauge",
    MetricKind.HISTOGRAM: "histogram",
    MetricKind.SUMMARY: "summary",
    MetricKind.UNTYPED: "unknown",
}


@dataclass
class ParsedSample:
    """One sample read from an exposition payload"""

    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    value: float = 0.0
    timestamp: Optional[int] = None
    kind: MetricKind = MetricKind.UNTYPED

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "labels": self.labels,
            "value": self.value,
            "timestamp": self.timestamp,
            "kind": self.kind.value
        }


@dataclass
class ExpositionBatch:
    """Parse outcome: valid samples plus per-line errors"""

    samples: List[ParsedSample] = field(default_factory=list)
    errors: List[ParseError] = field(default_factory=list)
    types: Dict[str, MetricKind] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.errors


def parse_line(line: str, line_no: int = 0) -> ParsedSample:
    """Parse one sample line; raises ParseError"""
    try:
        families = list(text_string_to_metric_families(line + "\n"))
    except (ValueError, IndexError) as e:
        raise ParseError(f"malformed sample line: {e}", line=line_no, position=0)
    samples = [sample for family in families for sample in family.samples]
    if len(samples) != 1:
        raise ParseError("expected exactly one sample", line=line_no, position=0)
    sample = samples[0]

    if not _NAME_RE.fullmatch(sample.name):
        raise ParseError(f"invalid metric name {sample.name!r}", line=line_no, position=0)
    for name in sample.labels:
        if not _LABEL_NAME_RE.fullmatch(name):
            raise ParseError(f"invalid label name {name!r}", line=line_no, position=0)

    timestamp = None
    if sample.timestamp is not None:
        # the text parser reports seconds
        timestamp = int(round(float(sample.timestamp) * 1000))

    return ParsedSample(
        name=sample.name,
        labels=dict(sample.labels),
        value=float(sample.value),
        timestamp=timestamp
    )


def resolve_kind(name: str, types: Dict[str, MetricKind]) -> MetricKind:
    """Kind of a sample name given the # TYPE declarations seen so far"""
    kind = types.get(name)
    if kind is not None:
        return kind
    for suffix in HISTOGRAM_SUFFIXES:
        if name.endswith(suffix):
            base = types.get(name[:-len(suffix)])
            if base == MetricKind.HISTOGRAM:
                return MetricKind.HISTOGRAM
            if base == MetricKind.SUMMARY and suffix in SUMMARY_SUFFIXES:
                return MetricKind.SUMMARY
    return MetricKind.UNTYPED


def parse_exposition(text: str) -> ExpositionBatch:
    """
    Parse an exposition payload

    Malformed lines are recorded in `errors` and skipped; they never abort the batch.
    """
    batch = ExpositionBatch()
    for line_no, raw in enumerate(text.splitlines(), start=1):
        line = raw.strip()
        if not line:
            continue
        if line.startswith("#"):
            parts = line.split(None, 3)
            if len(parts) >= 4 and parts[1] == "TYPE":
                batch.types[parts[2]] = MetricKind.parse(parts[3])
            continue
        try:
            sample = parse_line(line, line_no)
        except ParseError as e:
            batch.errors.append(e)
            continue
        sample.kind = resolve_kind(sample.name, batch.types)
        batch.samples.append(sample)
    return batch


def _family_for(name: str, types: Dict[str, MetricKind]) -> Tuple[str, str]:
    """(family name, family type) a sample name is rendered under"""
    declared = name
    if name not in types:
        for suffix in HISTOGRAM_SUFFIXES:
            if name.endswith(suffix) and name[:-len(suffix)] in types:
                declared = name[:-len(suffix)]
                break
    kind = types.get(declared, MetricKind.UNTYPED)
    if kind == MetricKind.COUNTER:
        # generate_latest appends _total to counter families
        if declared.endswith("_total"):
            return declared[:-len("_total")], "counter"
        return declared, "unknown"
    return declared, _FAMILY_TYPES[kind]


class SampleCollector:
    """Collector yielding a fixed list of samples as metric families"""

    def __init__(self, samples: Iterable[ParsedSample], types: Optional[Dict[str, MetricKind]] = None):
        self.samples = list(samples)
        self.types = types or {}

    def collect(self):
        families: Dict[str, Metric] = {}
        for sample in self.samples:
            family_name, family_type = _family_for(sample.name, self.types)
            family = families.get(family_name)
            if family is None:
                family = Metric(family_name, "", family_type)
                families[family_name] = family
            family.add_sample(sample.name, dict(sample.labels), sample.value)
        return list(families.values())


def render_exposition(samples: Iterable[ParsedSample], types: Optional[Dict[str, MetricKind]] = None) -> str:
    """
    Render samples as exposition text, with # TYPE lines for known kinds

    Sample timestamps are not rendered; a scrape stamps samples with the scrape time.
    """
    registry = CollectorRegistry(auto_describe=False)
    registry.register(SampleCollector(samples, types))
    return generate_latest(registry).decode("utf-8")
