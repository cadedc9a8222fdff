"""
Query Values

Provides:
- Instant vector elements, range series and scalars
- Query result container with API serialization
"""

import math
from dataclasses import dataclass, field
from typing import List, Optional, Tuple, Union

from ..index import Labels, MetricKind
from ..storage import Sample


def format_value(value: float) -> str:
    """Render a float the way the HTTP API returns sample values"""
    if math.isnan(value):
        return "NaN"
    if math.isinf(value):
        return "+Inf" if value > 0 else "-Inf"
    if value.is_integer() and abs(value) < 1e15:
        return str(int(value))
    return repr(value)


@dataclass
class VectorSample:
    """One element of an instant vector"""

    labels: Labels
    value: float

    def to_dict(self, timestamp: float) -> dict:
        return {
            "metric": self.labels.to_dict(),
            "value": [timestamp, format_value(self.value)]
        }


@dataclass
class RangeSeries:
    """Samples of one series inside a range window"""

    labels: Labels
    samples: List[Sample]
    kind: MetricKind = MetricKind.UNTYPED

    def to_dict(self) -> dict:
        return {
            "metric": self.labels.to_dict(),
            "values": [[s.timestamp / 1000.0, format_value(s.value)] for s in self.samples]
        }


@dataclass
class Scalar:
    value: float


Vector = List[VectorSample]
Matrix = List[RangeSeries]
Value = Union[Scalar, Vector, Matrix]


@dataclass
class QueryResult:
    """Result of an instant or range query"""

    result_type: str  # "vector", "scalar" or "matrix"
    timestamp: Optional[float] = None
    vector: Vector = field(default_factory=list)
    matrix: Matrix = field(default_factory=list)
    scalar: Optional[float] = None
    warnings: List[str] = field(default_factory=list)

    def series_values(self) -> List[Tuple[dict, float]]:
        """(labels, value) pairs of a vector result"""
        return [(s.labels.to_dict(), s.value) for s in self.vector]

    def to_dict(self) -> dict:
        if self.result_type == "scalar":
            result = [self.timestamp, format_value(self.scalar)]
        elif self.result_type == "vector":
            result = [s.to_dict(self.timestamp) for s in self.vector]
        else:
            result = [s.to_dict() for s in self.matrix]
        data = {"resultType": self.result_type, "result": result}
        if self.warnings:
            return {"status": "success", "data": data, "warnings": self.warnings}
        return {"status": "success", "data": data}
