"""
Query Module

Provides:
- Expression parser
- Rate / aggregation functions
- Instant and range query evaluation
"""

from .nodes import ValueType, Expr
from .parser import parse
from .values import VectorSample, RangeSeries, Scalar, QueryResult, format_value
from .functions import extrapolated_rate, bucket_quantile
from .engine import QueryEngine

__all__ = [
    "ValueType",
    "Expr",
    "parse",
    "VectorSample",
    "RangeSeries",
    "Scalar",
    "QueryResult",
    "format_value",
    "extrapolated_rate",
    "bucket_quantile",
    "QueryEngine"
]
