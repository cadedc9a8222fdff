"""
Label / Series Index Module

Provides:
- Label set value type
- Label matchers
- Inverted series index with cardinality limits
"""

from .labels import Labels, METRIC_NAME_LABEL, EMPTY_LABELS
from .matchers import LabelMatcher, MatchType
from .index import MetricKind, SeriesInfo, SeriesIndex

__all__ = [
    "Labels",
    "METRIC_NAME_LABEL",
    "EMPTY_LABELS",
    "LabelMatcher",
    "MatchType",
    "MetricKind",
    "SeriesInfo",
    "SeriesIndex"
]
