"""
Error Taxonomy

Provides:
- Base error for the engine
- Parse / execution errors for queries and exposition payloads
- Append rejection errors (returned as values by the storage engine)
- Configuration, probe and storage I/O errors
"""

from typing import Optional


class MetricStoreError(Exception):
    """Base class for all engine errors"""


class ParseError(MetricStoreError):
    """Malformed exposition line or query expression"""

    def __init__(self, message: str, line: Optional[int] = None, position: Optional[int] = None):
        self.message = message
        self.line = line
        self.position = position
        detail = message
        if line is not None:
            detail = f"line {line}: {detail}"
        if position is not None:
            detail = f"{detail} (at char {position})"
        super().__init__(detail)


class ExecutionError(MetricStoreError):
    """Query could be parsed but not evaluated"""


class OutOfOrderError(MetricStoreError):
    """Sample timestamp not after the last accepted timestamp of its series"""

    def __init__(self, series_id: int, timestamp: int, last_timestamp: int):
        self.series_id = series_id
        self.timestamp = timestamp
        self.last_timestamp = last_timestamp
        super().__init__(
            f"series {series_id}: sample at {timestamp} is not after last accepted {last_timestamp}"
        )


class StaleSampleError(MetricStoreError):
    """Sample older than the retention window"""

    def __init__(self, series_id: int, timestamp: int, cutoff: int):
        self.series_id = series_id
        self.timestamp = timestamp
        self.cutoff = cutoff
        super().__init__(f"series {series_id}: sample at {timestamp} is older than retention cutoff {cutoff}")


class UnknownSeriesError(MetricStoreError):
    """Series id was never created in storage"""


class CardinalityExceeded(MetricStoreError):
    """Creating a series would exceed the per-metric series ceiling"""

    def __init__(self, metric_name: str, limit: int):
        self.metric_name = metric_name
        self.limit = limit
        super().__init__(f"metric {metric_name!r} already has {limit} series")


class EvaluationError(MetricStoreError):
    """A single alerting rule failed to evaluate"""

    def __init__(self, rule_name: str, cause: Exception):
        self.rule_name = rule_name
        self.cause = cause
        super().__init__(f"rule {rule_name!r}: {cause}")


class ProbeTimeout(MetricStoreError):
    """A probe execution exceeded its timeout"""


class StorageIOError(MetricStoreError):
    """Chunk flush, load or compaction I/O failure"""


class ConfigError(MetricStoreError):
    """Invalid configuration; fatal at startup"""
