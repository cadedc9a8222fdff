"""
MetricStore - Single-node metrics time series engine

Architecture:
- index/: label sets, matchers and the inverted series index
- storage/: columnar chunks, retention, compaction and flushing
- ingestion/: exposition parsing, scrape targets and the push gateway
- query/: expression parser and evaluator
- alerting/: alert rules, state machine and event stream
- probes/: synthetic http / tcp probes
- scheduler/: periodic tasks and the worker pool
- api/: FastAPI HTTP interface
"""

__version__ = "1.0.0"

from .errors import MetricStoreError
from .config import Settings, MetricStoreConfig, load_config
from .engine import MetricStore

__all__ = [
    "MetricStoreError",
    "Settings",
    "MetricStoreConfig",
    "load_config",
    "MetricStore",
]
