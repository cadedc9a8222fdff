"""
Pytest configuration file

Adds the project root to the Python path and provides a controllable clock plus
pre-wired index / storage / query / ingestion fixtures.
"""
import os
import sys

import pytest

# Add the project root to the path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

from metricstore.index import MetricKind, SeriesIndex  # noqa: E402
from metricstore.ingestion import IngestionGateway  # noqa: E402
from metricstore.query import QueryEngine  # noqa: E402
from metricstore.storage import StorageConfig, StorageEngine  # noqa: E402

T0 = 1_700_000_000.0


class FakeClock:
    """Wall clock that only moves when told to"""

    def __init__(self, start: float = T0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now

    def set(self, seconds: float) -> None:
        self.now = seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def index():
    return SeriesIndex(max_series_per_metric=100)


@pytest.fixture
def storage(index, clock):
    return StorageEngine(index, StorageConfig(), clock=clock)


@pytest.fixture
def query_engine(index, storage, clock):
    return QueryEngine(index, storage, clock=clock)


@pytest.fixture
def gateway(index, storage, clock):
    return IngestionGateway(index, storage, clock=clock)


@pytest.fixture
def write(gateway):
    """Write (seconds, value) points for one series"""
    def _write(name, labels, points, kind=MetricKind.COUNTER):
        for seconds, value in points:
            result = gateway.write(name, labels, value, timestamp=int(seconds * 1000), kind=kind)
            assert result.ok, result.error
    return _write
