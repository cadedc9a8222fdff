"""
Label / Series Index

Provides:
- Series identity resolution (label set -> series id)
- Inverted index (label name -> value -> series ids)
- Matcher evaluation touching only matching postings
- Per-metric cardinality ceiling
"""

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Iterable, List, Mapping, Optional, Set

from ..errors import CardinalityExceeded
from .labels import Labels
from .matchers import LabelMatcher, MatchType

logger = logging.getLogger("SeriesIndex")


class MetricKind(Enum):
    """Metric kinds, fixed on a series at first write"""
    COUNTER = "counter"
    GAUGE = "gauge"
    HISTOGRAM = "histogram"
    SUMMARY = "summary"
    UNTYPED = "untyped"

    @classmethod
    def parse(cls, value: str) -> "MetricKind":
        try:
            return cls(value.strip().lower())
        except ValueError:
            return cls.UNTYPED


@dataclass(frozen=True)
class SeriesInfo:
    """Identity record of an indexed series"""

    id: int
    labels: Labels
    kind: MetricKind

    @property
    def metric_name(self) -> str:
        return self.labels.metric_name

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "labels": self.labels.to_dict(),
            "kind": self.kind.value
        }


class SeriesIndex:
    """Maps label sets to series ids and answers matcher queries"""

    def __init__(self, max_series_per_metric: int = 10000):
        self.max_series_per_metric = max_series_per_metric
        self._lock = threading.RLock()
        self._next_id = 1
        self._by_labels: Dict[Labels, int] = {}
        self._series: Dict[int, SeriesInfo] = {}
        # label name -> label value -> series ids
        self._postings: Dict[str, Dict[str, Set[int]]] = defaultdict(lambda: defaultdict(set))
        self._per_metric: Dict[str, int] = defaultdict(int)
        self.rejected_series = 0

    def resolve(
        self,
        metric_name: str,
        labels: Optional[Mapping[str, str]] = None,
        kind: MetricKind = MetricKind.UNTYPED
    ) -> int:
        """Return the series id for a metric + label set, creating it on first use"""
        return self.resolve_labels(Labels.from_metric(metric_name, labels), kind)

    def resolve_labels(self, labels: Labels, kind: MetricKind = MetricKind.UNTYPED) -> int:
        """Resolve a label set that already carries __name__"""
        series_id = self._by_labels.get(labels)
        if series_id is not None:
            return series_id

        metric_name = labels.metric_name
        with self._lock:
            series_id = self._by_labels.get(labels)
            if series_id is not None:
                return series_id

            if self._per_metric[metric_name] >= self.max_series_per_metric:
                self.rejected_series += 1
                logger.warning(f"Cardinality limit reached for {metric_name}, rejecting {labels}")
                raise CardinalityExceeded(metric_name, self.max_series_per_metric)

            series_id = self._next_id
            self._next_id += 1
            self._series[series_id] = SeriesInfo(id=series_id, labels=labels, kind=kind)
            for name, value in labels:
                self._postings[name][value].add(series_id)
            self._per_metric[metric_name] += 1
            self._by_labels[labels] = series_id

        logger.debug(f"Created series {series_id} {labels} ({kind.value})")
        return series_id

    def lookup(self, labels: Labels) -> Optional[int]:
        return self._by_labels.get(labels)

    def get(self, series_id: int) -> Optional[SeriesInfo]:
        return self._series.get(series_id)

    def labels_of(self, series_id: int) -> Labels:
        return self._series[series_id].labels

    def kind_of(self, series_id: int) -> MetricKind:
        return self._series[series_id].kind

    def match(self, matchers: Iterable[LabelMatcher]) -> Set[int]:
        """Return ids of series satisfying every matcher"""
        matchers = list(matchers)
        # Evaluate the most selective kind first: matchers not matching "" narrow via postings
        matchers.sort(key=lambda m: m.matches_empty)
        with self._lock:
            result: Optional[Set[int]] = None
            for matcher in matchers:
                if result is not None and not result:
                    break
                values = self._postings.get(matcher.name, {})
                if matcher.matches_empty:
                    # Series lacking the label match too, so subtract non-matching postings
                    if matcher.type == MatchType.NOT_EQUAL:
                        excluded = values.get(matcher.value, set())
                    else:
                        excluded = set()
                        for value, ids in values.items():
                            if not matcher.matches(value):
                                excluded |= ids
                    base = result if result is not None else set(self._series.keys())
                    result = base - excluded
                else:
                    if matcher.type == MatchType.EQUAL:
                        selected = set(values.get(matcher.value, ()))
                    else:
                        selected = set()
                        for value, ids in values.items():
                            if matcher.matches(value):
                                selected |= ids
                    result = selected if result is None else result & selected
        return result if result is not None else set()

    def label_names(self) -> List[str]:
        with self._lock:
            return sorted(name for name, values in self._postings.items() if values)

    def label_values(self, name: str) -> List[str]:
        with self._lock:
            return sorted(value for value, ids in self._postings.get(name, {}).items() if ids)

    def series_count(self, metric_name: Optional[str] = None) -> int:
        if metric_name is None:
            return len(self._series)
        return self._per_metric.get(metric_name, 0)

    def all_series(self) -> List[SeriesInfo]:
        with self._lock:
            return list(self._series.values())

    def get_statistics(self) -> dict:
        with self._lock:
            return {
                "series_count": len(self._series),
                "metric_names": len([m for m, n in self._per_metric.items() if n]),
                "label_names": len(self._postings),
                "rejected_series": self.rejected_series,
                "max_series_per_metric": self.max_series_per_metric
            }

