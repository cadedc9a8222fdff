"""
Storage Engine

Provides:
- Append-only per-series sample storage with per-series locking
- Head chunk sealing by size / time span
- Consistent snapshots for queries
- Retention sweep and compaction
- Chunk flushing with retry/backoff and degraded mode
"""

import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from ..errors import (
    MetricStoreError,
    OutOfOrderError,
    StaleSampleError,
    StorageIOError,
    UnknownSeriesError,
)
from ..index import MetricKind, SeriesIndex
from ..timeutil import to_ms
from .chunks import Chunk, ChunkView, Sample, merge_chunks
from .persistence import ChunkWriter

logger = logging.getLogger("StorageEngine")


@dataclass
class StorageConfig:
    """Storage engine configuration"""

    retention_seconds: float = 15 * 24 * 3600
    chunk_max_samples: int = 120
    chunk_max_span_ms: int = 2 * 3600 * 1000
    compaction_target_samples: int = 960
    max_flush_retries: int = 5
    flush_backoff_base_seconds: float = 1.0
    flush_backoff_max_seconds: float = 300.0

    def to_dict(self) -> dict:
        return {
            "retention_seconds": self.retention_seconds,
            "chunk_max_samples": self.chunk_max_samples,
            "chunk_max_span_ms": self.chunk_max_span_ms,
            "compaction_target_samples": self.compaction_target_samples,
            "max_flush_retries": self.max_flush_retries,
            "flush_backoff_base_seconds": self.flush_backoff_base_seconds,
            "flush_backoff_max_seconds": self.flush_backoff_max_seconds
        }


@dataclass
class AppendResult:
    """Outcome of a single append; errors are values, not raised"""

    ok: bool
    error: Optional[MetricStoreError] = None

    def __bool__(self) -> bool:
        return self.ok


APPEND_OK = AppendResult(ok=True)


class SeriesStore:
    """Chunks of one series, guarded by the series lock"""

    __slots__ = ("series_id", "kind", "lock", "chunks", "head", "last_timestamp", "dirty")

    def __init__(self, series_id: int, kind: MetricKind):
        self.series_id = series_id
        self.kind = kind
        self.lock = threading.Lock()
        self.chunks: List[Chunk] = []
        self.head = Chunk()
        self.last_timestamp: Optional[int] = None
        self.dirty = False

    def views(self) -> List[ChunkView]:
        """Caller must hold the lock"""
        views = [c.view() for c in self.chunks]
        if len(self.head):
            views.append(self.head.view(len(self.head)))
        return views

    def sample_count(self) -> int:
        return sum(len(c) for c in self.chunks) + len(self.head)


class SampleRange:
    """Finite, ordered, restartable sequence of samples"""

    def __init__(self, views: List[ChunkView], start: int, end: int):
        self._views = views
        self.start = start
        self.end = end

    def __iter__(self) -> Iterator[Sample]:
        for view in self._views:
            yield from view.samples(self.start, self.end)

    def to_list(self) -> List[Sample]:
        return list(self)


class StorageSnapshot:
    """Frozen chunk views of a set of series, as of creation time"""

    def __init__(self, views: Dict[int, List[ChunkView]], kinds: Dict[int, MetricKind], taken_at: int):
        self._views = views
        self._kinds = kinds
        self.taken_at = taken_at

    @property
    def series_ids(self) -> List[int]:
        return list(self._views.keys())

    def kind(self, series_id: int) -> MetricKind:
        return self._kinds.get(series_id, MetricKind.UNTYPED)

    def read(self, series_id: int, start: int, end: int) -> SampleRange:
        return SampleRange(self._views.get(series_id, []), start, end)

    def latest(self, series_id: int, start: int, end: int) -> Optional[Sample]:
        """Most recent sample within [start, end]"""
        for view in reversed(self._views.get(series_id, [])):
            if not len(view) or view.min_time > end:
                continue
            if view.max_time < start:
                return None
            found = None
            for sample in view.samples(start, end):
                found = sample
            if found is not None:
                return found
        return None


class StorageEngine:
    """Append-only time series store"""

    def __init__(
        self,
        index: SeriesIndex,
        config: Optional[StorageConfig] = None,
        writer: Optional[ChunkWriter] = None,
        clock: Callable[[], float] = time.time
    ):
        self.index = index
        self.config = config or StorageConfig()
        self.writer = writer
        self.clock = clock
        self._series: Dict[int, SeriesStore] = {}
        self._series_lock = threading.Lock()
        self._stats_lock = threading.Lock()

        # Flush state
        self.degraded = False
        self.last_flush_error: Optional[str] = None
        self.last_flush_at: Optional[datetime] = None
        self._flush_failures = 0
        self._next_flush_at = 0.0

        # Statistics
        self.appended = 0
        self.rejected_out_of_order = 0
        self.rejected_stale = 0
        self.chunks_dropped = 0
        self.chunks_compacted = 0

    # Series management

    def create_series(self, series_id: int, kind: MetricKind = MetricKind.UNTYPED) -> SeriesStore:
        """Create storage for a series; the first kind wins"""
        store = self._series.get(series_id)
        if store is not None:
            return store
        with self._series_lock:
            store = self._series.get(series_id)
            if store is None:
                store = SeriesStore(series_id, kind)
                self._series[series_id] = store
        return store

    def _get_store(self, series_id: int) -> Optional[SeriesStore]:
        store = self._series.get(series_id)
        if store is None:
            info = self.index.get(series_id)
            if info is None:
                return None
            store = self.create_series(series_id, info.kind)
        return store

    # Write path

    def append(self, series_id: int, timestamp: int, value: float) -> AppendResult:
        """Append one sample; out-of-order and stale samples are rejected"""
        store = self._get_store(series_id)
        if store is None:
            return AppendResult(ok=False, error=UnknownSeriesError(f"unknown series {series_id}"))

        cutoff = self.retention_cutoff()
        if timestamp < cutoff:
            with self._stats_lock:
                self.rejected_stale += 1
            return AppendResult(ok=False, error=StaleSampleError(series_id, timestamp, cutoff))

        with store.lock:
            if store.last_timestamp is not None and timestamp <= store.last_timestamp:
                with self._stats_lock:
                    self.rejected_out_of_order += 1
                return AppendResult(
                    ok=False,
                    error=OutOfOrderError(series_id, timestamp, store.last_timestamp)
                )

            head = store.head
            if len(head) and (
                len(head) >= self.config.chunk_max_samples
                or timestamp - head.min_time >= self.config.chunk_max_span_ms
            ):
                store.chunks.append(head.seal())
                store.head = head = Chunk()
                store.dirty = True

            head.append(timestamp, float(value))
            store.last_timestamp = timestamp
            with self._stats_lock:
                self.appended += 1

        return APPEND_OK

    # Read path

    def read(self, series_id: int, start: int, end: int) -> SampleRange:
        """Samples of one series with start <= timestamp <= end"""
        store = self._series.get(series_id)
        if store is None:
            return SampleRange([], start, end)
        with store.lock:
            views = store.views()
        return SampleRange(views, start, end)

    def snapshot(self, series_ids: Iterable[int]) -> StorageSnapshot:
        """Capture chunk views of the given series, one series lock at a time"""
        views: Dict[int, List[ChunkView]] = {}
        kinds: Dict[int, MetricKind] = {}
        for series_id in series_ids:
            store = self._series.get(series_id)
            if store is None:
                continue
            with store.lock:
                views[series_id] = store.views()
            kinds[series_id] = store.kind
        return StorageSnapshot(views, kinds, to_ms(self.clock()))

    def last_timestamp(self, series_id: int) -> Optional[int]:
        store = self._series.get(series_id)
        return store.last_timestamp if store else None

    def kind_of(self, series_id: int) -> MetricKind:
        store = self._series.get(series_id)
        return store.kind if store else MetricKind.UNTYPED

    # Maintenance

    def retention_cutoff(self, now_ms: Optional[int] = None) -> int:
        if now_ms is None:
            now_ms = to_ms(self.clock())
        return now_ms - int(self.config.retention_seconds * 1000)

    def _stores(self) -> List[SeriesStore]:
        with self._series_lock:
            return list(self._series.values())

    def sweep_retention(self, now_ms: Optional[int] = None) -> int:
        """Drop whole chunks that end before the retention cutoff"""
        cutoff = self.retention_cutoff(now_ms)
        dropped = 0
        for store in self._stores():
            with store.lock:
                kept = [c for c in store.chunks if c.max_time >= cutoff]
                removed = len(store.chunks) - len(kept)
                if len(store.head) and store.head.max_time < cutoff:
                    store.head = Chunk()
                    removed += 1
                if removed:
                    store.chunks = kept
                    store.dirty = True
                    dropped += removed
        if dropped:
            self.chunks_dropped += dropped
            logger.info(f"Retention sweep dropped {dropped} chunk(s) older than {cutoff}")
        return dropped

    def compact(self) -> int:
        """Merge runs of small sealed chunks; returns the number of chunks removed"""
        target = self.config.compaction_target_samples
        removed_total = 0
        for store in self._stores():
            with store.lock:
                original = list(store.chunks)
            if len(original) < 2:
                continue

            groups: List[List[Chunk]] = []
            current: List[Chunk] = []
            size = 0
            for chunk in original:
                if current and size + len(chunk) > target:
                    groups.append(current)
                    current, size = [], 0
                current.append(chunk)
                size += len(chunk)
            if current:
                groups.append(current)
            if len(groups) == len(original):
                continue

            # Built outside the lock; sealed chunks never change
            compacted = [g[0] if len(g) == 1 else merge_chunks(g) for g in groups]

            with store.lock:
                prefix = store.chunks[:len(original)]
                if len(prefix) != len(original) or any(a is not b for a, b in zip(prefix, original)):
                    logger.debug(f"Series {store.series_id} changed during compaction, skipping")
                    continue
                store.chunks = compacted + store.chunks[len(original):]
                store.dirty = True
            removed_total += len(original) - len(compacted)

        if removed_total:
            self.chunks_compacted += removed_total
            logger.info(f"Compaction merged away {removed_total} chunk(s)")
        return removed_total

    def flush(self) -> int:
        """Persist dirty series; raises StorageIOError on the first failure"""
        if self.writer is None:
            return 0
        flushed = 0
        for store in self._stores():
            with store.lock:
                if not store.dirty:
                    continue
                chunks = list(store.chunks)
                store.dirty = False
            info = self.index.get(store.series_id)
            if info is None:
                continue
            try:
                self.writer.write_series(info.labels, store.kind, chunks)
            except StorageIOError:
                with store.lock:
                    store.dirty = True
                raise
            flushed += 1
        return flushed

    def flush_with_backoff(self) -> Optional[int]:
        """
        Flush unless a previous failure is still backing off

        Returns:
            Number of series flushed, or None when skipped/failed
        """
        now = self.clock()
        if now < self._next_flush_at:
            return None
        try:
            flushed = self.flush()
        except StorageIOError as e:
            self._flush_failures += 1
            delay = min(
                self.config.flush_backoff_base_seconds * 2 ** (self._flush_failures - 1),
                self.config.flush_backoff_max_seconds
            )
            self._next_flush_at = now + delay
            self.last_flush_error = str(e)
            if self._flush_failures >= self.config.max_flush_retries and not self.degraded:
                self.degraded = True
                logger.error(f"Chunk flushing failed {self._flush_failures} times, entering degraded mode: {e}")
            else:
                logger.warning(f"Chunk flush failed (attempt {self._flush_failures}), retrying in {delay:.0f}s: {e}")
            return None

        if self.degraded:
            logger.info("Chunk flushing recovered, leaving degraded mode")
        self.degraded = False
        self._flush_failures = 0
        self._next_flush_at = 0.0
        self.last_flush_error = None
        self.last_flush_at = datetime.now()
        return flushed

    def seal_heads(self) -> int:
        """Seal every non-empty head chunk so it becomes flushable"""
        sealed = 0
        for store in self._stores():
            with store.lock:
                if len(store.head):
                    store.chunks.append(store.head.seal())
                    store.head = Chunk()
                    store.dirty = True
                    sealed += 1
        return sealed

    def run_maintenance(self) -> dict:
        """Retention sweep, compaction and flush in one pass"""
        dropped = self.sweep_retention()
        compacted = self.compact()
        flushed = self.flush_with_backoff()
        return {"dropped": dropped, "compacted": compacted, "flushed": flushed}

    def load_persisted(self) -> int:
        """Restore flushed series from the writer's data directory"""
        if self.writer is None:
            return 0
        loaded = 0
        for persisted in self.writer.load():
            if not persisted.chunks:
                continue
            series_id = self.index.resolve_labels(persisted.labels, persisted.kind)
            store = self.create_series(series_id, persisted.kind)
            with store.lock:
                if store.last_timestamp is not None or len(store.head):
                    continue
                store.chunks = list(persisted.chunks)
                store.last_timestamp = persisted.chunks[-1].max_time
            loaded += 1
        logger.info(f"Loaded {loaded} persisted series")
        return loaded

    def get_statistics(self) -> dict:
        stores = self._stores()
        return {
            "series": len(stores),
            "chunks": sum(len(s.chunks) + (1 if len(s.head) else 0) for s in stores),
            "samples": sum(s.sample_count() for s in stores),
            "appended": self.appended,
            "rejected_out_of_order": self.rejected_out_of_order,
            "rejected_stale": self.rejected_stale,
            "chunks_dropped": self.chunks_dropped,
            "chunks_compacted": self.chunks_compacted,
            "degraded": self.degraded,
            "persisted_files": len(self.writer.list_files()) if self.writer else 0,
            "last_flush_error": self.last_flush_error,
            "last_flush_at": self.last_flush_at.isoformat() if self.last_flush_at else None,
            "config": self.config.to_dict()
        }
