"""
Test suite for the storage engine.

Tests cover:
- Ordered appends and out-of-order rejection
- Head chunk sealing
- Snapshot isolation
- Concurrent writers and readers
- Retention sweep and compaction
- Chunk flushing, loading and degraded mode
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from metricstore.errors import OutOfOrderError, StaleSampleError, StorageIOError, UnknownSeriesError
from metricstore.index import MetricKind, SeriesIndex
from metricstore.storage import ChunkWriter, StorageConfig, StorageEngine

from .conftest import T0, FakeClock

MS = int(T0 * 1000)


def make_engine(clock, **config):
    index = SeriesIndex()
    engine = StorageEngine(index, StorageConfig(**config), clock=clock)
    return index, engine


class TestAppend:
    """Tests for the write path."""

    def test_read_back_in_order(self, index, storage):
        """Accepted samples read back in timestamp order."""
        sid = index.resolve("x")
        for i in range(5):
            assert storage.append(sid, MS + i * 1000, float(i)).ok
        samples = storage.read(sid, MS, MS + 10_000).to_list()
        assert [s.value for s in samples] == [0.0, 1.0, 2.0, 3.0, 4.0]
        timestamps = [s.timestamp for s in samples]
        assert timestamps == sorted(timestamps)

    def test_out_of_order_rejected(self, index, storage):
        """A timestamp not after the last accepted one is rejected as a value."""
        sid = index.resolve("x")
        assert storage.append(sid, MS + 2000, 1.0).ok
        result = storage.append(sid, MS + 1000, 2.0)
        assert not result.ok
        assert isinstance(result.error, OutOfOrderError)
        duplicate = storage.append(sid, MS + 2000, 3.0)
        assert isinstance(duplicate.error, OutOfOrderError)
        assert [s.value for s in storage.read(sid, 0, MS * 2)] == [1.0]
        assert storage.rejected_out_of_order == 2

    def test_stale_sample_rejected(self, clock):
        """Samples older than retention are rejected."""
        index, engine = make_engine(clock, retention_seconds=60)
        sid = index.resolve("x")
        result = engine.append(sid, MS - 61_000, 1.0)
        assert isinstance(result.error, StaleSampleError)
        assert engine.append(sid, MS - 59_000, 1.0).ok

    def test_unknown_series(self, storage):
        """Appending to an id the index never issued fails."""
        result = storage.append(999, MS, 1.0)
        assert isinstance(result.error, UnknownSeriesError)

    def test_head_sealed_by_size(self, clock):
        """The head chunk is sealed once it holds chunk_max_samples."""
        index, engine = make_engine(clock, chunk_max_samples=3)
        sid = index.resolve("x")
        for i in range(7):
            engine.append(sid, MS + i * 1000, float(i))
        stats = engine.get_statistics()
        assert stats["chunks"] == 3
        assert stats["samples"] == 7
        assert len(engine.read(sid, 0, MS * 2).to_list()) == 7

    def test_head_sealed_by_span(self, clock):
        """The head chunk is sealed once it spans chunk_max_span_ms."""
        index, engine = make_engine(clock, chunk_max_span_ms=10_000)
        sid = index.resolve("x")
        engine.append(sid, MS, 1.0)
        engine.append(sid, MS + 5_000, 2.0)
        engine.append(sid, MS + 10_000, 3.0)
        assert engine.get_statistics()["chunks"] == 2

    def test_sample_range_restartable(self, index, storage):
        """A SampleRange can be iterated more than once."""
        sid = index.resolve("x")
        storage.append(sid, MS, 1.0)
        storage.append(sid, MS + 1000, 2.0)
        samples = storage.read(sid, MS, MS + 1000)
        assert list(samples) == list(samples)
        assert len(list(samples)) == 2


class TestSnapshot:
    """Tests for snapshot reads."""

    def test_later_appends_invisible(self, clock):
        """A snapshot never sees samples appended after it was taken."""
        index, engine = make_engine(clock, chunk_max_samples=2)
        sid = index.resolve("x")
        engine.append(sid, MS, 1.0)
        engine.append(sid, MS + 1000, 2.0)
        engine.append(sid, MS + 2000, 3.0)
        snapshot = engine.snapshot([sid])
        engine.append(sid, MS + 3000, 4.0)
        engine.append(sid, MS + 4000, 5.0)
        assert [s.value for s in snapshot.read(sid, 0, MS * 2)] == [1.0, 2.0, 3.0]
        assert snapshot.latest(sid, 0, MS * 2).value == 3.0
        assert len(engine.read(sid, 0, MS * 2).to_list()) == 5

    def test_latest_in_window(self, index, storage):
        """latest() honors the window bounds."""
        sid = index.resolve("x")
        storage.append(sid, MS, 1.0)
        storage.append(sid, MS + 10_000, 2.0)
        snapshot = storage.snapshot([sid])
        assert snapshot.latest(sid, MS, MS + 5_000).value == 1.0
        assert snapshot.latest(sid, MS + 11_000, MS + 20_000) is None


class TestConcurrency:
    """Tests for writers and readers on several threads."""

    def test_same_series_writers_serialized(self, clock):
        """Racing writers never interleave: read-back is strictly increasing."""
        index, engine = make_engine(clock, chunk_max_samples=16)
        sid = index.resolve("x")
        writers, per_writer = 4, 400
        barrier = threading.Barrier(writers)

        def write(offset):
            barrier.wait()
            return [
                engine.append(sid, MS + i * writers + offset, float(i)).ok
                for i in range(per_writer)
            ]

        with ThreadPoolExecutor(max_workers=writers) as pool:
            outcomes = [ok for batch in pool.map(write, range(writers)) for ok in batch]

        accepted = outcomes.count(True)
        rejected = outcomes.count(False)
        timestamps = [s.timestamp for s in engine.read(sid, 0, MS * 2)]
        assert accepted + rejected == writers * per_writer
        assert len(timestamps) == accepted
        assert all(a < b for a, b in zip(timestamps, timestamps[1:]))
        assert engine.appended == accepted
        assert engine.rejected_out_of_order == rejected

    def test_counters_exact_across_series(self, clock):
        """Statistics add up when many series are written at once."""
        index, engine = make_engine(clock)
        ids = [index.resolve("x", {"i": str(n)}) for n in range(8)]

        def write(sid):
            for i in range(500):
                engine.append(sid, MS + i, 1.0)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(write, ids))

        assert engine.appended == 8 * 500
        assert all(len(engine.read(sid, 0, MS * 2).to_list()) == 500 for sid in ids)

    def test_snapshot_ignores_other_series_lock(self, clock):
        """A snapshot of one series proceeds while another series is locked by a writer."""
        index, engine = make_engine(clock)
        busy, quiet = index.resolve("busy"), index.resolve("quiet")
        engine.append(busy, MS, 1.0)
        engine.append(quiet, MS, 2.0)

        with ThreadPoolExecutor(max_workers=1) as pool:
            with engine.create_series(busy).lock:
                snapshot = pool.submit(engine.snapshot, [quiet]).result(timeout=2)
        assert snapshot.latest(quiet, 0, MS * 2).value == 2.0


class TestMaintenance:
    """Tests for retention and compaction."""

    def test_retention_drops_whole_chunks(self, clock):
        """Old chunks go away, a chunk straddling the cutoff is kept in full."""
        index, engine = make_engine(clock, retention_seconds=100, chunk_max_samples=2)
        sid = index.resolve("x")
        for offset in (-90, -80, -60, -40, -10):
            assert engine.append(sid, MS + offset * 1000, float(offset)).ok

        clock.advance(45)  # cutoff is now T0 - 55s
        dropped = engine.sweep_retention()
        assert dropped == 1
        values = [s.value for s in engine.read(sid, 0, MS * 2)]
        assert values == [-60.0, -40.0, -10.0]

    def test_retention_drops_idle_head(self, clock):
        """A head chunk entirely before the cutoff is dropped too."""
        index, engine = make_engine(clock, retention_seconds=100)
        sid = index.resolve("x")
        engine.append(sid, MS, 1.0)
        clock.advance(200)
        assert engine.sweep_retention() == 1
        assert engine.read(sid, 0, MS * 2).to_list() == []

    def test_compaction_preserves_samples(self, clock):
        """Compaction merges small chunks without changing values or order."""
        index, engine = make_engine(clock, chunk_max_samples=2, compaction_target_samples=6)
        sid = index.resolve("x")
        for i in range(10):
            engine.append(sid, MS + i * 1000, float(i))
        before = engine.read(sid, 0, MS * 2).to_list()
        assert engine.get_statistics()["chunks"] == 5

        removed = engine.compact()
        assert removed == 2
        assert engine.get_statistics()["chunks"] == 3
        assert engine.read(sid, 0, MS * 2).to_list() == before

    def test_compaction_is_idempotent(self, clock):
        """A second pass has nothing left to merge."""
        index, engine = make_engine(clock, chunk_max_samples=2, compaction_target_samples=100)
        sid = index.resolve("x")
        for i in range(9):
            engine.append(sid, MS + i * 1000, float(i))
        engine.compact()
        assert engine.compact() == 0


class FlakyWriter(ChunkWriter):
    """Writer that fails until told otherwise"""

    def __init__(self, data_dir):
        super().__init__(data_dir)
        self.failing = True

    def write_series(self, labels, kind, chunks):
        if self.failing:
            raise StorageIOError("disk unavailable")
        return super().write_series(labels, kind, chunks)


class TestFlushing:
    """Tests for chunk flushing."""

    def test_flush_and_load(self, tmp_path, clock):
        """Flushed series are restored by a fresh engine."""
        index = SeriesIndex()
        engine = StorageEngine(index, StorageConfig(), writer=ChunkWriter(tmp_path), clock=clock)
        sid = index.resolve("requests_total", {"job": "api"}, MetricKind.COUNTER)
        for i in range(3):
            engine.append(sid, MS + i * 1000, float(i))
        engine.seal_heads()
        assert engine.flush() == 1
        assert len(engine.writer.list_files()) == 1

        fresh_index = SeriesIndex()
        fresh = StorageEngine(fresh_index, StorageConfig(), writer=ChunkWriter(tmp_path), clock=clock)
        assert fresh.load_persisted() == 1
        restored = fresh_index.resolve("requests_total", {"job": "api"})
        assert [s.value for s in fresh.read(restored, 0, MS * 2)] == [0.0, 1.0, 2.0]
        assert fresh.kind_of(restored) == MetricKind.COUNTER
        assert not fresh.append(restored, MS + 1000, 5.0).ok

    def test_degraded_after_repeated_failures(self, tmp_path):
        """Repeated flush failures back off and then enter degraded mode."""
        clock = FakeClock()
        index = SeriesIndex()
        writer = FlakyWriter(tmp_path)
        engine = StorageEngine(
            index,
            StorageConfig(max_flush_retries=2, flush_backoff_base_seconds=1.0),
            writer=writer,
            clock=clock
        )
        sid = index.resolve("x")
        engine.append(sid, MS, 1.0)
        engine.seal_heads()

        assert engine.flush_with_backoff() is None
        assert not engine.degraded
        assert engine.flush_with_backoff() is None  # still backing off
        clock.advance(1.0)
        assert engine.flush_with_backoff() is None
        assert engine.degraded
        assert engine.get_statistics()["degraded"] is True

        writer.failing = False
        clock.advance(2.0)
        assert engine.flush_with_backoff() == 1
        assert not engine.degraded
