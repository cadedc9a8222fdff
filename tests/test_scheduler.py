"""
Test suite for the periodic task scheduler.

Tests cover:
- Task validation and registration
- Independent task loops
- Timeouts and failure isolation
- Missed tick coalescing
- Blocking work on the worker pool
"""

import asyncio
import threading

import pytest

from metricstore.scheduler import PeriodicTask, SchedulerConfig, SchedulerStatus, TaskScheduler


class TestPeriodicTask:
    """Tests for task definitions."""

    def test_interval_must_be_positive(self):
        async def noop():
            pass

        with pytest.raises(ValueError):
            PeriodicTask(name="bad", interval=0, func=noop)

    def test_duplicate_name(self):
        async def noop():
            pass

        scheduler = TaskScheduler()
        scheduler.add(PeriodicTask(name="t", interval=1, func=noop))
        with pytest.raises(ValueError):
            scheduler.add(PeriodicTask(name="t", interval=1, func=noop))


class TestRunOnce:
    """Tests for single executions."""

    @pytest.mark.asyncio
    async def test_timeout_recorded(self):
        """A run exceeding its timeout is cancelled and counted as failed."""
        async def slow():
            await asyncio.sleep(10)

        scheduler = TaskScheduler()
        task = PeriodicTask(name="slow", interval=1, func=slow, timeout=0.05)
        run = await scheduler.run_once(task)
        assert not run.success
        assert "timed out" in run.error
        assert task.failures == 1

    @pytest.mark.asyncio
    async def test_exception_recorded(self):
        """Exceptions are logged and recorded, never raised."""
        async def broken():
            raise RuntimeError("boom")

        scheduler = TaskScheduler()
        task = PeriodicTask(name="broken", interval=1, func=broken)
        run = await scheduler.run_once(task)
        assert run.error == "boom"
        assert scheduler.get_history("broken")[0].success is False


class TestScheduling:
    """Tests for the task loops."""

    @pytest.mark.asyncio
    async def test_tasks_run_independently(self):
        """A stuck task does not delay its siblings."""
        ticks = []

        async def fast():
            ticks.append("fast")

        async def stuck():
            await asyncio.sleep(10)

        scheduler = TaskScheduler()
        scheduler.add(PeriodicTask(name="fast", interval=0.02, func=fast))
        scheduler.add(PeriodicTask(name="stuck", interval=0.02, func=stuck))
        await scheduler.start()
        assert scheduler.status == SchedulerStatus.RUNNING
        await asyncio.sleep(0.2)
        await scheduler.stop()

        assert len(ticks) >= 3
        assert scheduler.status == SchedulerStatus.STOPPED

    @pytest.mark.asyncio
    async def test_overrun_coalesces_ticks(self):
        """Ticks missed while a run overran are skipped, not queued."""
        async def overrun():
            await asyncio.sleep(0.12)

        scheduler = TaskScheduler()
        task = scheduler.add(PeriodicTask(name="overrun", interval=0.05, func=overrun))
        await scheduler.start()
        await asyncio.sleep(0.3)
        await scheduler.stop()

        assert task.skipped_ticks >= 2
        assert task.runs <= 3

    @pytest.mark.asyncio
    async def test_remove_cancels(self):
        ticks = []

        async def count():
            ticks.append(1)

        scheduler = TaskScheduler()
        scheduler.add(PeriodicTask(name="count", interval=0.02, func=count))
        await scheduler.start()
        await asyncio.sleep(0.05)
        assert scheduler.remove("count")
        seen = len(ticks)
        await asyncio.sleep(0.1)
        assert len(ticks) == seen
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_add_while_running(self):
        """Tasks added after start begin right away."""
        started = asyncio.Event()

        async def mark():
            started.set()

        scheduler = TaskScheduler()
        await scheduler.start()
        scheduler.add(PeriodicTask(name="late", interval=1, func=mark))
        await asyncio.wait_for(started.wait(), timeout=1)
        await scheduler.stop()

    @pytest.mark.asyncio
    async def test_run_immediately_false(self):
        calls = []

        async def record():
            calls.append(1)

        scheduler = TaskScheduler()
        scheduler.add(PeriodicTask(name="later", interval=10, func=record, run_immediately=False))
        await scheduler.start()
        await asyncio.sleep(0.05)
        await scheduler.stop()
        assert calls == []


class TestWorkerPool:
    """Tests for blocking work offload."""

    @pytest.mark.asyncio
    async def test_run_blocking_uses_pool(self):
        scheduler = TaskScheduler(SchedulerConfig(max_workers=2))
        name = await scheduler.run_blocking(lambda: threading.current_thread().name)
        assert name.startswith("metricstore-worker")
