"""
Periodic Task Scheduler

Provides:
- Periodic task definitions with their own interval and timeout
- Independent asyncio loop per task (individually cancellable)
- Missed tick coalescing
- Bounded worker pool for blocking work
"""

import asyncio
import functools
import logging
import uuid
from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger("TaskScheduler")


class SchedulerStatus(Enum):
    """Scheduler status"""
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class SchedulerConfig:
    """Scheduler configuration"""

    max_workers: int = 4  # Thread pool for blocking work (queries, storage maintenance)
    history_size: int = 1000

    def to_dict(self) -> dict:
        return {
            "max_workers": self.max_workers,
            "history_size": self.history_size
        }


@dataclass
class TaskRun:
    """Outcome of one task execution"""

    task_name: str
    started_at: datetime
    duration_seconds: float
    success: bool
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "task_name": self.task_name,
            "started_at": self.started_at.isoformat(),
            "duration_seconds": round(self.duration_seconds, 6),
            "success": self.success,
            "error": self.error
        }


@dataclass
class PeriodicTask:
    """A unit of periodic work"""

    name: str
    interval: float
    func: Callable[[], Awaitable[Any]]
    timeout: Optional[float] = None
    run_immediately: bool = True
    id: str = field(default_factory=lambda: f"task_{uuid.uuid4().hex[:8]}")

    # Tracking
    runs: int = 0
    failures: int = 0
    skipped_ticks: int = 0
    last_run: Optional[TaskRun] = None

    def __post_init__(self):
        if self.interval <= 0:
            raise ValueError(f"task {self.name!r}: interval must be positive")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "interval_seconds": self.interval,
            "timeout_seconds": self.timeout,
            "runs": self.runs,
            "failures": self.failures,
            "skipped_ticks": self.skipped_ticks,
            "last_run": self.last_run.to_dict() if self.last_run else None
        }


class TaskScheduler:
    """Runs periodic tasks concurrently on the event loop"""

    def __init__(self, config: Optional[SchedulerConfig] = None):
        self.config = config or SchedulerConfig()
        self.status = SchedulerStatus.STOPPED
        self.tasks: Dict[str, PeriodicTask] = {}
        self._handles: Dict[str, asyncio.Task] = {}
        self._history: deque = deque(maxlen=self.config.history_size)
        self._executor: Optional[ThreadPoolExecutor] = None
        self.started_at: Optional[datetime] = None

    @property
    def executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.max_workers,
                thread_name_prefix="metricstore-worker"
            )
        return self._executor

    async def run_blocking(self, fn: Callable, *args, **kwargs) -> Any:
        """Run a blocking callable on the bounded worker pool"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(fn, *args, **kwargs))

    def add(self, task: PeriodicTask) -> PeriodicTask:
        """Register a task; starts it right away if the scheduler is running"""
        if task.name in self.tasks:
            raise ValueError(f"task {task.name!r} already scheduled")
        self.tasks[task.name] = task
        if self.status == SchedulerStatus.RUNNING:
            self._spawn(task)
        return task

    def remove(self, name: str) -> bool:
        """Unregister and cancel a task"""
        task = self.tasks.pop(name, None)
        if task is None:
            return False
        handle = self._handles.pop(name, None)
        if handle is not None:
            handle.cancel()
        return True

    def _spawn(self, task: PeriodicTask) -> None:
        self._handles[task.name] = asyncio.create_task(self._loop(task), name=f"periodic:{task.name}")

    async def start(self) -> bool:
        """Start every registered task"""
        if self.status == SchedulerStatus.RUNNING:
            return False
        self.status = SchedulerStatus.RUNNING
        self.started_at = datetime.now()
        for task in self.tasks.values():
            self._spawn(task)
        logger.info(f"Task scheduler started with {len(self.tasks)} task(s)")
        return True

    async def stop(self) -> bool:
        """Cancel every task and wait for them to finish"""
        if self.status == SchedulerStatus.STOPPED:
            return False
        self.status = SchedulerStatus.STOPPING
        handles = list(self._handles.values())
        for handle in handles:
            handle.cancel()
        await asyncio.gather(*handles, return_exceptions=True)
        self._handles.clear()
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        self.status = SchedulerStatus.STOPPED
        logger.info("Task scheduler stopped")
        return True

    async def _loop(self, task: PeriodicTask) -> None:
        loop = asyncio.get_running_loop()
        next_run = loop.time() if task.run_immediately else loop.time() + task.interval
        while True:
            delay = next_run - loop.time()
            if delay > 0:
                await asyncio.sleep(delay)
            await self.run_once(task)

            next_run += task.interval
            now = loop.time()
            if next_run <= now:
                # A tick less than one interval late still runs, right away. Older
                # ticks were overtaken by a newer one and are skipped, never queued.
                missed = int((now - next_run) // task.interval)
                if missed:
                    task.skipped_ticks += missed
                    next_run += missed * task.interval
                    logger.debug(f"Task {task.name} overran, skipped {missed} tick(s)")

    async def run_once(self, task: PeriodicTask) -> TaskRun:
        """Execute a task once, bounded by its timeout"""
        loop = asyncio.get_running_loop()
        started_at = datetime.now()
        start = loop.time()
        error: Optional[str] = None
        try:
            if task.timeout:
                await asyncio.wait_for(task.func(), timeout=task.timeout)
            else:
                await task.func()
        except asyncio.TimeoutError:
            error = f"timed out after {task.timeout}s"
            logger.warning(f"Task {task.name} {error}")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            error = str(e) or type(e).__name__
            logger.error(f"Task {task.name} failed: {error}")

        run = TaskRun(
            task_name=task.name,
            started_at=started_at,
            duration_seconds=loop.time() - start,
            success=error is None,
            error=error
        )
        task.runs += 1
        if error is not None:
            task.failures += 1
        task.last_run = run
        self._history.append(run)
        return run

    def get_history(self, task_name: Optional[str] = None, limit: int = 100) -> List[TaskRun]:
        runs = [r for r in self._history if task_name is None or r.task_name == task_name]
        return runs[-limit:]

    def get_statistics(self) -> dict:
        return {
            "status": self.status.value,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "tasks": {name: t.to_dict() for name, t in self.tasks.items()},
            "config": self.config.to_dict()
        }
