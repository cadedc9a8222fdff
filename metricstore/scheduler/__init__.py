"""
Scheduler Module

Provides:
- Periodic tasks on the event loop
- Bounded worker pool for blocking work
"""

from .tasks import SchedulerStatus, SchedulerConfig, TaskRun, PeriodicTask, TaskScheduler

__all__ = [
    "SchedulerStatus",
    "SchedulerConfig",
    "TaskRun",
    "PeriodicTask",
    "TaskScheduler"
]
