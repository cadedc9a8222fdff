"""
MetricStore Runtime

Provides:
- Explicit construction of index, storage, query, ingestion, alerting and probes
- Registration of scrape targets, rule groups and probes as periodic tasks
- Storage maintenance task (retention, compaction, flushing)
- Start / stop lifecycle and combined status
"""

import logging
import time
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from .alerting import AlertEvaluator, AlertEventStream, RuleGroup
from .config import MetricStoreConfig, Settings
from .index import SeriesIndex
from .ingestion import IngestionGateway, PushGateway, ScrapeTarget
from .probes import Probe, ProbeScheduler
from .query import QueryEngine
from .scheduler import PeriodicTask, SchedulerConfig, TaskScheduler
from .storage import ChunkWriter, StorageConfig, StorageEngine

logger = logging.getLogger("MetricStore")


class MetricStore:
    """Owns every component and the periodic work that drives them"""

    def __init__(self, settings: Optional[Settings] = None, clock: Callable[[], float] = time.time):
        self.settings = settings or Settings()
        self.clock = clock
        self.started_at: Optional[datetime] = None
        s = self.settings

        self.scheduler = TaskScheduler(SchedulerConfig(max_workers=s.workers))
        self.index = SeriesIndex(max_series_per_metric=s.max_series_per_metric)
        writer = ChunkWriter(Path(s.data_dir)) if s.data_dir else None
        self.storage = StorageEngine(
            self.index,
            StorageConfig(retention_seconds=s.retention_seconds),
            writer=writer,
            clock=clock
        )
        self.query_engine = QueryEngine(
            self.index,
            self.storage,
            lookback_seconds=s.lookback_seconds,
            max_points=s.max_points,
            clock=clock
        )
        self.gateway = IngestionGateway(self.index, self.storage, clock=clock, executor=self.scheduler.executor)
        self.pushgateway = PushGateway(default_ttl=s.push_ttl_seconds, clock=clock)
        self.alert_events = AlertEventStream()
        self.evaluator = AlertEvaluator(
            self.query_engine,
            gateway=self.gateway,
            events=self.alert_events,
            clock=clock,
            executor=self.scheduler.executor,
            resolved_retention=s.resolved_retention_seconds
        )
        self.probes = ProbeScheduler(self.gateway, scheduler=self.scheduler, clock=clock)

        self.add_target(self.pushgateway.as_target(
            interval=s.scrape_interval,
            timeout=min(s.scrape_timeout, s.scrape_interval)
        ))
        self.scheduler.add(PeriodicTask(
            name="storage:maintenance",
            interval=s.maintenance_interval,
            func=self._maintenance,
            run_immediately=False
        ))

    @classmethod
    def from_config(cls, config: MetricStoreConfig, clock: Callable[[], float] = time.time) -> "MetricStore":
        store = cls(config.settings, clock=clock)
        for target in config.scrape_targets:
            store.add_target(target)
        for group in config.rule_groups:
            store.add_rule_group(group)
        for probe in config.probes:
            store.add_probe(probe)
        return store

    # Registration

    def add_target(self, target: ScrapeTarget) -> ScrapeTarget:
        self.gateway.add_target(target)
        self.scheduler.add(self.gateway.scrape_task(target))
        return target

    def remove_target(self, key: str) -> bool:
        if not self.gateway.remove_target(key):
            return False
        self.scheduler.remove(f"scrape:{key}")
        return True

    def add_rule_group(self, group: RuleGroup) -> RuleGroup:
        self.evaluator.add_group(group)
        self.scheduler.add(self.evaluator.group_task(group))
        return group

    def remove_rule_group(self, name: str) -> bool:
        if not self.evaluator.remove_group(name):
            return False
        self.scheduler.remove(f"rules:{name}")
        return True

    def add_probe(self, probe: Probe) -> Probe:
        return self.probes.add_probe(probe)

    # Lifecycle

    async def _maintenance(self) -> None:
        self.pushgateway.expire()
        summary = await self.scheduler.run_blocking(self.storage.run_maintenance)
        logger.debug(f"Maintenance pass: {summary}")

    def _bind_executor(self) -> None:
        # stop() releases the worker pool; components pick up the fresh one on start()
        executor = self.scheduler.executor
        self.gateway.executor = executor
        self.evaluator.executor = executor

    async def start(self) -> None:
        self._bind_executor()
        if self.storage.writer is not None:
            self.storage.writer.ensure_dirs()
            await self.scheduler.run_blocking(self.storage.load_persisted)
        await self.scheduler.start()
        self.started_at = datetime.now()
        logger.info("MetricStore started")

    async def stop(self) -> None:
        await self.scheduler.stop()
        await self.gateway.aclose()
        await self.probes.aclose()
        if self.storage.writer is not None:
            self.storage.seal_heads()
            self.storage.flush_with_backoff()
        logger.info("MetricStore stopped")

    def status(self) -> dict:
        return {
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "degraded": self.storage.degraded,
            "index": self.index.get_statistics(),
            "storage": self.storage.get_statistics(),
            "query": self.query_engine.get_statistics(),
            "ingestion": self.gateway.get_statistics(),
            "pushgateway": self.pushgateway.get_statistics(),
            "alerting": self.evaluator.get_statistics(),
            "probes": self.probes.get_statistics(),
            "scheduler": self.scheduler.get_statistics(),
            "settings": self.settings.to_dict()
        }
