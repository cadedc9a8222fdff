"""
Ingestion Gateway

Provides:
- Routing of parsed samples into the index and storage engine
- Per-batch accounting of accepted and rejected samples
- Scrape targets (HTTP or in-process fetcher) with timeouts
- Scrape health series (up, scrape_duration_seconds, ...)
"""

import asyncio
import functools
import logging
import threading
import time
from concurrent.futures import Executor
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Mapping, Optional
from urllib.parse import urlparse

import httpx

from ..errors import CardinalityExceeded, OutOfOrderError, StaleSampleError
from ..index import MetricKind, SeriesIndex
from ..scheduler import PeriodicTask
from ..storage import AppendResult, StorageEngine
from ..timeutil import now_ms
from .exposition import ParsedSample, parse_exposition

logger = logging.getLogger("IngestionGateway")

MAX_RECORDED_ERRORS = 20


@dataclass
class IngestResult:
    """Accounting for one ingested batch"""

    accepted: int = 0
    invalid_lines: int = 0
    out_of_order: int = 0
    stale: int = 0
    cardinality_rejected: int = 0
    other_rejected: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def rejected(self) -> int:
        return self.out_of_order + self.stale + self.cardinality_rejected + self.other_rejected

    def record_error(self, message: str) -> None:
        if len(self.errors) < MAX_RECORDED_ERRORS:
            self.errors.append(message)

    def to_dict(self) -> dict:
        return {
            "accepted": self.accepted,
            "invalid_lines": self.invalid_lines,
            "out_of_order": self.out_of_order,
            "stale": self.stale,
            "cardinality_rejected": self.cardinality_rejected,
            "other_rejected": self.other_rejected,
            "errors": self.errors
        }


class TargetHealth(str, Enum):
    """Scrape target health"""
    UNKNOWN = "unknown"
    UP = "up"
    DOWN = "down"


@dataclass
class ScrapeTarget:
    """
    A pull source of exposition text

    Attributes:
        job: Job name, attached as the `job` label
        url: HTTP endpoint to GET (unless `fetcher` is given)
        interval: Seconds between scrapes
        timeout: Seconds before a scrape is cancelled
        labels: Extra labels attached to every scraped sample
        honor_labels: Keep scraped labels that collide with target labels
        fetcher: In-process coroutine returning exposition text
    """
    job: str
    url: Optional[str] = None
    interval: float = 15.0
    timeout: float = 10.0
    labels: Dict[str, str] = field(default_factory=dict)
    honor_labels: bool = False
    fetcher: Optional[Callable[[], Awaitable[str]]] = None
    instance_name: Optional[str] = None

    # Tracking
    health: TargetHealth = TargetHealth.UNKNOWN
    last_scrape: Optional[datetime] = None
    last_error: Optional[str] = None
    last_duration_seconds: float = 0.0
    last_samples: int = 0
    scrapes: int = 0

    def __post_init__(self):
        if not self.job:
            raise ValueError("scrape target needs a job name")
        if not self.url and self.fetcher is None:
            raise ValueError(f"scrape target {self.job!r} needs a url or a fetcher")
        if self.interval <= 0:
            raise ValueError(f"scrape target {self.job!r}: interval must be positive")
        if self.timeout <= 0 or self.timeout > self.interval:
            raise ValueError(f"scrape target {self.job!r}: timeout must be in (0, interval]")

    @property
    def instance(self) -> str:
        if self.instance_name:
            return self.instance_name
        if self.url:
            return urlparse(self.url).netloc or self.url
        return self.job

    @property
    def key(self) -> str:
        return f"{self.job}/{self.instance}"

    def target_labels(self) -> Dict[str, str]:
        labels = dict(self.labels)
        labels["job"] = self.job
        labels["instance"] = self.instance
        return labels

    def to_dict(self) -> dict:
        return {
            "job": self.job,
            "instance": self.instance,
            "url": self.url,
            "interval_seconds": self.interval,
            "timeout_seconds": self.timeout,
            "labels": self.target_labels(),
            "honor_labels": self.honor_labels,
            "health": self.health.value,
            "last_scrape": self.last_scrape.isoformat() if self.last_scrape else None,
            "last_error": self.last_error,
            "last_duration_seconds": round(self.last_duration_seconds, 6),
            "last_samples": self.last_samples,
            "scrapes": self.scrapes
        }


def apply_target_labels(
    labels: Mapping[str, str],
    target_labels: Mapping[str, str],
    honor_labels: bool
) -> Dict[str, str]:
    """
    Attach target labels to a scraped label set

    On a collision the scraped value wins when `honor_labels` is set; otherwise it is
    kept as `exported_<name>` and the target value wins.
    """
    merged = dict(labels)
    for name, value in target_labels.items():
        if name not in merged or not merged[name]:
            merged[name] = value
        elif not honor_labels:
            merged[f"exported_{name}"] = merged[name]
            merged[name] = value
    return merged


class IngestionGateway:
    """Accepts samples from scrapes, pushes and internal producers"""

    def __init__(
        self,
        index: SeriesIndex,
        storage: StorageEngine,
        clock: Callable[[], float] = time.time,
        executor: Optional[Executor] = None
    ):
        self.index = index
        self.storage = storage
        self.clock = clock
        self.executor = executor
        self._targets: Dict[str, ScrapeTarget] = {}
        self._client: Optional[httpx.AsyncClient] = None
        self._stats_lock = threading.Lock()

        # Statistics
        self.samples_accepted = 0
        self.samples_rejected = 0
        self.invalid_lines = 0

    # Write path

    def _append(
        self,
        name: str,
        labels: Mapping[str, str],
        timestamp: int,
        value: float,
        kind: MetricKind
    ) -> AppendResult:
        try:
            series_id = self.index.resolve(name, labels, kind)
        except CardinalityExceeded as e:
            return AppendResult(ok=False, error=e)
        return self.storage.append(series_id, timestamp, value)

    def write(
        self,
        name: str,
        labels: Optional[Mapping[str, str]],
        value: float,
        timestamp: Optional[int] = None,
        kind: MetricKind = MetricKind.GAUGE
    ) -> AppendResult:
        """Write a single internally generated sample"""
        ts = timestamp if timestamp is not None else now_ms(self.clock)
        result = self._append(name, labels or {}, ts, value, kind)
        with self._stats_lock:
            if result.ok:
                self.samples_accepted += 1
            else:
                self.samples_rejected += 1
        if not result.ok:
            logger.debug(f"Rejected internal sample {name}: {result.error}")
        return result

    def ingest_samples(
        self,
        samples: Iterable[ParsedSample],
        extra_labels: Optional[Mapping[str, str]] = None,
        honor_labels: bool = False,
        default_timestamp: Optional[int] = None
    ) -> IngestResult:
        """Append parsed samples, counting every rejection by cause"""
        result = IngestResult()
        if default_timestamp is None:
            default_timestamp = now_ms(self.clock)

        for sample in samples:
            labels = sample.labels
            if extra_labels:
                labels = apply_target_labels(labels, extra_labels, honor_labels)
            ts = sample.timestamp if sample.timestamp is not None else default_timestamp

            outcome = self._append(sample.name, labels, ts, sample.value, sample.kind)
            if outcome.ok:
                result.accepted += 1
                continue

            error = outcome.error
            if isinstance(error, OutOfOrderError):
                result.out_of_order += 1
            elif isinstance(error, StaleSampleError):
                result.stale += 1
            elif isinstance(error, CardinalityExceeded):
                result.cardinality_rejected += 1
            else:
                result.other_rejected += 1
            result.record_error(f"{sample.name}: {error}")

        with self._stats_lock:
            self.samples_accepted += result.accepted
            self.samples_rejected += result.rejected
        return result

    def ingest_text(
        self,
        payload: str,
        extra_labels: Optional[Mapping[str, str]] = None,
        honor_labels: bool = False,
        default_timestamp: Optional[int] = None
    ) -> IngestResult:
        """
        Parse and ingest an exposition payload

        Malformed lines are counted and skipped; the rest of the batch is ingested.
        """
        batch = parse_exposition(payload)
        result = self.ingest_samples(batch.samples, extra_labels, honor_labels, default_timestamp)
        result.invalid_lines = len(batch.errors)
        for error in batch.errors:
            result.record_error(str(error))
        with self._stats_lock:
            self.invalid_lines += len(batch.errors)
        if batch.errors:
            logger.debug(f"Skipped {len(batch.errors)} malformed line(s), first: {batch.errors[0]}")
        return result

    # Scrape targets

    def add_target(self, target: ScrapeTarget) -> ScrapeTarget:
        if target.key in self._targets:
            raise ValueError(f"scrape target {target.key} already registered")
        self._targets[target.key] = target
        logger.info(f"Added scrape target {target.key} every {target.interval}s")
        return target

    def remove_target(self, key: str) -> bool:
        return self._targets.pop(key, None) is not None

    def get_target(self, key: str) -> Optional[ScrapeTarget]:
        return self._targets.get(key)

    def targets(self) -> List[ScrapeTarget]:
        return list(self._targets.values())

    def _http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def _fetch(self, target: ScrapeTarget) -> str:
        if target.fetcher is not None:
            return await target.fetcher()
        response = await self._http_client().get(
            target.url,
            headers={"Accept": "text/plain;version=0.0.4"},
            timeout=target.timeout
        )
        response.raise_for_status()
        return response.text

    async def scrape(self, target: ScrapeTarget) -> IngestResult:
        """
        Scrape one target once

        The fetch is cancelled once `target.timeout` elapses. Health series are
        written whatever the outcome.
        """
        loop = asyncio.get_running_loop()
        scrape_ts = now_ms(self.clock)
        started = loop.time()
        result = IngestResult()
        error: Optional[str] = None

        try:
            payload = await asyncio.wait_for(self._fetch(target), timeout=target.timeout)
            result = await loop.run_in_executor(
                self.executor,
                functools.partial(
                    self.ingest_text,
                    payload,
                    extra_labels=target.target_labels(),
                    honor_labels=target.honor_labels,
                    default_timestamp=scrape_ts
                )
            )
        except asyncio.TimeoutError:
            error = f"scrape timed out after {target.timeout}s"
        except httpx.HTTPStatusError as e:
            error = f"server returned HTTP status {e.response.status_code}"
        except httpx.HTTPError as e:
            error = f"{type(e).__name__}: {e}"
        except Exception as e:
            error = str(e) or type(e).__name__

        duration = loop.time() - started
        target.scrapes += 1
        target.last_scrape = datetime.now()
        target.last_duration_seconds = duration
        target.last_error = error
        target.last_samples = result.accepted + result.rejected
        target.health = TargetHealth.DOWN if error else TargetHealth.UP
        if error:
            logger.warning(f"Scrape of {target.key} failed: {error}")

        health_labels = target.target_labels()
        self.write("up", health_labels, 0.0 if error else 1.0, scrape_ts)
        self.write("scrape_duration_seconds", health_labels, duration, scrape_ts)
        self.write("scrape_samples_scraped", health_labels, float(target.last_samples), scrape_ts)
        self.write("scrape_samples_invalid", health_labels, float(result.invalid_lines), scrape_ts)
        return result

    def scrape_task(self, target: ScrapeTarget) -> PeriodicTask:
        """Periodic task scraping `target` at its own interval"""
        async def run():
            await self.scrape(target)
        return PeriodicTask(name=f"scrape:{target.key}", interval=target.interval, func=run)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def get_statistics(self) -> dict:
        return {
            "samples_accepted": self.samples_accepted,
            "samples_rejected": self.samples_rejected,
            "invalid_lines": self.invalid_lines,
            "targets": len(self._targets),
            "targets_up": len([t for t in self._targets.values() if t.health == TargetHealth.UP])
        }
