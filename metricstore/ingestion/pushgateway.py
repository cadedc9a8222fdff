"""
Push Gateway

Provides:
- Pushed sample groups keyed by (job, instance)
- Whole-group replacement on push, explicit delete
- TTL expiry of stale groups
- Exposition rendering and an in-process scrape target
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from ..errors import ParseError
from ..index import MetricKind
from .exposition import ParsedSample, parse_exposition, render_exposition
from .gateway import ScrapeTarget

logger = logging.getLogger("PushGateway")

DEFAULT_PUSH_TTL = 300.0


@dataclass
class PushedGroup:
    """The last batch pushed for one (job, instance)"""

    job: str
    instance: str
    samples: List[ParsedSample] = field(default_factory=list)
    types: Dict[str, MetricKind] = field(default_factory=dict)
    pushed_at: float = 0.0
    ttl: float = DEFAULT_PUSH_TTL
    invalid_lines: int = 0

    @property
    def key(self) -> Tuple[str, str]:
        return (self.job, self.instance)

    def expired(self, now: float) -> bool:
        return self.ttl > 0 and now - self.pushed_at > self.ttl

    def to_dict(self) -> dict:
        return {
            "job": self.job,
            "instance": self.instance,
            "samples": len(self.samples),
            "pushed_at": self.pushed_at,
            "ttl_seconds": self.ttl,
            "invalid_lines": self.invalid_lines
        }


class PushGateway:
    """Holds pushed metrics until they are replaced, deleted or expire"""

    def __init__(self, default_ttl: float = DEFAULT_PUSH_TTL, clock: Callable[[], float] = time.time):
        self.default_ttl = default_ttl
        self.clock = clock
        self._groups: Dict[Tuple[str, str], PushedGroup] = {}
        self._lock = threading.Lock()

        # Statistics
        self.pushes = 0
        self.rejected_pushes = 0
        self.invalid_lines = 0
        self.expired_groups = 0

    def push(self, job: str, instance: str, payload: str, ttl: Optional[float] = None) -> PushedGroup:
        """
        Replace the group for (job, instance) with the valid lines of the payload

        Malformed lines are skipped and counted in `invalid_lines`.

        Raises:
            ParseError: the job is empty, or no line of a non-empty payload parses
        """
        if not job:
            raise ParseError("job must not be empty")
        batch = parse_exposition(payload)
        if batch.errors and not batch.samples:
            self.rejected_pushes += 1
            logger.warning(f"Rejected push for {job}/{instance}: {batch.errors[0]}")
            raise batch.errors[0]
        if batch.errors:
            self.invalid_lines += len(batch.errors)
            logger.warning(
                f"Push for {job}/{instance}: skipped {len(batch.errors)} malformed line(s), "
                f"first: {batch.errors[0]}"
            )
        return self.push_samples(job, instance, batch.samples, batch.types, ttl, invalid_lines=len(batch.errors))

    def push_samples(
        self,
        job: str,
        instance: str,
        samples: List[ParsedSample],
        types: Optional[Dict[str, MetricKind]] = None,
        ttl: Optional[float] = None,
        invalid_lines: int = 0
    ) -> PushedGroup:
        group = PushedGroup(
            job=job,
            instance=instance,
            samples=list(samples),
            types=dict(types or {}),
            pushed_at=self.clock(),
            ttl=self.default_ttl if ttl is None else ttl,
            invalid_lines=invalid_lines
        )
        with self._lock:
            self._groups[group.key] = group
        self.pushes += 1
        logger.debug(f"Push for {job}/{instance}: {len(group.samples)} sample(s)")
        return group

    def delete(self, job: str, instance: str) -> bool:
        with self._lock:
            removed = self._groups.pop((job, instance), None)
        if removed is not None:
            logger.info(f"Deleted pushed group {job}/{instance}")
        return removed is not None

    def expire(self, now: Optional[float] = None) -> int:
        """Drop groups older than their TTL"""
        now = self.clock() if now is None else now
        with self._lock:
            stale = [key for key, group in self._groups.items() if group.expired(now)]
            for key in stale:
                del self._groups[key]
        if stale:
            self.expired_groups += len(stale)
            logger.info(f"Expired {len(stale)} pushed group(s)")
        return len(stale)

    def groups(self) -> List[PushedGroup]:
        self.expire()
        with self._lock:
            return sorted(self._groups.values(), key=lambda g: g.key)

    def get_group(self, job: str, instance: str) -> Optional[PushedGroup]:
        with self._lock:
            return self._groups.get((job, instance))

    def render(self) -> str:
        """Exposition text of every live group, plus push_time_seconds"""
        samples: List[ParsedSample] = []
        types: Dict[str, MetricKind] = {"push_time_seconds": MetricKind.GAUGE}
        for group in self.groups():
            grouping = {"job": group.job, "instance": group.instance}
            for sample in group.samples:
                labels = dict(sample.labels)
                labels.update(grouping)
                samples.append(ParsedSample(
                    name=sample.name,
                    labels=labels,
                    value=sample.value,
                    timestamp=sample.timestamp,
                    kind=sample.kind
                ))
            for name, kind in group.types.items():
                types.setdefault(name, kind)
            samples.append(ParsedSample(
                name="push_time_seconds",
                labels=grouping,
                value=group.pushed_at,
                kind=MetricKind.GAUGE
            ))
        return render_exposition(samples, types)

    async def _fetch(self) -> str:
        return self.render()

    def as_target(self, interval: float = 15.0, timeout: float = 5.0, job: str = "pushgateway") -> ScrapeTarget:
        """Scrape target reading this gateway in-process; pushed job/instance labels are kept"""
        return ScrapeTarget(
            job=job,
            interval=interval,
            timeout=min(timeout, interval),
            honor_labels=True,
            fetcher=self._fetch,
            instance_name="local"
        )

    def get_statistics(self) -> dict:
        with self._lock:
            groups = len(self._groups)
        return {
            "groups": groups,
            "pushes": self.pushes,
            "rejected_pushes": self.rejected_pushes,
            "invalid_lines": self.invalid_lines,
            "expired_groups": self.expired_groups,
            "default_ttl_seconds": self.default_ttl
        }
