"""
Synthetic Probe Scheduler

Provides:
- Independent per-probe scheduling
- Timeout-bounded execution (the execution is cancelled on expiry)
- HTTP and TCP runners, plus registration of custom modules
- probe_* series written through the ingestion gateway
"""

import asyncio
import logging
import time
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional

import httpx

from ..errors import ProbeTimeout
from ..scheduler import PeriodicTask, TaskScheduler
from ..timeutil import now_ms
from .probe import Probe, ProbeModule, ProbeResult, split_host_port

logger = logging.getLogger("ProbeScheduler")

ProbeRunner = Callable[[Probe], Awaitable[ProbeResult]]


class ProbeScheduler:
    """Schedules probes and records their results as series"""

    def __init__(
        self,
        gateway,
        scheduler: Optional[TaskScheduler] = None,
        clock: Callable[[], float] = time.time
    ):
        """
        Initialize probe scheduler

        Args:
            gateway: IngestionGateway the probe_* samples are written through
            scheduler: TaskScheduler that runs probe ticks (probes are only run
                on demand when omitted)
            clock: Wall clock for sample timestamps
        """
        self.gateway = gateway
        self.scheduler = scheduler
        self.clock = clock
        self._probes: Dict[str, Probe] = {}
        self._client: Optional[httpx.AsyncClient] = None
        self._runners: Dict[str, ProbeRunner] = {
            ProbeModule.HTTP.value: self._run_http,
            ProbeModule.TCP.value: self._run_tcp
        }

    def register_runner(self, module: str, runner: ProbeRunner) -> None:
        """Register (or replace) the runner of a probe module"""
        self._runners[module] = runner

    # Probe management

    def add_probe(self, probe: Probe) -> Probe:
        if probe.name in self._probes:
            raise ValueError(f"probe {probe.name!r} already registered")
        if probe.module not in self._runners:
            raise ValueError(f"probe {probe.name!r}: unknown module {probe.module!r}")
        self._probes[probe.name] = probe
        if self.scheduler is not None:
            self.scheduler.add(self.probe_task(probe))
        logger.info(f"Added {probe.module} probe {probe.name} -> {probe.target} every {probe.interval}s")
        return probe

    def remove_probe(self, name: str) -> bool:
        probe = self._probes.pop(name, None)
        if probe is None:
            return False
        if self.scheduler is not None:
            self.scheduler.remove(self._task_name(probe))
        return True

    def get_probe(self, name: str) -> Optional[Probe]:
        return self._probes.get(name)

    def probes(self) -> List[Probe]:
        return list(self._probes.values())

    # Runners

    def _http_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(follow_redirects=True)
        return self._client

    async def _run_http(self, probe: Probe) -> ProbeResult:
        response = await self._http_client().get(probe.target, timeout=probe.timeout)
        return ProbeResult(reached=True, status_code=response.status_code)

    async def _run_tcp(self, probe: Probe) -> ProbeResult:
        host, port = split_host_port(probe.target)
        reader, writer = await asyncio.open_connection(host, port)
        writer.close()
        await writer.wait_closed()
        return ProbeResult(reached=True)

    # Execution

    async def run_probe(self, probe: Probe) -> ProbeResult:
        """Execute a probe once and record the outcome"""
        runner = self._runners[probe.module]
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            result = await asyncio.wait_for(runner(probe), timeout=probe.timeout)
        except asyncio.TimeoutError:
            result = ProbeResult(reached=False, error=str(ProbeTimeout(
                f"probe {probe.name} timed out after {probe.timeout}s"
            )))
        except httpx.HTTPError as e:
            result = ProbeResult(reached=False, error=f"{type(e).__name__}: {e}")
        except OSError as e:
            result = ProbeResult(reached=False, error=f"connection failed: {e}")
        except Exception as e:
            logger.error(f"Probe {probe.name} runner raised: {e}")
            result = ProbeResult(reached=False, error=str(e) or type(e).__name__)
        result.duration_seconds = loop.time() - started

        try:
            result.success = probe.is_success(result)
        except Exception as e:
            result.success = False
            result.error = f"success predicate failed: {e}"

        probe.total_runs += 1
        probe.last_run = datetime.now()
        probe.last_result = result
        if result.success:
            probe.consecutive_failures = 0
        else:
            probe.consecutive_failures += 1
            probe.total_failures += 1
            logger.debug(f"Probe {probe.name} failed ({probe.consecutive_failures} in a row): {result.error}")

        self._record(probe, result)
        return result

    def _record(self, probe: Probe, result: ProbeResult) -> None:
        labels = probe.series_labels()
        ts = now_ms(self.clock)
        self.gateway.write("probe_success", labels, 1.0 if result.success else 0.0, ts)
        self.gateway.write("probe_duration_seconds", labels, result.duration_seconds, ts)
        if result.status_code is not None:
            self.gateway.write("probe_http_status_code", labels, float(result.status_code), ts)
        self.gateway.write("probe_consecutive_failures", labels, float(probe.consecutive_failures), ts)

    @staticmethod
    def _task_name(probe: Probe) -> str:
        return f"probe:{probe.name}"

    def probe_task(self, probe: Probe) -> PeriodicTask:
        """Periodic task running `probe` once per tick"""
        async def run():
            await self.run_probe(probe)
        return PeriodicTask(name=self._task_name(probe), interval=probe.interval, func=run)

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def get_statistics(self) -> dict:
        probes = self.probes()
        return {
            "probes": len(probes),
            "failing": len([p for p in probes if p.consecutive_failures > 0]),
            "modules": sorted(self._runners.keys()),
            "total_runs": sum(p.total_runs for p in probes),
            "total_failures": sum(p.total_failures for p in probes)
        }
