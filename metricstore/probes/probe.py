"""
Synthetic Probes

Provides:
- Probe definitions (http / tcp / registered modules)
- Probe execution results
- Success predicates
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple


class ProbeModule(str, Enum):
    """Built-in probe modules"""
    HTTP = "http"
    TCP = "tcp"


@dataclass
class ProbeResult:
    """
    Result of one probe execution

    Attributes:
        reached: Whether the target answered at all
        duration_seconds: Wall time of the execution
        status_code: HTTP status code (http module only)
        error: Error message if the execution failed
        success: Final verdict after the success predicate
    """
    reached: bool
    duration_seconds: float = 0.0
    status_code: Optional[int] = None
    error: Optional[str] = None
    success: bool = False

    def to_dict(self) -> dict:
        return {
            "reached": self.reached,
            "success": self.success,
            "duration_seconds": round(self.duration_seconds, 6),
            "status_code": self.status_code,
            "error": self.error
        }


@dataclass
class Probe:
    """Synthetic check of one target"""

    name: str
    target: str
    module: str = ProbeModule.HTTP.value
    interval: float = 30.0
    timeout: float = 10.0
    labels: Dict[str, str] = field(default_factory=dict)
    expected_status: List[int] = field(default_factory=list)
    success_predicate: Optional[Callable[[ProbeResult], bool]] = None

    # Tracking
    consecutive_failures: int = 0
    total_runs: int = 0
    total_failures: int = 0
    last_result: Optional[ProbeResult] = None
    last_run: Optional[datetime] = None

    def __post_init__(self):
        if isinstance(self.module, ProbeModule):
            self.module = self.module.value
        if not self.name:
            raise ValueError("probe needs a name")
        if self.interval <= 0:
            raise ValueError(f"probe {self.name!r}: interval must be positive")
        if self.timeout <= 0 or self.timeout > self.interval:
            raise ValueError(f"probe {self.name!r}: timeout must be in (0, interval]")

    def is_success(self, result: ProbeResult) -> bool:
        """Apply the success predicate to a raw result"""
        if self.success_predicate is not None:
            return bool(self.success_predicate(result))
        if not result.reached or result.error:
            return False
        if self.module == ProbeModule.HTTP.value:
            if result.status_code is None:
                return False
            if self.expected_status:
                return result.status_code in self.expected_status
            return 200 <= result.status_code < 300
        return True

    def series_labels(self) -> Dict[str, str]:
        labels = dict(self.labels)
        labels["probe"] = self.name
        labels["target"] = self.target
        return labels

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "target": self.target,
            "module": self.module,
            "interval_seconds": self.interval,
            "timeout_seconds": self.timeout,
            "labels": self.labels,
            "expected_status": self.expected_status,
            "consecutive_failures": self.consecutive_failures,
            "total_runs": self.total_runs,
            "total_failures": self.total_failures,
            "last_result": self.last_result.to_dict() if self.last_result else None,
            "last_run": self.last_run.isoformat() if self.last_run else None
        }


def split_host_port(target: str) -> Tuple[str, int]:
    """Split "host:port" (IPv6 hosts in brackets)"""
    host, sep, port = target.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise ValueError(f"tcp probe target must be host:port, got {target!r}")
    return host.strip("[]"), int(port)
