"""
Probes Module

Provides:
- Probe definitions and results
- Probe scheduler with http / tcp runners
"""

from .probe import ProbeModule, ProbeResult, Probe, split_host_port
from .scheduler import ProbeRunner, ProbeScheduler

__all__ = [
    "ProbeModule",
    "ProbeResult",
    "Probe",
    "split_host_port",
    "ProbeRunner",
    "ProbeScheduler"
]
