"""
Ingestion Module

Provides:
- Exposition format parsing and rendering
- Ingestion gateway with scrape targets
- Push gateway
"""

from .exposition import (
    ParsedSample,
    ExpositionBatch,
    parse_exposition,
    parse_line,
    render_exposition
)
from .gateway import IngestResult, TargetHealth, ScrapeTarget, IngestionGateway, apply_target_labels
from .pushgateway import PushedGroup, PushGateway, DEFAULT_PUSH_TTL

__all__ = [
    # Exposition
    "ParsedSample",
    "ExpositionBatch",
    "parse_exposition",
    "parse_line",
    "render_exposition",
    # Gateway
    "IngestResult",
    "TargetHealth",
    "ScrapeTarget",
    "IngestionGateway",
    "apply_target_labels",
    # Push gateway
    "PushedGroup",
    "PushGateway",
    "DEFAULT_PUSH_TTL"
]
