"""
Storage Module

Provides:
- Columnar chunks
- Append-only storage engine with snapshots
- Retention, compaction and crash-consistent flushing
"""

from .chunks import Sample, Chunk, ChunkView
from .engine import (
    StorageConfig,
    AppendResult,
    SampleRange,
    StorageSnapshot,
    StorageEngine
)
from .persistence import ChunkWriter, PersistedSeries, get_default_data_dir

__all__ = [
    # Chunks
    "Sample",
    "Chunk",
    "ChunkView",
    # Engine
    "StorageConfig",
    "AppendResult",
    "SampleRange",
    "StorageSnapshot",
    "StorageEngine",
    # Persistence
    "ChunkWriter",
    "PersistedSeries",
    "get_default_data_dir"
]
