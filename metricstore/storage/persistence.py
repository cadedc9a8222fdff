"""
Chunk Persistence

Provides:
- Crash-consistent flushing of sealed chunks (temp file + atomic rename)
- Loading persisted series at startup
- Default data directory resolution
"""

import hashlib
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from ..errors import StorageIOError
from ..index import Labels, MetricKind
from .chunks import Chunk

logger = logging.getLogger("ChunkWriter")


def get_default_data_dir() -> Path:
    """
    Get the default data directory

    Returns:
        METRICSTORE_DATA_DIR if set, otherwise ~/.metricstore/data
    """
    env_path = os.environ.get("METRICSTORE_DATA_DIR")
    if env_path:
        return Path(env_path)
    return Path.home() / ".metricstore" / "data"


@dataclass
class PersistedSeries:
    """Series content read back from disk"""

    labels: Labels
    kind: MetricKind
    chunks: List[Chunk] = field(default_factory=list)


class ChunkWriter:
    """
    File-based store for sealed chunks

    Directory structure:
        <data_dir>/series/
            <sha1 of label set>.json
    """

    def __init__(self, data_dir: Optional[Path] = None):
        self.data_dir = Path(data_dir) if data_dir else get_default_data_dir()
        self.series_dir = self.data_dir / "series"

    def ensure_dirs(self) -> None:
        try:
            self.series_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageIOError(f"cannot create {self.series_dir}: {e}") from e

    def path_for(self, labels: Labels) -> Path:
        digest = hashlib.sha1(str(labels).encode("utf-8")).hexdigest()
        return self.series_dir / f"{digest}.json"

    def write_series(self, labels: Labels, kind: MetricKind, chunks: List[Chunk]) -> Path:
        """Atomically replace the file holding a series' sealed chunks"""
        path = self.path_for(labels)
        if not chunks:
            self.remove_series(labels)
            return path

        payload = {
            "labels": labels.to_dict(),
            "kind": kind.value,
            "chunks": [
                {"timestamps": list(c.timestamps), "values": list(c.values)}
                for c in chunks
            ]
        }
        tmp_path = path.with_suffix(".json.tmp")
        try:
            self.ensure_dirs()
            with open(tmp_path, "w", encoding="utf-8") as f:
                json.dump(payload, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, path)
        except OSError as e:
            raise StorageIOError(f"flush of {labels} failed: {e}") from e
        return path

    def remove_series(self, labels: Labels) -> bool:
        path = self.path_for(labels)
        try:
            path.unlink()
            return True
        except FileNotFoundError:
            return False
        except OSError as e:
            raise StorageIOError(f"cannot remove {path}: {e}") from e

    def load(self) -> Iterator[PersistedSeries]:
        """Yield every persisted series; unreadable files are skipped"""
        if not self.series_dir.exists():
            return
        for path in sorted(self.series_dir.glob("*.json")):
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                chunks = []
                for raw in data.get("chunks", []):
                    chunk = Chunk(raw["timestamps"], raw["values"]).seal()
                    if len(chunk):
                        chunks.append(chunk)
                yield PersistedSeries(
                    labels=Labels(data["labels"]),
                    kind=MetricKind.parse(data.get("kind", "untyped")),
                    chunks=chunks
                )
            except (OSError, ValueError, KeyError, TypeError) as e:
                logger.error(f"Skipping unreadable chunk file {path}: {e}")

    def list_files(self) -> Dict[str, int]:
        if not self.series_dir.exists():
            return {}
        return {p.name: p.stat().st_size for p in self.series_dir.glob("*.json")}
