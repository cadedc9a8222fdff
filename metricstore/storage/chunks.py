"""
Chunks

Provides:
- Columnar append-only sample chunks
- Sealing (head -> immutable)
- Frozen views for snapshot reads
- Chunk merging for compaction
"""

import bisect
from array import array
from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence


@dataclass(frozen=True)
class Sample:
    """Single (timestamp ms, value) sample"""

    timestamp: int
    value: float

    def to_dict(self) -> dict:
        return {"timestamp": self.timestamp, "value": self.value}


class Chunk:
    """Ordered run of samples for one series"""

    __slots__ = ("timestamps", "values", "sealed")

    def __init__(self, timestamps: Optional[Sequence[int]] = None, values: Optional[Sequence[float]] = None):
        self.timestamps = array("q", timestamps or [])
        self.values = array("d", values or [])
        self.sealed = False

    def __len__(self) -> int:
        return len(self.timestamps)

    @property
    def min_time(self) -> Optional[int]:
        return self.timestamps[0] if self.timestamps else None

    @property
    def max_time(self) -> Optional[int]:
        return self.timestamps[-1] if self.timestamps else None

    @property
    def span(self) -> int:
        if not self.timestamps:
            return 0
        return self.timestamps[-1] - self.timestamps[0]

    def append(self, timestamp: int, value: float) -> None:
        if self.sealed:
            raise RuntimeError("cannot append to a sealed chunk")
        self.timestamps.append(timestamp)
        self.values.append(value)

    def seal(self) -> "Chunk":
        self.sealed = True
        return self

    def view(self, length: Optional[int] = None) -> "ChunkView":
        """Frozen view over the first `length` samples"""
        return ChunkView(self, len(self) if length is None else length)


class ChunkView:
    """Read-only prefix of a chunk; later appends are invisible"""

    __slots__ = ("chunk", "length")

    def __init__(self, chunk: Chunk, length: int):
        self.chunk = chunk
        self.length = length

    def __len__(self) -> int:
        return self.length

    @property
    def min_time(self) -> Optional[int]:
        return self.chunk.timestamps[0] if self.length else None

    @property
    def max_time(self) -> Optional[int]:
        return self.chunk.timestamps[self.length - 1] if self.length else None

    def samples(self, start: int, end: int) -> Iterator[Sample]:
        """Samples with start <= timestamp <= end"""
        if not self.length or self.max_time < start or self.min_time > end:
            return
        timestamps = self.chunk.timestamps
        values = self.chunk.values
        lo = bisect.bisect_left(timestamps, start, 0, self.length)
        hi = bisect.bisect_right(timestamps, end, lo, self.length)
        for i in range(lo, hi):
            yield Sample(timestamps[i], values[i])


def merge_chunks(chunks: List[Chunk]) -> Chunk:
    """Concatenate time-ordered sealed chunks into one sealed chunk"""
    merged = Chunk()
    for chunk in chunks:
        merged.timestamps.extend(chunk.timestamps)
        merged.values.extend(chunk.values)
    return merged.seal()
