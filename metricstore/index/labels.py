"""
Label Sets

Provides:
- Immutable, sorted label-set value type
- Structural equality and hashing for series identity
- Label-set manipulation used by the query engine
"""

from typing import Dict, Iterable, Iterator, List, Mapping, Optional, Tuple, Union

METRIC_NAME_LABEL = "__name__"


class Labels:
    """Sorted, immutable label set with structural equality"""

    __slots__ = ("_pairs", "_hash")

    def __init__(self, pairs: Union[Mapping[str, str], Iterable[Tuple[str, str]], None] = None):
        items = pairs.items() if isinstance(pairs, Mapping) else (pairs or ())
        merged: Dict[str, str] = {}
        for name, value in items:
            if value == "" or value is None:
                continue
            merged[str(name)] = str(value)
        self._pairs: Tuple[Tuple[str, str], ...] = tuple(sorted(merged.items()))
        self._hash = hash(self._pairs)

    @classmethod
    def from_metric(cls, metric_name: str, labels: Optional[Mapping[str, str]] = None) -> "Labels":
        """Build a label set with the metric name stored under __name__"""
        merged = dict(labels or {})
        merged[METRIC_NAME_LABEL] = metric_name
        return cls(merged)

    @property
    def metric_name(self) -> str:
        return self.get(METRIC_NAME_LABEL, "")

    def get(self, name: str, default: str = "") -> str:
        for key, value in self._pairs:
            if key == name:
                return value
        return default

    def has(self, name: str) -> bool:
        return any(key == name for key, _ in self._pairs)

    def without_name(self) -> "Labels":
        return self.drop([METRIC_NAME_LABEL])

    def drop(self, names: Iterable[str]) -> "Labels":
        """Return a copy without the given label names"""
        excluded = set(names)
        return Labels((k, v) for k, v in self._pairs if k not in excluded)

    def keep(self, names: Iterable[str]) -> "Labels":
        """Return a copy holding only the given label names"""
        included = set(names)
        return Labels((k, v) for k, v in self._pairs if k in included)

    def merge(self, other: Mapping[str, str]) -> "Labels":
        """Return a copy with other's labels set (other wins)"""
        merged = dict(self._pairs)
        merged.update(other)
        return Labels(merged)

    def to_dict(self) -> Dict[str, str]:
        return dict(self._pairs)

    def names(self) -> List[str]:
        return [k for k, _ in self._pairs]

    def __iter__(self) -> Iterator[Tuple[str, str]]:
        return iter(self._pairs)

    def __len__(self) -> int:
        return len(self._pairs)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Labels):
            return NotImplemented
        return self._pairs == other._pairs

    def __hash__(self) -> int:
        return self._hash

    def __lt__(self, other: "Labels") -> bool:
        return self._pairs < other._pairs

    def __repr__(self) -> str:
        return f"Labels({self})"

    def __str__(self) -> str:
        name = self.metric_name
        rest = ",".join(
            f'{k}="{escape_label_value(v)}"' for k, v in self._pairs if k != METRIC_NAME_LABEL
        )
        if not rest:
            return name or "{}"
        return f"{name}{{{rest}}}"


def escape_label_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("\"", "\\\"").replace("\n", "\\n")


EMPTY_LABELS = Labels()
