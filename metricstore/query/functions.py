"""
Query Functions

Provides:
- Counter-aware rate / increase / irate and gauge delta
- *_over_time range aggregations
- Instant vector functions (abs, histogram_quantile)
- Aggregation operator folds (sum, avg, max, min, count)
"""

import bisect
import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from ..index import Labels, MetricKind
from ..storage import Sample
from .nodes import ValueType
from .values import Matrix, RangeSeries, Scalar, Vector, VectorSample

AGGREGATIONS = {"sum", "avg", "max", "min", "count"}


@dataclass
class CallContext:
    """Evaluation window handed to function implementations"""

    time_ms: int
    range_start: int = 0
    range_end: int = 0

    @property
    def range_seconds(self) -> float:
        return (self.range_end - self.range_start) / 1000.0


@dataclass
class FunctionSignature:
    arg_types: Tuple[ValueType, ...]
    return_type: ValueType
    impl: Callable


def is_counter(kind: MetricKind) -> bool:
    return kind != MetricKind.GAUGE


def extrapolated_rate(
    samples: Sequence[Sample],
    range_start: int,
    range_end: int,
    counter: bool,
    per_second: bool
) -> Optional[float]:
    """
    Increase (or rate) over a window, extrapolated to the window edges

    Adjacent decreases are treated as counter resets when `counter` is set:
    the value before the reset is added instead of the drop being subtracted.

    Returns:
        None when fewer than two samples fall in the window
    """
    if len(samples) < 2:
        return None

    first, last = samples[0], samples[-1]
    result = last.value - first.value
    if counter:
        previous = first.value
        for sample in samples[1:]:
            if sample.value < previous:
                result += previous
            previous = sample.value

    duration_to_start = (first.timestamp - range_start) / 1000.0
    duration_to_end = (range_end - last.timestamp) / 1000.0
    sampled_interval = (last.timestamp - first.timestamp) / 1000.0
    average_spacing = sampled_interval / (len(samples) - 1)

    if counter and result > 0 and first.value >= 0:
        # Never extrapolate a counter below zero
        duration_to_zero = sampled_interval * (first.value / result)
        if duration_to_zero < duration_to_start:
            duration_to_start = duration_to_zero

    threshold = average_spacing * 1.1
    extrapolate_to = sampled_interval
    extrapolate_to += duration_to_start if duration_to_start < threshold else average_spacing / 2
    extrapolate_to += duration_to_end if duration_to_end < threshold else average_spacing / 2

    result *= extrapolate_to / sampled_interval
    if per_second:
        result /= (range_end - range_start) / 1000.0
    return result


def _map_ranges(matrix: Matrix, fn: Callable[[RangeSeries], Optional[float]]) -> Vector:
    out: Vector = []
    for series in matrix:
        value = fn(series)
        if value is not None:
            out.append(VectorSample(series.labels.without_name(), value))
    return out


def fn_rate(args, ctx: CallContext) -> Vector:
    return _map_ranges(args[0], lambda s: extrapolated_rate(
        s.samples, ctx.range_start, ctx.range_end, is_counter(s.kind), True))


def fn_increase(args, ctx: CallContext) -> Vector:
    return _map_ranges(args[0], lambda s: extrapolated_rate(
        s.samples, ctx.range_start, ctx.range_end, is_counter(s.kind), False))


def fn_delta(args, ctx: CallContext) -> Vector:
    return _map_ranges(args[0], lambda s: extrapolated_rate(
        s.samples, ctx.range_start, ctx.range_end, False, False))


def _instant_rate(series: RangeSeries) -> Optional[float]:
    if len(series.samples) < 2:
        return None
    previous, last = series.samples[-2], series.samples[-1]
    elapsed = (last.timestamp - previous.timestamp) / 1000.0
    if elapsed <= 0:
        return None
    if is_counter(series.kind) and last.value < previous.value:
        change = last.value
    else:
        change = last.value - previous.value
    return change / elapsed


def fn_irate(args, ctx: CallContext) -> Vector:
    return _map_ranges(args[0], _instant_rate)


def _over_time(fold: Callable[[List[float]], float]):
    def impl(args, ctx: CallContext) -> Vector:
        def apply(series: RangeSeries) -> Optional[float]:
            if not series.samples:
                return None
            return fold([s.value for s in series.samples])
        return _map_ranges(args[0], apply)
    return impl


def fn_abs(args, ctx: CallContext) -> Vector:
    return [VectorSample(s.labels.without_name(), abs(s.value)) for s in args[0]]


def bucket_quantile(q: float, buckets: List[Tuple[float, float]]) -> float:
    """Estimate a quantile from cumulative (upper bound, count) buckets"""
    if math.isnan(q):
        return math.nan
    if q < 0:
        return -math.inf
    if q > 1:
        return math.inf

    buckets = sorted(buckets, key=lambda b: b[0])
    if len(buckets) < 2 or not math.isinf(buckets[-1][0]):
        return math.nan

    # Coalesce duplicate bounds, then force counts to be monotonic
    coalesced: List[List[float]] = []
    for upper, count in buckets:
        if coalesced and coalesced[-1][0] == upper:
            coalesced[-1][1] += count
        else:
            coalesced.append([upper, count])
    highest = 0.0
    for bucket in coalesced:
        highest = max(highest, bucket[1])
        bucket[1] = highest

    observations = coalesced[-1][1]
    if observations == 0:
        return math.nan
    rank = q * observations
    counts = [b[1] for b in coalesced]
    b = bisect.bisect_left(counts, rank)

    if b == len(coalesced) - 1:
        return coalesced[-2][0]
    if b == 0 and coalesced[0][0] <= 0:
        return coalesced[0][0]

    bucket_start = 0.0
    bucket_end = coalesced[b][0]
    count = coalesced[b][1]
    if b > 0:
        bucket_start = coalesced[b - 1][0]
        count -= coalesced[b - 1][1]
        rank -= coalesced[b - 1][1]
    if count == 0:
        return bucket_end
    return bucket_start + (bucket_end - bucket_start) * (rank / count)


def fn_histogram_quantile(args, ctx: CallContext) -> Vector:
    q = args[0].value if isinstance(args[0], Scalar) else math.nan
    groups: Dict[Labels, List[Tuple[float, float]]] = {}
    for sample in args[1]:
        raw = sample.labels.get("le")
        if not raw:
            continue
        try:
            upper = float(raw)
        except ValueError:
            continue
        key = sample.labels.drop(["le", "__name__"])
        groups.setdefault(key, []).append((upper, sample.value))
    return [VectorSample(key, bucket_quantile(q, buckets)) for key, buckets in groups.items()]


def fold_aggregate(op: str, values: List[float]) -> float:
    """Fold one aggregation group"""
    if op == "sum":
        return math.fsum(values)
    if op == "avg":
        return math.fsum(values) / len(values)
    if op == "count":
        return float(len(values))
    numeric = [v for v in values if not math.isnan(v)]
    if not numeric:
        return math.nan
    if op == "max":
        return max(numeric)
    if op == "min":
        return min(numeric)
    raise ValueError(f"unknown aggregation {op!r}")


_M = ValueType.MATRIX
_V = ValueType.VECTOR
_S = ValueType.SCALAR

FUNCTIONS: Dict[str, FunctionSignature] = {
    "rate": FunctionSignature((_M,), _V, fn_rate),
    "increase": FunctionSignature((_M,), _V, fn_increase),
    "irate": FunctionSignature((_M,), _V, fn_irate),
    "delta": FunctionSignature((_M,), _V, fn_delta),
    "avg_over_time": FunctionSignature((_M,), _V, _over_time(lambda v: math.fsum(v) / len(v))),
    "min_over_time": FunctionSignature((_M,), _V, _over_time(min)),
    "max_over_time": FunctionSignature((_M,), _V, _over_time(max)),
    "sum_over_time": FunctionSignature((_M,), _V, _over_time(math.fsum)),
    "count_over_time": FunctionSignature((_M,), _V, _over_time(lambda v: float(len(v)))),
    "last_over_time": FunctionSignature((_M,), _V, _over_time(lambda v: v[-1])),
    "abs": FunctionSignature((_V,), _V, fn_abs),
    "histogram_quantile": FunctionSignature((_S, _V), _V, fn_histogram_quantile),
}
