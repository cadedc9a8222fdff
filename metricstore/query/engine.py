"""
Query / Aggregation Engine

Provides:
- Instant and range query evaluation
- Snapshot-consistent reads (series are resolved and frozen up front)
- Vector matching for binary operators
- Aggregation by / without labels
"""

import logging
import math
import operator
import time
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Set

from ..errors import ExecutionError, MetricStoreError
from ..index import Labels, SeriesIndex
from ..storage import Sample, StorageEngine, StorageSnapshot
from ..timeutil import to_ms
from .functions import FUNCTIONS, CallContext, fold_aggregate
from .nodes import (
    Aggregate,
    BinaryOp,
    Call,
    Expr,
    MatrixSelector,
    NumberLiteral,
    UnaryOp,
    ValueType,
    VectorSelector,
    walk,
)
from .parser import COMPARISON_OPS, SET_OPS, parse
from .values import Matrix, QueryResult, RangeSeries, Scalar, Value, Vector, VectorSample

logger = logging.getLogger("QueryEngine")

DEFAULT_LOOKBACK_SECONDS = 300.0
MAX_POINTS_PER_SERIES = 11000


def _safe_pow(a: float, b: float) -> float:
    try:
        return math.pow(a, b)
    except OverflowError:
        return math.inf
    except ValueError:
        return math.nan


def _safe_div(a: float, b: float) -> float:
    if b == 0:
        if a == 0 or math.isnan(a):
            return math.nan
        return math.copysign(math.inf, a) * math.copysign(1.0, b)
    return a / b


def _safe_mod(a: float, b: float) -> float:
    if b == 0 or math.isinf(a):
        return math.nan
    return math.fmod(a, b)


ARITHMETIC: Dict[str, Callable[[float, float], float]] = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": _safe_div,
    "%": _safe_mod,
    "^": _safe_pow,
}

COMPARISON: Dict[str, Callable[[float, float], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}


@dataclass
class EvalContext:
    """Per-query state: the frozen snapshot and resolved selector series"""

    snapshot: StorageSnapshot
    selected: Dict[int, List[int]]  # id(selector node) -> series ids
    index: SeriesIndex
    lookback_ms: int


class QueryEngine:
    """Evaluates query expressions against the storage engine"""

    def __init__(
        self,
        index: SeriesIndex,
        storage: StorageEngine,
        lookback_seconds: float = DEFAULT_LOOKBACK_SECONDS,
        max_points: int = MAX_POINTS_PER_SERIES,
        clock: Callable[[], float] = time.time
    ):
        self.index = index
        self.storage = storage
        self.lookback_ms = int(lookback_seconds * 1000)
        self.max_points = max_points
        self.clock = clock

        # Statistics
        self.queries_total = 0
        self.queries_failed = 0

    def parse(self, expression: str) -> Expr:
        return parse(expression)

    def _prepare(self, expr: Expr) -> EvalContext:
        """Resolve every selector and take one snapshot of all matched series"""
        selected: Dict[int, List[int]] = {}
        wanted: Set[int] = set()
        for node in walk(expr):
            if isinstance(node, VectorSelector):
                ids = sorted(self.index.match(node.matchers))
                selected[id(node)] = ids
                wanted.update(ids)
        snapshot = self.storage.snapshot(sorted(wanted))
        return EvalContext(snapshot, selected, self.index, self.lookback_ms)

    def evaluate(self, expression: str, at: Optional[float] = None) -> QueryResult:
        """
        Evaluate an instant query

        Args:
            expression: Query expression
            at: Evaluation time in Unix seconds (default: now)

        Returns:
            QueryResult of type vector, scalar or matrix
        """
        at = self.clock() if at is None else at
        self.queries_total += 1
        try:
            if not math.isfinite(at):
                raise ExecutionError(f"evaluation time must be finite, got {at}")
            expr = self.parse(expression)
            ctx = self._prepare(expr)
            value = self._eval(expr, ctx, to_ms(at))
        except MetricStoreError as e:
            self.queries_failed += 1
            logger.debug(f"Query {expression!r} failed: {e}")
            raise

        if expr.type == ValueType.MATRIX:
            return QueryResult(result_type="matrix", timestamp=at, matrix=value)
        if isinstance(value, Scalar):
            return QueryResult(result_type="scalar", timestamp=at, scalar=value.value)
        return QueryResult(result_type="vector", timestamp=at, vector=sorted(value, key=lambda s: s.labels))

    def evaluate_range(self, expression: str, start: float, end: float, step: float) -> QueryResult:
        """
        Evaluate a range query at start + k*step for every k with the timestamp <= end

        Returns:
            QueryResult of type matrix
        """
        self.queries_total += 1
        try:
            if not all(math.isfinite(v) for v in (start, end, step)):
                raise ExecutionError("start, end and step must be finite")
            if step <= 0:
                raise ExecutionError("step must be positive")
            if end < start:
                raise ExecutionError("end timestamp must not be before start")
            start_ms, end_ms, step_ms = to_ms(start), to_ms(end), to_ms(step)
            if step_ms <= 0:
                raise ExecutionError("step must be at least 1ms")
            points = (end_ms - start_ms) // step_ms + 1
            if points > self.max_points:
                raise ExecutionError(
                    f"exceeded maximum resolution of {self.max_points} points per series, "
                    f"increase the step"
                )
            expr = self.parse(expression)
            if expr.type not in (ValueType.VECTOR, ValueType.SCALAR):
                raise ExecutionError(
                    f"range queries need an instant vector or scalar expression, got {expr.type.value}"
                )
            ctx = self._prepare(expr)

            series: Dict[Labels, List] = {}
            for k in range(points):
                ts = start_ms + k * step_ms
                value = self._eval(expr, ctx, ts)
                if isinstance(value, Scalar):
                    series.setdefault(Labels(), []).append((ts, value.value))
                    continue
                for sample in value:
                    series.setdefault(sample.labels, []).append((ts, sample.value))
        except MetricStoreError as e:
            self.queries_failed += 1
            logger.debug(f"Query {expression!r} failed: {e}")
            raise

        matrix = [
            RangeSeries(labels, [Sample(ts, v) for ts, v in values])
            for labels, values in sorted(series.items(), key=lambda item: item[0])
        ]
        return QueryResult(result_type="matrix", timestamp=end, matrix=matrix)

    # Evaluation

    def _eval(self, node: Expr, ctx: EvalContext, ts: int) -> Value:
        if isinstance(node, NumberLiteral):
            return Scalar(node.value)
        if isinstance(node, VectorSelector):
            return self._eval_vector_selector(node, ctx, ts)
        if isinstance(node, MatrixSelector):
            return self._eval_matrix_selector(node, ctx, ts)
        if isinstance(node, Call):
            return self._eval_call(node, ctx, ts)
        if isinstance(node, Aggregate):
            return self._eval_aggregate(node, ctx, ts)
        if isinstance(node, BinaryOp):
            return self._eval_binary(node, ctx, ts)
        if isinstance(node, UnaryOp):
            value = self._eval(node.expr, ctx, ts)
            if isinstance(value, Scalar):
                return Scalar(-value.value)
            return [VectorSample(s.labels.without_name(), -s.value) for s in value]
        raise ExecutionError(f"cannot evaluate {type(node).__name__}")

    def _eval_vector_selector(self, node: VectorSelector, ctx: EvalContext, ts: int) -> Vector:
        end = ts - node.offset_ms
        start = end - ctx.lookback_ms
        out: Vector = []
        for series_id in ctx.selected.get(id(node), []):
            sample = ctx.snapshot.latest(series_id, start, end)
            if sample is not None:
                out.append(VectorSample(ctx.index.labels_of(series_id), sample.value))
        return out

    def _eval_matrix_selector(self, node: MatrixSelector, ctx: EvalContext, ts: int) -> Matrix:
        end = ts - node.vector.offset_ms
        start = end - node.range_ms
        out: Matrix = []
        for series_id in ctx.selected.get(id(node.vector), []):
            samples = ctx.snapshot.read(series_id, start, end).to_list()
            if samples:
                out.append(RangeSeries(ctx.index.labels_of(series_id), samples, ctx.snapshot.kind(series_id)))
        return out

    def _eval_call(self, node: Call, ctx: EvalContext, ts: int) -> Vector:
        signature = FUNCTIONS[node.func]
        call_ctx = CallContext(time_ms=ts)
        args: List[Value] = []
        for arg in node.args:
            if isinstance(arg, MatrixSelector):
                call_ctx.range_end = ts - arg.vector.offset_ms
                call_ctx.range_start = call_ctx.range_end - arg.range_ms
            args.append(self._eval(arg, ctx, ts))
        return signature.impl(args, call_ctx)

    def _eval_aggregate(self, node: Aggregate, ctx: EvalContext, ts: int) -> Vector:
        vector = self._eval(node.expr, ctx, ts)
        groups: Dict[Labels, List[float]] = {}
        for sample in vector:
            if node.without:
                key = sample.labels.drop(list(node.grouping) + ["__name__"])
            else:
                key = sample.labels.keep(node.grouping)
            groups.setdefault(key, []).append(sample.value)
        return [VectorSample(key, fold_aggregate(node.op, values)) for key, values in groups.items()]

    def _eval_binary(self, node: BinaryOp, ctx: EvalContext, ts: int) -> Value:
        lhs = self._eval(node.lhs, ctx, ts)
        rhs = self._eval(node.rhs, ctx, ts)

        if isinstance(lhs, Scalar) and isinstance(rhs, Scalar):
            if node.op in COMPARISON_OPS:
                return Scalar(1.0 if COMPARISON[node.op](lhs.value, rhs.value) else 0.0)
            return Scalar(ARITHMETIC[node.op](lhs.value, rhs.value))

        if node.op in SET_OPS:
            return self._set_operation(node.op, lhs, rhs)

        if isinstance(lhs, Scalar) or isinstance(rhs, Scalar):
            return self._vector_scalar(node, lhs, rhs)
        return self._vector_vector(node, lhs, rhs)

    def _vector_scalar(self, node: BinaryOp, lhs: Value, rhs: Value) -> Vector:
        scalar_on_left = isinstance(lhs, Scalar)
        vector = rhs if scalar_on_left else lhs
        scalar = lhs.value if scalar_on_left else rhs.value
        out: Vector = []
        for sample in vector:
            a, b = (scalar, sample.value) if scalar_on_left else (sample.value, scalar)
            if node.op in COMPARISON_OPS:
                matched = COMPARISON[node.op](a, b)
                if node.return_bool:
                    out.append(VectorSample(sample.labels.without_name(), 1.0 if matched else 0.0))
                elif matched:
                    out.append(sample)
            else:
                out.append(VectorSample(sample.labels.without_name(), ARITHMETIC[node.op](a, b)))
        return out

    @staticmethod
    def _signature_map(vector: Vector, side: str) -> Dict[Labels, VectorSample]:
        result: Dict[Labels, VectorSample] = {}
        for sample in vector:
            key = sample.labels.without_name()
            if key in result:
                raise ExecutionError(
                    f"many-to-many matching not allowed: duplicate series {key} on {side} side"
                )
            result[key] = sample
        return result

    def _vector_vector(self, node: BinaryOp, lhs: Vector, rhs: Vector) -> Vector:
        right = self._signature_map(rhs, "right hand")
        self._signature_map(lhs, "left hand")
        out: Vector = []
        for sample in lhs:
            key = sample.labels.without_name()
            other = right.get(key)
            if other is None:
                continue
            if node.op in COMPARISON_OPS:
                matched = COMPARISON[node.op](sample.value, other.value)
                if node.return_bool:
                    out.append(VectorSample(key, 1.0 if matched else 0.0))
                elif matched:
                    out.append(sample)
            else:
                out.append(VectorSample(key, ARITHMETIC[node.op](sample.value, other.value)))
        return out

    @staticmethod
    def _set_operation(op: str, lhs: Vector, rhs: Vector) -> Vector:
        right_keys = {s.labels.without_name() for s in rhs}
        if op == "and":
            return [s for s in lhs if s.labels.without_name() in right_keys]
        if op == "unless":
            return [s for s in lhs if s.labels.without_name() not in right_keys]
        left_keys = {s.labels.without_name() for s in lhs}
        return list(lhs) + [s for s in rhs if s.labels.without_name() not in left_keys]

    def get_statistics(self) -> dict:
        return {
            "queries_total": self.queries_total,
            "queries_failed": self.queries_failed,
            "lookback_seconds": self.lookback_ms / 1000.0,
            "max_points": self.max_points
        }
