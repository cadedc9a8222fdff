"""
Query Expression Tree

Provides:
- AST node types for selectors, calls, aggregations and operators
- Static result-type of each node
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

from ..index import LabelMatcher


class ValueType(Enum):
    """Static result types of expressions"""
    SCALAR = "scalar"
    VECTOR = "vector"
    MATRIX = "matrix"


class Expr:
    """Base expression node"""

    @property
    def type(self) -> ValueType:
        raise NotImplementedError

    def children(self) -> List["Expr"]:
        return []


@dataclass
class NumberLiteral(Expr):
    value: float

    @property
    def type(self) -> ValueType:
        return ValueType.SCALAR

    def __str__(self) -> str:
        return repr(self.value)


@dataclass
class VectorSelector(Expr):
    """Instant selector: name{matchers} [offset]"""

    name: Optional[str]
    matchers: List[LabelMatcher] = field(default_factory=list)
    offset_ms: int = 0

    @property
    def type(self) -> ValueType:
        return ValueType.VECTOR

    def __str__(self) -> str:
        shown = [str(m) for m in self.matchers if m.name != "__name__" or not self.name]
        text = (self.name or "") + ("{" + ",".join(shown) + "}" if shown else "")
        if self.offset_ms:
            text += f" offset {self.offset_ms}ms"
        return text


@dataclass
class MatrixSelector(Expr):
    """Range selector: instant selector with a [range] window"""

    vector: VectorSelector
    range_ms: int

    @property
    def type(self) -> ValueType:
        return ValueType.MATRIX

    def children(self) -> List[Expr]:
        return [self.vector]

    def __str__(self) -> str:
        return f"{self.vector}[{self.range_ms}ms]"


@dataclass
class Call(Expr):
    func: str
    args: List[Expr]
    return_type: ValueType = ValueType.VECTOR

    @property
    def type(self) -> ValueType:
        return self.return_type

    def children(self) -> List[Expr]:
        return list(self.args)

    def __str__(self) -> str:
        return f"{self.func}({', '.join(str(a) for a in self.args)})"


@dataclass
class Aggregate(Expr):
    """sum/avg/max/min/count with optional by/without grouping"""

    op: str
    expr: Expr
    grouping: List[str] = field(default_factory=list)
    without: bool = False

    @property
    def type(self) -> ValueType:
        return ValueType.VECTOR

    def children(self) -> List[Expr]:
        return [self.expr]

    def __str__(self) -> str:
        modifier = ""
        if self.grouping or self.without:
            modifier = f" {'without' if self.without else 'by'} ({', '.join(self.grouping)})"
        return f"{self.op}{modifier} ({self.expr})"


@dataclass
class BinaryOp(Expr):
    op: str
    lhs: Expr
    rhs: Expr
    return_bool: bool = False

    @property
    def type(self) -> ValueType:
        if self.lhs.type == ValueType.SCALAR and self.rhs.type == ValueType.SCALAR:
            return ValueType.SCALAR
        return ValueType.VECTOR

    def children(self) -> List[Expr]:
        return [self.lhs, self.rhs]

    def __str__(self) -> str:
        op = f"{self.op} bool" if self.return_bool else self.op
        return f"{self.lhs} {op} {self.rhs}"


@dataclass
class UnaryOp(Expr):
    op: str
    expr: Expr

    @property
    def type(self) -> ValueType:
        return self.expr.type

    def children(self) -> List[Expr]:
        return [self.expr]

    def __str__(self) -> str:
        return f"{self.op}{self.expr}"


def walk(node: Expr):
    """Depth-first iteration over an expression tree"""
    yield node
    for child in node.children():
        yield from walk(child)
