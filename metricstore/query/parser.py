"""
Query Parser

Provides:
- Tokenizer for the query language
- Precedence-climbing parser producing the expression tree
- Static type checks (range vectors only where functions accept them)
"""

import math
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import List, Optional

from ..errors import ParseError
from ..index import LabelMatcher, MatchType
from ..index.labels import METRIC_NAME_LABEL
from ..timeutil import DURATION_RE, parse_duration_ms
from .functions import AGGREGATIONS, FUNCTIONS
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
)

# Binary operator precedence, higher binds tighter
PRECEDENCE = {
    "or": 1,
    "and": 2,
    "unless": 2,
    "==": 3,
    "!=": 3,
    ">": 3,
    "<": 3,
    ">=": 3,
    "<=": 3,
    "+": 4,
    "-": 4,
    "*": 5,
    "/": 5,
    "%": 5,
    "^": 6,
}
COMPARISON_OPS = {"==", "!=", ">", "<", ">=", "<="}
SET_OPS = {"and", "or", "unless"}
RIGHT_ASSOCIATIVE = {"^"}

_TOKEN_RE = re.compile(r"""
    (?P<ws>\s+)
  | (?P<duration>(?:\d+(?:ms|s|m|h|d|w|y))+(?![\w.]))
  | (?P<number>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
  | (?P<ident>[a-zA-Z_:][a-zA-Z0-9_:]*)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<op>=~|!~|==|!=|>=|<=|[-+*/%^<>=])
  | (?P<punct>[(){}\[\],])
""", re.VERBOSE)

_ESCAPES = {"n": "\n", "t": "\t", "\\": "\\", "\"": "\"", "'": "'"}


@dataclass
class Token:
    kind: str
    value: str
    pos: int


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    pos = 0
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match:
            raise ParseError(f"unexpected character {text[pos]!r}", position=pos)
        kind = match.lastgroup
        if kind != "ws":
            tokens.append(Token(kind, match.group(), pos))
        pos = match.end()
    tokens.append(Token("eof", "", len(text)))
    return tokens


def unquote(raw: str) -> str:
    body = raw[1:-1]
    out = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            out.append(_ESCAPES.get(body[i + 1], body[i + 1]))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


class Parser:
    """Recursive-descent parser over a token list"""

    def __init__(self, text: str):
        self.text = text
        self.tokens = tokenize(text)
        self.index = 0

    # Token helpers

    @property
    def current(self) -> Token:
        return self.tokens[self.index]

    def peek(self, offset: int = 1) -> Token:
        return self.tokens[min(self.index + offset, len(self.tokens) - 1)]

    def advance(self) -> Token:
        token = self.current
        if token.kind != "eof":
            self.index += 1
        return token

    def error(self, message: str, token: Optional[Token] = None) -> ParseError:
        token = token or self.current
        return ParseError(message, position=token.pos)

    def expect(self, value: str) -> Token:
        if self.current.value != value or self.current.kind in ("string", "eof"):
            found = self.current.value or "end of input"
            raise self.error(f"expected {value!r}, found {found!r}")
        return self.advance()

    def at_keyword(self, *words: str) -> bool:
        return self.current.kind == "ident" and self.current.value.lower() in words

    # Grammar

    def parse(self) -> Expr:
        if self.current.kind == "eof":
            raise self.error("empty expression")
        expr = self.parse_expr(0)
        if self.current.kind != "eof":
            raise self.error(f"unexpected {self.current.value!r}")
        return expr

    def _binary_operator(self) -> Optional[str]:
        token = self.current
        if token.kind == "op" and token.value in PRECEDENCE:
            return token.value
        if token.kind == "ident" and token.value.lower() in SET_OPS:
            return token.value.lower()
        return None

    def parse_expr(self, min_prec: int) -> Expr:
        lhs = self.parse_unary()
        while True:
            op = self._binary_operator()
            if op is None or PRECEDENCE[op] < min_prec:
                return lhs
            op_token = self.advance()
            return_bool = False
            if self.at_keyword("bool"):
                if op not in COMPARISON_OPS:
                    raise self.error("bool modifier is only allowed on comparison operators")
                self.advance()
                return_bool = True
            next_prec = PRECEDENCE[op] if op in RIGHT_ASSOCIATIVE else PRECEDENCE[op] + 1
            rhs = self.parse_expr(next_prec)
            lhs = self._check_binary(BinaryOp(op, lhs, rhs, return_bool), op_token)

    def _check_binary(self, node: BinaryOp, token: Token) -> BinaryOp:
        for side in (node.lhs, node.rhs):
            if side.type == ValueType.MATRIX:
                raise self.error("binary expressions require scalar or instant vector operands", token)
        if node.op in SET_OPS and ValueType.SCALAR in (node.lhs.type, node.rhs.type):
            raise self.error(f"set operator {node.op!r} not allowed with scalars", token)
        if node.op in COMPARISON_OPS and node.type == ValueType.SCALAR and not node.return_bool:
            raise self.error("comparisons between scalars must use the bool modifier", token)
        return node

    def parse_unary(self) -> Expr:
        if self.current.kind == "op" and self.current.value in ("-", "+"):
            op_token = self.advance()
            operand = self.parse_expr(PRECEDENCE["^"])
            if operand.type == ValueType.MATRIX:
                raise self.error("unary operators require scalar or instant vector operands", op_token)
            if op_token.value == "+":
                return operand
            if isinstance(operand, NumberLiteral):
                return NumberLiteral(-operand.value)
            return UnaryOp("-", operand)
        return self.parse_postfix(self.parse_primary())

    def parse_postfix(self, expr: Expr) -> Expr:
        if self.current.value == "[" and self.current.kind == "punct":
            if not isinstance(expr, VectorSelector):
                raise self.error("ranges are only allowed on instant vector selectors")
            self.advance()
            range_ms = self.parse_duration()
            self.expect("]")
            expr = MatrixSelector(expr, range_ms)
        if self.at_keyword("offset"):
            self.advance()
            offset_ms = self.parse_duration()
            target = expr.vector if isinstance(expr, MatrixSelector) else expr
            if not isinstance(target, VectorSelector):
                raise self.error("offset is only allowed on selectors")
            target.offset_ms = offset_ms
        return expr

    def parse_duration(self) -> int:
        token = self.advance()
        if token.kind != "duration" or not DURATION_RE.match(token.value):
            raise self.error(f"expected duration, found {token.value!r}", token)
        return parse_duration_ms(token.value)

    def parse_primary(self) -> Expr:
        token = self.current

        if token.kind == "number":
            self.advance()
            return NumberLiteral(float(token.value))

        if token.kind == "duration":
            raise self.error(f"unexpected duration {token.value!r}")

        if token.kind == "punct" and token.value == "(":
            self.advance()
            expr = self.parse_expr(0)
            self.expect(")")
            return expr

        if token.kind == "punct" and token.value == "{":
            return self.parse_selector(None)

        if token.kind == "ident":
            name = token.value
            lowered = name.lower()
            if lowered in ("inf", "nan"):
                self.advance()
                return NumberLiteral(math.inf if lowered == "inf" else math.nan)
            nxt = self.peek()
            if lowered in AGGREGATIONS and (
                nxt.value == "(" or (nxt.kind == "ident" and nxt.value.lower() in ("by", "without"))
            ):
                return self.parse_aggregate()
            if nxt.kind == "punct" and nxt.value == "(":
                return self.parse_call()
            self.advance()
            return self.parse_selector(name)

        found = token.value or "end of input"
        raise self.error(f"unexpected {found!r}")

    def parse_call(self) -> Expr:
        name_token = self.advance()
        signature = FUNCTIONS.get(name_token.value)
        if signature is None:
            raise self.error(f"unknown function {name_token.value!r}", name_token)
        self.expect("(")
        args: List[Expr] = []
        if not (self.current.kind == "punct" and self.current.value == ")"):
            args.append(self.parse_expr(0))
            while self.current.kind == "punct" and self.current.value == ",":
                self.advance()
                args.append(self.parse_expr(0))
        self.expect(")")

        if len(args) != len(signature.arg_types):
            raise self.error(
                f"function {name_token.value!r} expects {len(signature.arg_types)} argument(s), got {len(args)}",
                name_token
            )
        for arg, expected in zip(args, signature.arg_types):
            if arg.type != expected:
                raise self.error(
                    f"function {name_token.value!r} expects {expected.value} argument, got {arg.type.value}",
                    name_token
                )
        return Call(name_token.value, args, signature.return_type)

    def parse_grouping(self) -> List[str]:
        self.expect("(")
        labels: List[str] = []
        while not (self.current.kind == "punct" and self.current.value == ")"):
            token = self.advance()
            if token.kind != "ident":
                raise self.error(f"expected label name, found {token.value!r}", token)
            labels.append(token.value)
            if self.current.kind == "punct" and self.current.value == ",":
                self.advance()
        self.expect(")")
        return labels

    def parse_aggregate(self) -> Expr:
        op_token = self.advance()
        grouping: List[str] = []
        without = False
        has_modifier = False
        if self.at_keyword("by", "without"):
            without = self.advance().value.lower() == "without"
            grouping = self.parse_grouping()
            has_modifier = True
        self.expect("(")
        expr = self.parse_expr(0)
        self.expect(")")
        if not has_modifier and self.at_keyword("by", "without"):
            without = self.advance().value.lower() == "without"
            grouping = self.parse_grouping()
        if expr.type != ValueType.VECTOR:
            raise self.error(f"aggregation {op_token.value!r} expects an instant vector", op_token)
        return Aggregate(op_token.value.lower(), expr, grouping, without)

    def parse_selector(self, name: Optional[str]) -> VectorSelector:
        matchers: List[LabelMatcher] = []
        if name is not None:
            matchers.append(LabelMatcher(METRIC_NAME_LABEL, MatchType.EQUAL, name))
        if self.current.kind == "punct" and self.current.value == "{":
            self.advance()
            while not (self.current.kind == "punct" and self.current.value == "}"):
                label_token = self.advance()
                if label_token.kind != "ident":
                    raise self.error(f"expected label name, found {label_token.value!r}", label_token)
                op_token = self.advance()
                if op_token.kind != "op" or op_token.value not in ("=", "!=", "=~", "!~"):
                    raise self.error(f"expected label matching operator, found {op_token.value!r}", op_token)
                value_token = self.advance()
                if value_token.kind != "string":
                    raise self.error(f"expected quoted label value, found {value_token.value!r}", value_token)
                if label_token.value == METRIC_NAME_LABEL and name is not None:
                    raise self.error("metric name given twice", label_token)
                matchers.append(LabelMatcher(label_token.value, MatchType(op_token.value), unquote(value_token.value)))
                if self.current.kind == "punct" and self.current.value == ",":
                    self.advance()
                elif not (self.current.kind == "punct" and self.current.value == "}"):
                    raise self.error(f"expected ',' or '}}', found {self.current.value!r}")
            self.expect("}")
        if not any(not m.matches_empty for m in matchers):
            raise self.error("vector selector must contain at least one non-empty matcher")
        return VectorSelector(name, matchers)


@lru_cache(maxsize=512)
def _parse_cached(text: str) -> Expr:
    return Parser(text).parse()


def parse(text: str) -> Expr:
    """Parse a query expression; raises ParseError"""
    return _parse_cached(text.strip())
