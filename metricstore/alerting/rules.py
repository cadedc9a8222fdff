"""
Alert Rules

Provides:
- Alert rule and rule group definitions
- Rule health tracking
- Label / annotation template expansion
"""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Mapping, Optional

from ..errors import ParseError
from ..query import Expr, ValueType, format_value, parse

_LABEL_REF = re.compile(r"\{\{\s*\$labels\.([a-zA-Z_][a-zA-Z0-9_]*)\s*\}\}")
_VALUE_REF = re.compile(r"\{\{\s*\$value\s*\}\}")

DEFAULT_REPEAT_INTERVAL = 4 * 3600.0


def expand_template(text: str, labels: Mapping[str, str], value: Optional[float]) -> str:
    """Expand {{ $labels.<name> }} and {{ $value }}; unknown labels expand to ''"""
    text = _LABEL_REF.sub(lambda m: labels.get(m.group(1), ""), text)
    return _VALUE_REF.sub(lambda m: format_value(value) if value is not None else "", text)


class RuleHealth(Enum):
    """Outcome of the last evaluation"""
    UNKNOWN = "unknown"
    OK = "ok"
    ERR = "err"


@dataclass
class AlertRule:
    """Alerting rule definition"""

    name: str
    expr: str
    for_duration: float = 0.0
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    repeat_interval: float = DEFAULT_REPEAT_INTERVAL

    # Tracking
    health: RuleHealth = RuleHealth.UNKNOWN
    last_error: Optional[str] = None
    last_evaluation: Optional[float] = None
    evaluation_duration_seconds: float = 0.0

    def __post_init__(self):
        if not self.name:
            raise ValueError("alert rule needs a name")
        if self.for_duration < 0:
            raise ValueError(f"rule {self.name!r}: for must not be negative")
        if self.repeat_interval < 0:
            raise ValueError(f"rule {self.name!r}: repeat_interval must not be negative")

    def validate(self) -> Expr:
        """Parse the expression; alerting needs an instant vector"""
        expr = parse(self.expr)
        if expr.type != ValueType.VECTOR:
            raise ParseError(f"rule {self.name!r}: expression must return an instant vector, got {expr.type.value}")
        return expr

    def expand_labels(self, labels: Mapping[str, str], value: Optional[float]) -> Dict[str, str]:
        return {k: expand_template(v, labels, value) for k, v in self.labels.items()}

    def expand_annotations(self, labels: Mapping[str, str], value: Optional[float]) -> Dict[str, str]:
        return {k: expand_template(v, labels, value) for k, v in self.annotations.items()}

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "query": self.expr,
            "for_seconds": self.for_duration,
            "labels": self.labels,
            "annotations": self.annotations,
            "repeat_interval_seconds": self.repeat_interval,
            "health": self.health.value,
            "last_error": self.last_error,
            "last_evaluation": self.last_evaluation,
            "evaluation_duration_seconds": round(self.evaluation_duration_seconds, 6)
        }


@dataclass
class RuleGroup:
    """Rules evaluated together on one timer"""

    name: str
    interval: float = 60.0
    rules: List[AlertRule] = field(default_factory=list)

    def __post_init__(self):
        if self.interval <= 0:
            raise ValueError(f"rule group {self.name!r}: interval must be positive")
        names = [r.name for r in self.rules]
        duplicates = sorted({n for n in names if names.count(n) > 1})
        if duplicates:
            raise ValueError(f"rule group {self.name!r}: duplicate rule name(s) {duplicates}")

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "interval_seconds": self.interval,
            "rules": [r.to_dict() for r in self.rules]
        }
