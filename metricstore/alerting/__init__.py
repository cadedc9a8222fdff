"""
Alerting Module

Provides:
- Alert rules and rule groups
- Alert state machine evaluator
- Alert event stream
"""

from .rules import AlertRule, RuleGroup, RuleHealth, expand_template
from .events import AlertTransition, AlertEvent, AlertEventStream
from .evaluator import AlertStateKind, AlertState, AlertEvaluator

__all__ = [
    # Rules
    "AlertRule",
    "RuleGroup",
    "RuleHealth",
    "expand_template",
    # Events
    "AlertTransition",
    "AlertEvent",
    "AlertEventStream",
    # Evaluator
    "AlertStateKind",
    "AlertState",
    "AlertEvaluator"
]
