"""
Alert Rule Evaluator

Provides:
- Per (rule, label set) alert state machine
- Concurrent rule evaluation on a bounded thread pool
- Rule health tracking with error isolation
- ALERTS series written back through the ingestion gateway
"""

import asyncio
import logging
import time
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple, Union

from ..errors import EvaluationError, ExecutionError
from ..index import Labels, MetricKind
from ..query import QueryEngine, VectorSample
from ..scheduler import PeriodicTask
from ..timeutil import to_ms
from .events import AlertEvent, AlertEventStream, AlertTransition
from .rules import AlertRule, RuleGroup, RuleHealth

logger = logging.getLogger("AlertEvaluator")

DEFAULT_RESOLVED_RETENTION = 15 * 60.0

RuleKey = Tuple[str, str]  # (group name, rule name)


class AlertStateKind(Enum):
    """Alert lifecycle state"""
    INACTIVE = "inactive"
    PENDING = "pending"
    FIRING = "firing"


@dataclass
class AlertState:
    """State of one alert instance"""

    rule_name: str
    labels: Labels
    state: AlertStateKind = AlertStateKind.INACTIVE
    active_since: Optional[float] = None
    fired_at: Optional[float] = None
    last_sent_at: Optional[float] = None
    resolved_at: Optional[float] = None
    value: Optional[float] = None
    annotations: Dict[str, str] = field(default_factory=dict)

    @property
    def is_active(self) -> bool:
        return self.state != AlertStateKind.INACTIVE

    def to_dict(self) -> dict:
        return {
            "rule_name": self.rule_name,
            "labels": self.labels.to_dict(),
            "state": self.state.value,
            "active_since": self.active_since,
            "fired_at": self.fired_at,
            "resolved_at": self.resolved_at,
            "value": self.value,
            "annotations": self.annotations
        }


class AlertEvaluator:
    """Evaluates rule groups and drives alert state transitions"""

    def __init__(
        self,
        query_engine: QueryEngine,
        gateway=None,
        events: Optional[AlertEventStream] = None,
        clock: Callable[[], float] = time.time,
        executor: Optional[Executor] = None,
        max_workers: int = 4,
        resolved_retention: float = DEFAULT_RESOLVED_RETENTION
    ):
        """
        Initialize evaluator

        Args:
            query_engine: Engine the rule expressions run against
            gateway: IngestionGateway receiving ALERTS samples (optional)
            events: Stream receiving transition events
            executor: Shared worker pool; a private bounded pool is created when omitted
            max_workers: Size of the private pool
            resolved_retention: Seconds an inactive alert state is kept before removal
        """
        self.query_engine = query_engine
        self.gateway = gateway
        self.events = events or AlertEventStream()
        self.clock = clock
        self.resolved_retention = resolved_retention
        self._owns_executor = executor is None
        self.executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="rule-eval"
        )
        self.groups: Dict[str, RuleGroup] = {}
        self._states: Dict[RuleKey, Dict[Labels, AlertState]] = {}

        # Statistics
        self.evaluations = 0
        self.evaluation_failures = 0

    # Group management

    def add_group(self, group: RuleGroup) -> RuleGroup:
        """Register a rule group; raises ParseError on an invalid expression"""
        if group.name in self.groups:
            raise ValueError(f"rule group {group.name!r} already registered")
        for rule in group.rules:
            rule.validate()
        self.groups[group.name] = group
        logger.info(f"Added rule group {group.name} ({len(group.rules)} rules, every {group.interval}s)")
        return group

    def remove_group(self, name: str) -> bool:
        group = self.groups.pop(name, None)
        if group is None:
            return False
        for rule in group.rules:
            self._states.pop((name, rule.name), None)
        return True

    # Evaluation

    def _query(self, rule: AlertRule, now: float) -> List[VectorSample]:
        started = time.monotonic()
        result = self.query_engine.evaluate(rule.expr, at=now)
        rule.evaluation_duration_seconds = time.monotonic() - started
        if result.result_type != "vector":
            raise ExecutionError(f"expression returned {result.result_type}, expected vector")
        return result.vector

    def evaluate_group(self, group: RuleGroup, now: Optional[float] = None) -> List[AlertEvent]:
        """Evaluate every rule of a group once (blocking)"""
        now = self.clock() if now is None else now
        futures = [(rule, self.executor.submit(self._query, rule, now)) for rule in group.rules]
        outcomes = []
        for rule, future in futures:
            try:
                outcomes.append((rule, future.result()))
            except Exception as e:
                outcomes.append((rule, e))
        return self._apply_outcomes(group, outcomes, now)

    async def evaluate_group_async(self, group: RuleGroup, now: Optional[float] = None) -> List[AlertEvent]:
        """Evaluate a group from the event loop; queries run on the worker pool"""
        now = self.clock() if now is None else now
        loop = asyncio.get_running_loop()
        results = await asyncio.gather(
            *[loop.run_in_executor(self.executor, self._query, rule, now) for rule in group.rules],
            return_exceptions=True
        )
        return self._apply_outcomes(group, list(zip(group.rules, results)), now)

    def _apply_outcomes(
        self,
        group: RuleGroup,
        outcomes: List[Tuple[AlertRule, Union[List[VectorSample], BaseException]]],
        now: float
    ) -> List[AlertEvent]:
        events: List[AlertEvent] = []
        for rule, outcome in outcomes:
            self.evaluations += 1
            rule.last_evaluation = now
            if isinstance(outcome, BaseException):
                error = EvaluationError(rule.name, outcome)
                self.evaluation_failures += 1
                rule.health = RuleHealth.ERR
                rule.last_error = str(outcome) or type(outcome).__name__
                logger.warning(f"Group {group.name}: {error}")
                continue
            rule.health = RuleHealth.OK
            rule.last_error = None
            events.extend(self._transition(group, rule, outcome, now))

        for event in events:
            self.events.publish(event)
        self._write_alert_series(group, now)
        return events

    def _alert_labels(self, rule: AlertRule, sample: VectorSample) -> Labels:
        base = sample.labels.without_name().to_dict()
        merged = dict(base)
        merged.update(rule.expand_labels(base, sample.value))
        merged["alertname"] = rule.name
        return Labels(merged)

    def _transition(
        self,
        group: RuleGroup,
        rule: AlertRule,
        vector: List[VectorSample],
        now: float
    ) -> List[AlertEvent]:
        """Advance every alert instance of `rule` given this tick's result vector"""
        states = self._states.setdefault((group.name, rule.name), {})
        events: List[AlertEvent] = []
        seen = set()

        def emit(state: AlertState, transition: AlertTransition):
            events.append(AlertEvent(
                rule_name=rule.name,
                labels=state.labels,
                transition=transition,
                timestamp=now,
                value=state.value,
                annotations=dict(state.annotations)
            ))

        for sample in vector:
            labels = self._alert_labels(rule, sample)
            if labels in seen:
                continue
            seen.add(labels)
            source = sample.labels.without_name().to_dict()

            state = states.get(labels)
            newly_active = state is None or not state.is_active
            if newly_active:
                state = AlertState(rule_name=rule.name, labels=labels)
                states[labels] = state
                state.state = AlertStateKind.PENDING
                state.active_since = now
            state.value = sample.value
            state.annotations = rule.expand_annotations(source, sample.value)

            if state.state == AlertStateKind.PENDING:
                if now - state.active_since >= rule.for_duration:
                    state.state = AlertStateKind.FIRING
                    state.fired_at = now
                    state.last_sent_at = now
                    emit(state, AlertTransition.FIRING)
                elif newly_active:
                    emit(state, AlertTransition.PENDING)
            elif (
                rule.repeat_interval > 0
                and now - state.last_sent_at >= rule.repeat_interval
            ):
                state.last_sent_at = now
                emit(state, AlertTransition.FIRING_REPEAT)

        for labels in list(states.keys()):
            if labels in seen:
                continue
            state = states[labels]
            if state.state == AlertStateKind.PENDING:
                emit(state, AlertTransition.CANCELLED)
            elif state.state == AlertStateKind.FIRING:
                emit(state, AlertTransition.RESOLVED)
            elif now - state.resolved_at >= self.resolved_retention:
                del states[labels]
                continue
            else:
                continue
            state.state = AlertStateKind.INACTIVE
            state.resolved_at = now

        return events

    def _write_alert_series(self, group: RuleGroup, now: float) -> None:
        if self.gateway is None:
            return
        ts = to_ms(now)
        for rule in group.rules:
            for state in self._states.get((group.name, rule.name), {}).values():
                if not state.is_active:
                    continue
                labels = state.labels.to_dict()
                labels["alertstate"] = state.state.value
                self.gateway.write("ALERTS", labels, 1.0, ts, MetricKind.GAUGE)

    def group_task(self, group: RuleGroup) -> PeriodicTask:
        """Periodic task evaluating `group` at its interval"""
        async def run():
            await self.evaluate_group_async(group)
        return PeriodicTask(name=f"rules:{group.name}", interval=group.interval, func=run)

    # Inspection

    def get_states(self, rule_name: Optional[str] = None) -> List[AlertState]:
        states: List[AlertState] = []
        for (_, name), by_labels in self._states.items():
            if rule_name is None or name == rule_name:
                states.extend(by_labels.values())
        return states

    def get_alerts(self) -> List[AlertState]:
        """Pending and firing alerts"""
        return [s for s in self.get_states() if s.is_active]

    def close(self) -> None:
        if self._owns_executor:
            self.executor.shutdown(wait=False)

    def get_statistics(self) -> dict:
        active = self.get_alerts()
        return {
            "groups": len(self.groups),
            "rules": sum(len(g.rules) for g in self.groups.values()),
            "evaluations": self.evaluations,
            "evaluation_failures": self.evaluation_failures,
            "pending": len([s for s in active if s.state == AlertStateKind.PENDING]),
            "firing": len([s for s in active if s.state == AlertStateKind.FIRING]),
            "events": self.events.get_statistics()
        }
