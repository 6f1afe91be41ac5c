"""Condition evaluation and rule decisions for workflow steps."""

import operator
from dataclasses import dataclass, field
from numbers import Number
from typing import Any, Callable, Iterable, Mapping

import structlog

from ..core.models import Condition, Operator, Rule, RuleActionType
from .binder import lookup


logger = structlog.get_logger()


def _contains(container: Any, item: Any) -> bool:
    if isinstance(container, str):
        return isinstance(item, str) and item in container
    if isinstance(container, (list, tuple, set, frozenset, Mapping)):
        return item in container
    return False


OPERATORS: dict[Operator, Callable[[Any, Any], bool]] = {
    Operator.EQ: operator.eq,
    Operator.NEQ: operator.ne,
    Operator.GT: operator.gt,
    Operator.LT: operator.lt,
    Operator.GTE: operator.ge,
    Operator.LTE: operator.le,
    Operator.CONTAINS: _contains,
    Operator.NOT_CONTAINS: lambda a, b: not _contains(a, b),
    Operator.IN: lambda a, b: _contains(b, a),
    Operator.NOT_IN: lambda a, b: not _contains(b, a),
}


def evaluate_condition(condition: Condition, bindings: Mapping[str, Any]) -> bool:
    """
    Evaluate one condition against the current bindings.

    Never raises. An unbound variable, an unknown operator or a comparison
    between incompatible types all evaluate to False.
    """
    actual = lookup(bindings, condition.variable)
    if actual is None:
        return False

    op_func = OPERATORS.get(condition.operator)
    if op_func is None:
        return False

    try:
        return bool(op_func(actual, condition.value))
    except TypeError:
        return False


@dataclass
class RuleDecision:
    """Combined effect of all matching rules on one step instance."""
    skip: bool = False
    wait_ms: float = 0
    extra_attempts: int = 0
    trace: list[dict[str, Any]] = field(default_factory=list)

    @property
    def evaluated(self) -> int:
        return len(self.trace)

    @property
    def matched_rule_ids(self) -> list[str]:
        return [t["rule_id"] for t in self.trace if t["matched"]]


class RuleEvaluator:
    """
    Applies a LogicSpec's rules to a step instance.

    Enabled rules are evaluated in ascending priority; equal priorities keep
    their declared order.
    """

    def __init__(
        self,
        rules: Iterable[Rule] = (),
        condition_fn: Callable[[Condition, Mapping[str, Any]], bool] = evaluate_condition,
    ):
        self.rules = sorted(
            (r for r in rules if r.enabled),
            key=lambda r: r.priority,
        )
        self._condition_fn = condition_fn

    def decide(self, bindings: Mapping[str, Any]) -> RuleDecision:
        decision = RuleDecision()

        for rule in self.rules:
            matched = self._condition_fn(rule.condition, bindings)
            decision.trace.append({
                "rule_id": rule.id,
                "matched": matched,
                "action": rule.action.type.value,
            })
            if not matched:
                continue

            action_type = rule.action.type
            if action_type == RuleActionType.SKIP:
                decision.skip = True
            elif action_type == RuleActionType.WAIT:
                decision.wait_ms += self._wait_value(rule)
            elif action_type == RuleActionType.RETRY:
                decision.extra_attempts += 1
            else:
                logger.warning("unknown_rule_action", rule_id=rule.id)

        return decision

    @staticmethod
    def _wait_value(rule: Rule) -> float:
        value = rule.action.value
        if isinstance(value, bool) or not isinstance(value, Number) or value < 0:
            logger.warning("invalid_wait_value", rule_id=rule.id, value=value)
            return 0
        return float(value)
