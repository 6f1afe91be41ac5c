"""Tests for substitution, rule evaluation and loop expansion."""

import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from replay_agent.core.models import Condition, Loop, Operator, Rule, RuleActionType, WorkflowAction
from replay_agent.rules.binder import VariableBinder, find_placeholders, has_unresolved, substitute
from replay_agent.rules.evaluator import RuleEvaluator, evaluate_condition
from replay_agent.rules.loops import LoopExpander


def make_action(action_id, order, action_type="click", **kwargs):
    return WorkflowAction(id=action_id, order=order, type=action_type, **kwargs)


def make_rule(rule_id, variable, operator, value, action, action_value=None, priority=0, enabled=True):
    return Rule.model_validate({
        "id": rule_id,
        "condition": {"variable": variable, "operator": operator, "value": value},
        "action": {"type": action, "value": action_value},
        "priority": priority,
        "enabled": enabled,
    })


class TestSubstitution:
    """Test {{variable}} substitution."""

    def test_basic_substitution(self):
        assert substitute("Hello {{name}}!", {"name": "Ada"}) == "Hello Ada!"

    def test_whitespace_and_repeats(self):
        assert substitute("{{ a }}-{{a}}", {"a": 1}) == "1-1"

    def test_nested_path(self):
        bindings = {"user": {"email": "ada@example.com"}, "rows": ["x", "y"]}
        assert substitute("{{user.email}}", bindings) == "ada@example.com"
        assert substitute("{{rows.1}}", bindings) == "y"

    def test_unresolved_left_verbatim(self):
        assert substitute("{{missing}} and {{name}}", {"name": "Ada"}) == "{{missing}} and Ada"

    def test_none_binding_is_unresolved(self):
        assert substitute("{{x}}", {"x": None}) == "{{x}}"

    def test_non_string_passthrough(self):
        assert substitute(None, {"a": 1}) is None
        assert substitute(42, {"a": 1}) == 42

    def test_find_placeholders(self):
        assert find_placeholders("{{a}} {{ b.c }} {{a}}") == ["a", "b.c"]
        assert find_placeholders(None) == []

    def test_has_unresolved(self):
        assert has_unresolved("{{a}} {{b}}", {"a": 1})
        assert not has_unresolved("{{a}}", {"a": 1})


class TestVariableBinder:
    """Test the immutable binder."""

    def test_bindings_are_read_only(self):
        source = {"a": 1}
        binder = VariableBinder(source)
        source["a"] = 2

        assert binder.resolve("{{a}}") == "1"
        with pytest.raises(TypeError):
            binder.bindings["a"] = 3

    def test_bind_layers_new_values(self):
        base = VariableBinder({"item": "old", "env": "prod"})
        scoped = base.bind(item="new")

        assert scoped.resolve("{{item}}@{{env}}") == "new@prod"
        assert base.resolve("{{item}}") == "old"

    def test_resolve_action(self):
        action = make_action(
            "a1", 0, "type",
            selector="#row-{{id}}",
            value="{{name}}",
            url=None,
        )
        binder = VariableBinder({"id": 7})

        resolved = binder.resolve_action(action)
        assert resolved == {"selector": "#row-7", "value": "{{name}}", "url": None}
        assert binder.unresolved(action) == ["name"]


class TestConditionEvaluation:
    """Test condition operators."""

    @pytest.mark.parametrize("operator, actual, expected, result", [
        ("eq", "value", "value", True),
        ("eq", "value", "other", False),
        ("neq", "value", "other", True),
        ("gt", 10, 5, True),
        ("lt", 10, 5, False),
        ("gte", 5, 5, True),
        ("lte", 4, 5, True),
        ("contains", "this is a test", "test", True),
        ("contains", ["a", "b"], "b", True),
        ("not_contains", "this is a test", "nope", True),
        ("in", "b", ["a", "b"], True),
        ("not_in", "c", ["a", "b"], True),
    ])
    def test_operators(self, operator, actual, expected, result):
        condition = Condition(variable="x", operator=operator, value=expected)
        assert evaluate_condition(condition, {"x": actual}) is result

    def test_undefined_variable_is_false(self):
        condition = Condition(variable="undefined", operator="eq", value="value")
        assert evaluate_condition(condition, {"other": "value"}) is False

        negated = Condition(variable="undefined", operator="neq", value="value")
        assert evaluate_condition(negated, {}) is False

    def test_unknown_operator_is_false(self):
        condition = Condition(variable="test", operator="invalid", value="value")
        assert condition.operator == Operator.UNKNOWN
        assert evaluate_condition(condition, {"test": "value"}) is False

    def test_type_mismatch_is_false(self):
        condition = Condition(variable="count", operator="gt", value="five")
        assert evaluate_condition(condition, {"count": 10}) is False

    def test_empty_string_equality(self):
        condition = Condition(variable="result", operator="eq", value="")
        assert evaluate_condition(condition, {"result": ""}) is True


class TestRuleEvaluator:
    """Test rule decisions."""

    def test_skip_rule(self):
        evaluator = RuleEvaluator([make_rule("r1", "result", "eq", "", "skip")])

        decision = evaluator.decide({"result": ""})
        assert decision.skip
        assert decision.trace == [{"rule_id": "r1", "matched": True, "action": "skip"}]

    def test_wait_values_accumulate(self):
        evaluator = RuleEvaluator([
            make_rule("w1", "slow", "eq", True, "wait", 500),
            make_rule("w2", "slow", "eq", True, "wait", 250),
            make_rule("w3", "slow", "eq", True, "wait", -10),
        ])

        decision = evaluator.decide({"slow": True})
        assert decision.wait_ms == 750
        assert not decision.skip

    def test_retry_rules_add_attempts(self):
        evaluator = RuleEvaluator([
            make_rule("r1", "flaky", "eq", True, "retry"),
            make_rule("r2", "flaky", "eq", True, "retry"),
        ])
        assert evaluator.decide({"flaky": True}).extra_attempts == 2
        assert evaluator.decide({"flaky": False}).extra_attempts == 0

    def test_priority_order_and_disabled_rules(self):
        evaluator = RuleEvaluator([
            make_rule("late", "x", "eq", 1, "skip", priority=5),
            make_rule("off", "x", "eq", 1, "skip", enabled=False),
            make_rule("early", "x", "eq", 1, "wait", 10, priority=1),
        ])

        decision = evaluator.decide({"x": 1})
        assert [t["rule_id"] for t in decision.trace] == ["early", "late"]
        assert decision.matched_rule_ids == ["early", "late"]
        assert decision.evaluated == 2

    def test_unknown_action_is_traced_and_ignored(self):
        rule = make_rule("r1", "x", "eq", 1, "explode")
        assert rule.action.type == RuleActionType.UNKNOWN

        decision = RuleEvaluator([rule]).decide({"x": 1})
        assert decision.trace[0]["matched"]
        assert not decision.skip
        assert decision.wait_ms == 0
        assert decision.extra_attempts == 0


class TestLoopExpander:
    """Test loop expansion."""

    @pytest.fixture
    def actions(self):
        return [
            make_action("open", 0, "goto", url="https://app.example.com"),
            make_action("search", 1, "type", selector="#q", value="{{item}}"),
            make_action("submit", 2, "click", selector="#go"),
            make_action("logout", 3, "click", selector="#logout"),
        ]

    def test_no_loops_keeps_order(self, actions):
        plan = LoopExpander().expand(actions, {})
        assert [i.action.id for i in plan.instances] == ["open", "search", "submit", "logout"]
        assert plan.loop_contexts == []

    def test_loop_over_list(self, actions):
        loop = Loop(id="l1", variable="items", iterator="item", actions=["search", "submit"])
        plan = LoopExpander([loop]).expand(actions, {"items": ["a", "b", "c"]})

        ids = [i.action.id for i in plan.instances]
        assert ids == ["open", "search", "submit", "search", "submit", "search", "submit", "logout"]

        searches = [i for i in plan.instances if i.action.id == "search"]
        assert [i.bindings["item"] for i in searches] == ["a", "b", "c"]
        assert [i.iteration for i in searches] == [0, 1, 2]

        context = plan.loop_contexts[0]
        assert context.iterations == 3
        assert not context.broke_early

    def test_max_iterations(self, actions):
        loop = Loop(id="l1", variable="items", iterator="item", actions=["search"], max_iterations=2)
        plan = LoopExpander([loop]).expand(actions, {"items": ["a", "b", "c"]})

        assert [i.action.id for i in plan.instances].count("search") == 2
        assert plan.loop_contexts[0].iterations == 2

    def test_break_condition(self, actions):
        loop = Loop.model_validate({
            "id": "l1",
            "variable": "items",
            "iterator": "item",
            "actions": ["search"],
            "breakCondition": {"variable": "item", "operator": "eq", "value": "b"},
        })
        plan = LoopExpander([loop]).expand(actions, {"items": ["a", "b", "c"]})

        searches = [i for i in plan.instances if i.action.id == "search"]
        assert [i.bindings["item"] for i in searches] == ["a", "b"]
        assert plan.loop_contexts[0].broke_early

    @pytest.mark.parametrize("bindings", [{}, {"items": "abc"}, {"items": 3}])
    def test_missing_or_non_list_source(self, actions, bindings):
        loop = Loop(id="l1", variable="items", iterator="item", actions=["search"])
        plan = LoopExpander([loop]).expand(actions, bindings)

        assert [i.action.id for i in plan.instances] == ["open", "submit", "logout"]
        assert plan.loop_contexts[0].iterations == 0
        assert plan.loop_contexts[0].note

    def test_action_in_two_loops_belongs_to_first(self, actions):
        first = Loop(id="l1", variable="items", iterator="item", actions=["search"])
        second = Loop(id="l2", variable="others", iterator="item", actions=["search", "logout"])
        plan = LoopExpander([first, second]).expand(
            actions, {"items": ["a"], "others": ["x", "y"]}
        )

        ids = [(i.action.id, i.loop_id) for i in plan.instances]
        assert ids == [
            ("open", None),
            ("search", "l1"),
            ("submit", None),
            ("logout", "l2"),
            ("logout", "l2"),
        ]

    def test_unknown_action_ids_are_ignored(self, actions):
        loop = Loop(id="l1", variable="items", iterator="item", actions=["ghost"])
        plan = LoopExpander([loop]).expand(actions, {"items": ["a"]})

        assert len(plan.instances) == 4
        assert plan.loop_contexts[0].note == "no known actions"
