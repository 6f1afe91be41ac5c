"""Loop expansion into a flat, ordered list of step instances."""

from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Mapping, Optional

import structlog

from ..core.models import Condition, Loop, WorkflowAction
from .binder import lookup
from .evaluator import evaluate_condition


logger = structlog.get_logger()


@dataclass(frozen=True)
class StepInstance:
    """One concrete execution of an action, with its own bindings."""
    action: WorkflowAction
    bindings: Mapping[str, Any] = field(default_factory=dict)
    loop_id: Optional[str] = None
    iteration: Optional[int] = None


@dataclass
class LoopContext:
    loop_id: str
    variable: str
    iterator: str
    iterations: int = 0
    broke_early: bool = False
    note: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        data = {
            "loopId": self.loop_id,
            "variable": self.variable,
            "iterator": self.iterator,
            "iterations": self.iterations,
            "brokeEarly": self.broke_early,
        }
        if self.note:
            data["note"] = self.note
        return data


@dataclass
class ExpansionPlan:
    instances: list[StepInstance] = field(default_factory=list)
    loop_contexts: list[LoopContext] = field(default_factory=list)


class LoopExpander:
    """
    Expands declared loops over the ordered action list.

    Actions no loop references appear once in declared order. Each loop is
    emitted where its earliest referenced action sits, one pass over its
    actions per element of the source list. An action claimed by several
    loops belongs to the first loop that lists it.
    """

    def __init__(
        self,
        loops: Iterable[Loop] = (),
        evaluator_fn: Callable[[Condition, Mapping[str, Any]], bool] = evaluate_condition,
    ):
        self.loops = list(loops)
        self._evaluate = evaluator_fn

    def expand(
        self,
        actions: list[WorkflowAction],
        bindings: Mapping[str, Any],
    ) -> ExpansionPlan:
        plan = ExpansionPlan()
        known_ids = {a.id for a in actions}

        owner: dict[str, Loop] = {}
        for loop in self.loops:
            for action_id in loop.actions:
                if action_id not in known_ids:
                    logger.warning("loop_action_unknown", loop_id=loop.id, action_id=action_id)
                    continue
                owner.setdefault(action_id, loop)

        emitted: set[str] = set()
        for action in actions:
            loop = owner.get(action.id)
            if loop is None:
                plan.instances.append(StepInstance(action=action, bindings=bindings))
                continue
            if loop.id in emitted:
                continue

            emitted.add(loop.id)
            body = [a for a in actions if owner.get(a.id) is loop]
            instances, context = self._expand_loop(loop, body, bindings)
            plan.instances.extend(instances)
            plan.loop_contexts.append(context)

        # Loops whose actions were all unknown still report a context
        for loop in self.loops:
            if loop.id not in emitted:
                plan.loop_contexts.append(LoopContext(
                    loop_id=loop.id,
                    variable=loop.variable,
                    iterator=loop.iterator,
                    note="no known actions",
                ))

        return plan

    def _expand_loop(
        self,
        loop: Loop,
        body: list[WorkflowAction],
        bindings: Mapping[str, Any],
    ) -> tuple[list[StepInstance], LoopContext]:
        context = LoopContext(loop_id=loop.id, variable=loop.variable, iterator=loop.iterator)
        items = lookup(bindings, loop.variable)

        if items is None:
            context.note = f"variable '{loop.variable}' is not bound"
            return [], context
        if not isinstance(items, (list, tuple)):
            context.note = f"variable '{loop.variable}' is not a list"
            return [], context

        if loop.max_iterations is not None and len(items) > loop.max_iterations:
            items = items[:loop.max_iterations]
            context.note = f"capped at {loop.max_iterations} iterations"

        instances: list[StepInstance] = []
        for index, item in enumerate(items):
            scoped = {**bindings, loop.iterator: item}
            for action in body:
                instances.append(StepInstance(
                    action=action,
                    bindings=scoped,
                    loop_id=loop.id,
                    iteration=index,
                ))
            context.iterations += 1

            if loop.break_condition is not None and self._evaluate(loop.break_condition, scoped):
                context.broke_early = True
                break

        logger.debug(
            "loop_expanded",
            loop_id=loop.id,
            iterations=context.iterations,
            broke_early=context.broke_early,
        )
        return instances, context
