"""Rule layer: substitution, conditions and loops."""

from .binder import VariableBinder, substitute
from .evaluator import RuleEvaluator, evaluate_condition
from .loops import LoopExpander

__all__ = ["VariableBinder", "substitute", "RuleEvaluator", "evaluate_condition", "LoopExpander"]
