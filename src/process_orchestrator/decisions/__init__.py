"""Decision tables: tabular rules evaluated synchronously by process steps."""

from process_orchestrator.decisions.evaluator import (
    AmbiguousRulesError,
    DecisionResult,
    InvalidExpressionError,
    evaluate,
    validate_table,
)
from process_orchestrator.decisions.models import (
    ColumnType,
    DecisionColumn,
    DecisionRule,
    DecisionTable,
    HitPolicy,
)

__all__ = [
    "AmbiguousRulesError",
    "ColumnType",
    "DecisionColumn",
    "DecisionResult",
    "DecisionRule",
    "DecisionTable",
    "HitPolicy",
    "InvalidExpressionError",
    "evaluate",
    "validate_table",
]
