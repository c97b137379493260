"""Decision table evaluation.

``evaluate`` is a pure function: the same table and input row always produce the same
result, and nothing is read or written besides its arguments.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from process_orchestrator.decisions.expressions import (
    ExpressionSyntaxError,
    Matcher,
    compile_cell,
)
from process_orchestrator.decisions.models import (
    DecisionColumn,
    DecisionRule,
    DecisionTable,
    HitPolicy,
)
from process_orchestrator.errors import ConflictError, ValidationFailed

logger = logging.getLogger(__name__)


class InvalidExpressionError(ValidationFailed):
    def __init__(
        self, *, table_id: str, rule_id: str, column_id: str, expression: str | None, reason: str
    ) -> None:
        super().__init__(
            f"Invalid expression {expression!r} in rule {rule_id}, column {column_id}: {reason}"
        )
        self.table_id = table_id
        self.rule_id = rule_id
        self.column_id = column_id
        self.expression = expression


class AmbiguousRulesError(ConflictError):
    def __init__(self, *, table_id: str, hit_policy: HitPolicy, rule_ids: list[str]) -> None:
        super().__init__(
            f"Hit policy {hit_policy.value} violated in table {table_id}: "
            f"rules {', '.join(rule_ids)} all matched"
        )
        self.table_id = table_id
        self.hit_policy = hit_policy
        self.rule_ids = rule_ids


@dataclass(frozen=True, slots=True)
class DecisionResult:
    matched_rule_ids: list[str]
    output: dict[str, Any] | None

    def to_json(self) -> dict[str, object]:
        return {"matched_rule_ids": list(self.matched_rule_ids), "output": self.output}


_CompiledRule = tuple[DecisionRule, list[tuple[DecisionColumn, Matcher]]]


def _compile_rules(table: DecisionTable) -> list[_CompiledRule]:
    known_columns = {c.id for c in table.input_columns}
    compiled: list[_CompiledRule] = []
    for rule in table.rules:
        for column_id, expression in rule.inputs.items():
            if column_id not in known_columns:
                raise InvalidExpressionError(
                    table_id=table.id,
                    rule_id=rule.id,
                    column_id=column_id,
                    expression=expression,
                    reason="unknown input column",
                )

        cells: list[tuple[DecisionColumn, Matcher]] = []
        for column in table.input_columns:
            expression = rule.inputs.get(column.id)
            try:
                cells.append((column, compile_cell(expression, column.type)))
            except ExpressionSyntaxError as e:
                raise InvalidExpressionError(
                    table_id=table.id,
                    rule_id=rule.id,
                    column_id=column.id,
                    expression=expression,
                    reason=str(e),
                ) from e
        compiled.append((rule, cells))
    return compiled


def _lookup(row: Mapping[str, Any], column: DecisionColumn) -> Any:
    if column.id in row:
        return row[column.id]
    if column.name and column.name in row:
        return row[column.name]
    return None


def _rule_output(rule: DecisionRule, table: DecisionTable) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for column in table.output_columns:
        if column.id in rule.outputs:
            out[column.label] = rule.outputs[column.id]
        elif column.name and column.name in rule.outputs:
            out[column.label] = rule.outputs[column.name]
        else:
            out[column.label] = column.default_value
    return out


def _defaults(table: DecisionTable) -> dict[str, Any] | None:
    if not any(c.default_value is not None for c in table.output_columns):
        return None
    return {c.label: c.default_value for c in table.output_columns}


def evaluate(table: DecisionTable, input_row: Mapping[str, Any]) -> DecisionResult:
    compiled = _compile_rules(table)

    matched: list[DecisionRule] = []
    for rule, cells in compiled:
        if all(match(_lookup(input_row, column)) for column, match in cells):
            matched.append(rule)
            if table.hit_policy is HitPolicy.FIRST:
                break

    rule_ids = [r.id for r in matched]
    logger.debug(
        "Decision table evaluated",
        extra={"table_id": table.id, "hit_policy": table.hit_policy.value, "matched": rule_ids},
    )

    if not matched:
        return DecisionResult(matched_rule_ids=[], output=_defaults(table))

    outputs = [_rule_output(rule, table) for rule in matched]

    if table.hit_policy is HitPolicy.UNIQUE and len(matched) > 1:
        raise AmbiguousRulesError(table_id=table.id, hit_policy=table.hit_policy, rule_ids=rule_ids)

    if table.hit_policy is HitPolicy.ANY and any(o != outputs[0] for o in outputs[1:]):
        raise AmbiguousRulesError(table_id=table.id, hit_policy=table.hit_policy, rule_ids=rule_ids)

    if table.hit_policy in (HitPolicy.COLLECT, HitPolicy.RULE_ORDER):
        collected: dict[str, Any] = {c.label: [] for c in table.output_columns}
        for out in outputs:
            for label, value in out.items():
                collected[label].append(value)
        return DecisionResult(matched_rule_ids=rule_ids, output=collected)

    return DecisionResult(matched_rule_ids=rule_ids, output=outputs[0])


def validate_table(table: DecisionTable) -> list[str]:
    """Return human-readable structural problems; an empty list means the table is usable."""

    errors: list[str] = []
    if not table.input_columns:
        errors.append("At least one input column is required")
    if not table.output_columns:
        errors.append("At least one output column is required")

    for kind, columns in (("input", table.input_columns), ("output", table.output_columns)):
        seen: set[str] = set()
        for column in columns:
            if column.id in seen:
                errors.append(f"Duplicate {kind} column id: {column.id}")
            seen.add(column.id)

    output_ids = {c.id for c in table.output_columns}
    rule_ids: set[str] = set()
    for rule in table.rules:
        if rule.id in rule_ids:
            errors.append(f"Duplicate rule id: {rule.id}")
        rule_ids.add(rule.id)
        for output_id in rule.outputs:
            if output_id not in output_ids:
                errors.append(f"Rule {rule.id} references unknown output: {output_id}")

    try:
        _compile_rules(table)
    except InvalidExpressionError as e:
        errors.append(str(e))

    return errors
