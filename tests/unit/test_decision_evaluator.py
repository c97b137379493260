"""Unit tests for decision table evaluation and hit policies."""

from __future__ import annotations

from typing import Any

import pytest

from process_orchestrator.decisions import (
    AmbiguousRulesError,
    DecisionTable,
    HitPolicy,
    InvalidExpressionError,
    evaluate,
    validate_table,
)


def _table(hit_policy: HitPolicy, rules: list[dict[str, Any]], **extra: Any) -> DecisionTable:
    return DecisionTable.model_validate(
        {
            "id": "risk",
            "hit_policy": hit_policy,
            "input_columns": [
                {"id": "score", "name": "riskScore", "type": "number"},
                {"id": "tier", "name": "customerTier"},
            ],
            "output_columns": extra.pop(
                "output_columns", [{"id": "route", "name": "routing"}]
            ),
            "rules": rules,
            **extra,
        }
    )


RULES = [
    {"id": "r1", "inputs": {"score": ">=80"}, "outputs": {"route": "manual"}},
    {"id": "r2", "inputs": {"score": "-"}, "outputs": {"route": "auto"}},
]


def test_first_stops_at_first_matching_rule() -> None:
    result = evaluate(_table(HitPolicy.FIRST, RULES), {"score": 90})

    assert result.matched_rule_ids == ["r1"]
    assert result.output == {"routing": "manual"}


def test_first_falls_through_to_wildcard_rule() -> None:
    result = evaluate(_table(HitPolicy.FIRST, RULES), {"score": 10})

    assert result.matched_rule_ids == ["r2"]
    assert result.output == {"routing": "auto"}


def test_inputs_are_looked_up_by_id_then_name() -> None:
    table = _table(HitPolicy.FIRST, RULES)

    assert evaluate(table, {"riskScore": 85}).matched_rule_ids == ["r1"]
    assert evaluate(table, {"score": 10, "riskScore": 85}).matched_rule_ids == ["r2"]


def test_unique_raises_when_several_rules_match() -> None:
    with pytest.raises(AmbiguousRulesError) as exc:
        evaluate(_table(HitPolicy.UNIQUE, RULES), {"score": 95})

    assert exc.value.rule_ids == ["r1", "r2"]
    assert exc.value.kind == "conflict"


def test_unique_returns_single_match() -> None:
    rules = [
        {"id": "low", "inputs": {"score": "<50"}, "outputs": {"route": "auto"}},
        {"id": "high", "inputs": {"score": ">=50"}, "outputs": {"route": "manual"}},
    ]
    result = evaluate(_table(HitPolicy.UNIQUE, rules), {"score": 70})

    assert result.matched_rule_ids == ["high"]
    assert result.output == {"routing": "manual"}


def test_any_accepts_agreeing_outputs_and_rejects_disagreeing_ones() -> None:
    agreeing = [
        {"id": "a", "inputs": {"tier": "gold"}, "outputs": {"route": "vip"}},
        {"id": "b", "inputs": {"score": ">90"}, "outputs": {"route": "vip"}},
    ]
    result = evaluate(_table(HitPolicy.ANY, agreeing), {"tier": "Gold", "score": 95})
    assert result.matched_rule_ids == ["a", "b"]
    assert result.output == {"routing": "vip"}

    disagreeing = [agreeing[0], {**agreeing[1], "outputs": {"route": "manual"}}]
    with pytest.raises(AmbiguousRulesError):
        evaluate(_table(HitPolicy.ANY, disagreeing), {"tier": "gold", "score": 95})


@pytest.mark.parametrize("policy", [HitPolicy.COLLECT, HitPolicy.RULE_ORDER])
def test_collecting_policies_gather_outputs_in_rule_order(policy: HitPolicy) -> None:
    result = evaluate(_table(policy, RULES), {"score": 80})

    assert result.matched_rule_ids == ["r1", "r2"]
    assert result.output == {"routing": ["manual", "auto"]}


def test_no_match_returns_defaults_when_declared() -> None:
    rules = [{"id": "r1", "inputs": {"tier": "gold"}, "outputs": {"route": "vip"}}]
    table = _table(
        HitPolicy.FIRST,
        rules,
        output_columns=[{"id": "route", "name": "routing", "default_value": "standard"}],
    )

    result = evaluate(table, {"tier": "bronze"})

    assert result.matched_rule_ids == []
    assert result.output == {"routing": "standard"}


def test_no_match_without_defaults_returns_none() -> None:
    rules = [{"id": "r1", "inputs": {"tier": "gold"}, "outputs": {"route": "vip"}}]

    result = evaluate(_table(HitPolicy.FIRST, rules), {"tier": "bronze"})

    assert result.to_json() == {"matched_rule_ids": [], "output": None}


def test_invalid_cell_fails_before_any_rule_is_matched() -> None:
    rules = [
        {"id": "ok", "inputs": {"score": "-"}, "outputs": {"route": "auto"}},
        {"id": "broken", "inputs": {"score": "10..1"}, "outputs": {"route": "never"}},
    ]

    with pytest.raises(InvalidExpressionError) as exc:
        evaluate(_table(HitPolicy.FIRST, rules), {"score": 5})

    assert exc.value.rule_id == "broken"
    assert exc.value.column_id == "score"
    assert exc.value.kind == "validation"


def test_unknown_input_column_is_rejected() -> None:
    rules = [{"id": "r1", "inputs": {"region": "EU"}, "outputs": {"route": "auto"}}]

    with pytest.raises(InvalidExpressionError, match="unknown input column"):
        evaluate(_table(HitPolicy.FIRST, rules), {})


def test_evaluation_is_deterministic() -> None:
    table = _table(HitPolicy.COLLECT, RULES)
    row = {"score": 99, "tier": "gold"}

    assert evaluate(table, row) == evaluate(table, row)


def test_validate_table_reports_structural_problems() -> None:
    table = DecisionTable.model_validate(
        {
            "id": "bad",
            "input_columns": [{"id": "a"}, {"id": "a"}],
            "output_columns": [],
            "rules": [
                {"id": "r1", "inputs": {"a": ">="}, "outputs": {"missing": 1}},
                {"id": "r1"},
            ],
        }
    )

    problems = validate_table(table)

    assert "At least one output column is required" in problems
    assert "Duplicate input column id: a" in problems
    assert "Duplicate rule id: r1" in problems
    assert "Rule r1 references unknown output: missing" in problems
    assert any("Invalid expression" in p for p in problems)


def test_validate_table_accepts_a_good_table() -> None:
    assert validate_table(_table(HitPolicy.FIRST, RULES)) == []
