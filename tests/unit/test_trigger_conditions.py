"""Unit tests for trigger conditions, expressions and variable mapping."""

from __future__ import annotations

import pytest

from process_orchestrator.triggers import CausationChain, DomainEvent, TriggerType
from process_orchestrator.triggers.conditions import (
    CustomExpression,
    conditions_match,
    map_variables,
    resolve_path,
    validate_conditions,
)
from process_orchestrator.triggers.events import CAUSATION_VARIABLE


def _status_event(**payload: object) -> DomainEvent:
    return DomainEvent(
        type="status_changed",
        workspace_id="ws-1",
        entity_id="ticket-1",
        actor_id="alice",
        payload=dict(payload),
    )


def test_context_normalizes_status_keys() -> None:
    ctx = _status_event(**{"from": "open", "to": "done"}).context()

    assert ctx["oldStatus"] == "open"
    assert ctx["newStatus"] == "done"
    assert ctx["entityId"] == "ticket-1"
    assert ctx["userId"] == "alice"
    assert ctx["triggerType"] == "status_changed"


def test_status_conditions() -> None:
    done = _status_event(fromStatus="open", toStatus="done").context()
    reopened = _status_event(fromStatus="done", toStatus="open").context()

    assert conditions_match({"toStatus": "done"}, done)
    assert not conditions_match({"toStatus": "done"}, reopened)
    assert conditions_match({"fromStatus": "open", "toStatus": "done"}, done)
    assert not conditions_match({"fromStatus": "review"}, done)
    assert conditions_match({"fromStatus": "", "toStatus": None}, reopened)


def test_entity_type_assignment_and_author_conditions() -> None:
    ctx = {"entityType": "bug", "newAssigneeId": "bob", "authorId": "carol"}

    assert conditions_match({"entityTypes": ["bug", "task"]}, ctx)
    assert not conditions_match({"entityTypes": ["story"]}, ctx)
    assert conditions_match({"onlyWhenAssigned": True}, ctx)
    assert not conditions_match({"onlyWhenAssigned": True}, {"newAssigneeId": None})
    assert conditions_match({"authorIds": ["carol"]}, ctx)
    assert not conditions_match({"authorIds": ["dave"]}, ctx)


def test_message_name_and_generic_keys() -> None:
    ctx = {"messageName": "payment-received", "region": "EU", "labels": ["vip", "new"]}

    assert conditions_match({"messageName": "payment-received"}, ctx)
    assert not conditions_match({"messageName": "refund"}, ctx)
    assert conditions_match({"region": ["EU", "US"]}, ctx)
    assert conditions_match({"labels": "vip"}, ctx)
    assert not conditions_match({"region": "APAC"}, ctx)
    assert not conditions_match({"missing": "x"}, ctx)


@pytest.mark.parametrize(
    ("expression", "context", "expected"),
    [
        ("$.priority == 'high'", {"priority": "high"}, True),
        ("$.priority == 'high'", {"priority": "low"}, False),
        ("$.priority != 'high'", {}, True),
        ("$.amount > 1000", {"amount": 1500}, True),
        ("$.amount <= 1000", {"amount": "1000"}, True),
        ("$.amount > 1000", {"amount": "lots"}, False),
        ("$.customer.tier == gold", {"customer": {"tier": "gold"}}, True),
        ("$.flag == true", {"flag": True}, True),
    ],
)
def test_custom_expressions(expression: str, context: dict[str, object], expected: bool) -> None:
    assert CustomExpression.parse(expression).evaluate(context) is expected
    assert conditions_match({"customExpression": expression}, context) is expected


def test_custom_expression_parse_errors() -> None:
    with pytest.raises(ValueError):
        CustomExpression.parse("priority is high")


def test_resolve_path() -> None:
    ctx = {"a": {"b": [10, 20]}}

    assert resolve_path("$.a.b.1", ctx) == 20
    assert resolve_path("$.a.c", ctx) is None
    assert resolve_path("literal", ctx) == "literal"


def test_default_variable_mapping_copies_context() -> None:
    ctx = _status_event(toStatus="done", priority="high").context()

    variables = map_variables({}, ctx)

    assert variables["entityId"] == "ticket-1"
    assert variables["triggeredBy"] == "alice"
    assert variables["triggerType"] == "status_changed"
    assert variables["priority"] == "high"


def test_explicit_variable_mapping() -> None:
    ctx = {"entityId": "t-1", "customer": {"id": "c-9"}}

    variables = map_variables(
        {"ticket": "$.entityId", "customer": "$.customer.id", "source": "api", "gone": "$.nope"},
        ctx,
    )

    assert variables == {"ticket": "t-1", "customer": "c-9", "source": "api"}


@pytest.mark.parametrize(
    ("type", "conditions", "error"),
    [
        (TriggerType.CRON, {}, "cron trigger requires conditions.expression"),
        (TriggerType.CRON, {"expression": "* * *"}, "invalid cron expression: '* * *'"),
        (
            TriggerType.CRON,
            {"expression": "0 9 * * *", "timezone": "Mars/Olympus"},
            "unknown timezone",
        ),
        (TriggerType.MESSAGE, {}, "message trigger requires conditions.messageName"),
        (TriggerType.WEBHOOK, {"secret": " "}, "webhook trigger requires conditions.secret"),
        (TriggerType.STATUS_CHANGED, {"toStatus": 3}, "toStatus must be a string"),
        (TriggerType.ENTITY_CREATED, {"entityTypes": "bug"}, "entityTypes must be a list"),
        (TriggerType.ENTITY_CREATED, {"customExpression": "nope"}, "Cannot parse"),
    ],
)
def test_validate_conditions(type: TriggerType, conditions: dict[str, object], error: str) -> None:
    errors = validate_conditions(type, conditions)

    assert len(errors) == 1
    assert errors[0].startswith(error)


def test_valid_cron_conditions() -> None:
    conditions = {"expression": "0 9 * * 1-5", "timezone": "Europe/Berlin"}
    assert validate_conditions(TriggerType.CRON, conditions) == []


def test_causation_chain_round_trips_through_variables() -> None:
    chain = CausationChain().extend("t1").extend("t2")

    restored = CausationChain.from_variables({CAUSATION_VARIABLE: chain.to_json()})

    assert restored == chain
    assert restored.depth == 2
    assert restored.contains("t1")
    assert CausationChain.from_variables({}) == CausationChain()


def test_merged_chain_keeps_both_origins() -> None:
    explicit = CausationChain(trigger_ids=("t1",), depth=1)
    from_process = CausationChain(trigger_ids=("t1", "t2"), depth=2)

    merged = explicit.merge(from_process)

    assert merged == CausationChain(trigger_ids=("t1", "t2"), depth=2)
    event = DomainEvent(type="entity_created", workspace_id="ws-1").with_causation(merged)
    assert event.to_json()["causation"] == {"trigger_ids": ["t1", "t2"], "depth": 2}
