"""Trigger condition checks, custom expressions, and variable mapping.

A custom expression compares one context value with a literal::

    $.priority == 'high'
    $.amount > 1000
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from process_orchestrator.triggers.models import TriggerType

_EXPRESSION_RE = re.compile(r"^\s*(\$\.[\w.]+)\s*(==|!=|>=|<=|>|<)\s*(.+?)\s*$")

# Keys with a dedicated meaning; anything else is compared against the context verbatim.
_HANDLED_KEYS = {
    "fromStatus",
    "toStatus",
    "entityTypes",
    "onlyWhenAssigned",
    "authorIds",
    "messageName",
    "customExpression",
    "expression",
    "timezone",
    "secret",
}

_MISSING = object()


class CustomExpression:
    __slots__ = ("path", "op", "literal")

    def __init__(self, path: str, op: str, literal: str) -> None:
        self.path = path
        self.op = op
        self.literal = literal

    @staticmethod
    def parse(text: str) -> CustomExpression:
        match = _EXPRESSION_RE.match(text)
        if not match:
            raise ValueError(f"Cannot parse custom expression {text!r}; expected '$.path OP value'")
        path, op, literal = match.groups()
        if len(literal) >= 2 and literal[0] == literal[-1] and literal[0] in "'\"":
            literal = literal[1:-1]
        return CustomExpression(path, op, literal)

    def evaluate(self, context: Mapping[str, Any]) -> bool:
        value = resolve_path(self.path, context)
        if value is None:
            return self.op == "!="
        if self.op in ("==", "!="):
            equal = _as_text(value) == self.literal
            return equal if self.op == "==" else not equal
        try:
            left, right = float(value), float(self.literal)
        except (TypeError, ValueError):
            return False
        if self.op == ">":
            return left > right
        if self.op == ">=":
            return left >= right
        if self.op == "<":
            return left < right
        return left <= right


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def resolve_path(path: str, context: Mapping[str, Any]) -> Any:
    """Resolve ``$.a.b`` against ``context``; anything not starting with ``$.`` is a literal."""

    if not path.startswith("$."):
        return path
    current: Any = context
    for part in path[2:].split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return None
    return current


def _value_matches(expected: Any, actual: Any) -> bool:
    if isinstance(expected, list):
        return actual in expected
    if isinstance(actual, list):
        return expected in actual
    return bool(expected == actual)


def conditions_match(conditions: Mapping[str, Any], context: Mapping[str, Any]) -> bool:
    if "fromStatus" in conditions and conditions["fromStatus"] not in (None, ""):
        if context.get("oldStatus") != conditions["fromStatus"]:
            return False
    if "toStatus" in conditions and conditions["toStatus"] not in (None, ""):
        if context.get("newStatus") != conditions["toStatus"]:
            return False

    entity_types = conditions.get("entityTypes")
    if entity_types and context.get("entityType") not in entity_types:
        return False

    if conditions.get("onlyWhenAssigned") and not context.get("newAssigneeId"):
        return False

    author_ids = conditions.get("authorIds")
    if author_ids and context.get("authorId", context.get("userId")) not in author_ids:
        return False

    if conditions.get("messageName") and context.get("messageName") != conditions["messageName"]:
        return False

    for key, expected in conditions.items():
        if key in _HANDLED_KEYS or expected is None:
            continue
        actual = context.get(key, _MISSING)
        if actual is _MISSING or not _value_matches(expected, actual):
            return False

    expression = conditions.get("customExpression")
    if expression:
        return CustomExpression.parse(str(expression)).evaluate(context)

    return True


def map_variables(mappings: Mapping[str, Any], context: Mapping[str, Any]) -> dict[str, Any]:
    if not mappings:
        variables = {
            "entityId": context.get("entityId"),
            "workspaceId": context.get("workspaceId"),
            "triggeredBy": context.get("userId") or context.get("createdById"),
            "triggerType": context.get("triggerType"),
        }
        for key, value in context.items():
            variables.setdefault(key, value)
        return variables

    out: dict[str, Any] = {}
    for name, source in mappings.items():
        value = resolve_path(source, context) if isinstance(source, str) else source
        if value is not None:
            out[name] = value
    return out


def validate_conditions(type: TriggerType, conditions: Mapping[str, Any]) -> list[str]:
    errors: list[str] = []

    if type is TriggerType.CRON:
        expression = conditions.get("expression")
        if not isinstance(expression, str) or not expression.strip():
            errors.append("cron trigger requires conditions.expression")
        elif len(expression.split()) != 5 or not croniter.is_valid(expression):
            errors.append(f"invalid cron expression: {expression!r}")
        timezone = conditions.get("timezone", "UTC")
        try:
            ZoneInfo(str(timezone))
        except (ZoneInfoNotFoundError, ValueError):
            errors.append(f"unknown timezone: {timezone!r}")

    if type is TriggerType.MESSAGE and not conditions.get("messageName"):
        errors.append("message trigger requires conditions.messageName")

    if type is TriggerType.WEBHOOK and not str(conditions.get("secret") or "").strip():
        errors.append("webhook trigger requires conditions.secret")

    if type is TriggerType.STATUS_CHANGED:
        for key in ("fromStatus", "toStatus"):
            value = conditions.get(key)
            if value is not None and not isinstance(value, str):
                errors.append(f"{key} must be a string")

    entity_types = conditions.get("entityTypes")
    if entity_types is not None and not isinstance(entity_types, list):
        errors.append("entityTypes must be a list")

    expression = conditions.get("customExpression")
    if expression:
        try:
            CustomExpression.parse(str(expression))
        except ValueError as e:
            errors.append(str(e))

    return errors
