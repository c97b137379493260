"""Compiler for decision table input cells.

Supported cell syntax:

- ``""`` or ``-``: matches anything
- literals: ``"quoted"``, ``gold``, ``42``, ``true``, ``null``
- lists: ``gold, silver, "a, b"`` (any member matches)
- ranges: ``1..10``, ``[1..10]``, ``]1..10[``, ``(1..10)`` (numeric)
- comparisons: ``>=80``, ``>80``, ``<=80``, ``<80`` (numeric), ``=gold``, ``!=gold``
- negation: ``not(gold, silver)``

A cell is compiled once into a predicate over the input value. Syntax problems raise
:class:`ExpressionSyntaxError` at compile time, never at match time.
"""

from __future__ import annotations

import operator
import re
from collections.abc import Callable
from typing import Any

from process_orchestrator.decisions.models import ColumnType

Matcher = Callable[[Any], bool]

_NUMBER_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_COMPARISON_RE = re.compile(r"^(>=|<=|!=|>|<|=)(.*)$", re.DOTALL)
_NOT_OPEN_RE = re.compile(r"(?:^|\W)not\s*$", re.IGNORECASE)
_NOT_PREFIX_RE = re.compile(r"^not\s*\(", re.IGNORECASE)

_NUMERIC_COMPARATORS: dict[str, Callable[[float, float], bool]] = {
    ">=": operator.ge,
    ">": operator.gt,
    "<=": operator.le,
    "<": operator.lt,
}

_TRUE_WORDS = {"true", "yes", "1"}
_FALSE_WORDS = {"false", "no", "0"}


class ExpressionSyntaxError(ValueError):
    pass


def _match_any(_value: Any) -> bool:
    return True


def to_number(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and _NUMBER_RE.match(value.strip()):
        return float(value.strip())
    return None


def to_bool(value: Any) -> bool | None:
    if isinstance(value, bool):
        return value
    if isinstance(value, int) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in _TRUE_WORDS:
            return True
        if lowered in _FALSE_WORDS:
            return False
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value).strip().casefold()


def parse_literal(text: str) -> Any:
    text = text.strip()
    if len(text) >= 2 and text[0] == '"' and text[-1] == '"':
        return text[1:-1]
    lowered = text.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered == "null":
        return None
    if _NUMBER_RE.match(text):
        number = float(text)
        return int(number) if number.is_integer() and "." not in text else number
    return text


def values_equal(value: Any, literal: Any, column_type: ColumnType) -> bool:
    """Type-aware equality between an input value and a cell literal."""

    if value is None or literal is None:
        return value is None and literal is None

    if column_type is ColumnType.NUMBER:
        a, b = to_number(value), to_number(literal)
        return a is not None and b is not None and a == b

    if column_type is ColumnType.BOOLEAN:
        x, y = to_bool(value), to_bool(literal)
        return x is not None and y is not None and x == y

    a, b = to_number(value), to_number(literal)
    if a is not None and b is not None:
        return a == b
    return _as_text(value) == _as_text(literal)


def split_list(text: str) -> list[str]:
    """Split on commas that are not inside double quotes or a ``not(...)`` group."""

    members: list[str] = []
    current: list[str] = []
    quoted = False
    depth = 0
    for ch in text:
        if ch == '"':
            quoted = not quoted
            current.append(ch)
        elif quoted:
            current.append(ch)
        elif ch == "(" and (depth or _NOT_OPEN_RE.search("".join(current))):
            depth += 1
            current.append(ch)
        elif ch == ")" and depth:
            depth -= 1
            current.append(ch)
        elif ch == "," and not depth:
            members.append("".join(current).strip())
            current = []
        else:
            current.append(ch)
    if quoted:
        raise ExpressionSyntaxError(f"Unterminated quote in {text!r}")
    if depth:
        raise ExpressionSyntaxError(f"Unbalanced parentheses in {text!r}")
    members.append("".join(current).strip())
    return members


def _negation_body(text: str) -> str | None:
    """Inner text of ``not(...)`` when the group spans the whole expression."""

    prefix = _NOT_PREFIX_RE.match(text)
    if prefix is None:
        return None
    depth = 0
    quoted = False
    for i in range(prefix.end() - 1, len(text)):
        ch = text[i]
        if ch == '"':
            quoted = not quoted
        elif quoted:
            continue
        elif ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return text[prefix.end() : i] if i == len(text) - 1 else None
    return None


def _compile_range(text: str) -> Matcher:
    body = text
    low_inclusive = high_inclusive = True
    if body[0] in "[](":
        low_inclusive = body[0] == "["
        body = body[1:]
    if body and body[-1] in "[])":
        high_inclusive = body[-1] == "]"
        body = body[:-1]

    low_text, _sep, high_text = body.partition("..")
    low, high = to_number(low_text), to_number(high_text)
    if low is None or high is None:
        raise ExpressionSyntaxError(f"Range bounds must be numeric: {text!r}")
    if low > high:
        raise ExpressionSyntaxError(f"Range lower bound exceeds upper bound: {text!r}")

    low_ok = operator.ge if low_inclusive else operator.gt
    high_ok = operator.le if high_inclusive else operator.lt

    def match(value: Any) -> bool:
        number = to_number(value)
        return number is not None and low_ok(number, low) and high_ok(number, high)

    return match


def _compile_comparison(op: str, operand: str, text: str, column_type: ColumnType) -> Matcher:
    if not operand:
        raise ExpressionSyntaxError(f"Comparison without operand: {text!r}")

    if op in ("=", "!="):
        literal = parse_literal(operand)
        if op == "=":
            return lambda value: values_equal(value, literal, column_type)
        return lambda value: value is not None and not values_equal(value, literal, column_type)

    bound = to_number(operand)
    if bound is None:
        raise ExpressionSyntaxError(f"Comparison needs a numeric operand: {text!r}")
    compare = _NUMERIC_COMPARATORS[op]

    def match(value: Any) -> bool:
        number = to_number(value)
        return number is not None and compare(number, bound)

    return match


def _compile_simple(text: str, column_type: ColumnType) -> Matcher:
    if not text:
        raise ExpressionSyntaxError("Empty list member")

    if len(text) >= 2 and text[0] == '"' and text[-1] == '"':
        literal = text[1:-1]
        return lambda value: values_equal(value, literal, column_type)

    comparison = _COMPARISON_RE.match(text)
    if comparison:
        op, operand = comparison.group(1), comparison.group(2).strip()
        return _compile_comparison(op, operand, text, column_type)

    if ".." in text:
        return _compile_range(text)

    literal = parse_literal(text)
    return lambda value: values_equal(value, literal, column_type)


def compile_cell(expression: str | None, column_type: ColumnType = ColumnType.STRING) -> Matcher:
    if expression is None:
        return _match_any
    text = expression.strip()
    if text in ("", "-"):
        return _match_any

    negated = _negation_body(text)
    if negated is not None:
        inner_text = negated.strip()
        if not inner_text:
            raise ExpressionSyntaxError("not() needs an expression")
        inner = compile_cell(inner_text, column_type)
        return lambda value: not inner(value)

    members = split_list(text)
    if len(members) == 1:
        return _compile_simple(members[0], column_type)

    matchers = [
        compile_cell(member, column_type)
        if _NOT_PREFIX_RE.match(member)
        else _compile_simple(member, column_type)
        for member in members
    ]
    return lambda value: any(m(value) for m in matchers)
