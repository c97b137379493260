"""Validation of submitted form data against a task's JSON schema (draft 7)::

    {"properties": {"amount": {"type": "number", "minimum": 0}}, "required": ["amount"]}

Fields submitted as ``None`` or ``""`` count as not filled in, so a required field left
blank fails ``required`` instead of passing as an empty value.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError, ValidationError

from process_orchestrator.errors import ValidationFailed


class FormValidationError(ValidationFailed):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("Form validation failed: " + "; ".join(errors))
        self.errors = errors


def _is_missing(value: Any) -> bool:
    return value is None or value == ""


def _describe(error: ValidationError) -> str:
    path = ".".join(str(p) for p in error.absolute_path)
    return f"{path}: {error.message}" if path else error.message


def validate_form(schema: Mapping[str, Any] | None, data: Mapping[str, Any]) -> list[str]:
    if not schema:
        return []

    try:
        Draft7Validator.check_schema(schema)
    except SchemaError as e:
        raise ValidationFailed(f"Invalid form schema: {e.message}") from e

    filled = {k: v for k, v in data.items() if not _is_missing(v)}
    errors = Draft7Validator(schema).iter_errors(filled)
    return [_describe(e) for e in sorted(errors, key=lambda e: [str(p) for p in e.path])]


def ensure_valid_form(schema: Mapping[str, Any] | None, data: Mapping[str, Any]) -> None:
    errors = validate_form(schema, data)
    if errors:
        raise FormValidationError(errors)
