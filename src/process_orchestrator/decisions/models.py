from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from process_orchestrator.store import VersionedRecord


class HitPolicy(str, Enum):
    FIRST = "FIRST"
    UNIQUE = "UNIQUE"
    COLLECT = "COLLECT"
    ANY = "ANY"
    RULE_ORDER = "RULE_ORDER"


class ColumnType(str, Enum):
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"


class DecisionColumn(BaseModel):
    id: str
    name: str = ""
    type: ColumnType = ColumnType.STRING
    default_value: Any = None

    @property
    def label(self) -> str:
        return self.name or self.id


class DecisionRule(BaseModel):
    id: str
    inputs: dict[str, str | None] = Field(default_factory=dict)
    outputs: dict[str, Any] = Field(default_factory=dict)
    description: str = ""


class DecisionTable(VersionedRecord):
    """A decision table. Edited elsewhere; read-only while being evaluated."""

    workspace_id: str = ""
    name: str = ""
    hit_policy: HitPolicy = HitPolicy.FIRST
    input_columns: list[DecisionColumn] = Field(default_factory=list)
    output_columns: list[DecisionColumn] = Field(default_factory=list)
    rules: list[DecisionRule] = Field(default_factory=list)
