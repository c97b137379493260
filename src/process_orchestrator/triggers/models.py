from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field

from process_orchestrator.errors import ValidationFailed
from process_orchestrator.store import VersionedRecord


class TriggerType(str, Enum):
    ENTITY_CREATED = "entity_created"
    STATUS_CHANGED = "status_changed"
    ASSIGNEE_CHANGED = "assignee_changed"
    COMMENT_ADDED = "comment_added"
    CRON = "cron"
    WEBHOOK = "webhook"
    MESSAGE = "message"


EVENT_DRIVEN_TYPES = {
    TriggerType.ENTITY_CREATED,
    TriggerType.STATUS_CHANGED,
    TriggerType.ASSIGNEE_CHANGED,
    TriggerType.COMMENT_ADDED,
    TriggerType.MESSAGE,
}


class InvalidTriggerError(ValidationFailed):
    def __init__(self, errors: list[str]) -> None:
        super().__init__("Invalid trigger: " + "; ".join(errors))
        self.errors = errors


# Condition keys holding shared secrets; never returned by the API.
SECRET_CONDITION_KEYS = frozenset({"secret"})
REDACTED = "***"


class TriggerDefinition(VersionedRecord):
    workspace_id: str
    name: str = ""
    process_definition_id: str
    type: TriggerType
    conditions: dict[str, Any] = Field(default_factory=dict)
    variable_mappings: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True
    trigger_count: int = 0
    last_triggered_at: datetime | None = None
    last_evaluated_at: datetime | None = None
    created_at: datetime

    def redacted(self) -> TriggerDefinition:
        if not SECRET_CONDITION_KEYS & self.conditions.keys():
            return self
        conditions = {
            k: REDACTED if k in SECRET_CONDITION_KEYS and v else v
            for k, v in self.conditions.items()
        }
        return self.model_copy(update={"conditions": conditions})


class ExecutionStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REJECTED = "rejected"


class TriggerExecution(VersionedRecord):
    trigger_id: str
    workspace_id: str
    event_id: str | None = None
    status: ExecutionStatus
    process_instance_id: str | None = None
    idempotency_key: str | None = None
    error: str | None = None
    executed_at: datetime
