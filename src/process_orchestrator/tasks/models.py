from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field, model_validator

from process_orchestrator.errors import ConflictError
from process_orchestrator.store import VersionedRecord


class TaskStatus(str, Enum):
    CREATED = "created"
    CLAIMED = "claimed"
    DELEGATED = "delegated"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


ASSIGNED_STATUSES = {TaskStatus.CLAIMED, TaskStatus.DELEGATED}
TERMINAL_STATUSES = {TaskStatus.COMPLETED, TaskStatus.CANCELLED}


ALLOWED_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.CREATED: {TaskStatus.CLAIMED, TaskStatus.CANCELLED},
    TaskStatus.CLAIMED: {
        TaskStatus.CREATED,
        TaskStatus.DELEGATED,
        TaskStatus.COMPLETED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.DELEGATED: {
        TaskStatus.CREATED,
        TaskStatus.DELEGATED,
        TaskStatus.COMPLETED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.COMPLETED: set(),
    TaskStatus.CANCELLED: set(),
}


class HistoryType(str, Enum):
    CREATED = "created"
    CLAIMED = "claimed"
    UNCLAIMED = "unclaimed"
    DELEGATED = "delegated"
    COMMENTED = "commented"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


SYSTEM_ACTOR = "system"


class TaskStateError(ConflictError):
    def __init__(self, task_id: str, current: TaskStatus, to: TaskStatus) -> None:
        super().__init__(f"Task {task_id} cannot move from {current.value} to {to.value}")
        self.task_id = task_id
        self.current = current
        self.to = to


class HistoryEntry(BaseModel):
    type: HistoryType
    actor_id: str
    timestamp: datetime
    payload: dict[str, Any] = Field(default_factory=dict)


class TaskInstance(VersionedRecord):
    workspace_id: str
    process_instance_id: str
    task_key: str
    element_id: str = ""
    element_name: str = ""
    status: TaskStatus = TaskStatus.CREATED
    assignee_id: str | None = None
    candidate_users: list[str] = Field(default_factory=list)
    candidate_groups: list[str] = Field(default_factory=list)
    form_schema: dict[str, Any] | None = None
    form_data: dict[str, Any] | None = None
    entity_id: str | None = None
    due_at: datetime | None = None
    priority: int = 50
    created_at: datetime
    completed_at: datetime | None = None
    completed_by: str | None = None
    history: list[HistoryEntry] = Field(default_factory=list)

    @model_validator(mode="after")
    def _assignee_matches_status(self) -> TaskInstance:
        assigned = self.status in ASSIGNED_STATUSES
        if assigned and not self.assignee_id:
            raise ValueError(f"Task in status {self.status.value} needs an assignee")
        if not assigned and self.assignee_id:
            raise ValueError(f"Task in status {self.status.value} cannot have an assignee")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


def transition(
    task: TaskInstance,
    *,
    to: TaskStatus,
    entry: HistoryEntry,
    **changes: Any,
) -> TaskInstance:
    """Return a copy of ``task`` in state ``to`` with ``entry`` appended to its history."""

    if to not in ALLOWED_TRANSITIONS.get(task.status, set()):
        raise TaskStateError(task.id, task.status, to)
    update: dict[str, Any] = {"status": to, "history": [*task.history, entry], **changes}
    # model_copy skips validation; rebuild so the assignee/status invariant is checked.
    return TaskInstance.model_validate({**task.model_dump(), **update})
