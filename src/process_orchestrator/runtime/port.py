"""The narrow port to the external process runtime.

Outbound calls go through :class:`ProcessRuntime`. Inbound runtime signals arrive as the
frozen event dataclasses below and are dispatched by
:meth:`process_orchestrator.core.OrchestrationCore.handle_runtime_event`.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Protocol

from process_orchestrator.errors import ExternalDependencyError


class ProcessRuntimeError(ExternalDependencyError):
    pass


class RuntimeUnavailableError(ProcessRuntimeError):
    """The runtime could not be reached or answered with a server error."""


class RuntimeTimeoutError(ProcessRuntimeError):
    """The call did not finish in time; its outcome on the runtime side is unknown."""


class RuntimeRejectedError(ProcessRuntimeError):
    retryable = False

    def __init__(self, reason: str, *, status_code: int | None = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.status_code = status_code


class ProcessRuntime(Protocol):
    def deploy(self, definition_xml: str, resource_name: str) -> str: ...

    def start_instance(
        self,
        deployed_key: str,
        business_key: str | None,
        variables: Mapping[str, Any],
        idempotency_key: str | None = None,
    ) -> str: ...

    def complete_user_task(self, task_key: str, form_data: Mapping[str, Any]) -> None: ...


@dataclass(frozen=True, slots=True)
class TaskCreated:
    process_instance_key: str
    element_id: str
    element_name: str
    task_key: str
    form_schema: dict[str, Any] | None = None
    candidate_users: tuple[str, ...] = ()
    candidate_groups: tuple[str, ...] = ()
    assignee: str | None = None
    due_at: datetime | None = None
    priority: int = 50
    variables: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class InstanceCompleted:
    process_instance_key: str


@dataclass(frozen=True, slots=True)
class InstanceTerminated:
    process_instance_key: str
    reason: str = ""


RuntimeEvent = TaskCreated | InstanceCompleted | InstanceTerminated


def _parse_due_date(value: Any) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value))
    except ValueError as e:
        raise ValueError(f"dueDate is not an ISO 8601 timestamp: {value!r}") from e
    return parsed if parsed.tzinfo is not None else parsed.replace(tzinfo=UTC)


def runtime_event_from_json(obj: Mapping[str, Any]) -> RuntimeEvent:
    """Parse a runtime callback body (``{"type": ..., ...}``) into an event."""

    kind = str(obj.get("type") or "")
    key = str(obj.get("processInstanceKey") or obj.get("process_instance_key") or "")
    if not key:
        raise ValueError("processInstanceKey is required")

    if kind == "taskCreated":
        task_key = str(obj.get("taskKey") or obj.get("task_key") or "")
        if not task_key:
            raise ValueError("taskKey is required for taskCreated")
        schema = obj.get("formSchema")
        return TaskCreated(
            process_instance_key=key,
            element_id=str(obj.get("elementId") or ""),
            element_name=str(obj.get("elementName") or obj.get("elementId") or ""),
            task_key=task_key,
            form_schema=schema if isinstance(schema, dict) else None,
            candidate_users=tuple(str(u) for u in obj.get("candidateUsers") or ()),
            candidate_groups=tuple(str(g) for g in obj.get("candidateGroups") or ()),
            assignee=str(obj["assignee"]) if obj.get("assignee") else None,
            due_at=_parse_due_date(obj.get("dueDate")),
            priority=int(obj.get("priority") or 50),
            variables=dict(obj.get("variables") or {}),
        )
    if kind == "instanceCompleted":
        return InstanceCompleted(process_instance_key=key)
    if kind == "instanceTerminated":
        return InstanceTerminated(process_instance_key=key, reason=str(obj.get("reason") or ""))
    raise ValueError(f"Unknown runtime event type: {kind!r}")
