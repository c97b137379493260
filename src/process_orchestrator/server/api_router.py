"""REST API over the orchestration core.

All routes are mounted under `/api`. The acting user is taken from the `X-Actor-Id`
header. Domain errors propagate to the exception handler in `app.py`, which maps their
`kind` to a status code.
"""

from __future__ import annotations

from typing import Annotated, Any

from fastapi import APIRouter, Header, HTTPException, Query, Request

from process_orchestrator import __version__
from process_orchestrator.core import OrchestrationCore
from process_orchestrator.decisions import DecisionTable, validate_table
from process_orchestrator.errors import ValidationFailed
from process_orchestrator.processes import ProcessDefinitionRecord, ProcessInstanceRef
from process_orchestrator.runtime import runtime_event_from_json
from process_orchestrator.server.models import (
    BatchClaimRequest,
    CommentRequest,
    CompleteRequest,
    DelegateRequest,
    DomainEventRequest,
    EvaluateRequest,
    ProcessDefinitionRequest,
    SlaMetRequest,
    SlaPauseRequest,
    SlaStartRequest,
    StartProcessRequest,
    ToggleRequest,
    TriggerCreateRequest,
    TriggerUpdateRequest,
)
from process_orchestrator.sla import SlaDefinition, SlaEvent, SlaInstance, SlaTargetType
from process_orchestrator.tasks import TaskFilter, TaskInstance, TaskStatus
from process_orchestrator.triggers import (
    CausationChain,
    DomainEvent,
    TriggerDefinition,
    TriggerExecution,
)

router = APIRouter()

ActorId = Annotated[str, Header(alias="X-Actor-Id", min_length=1)]


def _core(request: Request) -> OrchestrationCore:
    core = getattr(request.app.state, "core", None)
    if not isinstance(core, OrchestrationCore):
        raise HTTPException(status_code=500, detail="Orchestration core not configured")
    return core


@router.get("/health")
def health() -> dict[str, object]:
    return {"status": "ok", "version": __version__}


# Triggers


@router.post("/triggers", status_code=201)
def create_trigger(request: Request, body: TriggerCreateRequest) -> TriggerDefinition:
    trigger = _core(request).triggers.create(
        workspace_id=body.workspace_id,
        process_definition_id=body.process_definition_id,
        type=body.type,
        name=body.name,
        conditions=body.conditions,
        variable_mappings=body.variable_mappings,
        is_active=body.is_active,
    )
    return trigger.redacted()


@router.get("/triggers")
def list_triggers(request: Request, workspace_id: str = Query(...)) -> list[TriggerDefinition]:
    return [t.redacted() for t in _core(request).triggers.list(workspace_id)]


@router.get("/triggers/{trigger_id}")
def get_trigger(request: Request, trigger_id: str) -> TriggerDefinition:
    return _core(request).triggers.get(trigger_id).redacted()


@router.put("/triggers/{trigger_id}")
def update_trigger(
    request: Request, trigger_id: str, body: TriggerUpdateRequest
) -> TriggerDefinition:
    trigger = _core(request).triggers.update(
        trigger_id,
        name=body.name,
        process_definition_id=body.process_definition_id,
        conditions=body.conditions,
        variable_mappings=body.variable_mappings,
    )
    return trigger.redacted()


@router.post("/triggers/{trigger_id}/toggle")
def toggle_trigger(request: Request, trigger_id: str, body: ToggleRequest) -> TriggerDefinition:
    return _core(request).triggers.toggle(trigger_id, body.is_active).redacted()


@router.delete("/triggers/{trigger_id}", status_code=204)
def delete_trigger(request: Request, trigger_id: str) -> None:
    _core(request).triggers.delete(trigger_id)


@router.get("/triggers/{trigger_id}/executions")
def trigger_executions(
    request: Request, trigger_id: str, limit: int = Query(default=50, ge=1, le=500)
) -> list[TriggerExecution]:
    return _core(request).triggers.executions(trigger_id, limit)


@router.get("/workspaces/{workspace_id}/trigger-executions")
def workspace_executions(
    request: Request, workspace_id: str, limit: int = Query(default=100, ge=1, le=500)
) -> list[TriggerExecution]:
    return _core(request).triggers.recent_executions(workspace_id, limit)


@router.get("/workspaces/{workspace_id}/cron-status")
def cron_status(request: Request, workspace_id: str) -> list[dict[str, object]]:
    return _core(request).triggers.cron_status(workspace_id)


@router.post("/events", status_code=202)
def ingest_event(request: Request, body: DomainEventRequest) -> list[TriggerExecution]:
    event = DomainEvent(
        type=body.type,
        workspace_id=body.workspace_id,
        entity_id=body.entity_id,
        actor_id=request.headers.get("X-Actor-Id"),
        payload=body.payload,
        causation=CausationChain.from_json(body.causation),
    )
    return _core(request).handle_domain_event(
        event,
        process_instance_id=body.process_instance_id,
        process_instance_key=body.process_instance_key,
    )


@router.post("/webhooks/{trigger_id}")
async def webhook(request: Request, trigger_id: str) -> dict[str, object]:
    body = await request.body()
    execution = _core(request).triggers.handle_webhook(trigger_id, body, dict(request.headers))
    return {
        "accepted": True,
        "execution": execution.model_dump(mode="json") if execution is not None else None,
    }


# Process runtime


@router.post("/runtime/events", status_code=202)
def runtime_callback(request: Request, body: dict[str, Any]) -> dict[str, str]:
    try:
        event = runtime_event_from_json(body)
    except ValueError as e:
        raise ValidationFailed(str(e)) from e
    _core(request).handle_runtime_event(event)
    return {"status": "accepted"}


@router.post("/process-definitions", status_code=201)
def save_process_definition(
    request: Request, body: ProcessDefinitionRequest
) -> ProcessDefinitionRecord:
    core = _core(request)
    record = core.processes.save_definition(
        workspace_id=body.workspace_id,
        name=body.name,
        bpmn_xml=body.bpmn_xml,
        definition_id=body.id,
    )
    if body.deploy:
        record = core.processes.deploy(record.id)
    return record


@router.post("/process-definitions/{definition_id}/deploy")
def deploy_process_definition(request: Request, definition_id: str) -> ProcessDefinitionRecord:
    return _core(request).processes.deploy(definition_id)


@router.post("/process-definitions/{definition_id}/start", status_code=201)
def start_process(
    request: Request, definition_id: str, body: StartProcessRequest
) -> ProcessInstanceRef:
    ref, _started = _core(request).processes.start(
        definition_id=definition_id,
        variables=body.variables,
        business_key=body.business_key,
        bound_entity_id=body.bound_entity_id,
        idempotency_key=body.idempotency_key,
    )
    return ref


# SLA


@router.put("/sla/definitions")
def save_sla_definition(request: Request, body: SlaDefinition) -> SlaDefinition:
    return _core(request).sla.save_definition(body)


@router.get("/sla/definitions")
def list_sla_definitions(request: Request, workspace_id: str = Query(...)) -> list[SlaDefinition]:
    return _core(request).sla.list_definitions(workspace_id)


@router.post("/sla/instances", status_code=201)
def start_sla(request: Request, body: SlaStartRequest) -> SlaInstance:
    sla = _core(request).sla
    if body.definition_id:
        return sla.start(body.definition_id, body.target_type, body.target_id)
    instance = sla.start_for_target(
        body.workspace_id, body.target_type, body.target_id, body.context
    )
    if instance is None:
        raise HTTPException(status_code=404, detail="No SLA definition applies to this target")
    return instance


@router.get("/sla/status/{target_type}/{target_id}")
def sla_status(request: Request, target_type: SlaTargetType, target_id: str) -> dict[str, object]:
    view = _core(request).sla.get_status(target_type, target_id)
    if view is None:
        raise HTTPException(status_code=404, detail="No SLA for this target")
    return view


@router.post("/sla/instances/{instance_id}/pause")
def pause_sla(request: Request, instance_id: str, body: SlaPauseRequest) -> SlaInstance:
    return _core(request).sla.pause(instance_id, body.reason)


@router.post("/sla/instances/{instance_id}/resume")
def resume_sla(request: Request, instance_id: str) -> SlaInstance:
    return _core(request).sla.resume(instance_id)


@router.post("/sla/instances/{instance_id}/met")
def mark_sla_met(request: Request, instance_id: str, body: SlaMetRequest) -> SlaInstance:
    return _core(request).sla.mark_met(instance_id, body.which)


@router.get("/sla/instances/{instance_id}/events")
def sla_events(request: Request, instance_id: str) -> list[SlaEvent]:
    return _core(request).sla.events(instance_id)


@router.get("/workspaces/{workspace_id}/sla-dashboard")
def sla_dashboard(request: Request, workspace_id: str) -> dict[str, int]:
    return _core(request).sla.dashboard(workspace_id)


# Tasks


@router.get("/tasks")
def list_tasks(
    request: Request,
    workspace_id: str | None = None,
    status: TaskStatus | None = None,
    assignee_id: str | None = None,
    process_instance_id: str | None = None,
) -> list[TaskInstance]:
    task_filter = TaskFilter(
        workspace_id=workspace_id,
        status=status,
        assignee_id=assignee_id,
        process_instance_id=process_instance_id,
    )
    return _core(request).tasks.list_tasks(task_filter)


@router.post("/tasks/batch-claim")
def batch_claim(
    request: Request, body: BatchClaimRequest, actor_id: ActorId
) -> list[dict[str, object]]:
    core = _core(request)
    results = core.tasks.batch_claim(body.task_ids, actor_id)
    return [r.to_json() for r in results]


@router.get("/tasks/{task_id}")
def get_task(request: Request, task_id: str) -> TaskInstance:
    return _core(request).tasks.get(task_id)


@router.post("/tasks/{task_id}/claim")
def claim_task(request: Request, task_id: str, actor_id: ActorId) -> TaskInstance:
    return _core(request).claim_task(task_id, actor_id)


@router.post("/tasks/{task_id}/unclaim")
def unclaim_task(request: Request, task_id: str, actor_id: ActorId) -> TaskInstance:
    return _core(request).tasks.unclaim(task_id, actor_id)


@router.post("/tasks/{task_id}/delegate")
def delegate_task(
    request: Request, task_id: str, body: DelegateRequest, actor_id: ActorId
) -> TaskInstance:
    return _core(request).tasks.delegate(task_id, actor_id, body.to_user_id)


@router.post("/tasks/{task_id}/complete")
def complete_task(
    request: Request, task_id: str, body: CompleteRequest, actor_id: ActorId
) -> TaskInstance:
    return _core(request).complete_task(task_id, actor_id, body.form_data)


@router.post("/tasks/{task_id}/comments")
def comment_task(
    request: Request, task_id: str, body: CommentRequest, actor_id: ActorId
) -> TaskInstance:
    return _core(request).tasks.add_comment(task_id, actor_id, body.content)


@router.get("/workspaces/{workspace_id}/inbox")
def inbox(request: Request, workspace_id: str, actor_id: ActorId) -> list[TaskInstance]:
    return _core(request).tasks.inbox(actor_id, workspace_id)


@router.get("/workspaces/{workspace_id}/task-statistics")
def task_statistics(request: Request, workspace_id: str) -> dict[str, object]:
    return _core(request).tasks.statistics(workspace_id)


# Decisions


@router.put("/decision-tables")
def save_decision_table(request: Request, body: DecisionTable) -> DecisionTable:
    return _core(request).save_decision_table(body)


@router.post("/decision-tables/validate")
def validate_decision_table(body: DecisionTable) -> dict[str, object]:
    problems = validate_table(body)
    return {"valid": not problems, "errors": problems}


@router.get("/decision-tables/{table_id}")
def get_decision_table(request: Request, table_id: str) -> DecisionTable:
    return _core(request).decision_tables.require(table_id)


@router.post("/decision-tables/{table_id}/evaluate")
def evaluate_decision_table(
    request: Request, table_id: str, body: EvaluateRequest
) -> dict[str, object]:
    return _core(request).evaluate_decision(table_id, body.input).to_json()


# Notifications


@router.get("/workspaces/{workspace_id}/notifications")
def poll_notifications(
    request: Request,
    workspace_id: str,
    after: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
) -> list[dict[str, object]]:
    messages = _core(request).notifier.poll(workspace_id, after=after, limit=limit)
    return [m.to_json() for m in messages]
