"""Pydantic request models for the REST server."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from process_orchestrator.sla import ClockName, SlaTargetType
from process_orchestrator.triggers import TriggerType


class TriggerCreateRequest(BaseModel):
    workspace_id: str
    process_definition_id: str
    type: TriggerType
    name: str = ""
    conditions: dict[str, Any] = Field(default_factory=dict)
    variable_mappings: dict[str, Any] = Field(default_factory=dict)
    is_active: bool = True


class TriggerUpdateRequest(BaseModel):
    name: str | None = None
    process_definition_id: str | None = None
    conditions: dict[str, Any] | None = None
    variable_mappings: dict[str, Any] | None = None


class ToggleRequest(BaseModel):
    is_active: bool | None = None


class DomainEventRequest(BaseModel):
    type: str
    workspace_id: str
    entity_id: str | None = None
    payload: dict[str, Any] = Field(default_factory=dict)
    causation: dict[str, Any] | None = None
    process_instance_id: str | None = None
    process_instance_key: str | None = None


class ProcessDefinitionRequest(BaseModel):
    workspace_id: str
    name: str
    bpmn_xml: str
    id: str | None = None
    deploy: bool = False


class StartProcessRequest(BaseModel):
    variables: dict[str, Any] = Field(default_factory=dict)
    business_key: str | None = None
    bound_entity_id: str | None = None
    idempotency_key: str | None = None


class SlaStartRequest(BaseModel):
    workspace_id: str
    target_type: SlaTargetType
    target_id: str
    definition_id: str | None = None
    context: dict[str, Any] = Field(default_factory=dict)


class SlaPauseRequest(BaseModel):
    reason: str = ""


class SlaMetRequest(BaseModel):
    which: ClockName


class DelegateRequest(BaseModel):
    to_user_id: str


class CompleteRequest(BaseModel):
    form_data: dict[str, Any] = Field(default_factory=dict)


class CommentRequest(BaseModel):
    content: str = Field(min_length=1)


class BatchClaimRequest(BaseModel):
    task_ids: list[str] = Field(min_length=1)


class EvaluateRequest(BaseModel):
    input: dict[str, Any] = Field(default_factory=dict)
