"""Matching domain events, cron ticks and webhooks against stored triggers.

Firing a trigger starts a process instance through :class:`ProcessInstanceRegistry`.
``trigger_count`` and ``last_triggered_at`` are written only after the runtime
acknowledged the start. Every attempt is logged as a :class:`TriggerExecution`.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from process_orchestrator.errors import NotFoundError, ValidationFailed
from process_orchestrator.processes import ProcessInstanceRegistry
from process_orchestrator.store import VersionedStore, utc_now
from process_orchestrator.triggers import cron
from process_orchestrator.triggers.conditions import (
    conditions_match,
    map_variables,
    validate_conditions,
)
from process_orchestrator.triggers.events import CAUSATION_VARIABLE, CausationChain, DomainEvent
from process_orchestrator.triggers.models import (
    ExecutionStatus,
    InvalidTriggerError,
    REDACTED,
    SECRET_CONDITION_KEYS,
    TriggerDefinition,
    TriggerExecution,
    TriggerType,
)
from process_orchestrator.triggers.webhook import WebhookAuthError, verify_webhook

logger = logging.getLogger(__name__)

_IDEMPOTENCY_HEADERS = ("idempotency-key", "x-webhook-delivery")


class TriggerEvaluator:
    def __init__(
        self,
        *,
        triggers: VersionedStore[TriggerDefinition],
        executions: VersionedStore[TriggerExecution],
        processes: ProcessInstanceRegistry,
        max_chain_depth: int = 5,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._triggers = triggers
        self._executions = executions
        self._processes = processes
        self._max_chain_depth = max_chain_depth
        self._clock = clock

    # CRUD

    def create(
        self,
        *,
        workspace_id: str,
        process_definition_id: str,
        type: TriggerType,
        name: str = "",
        conditions: Mapping[str, Any] | None = None,
        variable_mappings: Mapping[str, Any] | None = None,
        is_active: bool = True,
    ) -> TriggerDefinition:
        conditions = dict(conditions or {})
        errors = validate_conditions(type, conditions)
        if errors:
            raise InvalidTriggerError(errors)
        trigger = TriggerDefinition(
            id=uuid.uuid4().hex,
            workspace_id=workspace_id,
            name=name,
            process_definition_id=process_definition_id,
            type=type,
            conditions=conditions,
            variable_mappings=dict(variable_mappings or {}),
            is_active=is_active,
            created_at=self._clock(),
        )
        stored = self._triggers.insert(trigger)
        logger.info(
            "Trigger created",
            extra={"trigger_id": stored.id, "type": type.value, "workspace_id": workspace_id},
        )
        return stored

    def update(
        self,
        trigger_id: str,
        *,
        name: str | None = None,
        process_definition_id: str | None = None,
        conditions: Mapping[str, Any] | None = None,
        variable_mappings: Mapping[str, Any] | None = None,
    ) -> TriggerDefinition:
        def mutate(current: TriggerDefinition) -> TriggerDefinition:
            changes: dict[str, Any] = {}
            if name is not None:
                changes["name"] = name
            if process_definition_id is not None:
                changes["process_definition_id"] = process_definition_id
            if conditions is not None:
                # A redacted secret sent back unchanged keeps the stored one.
                merged = {
                    k: current.conditions.get(k)
                    if k in SECRET_CONDITION_KEYS and v == REDACTED
                    else v
                    for k, v in conditions.items()
                }
                errors = validate_conditions(current.type, merged)
                if errors:
                    raise InvalidTriggerError(errors)
                changes["conditions"] = merged
            if variable_mappings is not None:
                changes["variable_mappings"] = dict(variable_mappings)
            return current.model_copy(update=changes)

        return self._triggers.update(trigger_id, mutate)

    def toggle(self, trigger_id: str, is_active: bool | None = None) -> TriggerDefinition:
        def mutate(current: TriggerDefinition) -> TriggerDefinition | None:
            target = (not current.is_active) if is_active is None else is_active
            if target == current.is_active:
                return None
            return current.model_copy(update={"is_active": target})

        return self._triggers.update(trigger_id, mutate)

    def delete(self, trigger_id: str) -> None:
        if not self._triggers.delete(trigger_id):
            raise NotFoundError("TriggerDefinition", trigger_id)

    def get(self, trigger_id: str) -> TriggerDefinition:
        return self._triggers.require(trigger_id)

    def list(self, workspace_id: str) -> list[TriggerDefinition]:
        return sorted(
            self._triggers.find(lambda t: t.workspace_id == workspace_id),
            key=lambda t: t.created_at,
        )

    def executions(self, trigger_id: str, limit: int = 50) -> list[TriggerExecution]:
        found = self._executions.find(lambda e: e.trigger_id == trigger_id)
        return sorted(found, key=lambda e: e.executed_at, reverse=True)[:limit]

    def recent_executions(self, workspace_id: str, limit: int = 100) -> list[TriggerExecution]:
        found = self._executions.find(lambda e: e.workspace_id == workspace_id)
        return sorted(found, key=lambda e: e.executed_at, reverse=True)[:limit]

    # Firing

    def _record(
        self,
        trigger: TriggerDefinition,
        status: ExecutionStatus,
        *,
        event_id: str | None,
        idempotency_key: str | None,
        process_instance_id: str | None = None,
        error: str | None = None,
    ) -> TriggerExecution:
        return self._executions.insert(
            TriggerExecution(
                id=uuid.uuid4().hex,
                trigger_id=trigger.id,
                workspace_id=trigger.workspace_id,
                event_id=event_id,
                status=status,
                process_instance_id=process_instance_id,
                idempotency_key=idempotency_key,
                error=error,
                executed_at=self._clock(),
            )
        )

    def _fire(
        self,
        trigger: TriggerDefinition,
        context: Mapping[str, Any],
        *,
        causation: CausationChain,
        event_id: str | None,
        idempotency_key: str | None,
        entity_id: str | None,
        scheduled_at: datetime | None = None,
    ) -> TriggerExecution | None:
        """Start the trigger's process; returns ``None`` when the key was already used.

        ``scheduled_at`` is the cron minute being fired. The stored ``last_evaluated_at``
        marker only ever moves forward to it, including when the start was deduplicated.
        """

        variables = map_variables(trigger.variable_mappings, context)
        variables[CAUSATION_VARIABLE] = causation.extend(trigger.id).to_json()

        try:
            ref, started = self._processes.start(
                definition_id=trigger.process_definition_id,
                variables=variables,
                business_key=entity_id,
                bound_entity_id=entity_id,
                idempotency_key=idempotency_key,
            )
        except Exception as e:
            logger.exception(
                "Failed to fire trigger",
                extra={"trigger_id": trigger.id, "idempotency_key": idempotency_key},
            )
            return self._record(
                trigger,
                ExecutionStatus.FAILED,
                event_id=event_id,
                idempotency_key=idempotency_key,
                error=str(e),
            )

        now = self._clock()

        def marker_update(current: TriggerDefinition) -> dict[str, Any]:
            if scheduled_at is None:
                return {}
            if current.last_evaluated_at is not None and current.last_evaluated_at >= scheduled_at:
                return {}
            return {"last_evaluated_at": scheduled_at}

        def count_fire(current: TriggerDefinition) -> TriggerDefinition:
            return current.model_copy(
                update={
                    "trigger_count": current.trigger_count + 1,
                    "last_triggered_at": now,
                    **marker_update(current),
                }
            )

        def advance_marker(current: TriggerDefinition) -> TriggerDefinition | None:
            changes = marker_update(current)
            return current.model_copy(update=changes) if changes else None

        if not started:
            if scheduled_at is not None:
                self._triggers.update(trigger.id, advance_marker)
            logger.info(
                "Trigger start deduplicated by idempotency key",
                extra={"trigger_id": trigger.id, "idempotency_key": idempotency_key},
            )
            return None

        self._triggers.update(trigger.id, count_fire)
        logger.info(
            "Trigger fired",
            extra={"trigger_id": trigger.id, "process_instance_id": ref.id, "event_id": event_id},
        )
        return self._record(
            trigger,
            ExecutionStatus.SUCCEEDED,
            event_id=event_id,
            idempotency_key=idempotency_key,
            process_instance_id=ref.id,
        )

    def on_domain_event(self, event: DomainEvent) -> list[TriggerExecution]:
        if event.causation.depth >= self._max_chain_depth:
            logger.warning(
                "Dropping event; trigger chain too deep",
                extra={"event_id": event.id, "depth": event.causation.depth},
            )
            return []

        context = event.context()
        results: list[TriggerExecution] = []
        candidates = self._triggers.find(
            lambda t: t.is_active
            and t.workspace_id == event.workspace_id
            and t.type.value == event.type
        )
        for trigger in candidates:
            if event.causation.contains(trigger.id):
                logger.info(
                    "Skipping trigger already in causation chain",
                    extra={"trigger_id": trigger.id, "event_id": event.id},
                )
                continue
            try:
                if not conditions_match(trigger.conditions, context):
                    continue
            except ValueError:
                logger.warning(
                    "Trigger conditions could not be evaluated",
                    extra={"trigger_id": trigger.id, "event_id": event.id},
                )
                continue

            execution = self._fire(
                trigger,
                context,
                causation=event.causation,
                event_id=event.id,
                idempotency_key=f"event:{trigger.id}:{event.id}",
                entity_id=event.entity_id,
            )
            if execution is not None:
                results.append(execution)
        return results

    # Webhooks

    def handle_webhook(
        self, trigger_id: str, body: bytes, headers: Mapping[str, str]
    ) -> TriggerExecution | None:
        trigger = self._triggers.get(trigger_id)
        if trigger is None or trigger.type is not TriggerType.WEBHOOK or not trigger.is_active:
            raise NotFoundError("WebhookTrigger", trigger_id)

        try:
            verify_webhook(str(trigger.conditions.get("secret") or ""), body, headers)
        except WebhookAuthError as e:
            logger.warning("Webhook rejected", extra={"trigger_id": trigger.id, "reason": str(e)})
            self._record(
                trigger, ExecutionStatus.REJECTED, event_id=None, idempotency_key=None, error=str(e)
            )
            raise

        try:
            payload = json.loads(body) if body.strip() else {}
        except json.JSONDecodeError as e:
            raise ValidationFailed(f"Webhook body is not valid JSON: {e}") from e
        if not isinstance(payload, dict):
            payload = {"body": payload}

        lowered = {k.lower(): v for k, v in headers.items()}
        delivery_id = next((lowered[h] for h in _IDEMPOTENCY_HEADERS if lowered.get(h)), None)

        event = DomainEvent(
            type=TriggerType.WEBHOOK.value,
            workspace_id=trigger.workspace_id,
            payload=payload,
            entity_id=str(payload["entityId"]) if payload.get("entityId") else None,
        )
        context = event.context()
        if not conditions_match(trigger.conditions, context):
            logger.info("Webhook conditions did not match", extra={"trigger_id": trigger.id})
            return None

        return self._fire(
            trigger,
            context,
            causation=event.causation,
            event_id=event.id,
            idempotency_key=f"webhook:{trigger.id}:{delivery_id}" if delivery_id else None,
            entity_id=event.entity_id,
        )

    # Cron

    def cron_tick(self, workspace_id: str | None = None) -> list[TriggerExecution]:
        now = self._clock()
        results: list[TriggerExecution] = []
        for trigger in self._triggers.find(
            lambda t: t.is_active
            and t.type is TriggerType.CRON
            and (workspace_id is None or t.workspace_id == workspace_id)
        ):
            try:
                execution = self._tick_cron_trigger(trigger, now)
            except Exception:
                logger.exception("Cron evaluation failed", extra={"trigger_id": trigger.id})
                continue
            if execution is not None:
                results.append(execution)
        return results

    def _tick_cron_trigger(
        self, trigger: TriggerDefinition, now: datetime
    ) -> TriggerExecution | None:
        expression = str(trigger.conditions.get("expression") or "")
        timezone = trigger.conditions.get("timezone")
        after = trigger.last_evaluated_at or trigger.created_at
        due = cron.due_run(expression, timezone, after=after, now=now)
        if due is None:
            return None
        if due.skipped:
            logger.warning(
                "Skipping missed cron runs",
                extra={"trigger_id": trigger.id, "skipped": due.skipped},
            )

        context = {
            "workspaceId": trigger.workspace_id,
            "triggerType": TriggerType.CRON.value,
            "scheduledAt": due.scheduled_at.isoformat(),
        }
        execution = self._fire(
            trigger,
            context,
            causation=CausationChain(),
            event_id=None,
            idempotency_key=cron.idempotency_key(trigger.id, due.scheduled_at),
            entity_id=None,
            scheduled_at=due.scheduled_at,
        )
        return execution

    def cron_status(self, workspace_id: str) -> list[dict[str, object]]:
        now = self._clock()
        out: list[dict[str, object]] = []
        for trigger in self._triggers.find(
            lambda t: t.workspace_id == workspace_id and t.type is TriggerType.CRON
        ):
            expression = str(trigger.conditions.get("expression") or "")
            timezone = trigger.conditions.get("timezone")
            out.append(
                {
                    "trigger_id": trigger.id,
                    "name": trigger.name,
                    "expression": expression,
                    "timezone": timezone or "UTC",
                    "is_active": trigger.is_active,
                    "next_run": cron.next_run(expression, timezone, after=now).isoformat()
                    if trigger.is_active
                    else None,
                    "last_evaluated_at": trigger.last_evaluated_at.isoformat()
                    if trigger.last_evaluated_at
                    else None,
                }
            )
        return out

    def workspaces_with_cron_triggers(self) -> list[str]:
        return sorted(
            {
                t.workspace_id
                for t in self._triggers.find(
                    lambda t: t.is_active and t.type is TriggerType.CRON
                )
            }
        )
