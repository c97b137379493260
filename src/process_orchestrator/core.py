"""Wiring of the four components plus the glue between them.

``OrchestrationCore`` owns the stores and hands each component only what it needs. It is
also where runtime signals and domain events are dispatched, and where task and entity
transitions feed their SLA clocks.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from datetime import datetime
from typing import Any

from process_orchestrator.config import CoreSettings
from process_orchestrator.decisions import DecisionResult, DecisionTable, evaluate, validate_table
from process_orchestrator.errors import NotFoundError, ValidationFailed
from process_orchestrator.logging import log_context
from process_orchestrator.notifications import NotificationHub
from process_orchestrator.processes import (
    ProcessDefinitionRecord,
    ProcessInstanceRef,
    ProcessInstanceRegistry,
)
from process_orchestrator.runtime import (
    HttpProcessRuntime,
    InstanceCompleted,
    InstanceTerminated,
    ProcessRuntime,
    RuntimeEvent,
    TaskCreated,
)
from process_orchestrator.scheduler import WorkspaceTickScheduler
from process_orchestrator.sla import (
    SlaClockEngine,
    SlaDefinition,
    SlaEvent,
    SlaInstance,
    SlaTargetType,
)
from process_orchestrator.store import VersionedStore, utc_now
from process_orchestrator.tasks import TaskInstance, TaskLifecycleManager
from process_orchestrator.triggers import (
    CausationChain,
    DomainEvent,
    TriggerDefinition,
    TriggerEvaluator,
    TriggerExecution,
    TriggerType,
)

logger = logging.getLogger(__name__)


class OrchestrationCore:
    def __init__(
        self,
        *,
        settings: CoreSettings,
        runtime: ProcessRuntime,
        notifier: NotificationHub | None = None,
        group_resolver: Callable[[str], Iterable[str]] | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.settings = settings
        self.runtime = runtime
        self.notifier = notifier or NotificationHub(
            buffer_size=settings.notification_buffer, clock=clock
        )
        self._clock = clock

        path = settings.collection_file
        privileged = settings.parsed_privileged_actors()

        self.processes = ProcessInstanceRegistry(
            definitions=VersionedStore(path("process_definitions"), ProcessDefinitionRecord),
            instances=VersionedStore(path("process_instances"), ProcessInstanceRef),
            runtime=runtime,
            clock=clock,
        )
        self.tasks = TaskLifecycleManager(
            store=VersionedStore(path("tasks"), TaskInstance),
            runtime=runtime,
            notifier=self.notifier,
            processes=self.processes,
            is_privileged=lambda actor: actor in privileged,
            group_resolver=group_resolver or (lambda _user: ()),
            clock=clock,
        )
        self.sla = SlaClockEngine(
            definitions=VersionedStore(path("sla_definitions"), SlaDefinition),
            instances=VersionedStore(path("sla_instances"), SlaInstance),
            events=VersionedStore(path("sla_events"), SlaEvent),
            notifier=self.notifier,
            clock=clock,
        )
        self.triggers = TriggerEvaluator(
            triggers=VersionedStore(path("triggers"), TriggerDefinition),
            executions=VersionedStore(path("trigger_executions"), TriggerExecution),
            processes=self.processes,
            max_chain_depth=settings.max_trigger_chain_depth,
            clock=clock,
        )
        self.decision_tables: VersionedStore[DecisionTable] = VersionedStore(
            path("decision_tables"), DecisionTable
        )
        self._sla_closing_statuses = settings.parsed_sla_closing_statuses()
        self._sla_pause_statuses = settings.parsed_sla_pause_statuses()

    @classmethod
    def from_settings(cls, settings: CoreSettings) -> OrchestrationCore:
        runtime = HttpProcessRuntime(
            base_url=settings.runtime_base_url,
            token=settings.runtime_token,
            timeout_seconds=settings.runtime_timeout_seconds,
            retry_attempts=settings.runtime_retry_attempts,
            retry_backoff_seconds=settings.runtime_retry_backoff_seconds,
        )
        return cls(settings=settings, runtime=runtime)

    def close(self) -> None:
        close = getattr(self.runtime, "close", None)
        if callable(close):
            close()

    # Runtime signals

    def handle_runtime_event(self, event: RuntimeEvent) -> None:
        if isinstance(event, TaskCreated):
            task = self.tasks.on_task_created(event)
            self.sla.start_for_target(
                task.workspace_id,
                SlaTargetType.TASK,
                task.id,
                {"priority": task.priority, "elementId": task.element_id},
            )
            return

        if isinstance(event, InstanceTerminated):
            for task in self.tasks.on_instance_terminated(event.process_instance_key, event.reason):
                self.sla.close(SlaTargetType.TASK, task.id)
            self._finish_instance(event.process_instance_key, terminated=True)
            return

        if isinstance(event, InstanceCompleted):
            self._finish_instance(event.process_instance_key, terminated=False)
            return

        raise ValidationFailed(f"Unsupported runtime event: {type(event).__name__}")

    def _finish_instance(self, process_instance_key: str, *, terminated: bool) -> None:
        try:
            if terminated:
                ref = self.processes.mark_terminated(process_instance_key)
            else:
                ref = self.processes.mark_completed(process_instance_key)
        except NotFoundError:
            logger.warning(
                "Runtime signal for unknown process instance",
                extra={"process_instance_key": process_instance_key},
            )
            return
        self.sla.close(SlaTargetType.PROCESS, ref.id)

    # Domain events

    def process_causation(
        self,
        *,
        process_instance_id: str | None = None,
        process_instance_key: str | None = None,
    ) -> CausationChain:
        """Causation chain carried by a process that reports an event."""

        if process_instance_id:
            ref = self.processes.get(process_instance_id)
        elif process_instance_key:
            found = self.processes.find_by_instance_key(process_instance_key)
            if found is None:
                raise NotFoundError("ProcessInstanceRef", process_instance_key)
            ref = found
        else:
            return CausationChain()
        return CausationChain.from_variables(ref.variables)

    def handle_domain_event(
        self,
        event: DomainEvent,
        *,
        process_instance_id: str | None = None,
        process_instance_key: str | None = None,
    ) -> list[TriggerExecution]:
        """Move entity SLA clocks for ``event``, then dispatch it to triggers.

        An event reported by a process instance inherits the causation chain stored in
        that instance's variables, so a trigger never fires again from its own process.
        """

        with log_context(
            workspace_id=event.workspace_id,
            event_id=event.id,
            process_instance_id=process_instance_id,
            process_instance_key=process_instance_key,
        ):
            chain = self.process_causation(
                process_instance_id=process_instance_id,
                process_instance_key=process_instance_key,
            )
            if chain.trigger_ids:
                event = event.with_causation(event.causation.merge(chain))
            if event.entity_id:
                self._apply_entity_sla(event, event.entity_id)
            return self.triggers.on_domain_event(event)

    def _apply_entity_sla(self, event: DomainEvent, entity_id: str) -> None:
        if event.type == TriggerType.ENTITY_CREATED.value:
            self.sla.start_for_target(
                event.workspace_id, SlaTargetType.ENTITY, entity_id, event.context()
            )
        elif event.type == TriggerType.COMMENT_ADDED.value:
            self.sla.record_response(SlaTargetType.ENTITY, entity_id)
        elif event.type == TriggerType.STATUS_CHANGED.value:
            status = str(event.context().get("newStatus") or "").strip().lower()
            if not status:
                return
            if status in self._sla_closing_statuses:
                self.sla.record_resolution(SlaTargetType.ENTITY, entity_id)
                self.sla.close(SlaTargetType.ENTITY, entity_id)
                return
            for instance in self.sla.active_for_target(SlaTargetType.ENTITY, entity_id):
                if status in self._sla_pause_statuses:
                    self.sla.pause(instance.id, f"status {status}")
                elif instance.is_paused:
                    self.sla.resume(instance.id)

    # Task operations that also move SLA clocks

    def claim_task(self, task_id: str, user_id: str) -> TaskInstance:
        task = self.tasks.claim(task_id, user_id)
        self.sla.record_response(SlaTargetType.TASK, task.id)
        return task

    def complete_task(
        self, task_id: str, actor_id: str, form_data: Mapping[str, Any]
    ) -> TaskInstance:
        task = self.tasks.complete(task_id, actor_id, form_data)
        self.sla.record_resolution(SlaTargetType.TASK, task.id)
        return task

    # Decisions

    def save_decision_table(self, table: DecisionTable) -> DecisionTable:
        problems = validate_table(table)
        if problems:
            raise ValidationFailed("Invalid decision table: " + "; ".join(problems))
        if self.decision_tables.get(table.id) is None:
            return self.decision_tables.insert(table)
        return self.decision_tables.update(
            table.id, lambda current: table.model_copy(update={"version": current.version})
        )

    def evaluate_decision(self, table_id: str, input_row: Mapping[str, Any]) -> DecisionResult:
        return evaluate(self.decision_tables.require(table_id), input_row)

    # Background work

    def build_schedulers(self) -> list[WorkspaceTickScheduler]:
        return [
            WorkspaceTickScheduler(
                name="sla",
                interval_seconds=self.settings.sla_tick_seconds,
                list_workspaces=self.sla.workspaces_with_active_instances,
                tick=self.sla.tick,
                max_workers=self.settings.tick_concurrency,
            ),
            WorkspaceTickScheduler(
                name="cron",
                interval_seconds=self.settings.cron_tick_seconds,
                list_workspaces=self.triggers.workspaces_with_cron_triggers,
                tick=self.triggers.cron_tick,
                max_workers=self.settings.tick_concurrency,
            ),
        ]
