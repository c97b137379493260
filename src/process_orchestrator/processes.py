"""Process definitions and the instances this core started in the runtime.

The registry is the only code that calls ``deploy`` and ``start_instance``. It owns the
idempotency rule for starts: at most one :class:`ProcessInstanceRef` exists per
idempotency key, and a key that was already used never reaches the runtime again.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import Field

from process_orchestrator.errors import NotFoundError, ValidationFailed
from process_orchestrator.runtime.port import ProcessRuntime
from process_orchestrator.store import VersionedRecord, VersionedStore, utc_now

logger = logging.getLogger(__name__)


class ProcessInstanceStatus(str, Enum):
    STARTING = "starting"
    ACTIVE = "active"
    COMPLETED = "completed"
    TERMINATED = "terminated"
    INCIDENT = "incident"


TERMINAL_INSTANCE_STATUSES = {ProcessInstanceStatus.COMPLETED, ProcessInstanceStatus.TERMINATED}


class ProcessDefinitionRecord(VersionedRecord):
    workspace_id: str
    name: str
    bpmn_xml: str = ""
    deployed_key: str | None = None
    deployed_at: datetime | None = None


class ProcessInstanceRef(VersionedRecord):
    workspace_id: str
    process_definition_id: str
    process_definition_key: str
    process_instance_key: str | None = None
    business_key: str | None = None
    bound_entity_id: str | None = None
    idempotency_key: str | None = None
    variables: dict[str, Any] = Field(default_factory=dict)
    status: ProcessInstanceStatus = ProcessInstanceStatus.STARTING
    started_at: datetime
    ended_at: datetime | None = None


class DefinitionNotDeployedError(ValidationFailed):
    def __init__(self, definition_id: str) -> None:
        super().__init__(f"Process definition {definition_id} has not been deployed")
        self.definition_id = definition_id


class ProcessInstanceRegistry:
    def __init__(
        self,
        *,
        definitions: VersionedStore[ProcessDefinitionRecord],
        instances: VersionedStore[ProcessInstanceRef],
        runtime: ProcessRuntime,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._definitions = definitions
        self._instances = instances
        self._runtime = runtime
        self._clock = clock

    # Definitions

    def save_definition(
        self, *, workspace_id: str, name: str, bpmn_xml: str, definition_id: str | None = None
    ) -> ProcessDefinitionRecord:
        if not bpmn_xml.strip():
            raise ValidationFailed("bpmn_xml must not be empty")

        if definition_id is not None and self._definitions.get(definition_id) is not None:
            return self._definitions.update(
                definition_id,
                lambda d: d.model_copy(
                    update={"name": name, "bpmn_xml": bpmn_xml, "deployed_key": None}
                ),
            )
        record = ProcessDefinitionRecord(
            id=definition_id or uuid.uuid4().hex,
            workspace_id=workspace_id,
            name=name,
            bpmn_xml=bpmn_xml,
        )
        return self._definitions.insert(record)

    def get_definition(self, definition_id: str) -> ProcessDefinitionRecord:
        return self._definitions.require(definition_id)

    def list_definitions(self, workspace_id: str) -> list[ProcessDefinitionRecord]:
        return self._definitions.find(lambda d: d.workspace_id == workspace_id)

    def deploy(self, definition_id: str) -> ProcessDefinitionRecord:
        definition = self._definitions.require(definition_id)
        deployed_key = self._runtime.deploy(definition.bpmn_xml, f"{definition.id}.bpmn")
        deployed_at = self._clock()
        updated = self._definitions.update(
            definition_id,
            lambda d: d.model_copy(
                update={"deployed_key": deployed_key, "deployed_at": deployed_at}
            ),
        )
        logger.info(
            "Process definition deployed",
            extra={"definition_id": definition_id, "deployed_key": deployed_key},
        )
        return updated

    # Instances

    def start(
        self,
        *,
        definition_id: str,
        variables: Mapping[str, Any],
        business_key: str | None = None,
        bound_entity_id: str | None = None,
        idempotency_key: str | None = None,
    ) -> tuple[ProcessInstanceRef, bool]:
        """Start an instance; returns ``(ref, started)``.

        With an idempotency key the ref is reserved (status ``starting``) before the
        runtime is called. A second call with the same key returns the existing ref and
        ``started=False`` even when the first caller crashed after the runtime accepted
        the start. A reservation whose runtime call failed is removed again so the key
        can be retried.
        """

        definition = self._definitions.require(definition_id)
        if not definition.deployed_key:
            raise DefinitionNotDeployedError(definition_id)

        reservation = ProcessInstanceRef(
            id=uuid.uuid4().hex,
            workspace_id=definition.workspace_id,
            process_definition_id=definition.id,
            process_definition_key=definition.deployed_key,
            business_key=business_key,
            bound_entity_id=bound_entity_id,
            idempotency_key=idempotency_key,
            variables=dict(variables),
            started_at=self._clock(),
        )
        if idempotency_key:
            ref, inserted = self._instances.insert_unless(
                reservation, lambda r: r.idempotency_key == idempotency_key
            )
            if not inserted:
                logger.info(
                    "Start skipped; idempotency key already used",
                    extra={"idempotency_key": idempotency_key, "instance_id": ref.id},
                )
                return ref, False
        else:
            ref = self._instances.insert(reservation)

        try:
            instance_key = self._runtime.start_instance(
                definition.deployed_key, business_key, variables, idempotency_key
            )
        except Exception:
            self._instances.delete(ref.id)
            raise

        started = self._instances.update(
            ref.id,
            lambda r: r.model_copy(
                update={
                    "process_instance_key": instance_key,
                    "status": ProcessInstanceStatus.ACTIVE,
                }
            ),
        )
        logger.info(
            "Process instance started",
            extra={
                "definition_id": definition_id,
                "process_instance_key": instance_key,
                "idempotency_key": idempotency_key,
            },
        )
        return started, True

    def get(self, instance_id: str) -> ProcessInstanceRef:
        return self._instances.require(instance_id)

    def find_by_instance_key(self, process_instance_key: str) -> ProcessInstanceRef | None:
        matches = self._instances.find(lambda r: r.process_instance_key == process_instance_key)
        return matches[0] if matches else None

    def list_instances(self, workspace_id: str) -> list[ProcessInstanceRef]:
        return self._instances.find(lambda r: r.workspace_id == workspace_id)

    def _finish(
        self, process_instance_key: str, status: ProcessInstanceStatus
    ) -> ProcessInstanceRef:
        ref = self.find_by_instance_key(process_instance_key)
        if ref is None:
            raise NotFoundError("ProcessInstanceRef", process_instance_key)
        ended_at = self._clock()

        def mutate(current: ProcessInstanceRef) -> ProcessInstanceRef | None:
            if current.status in TERMINAL_INSTANCE_STATUSES:
                return None
            return current.model_copy(update={"status": status, "ended_at": ended_at})

        return self._instances.update(ref.id, mutate)

    def mark_completed(self, process_instance_key: str) -> ProcessInstanceRef:
        return self._finish(process_instance_key, ProcessInstanceStatus.COMPLETED)

    def mark_terminated(self, process_instance_key: str) -> ProcessInstanceRef:
        return self._finish(process_instance_key, ProcessInstanceStatus.TERMINATED)

    def mark_incident(self, process_instance_key: str) -> ProcessInstanceRef:
        ref = self.find_by_instance_key(process_instance_key)
        if ref is None:
            raise NotFoundError("ProcessInstanceRef", process_instance_key)

        def mutate(current: ProcessInstanceRef) -> ProcessInstanceRef | None:
            if current.status is not ProcessInstanceStatus.ACTIVE:
                return None
            return current.model_copy(update={"status": ProcessInstanceStatus.INCIDENT})

        return self._instances.update(ref.id, mutate)
