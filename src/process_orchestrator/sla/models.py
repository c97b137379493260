from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field

from process_orchestrator.errors import ValidationFailed
from process_orchestrator.store import VersionedRecord


class SlaTargetType(str, Enum):
    ENTITY = "entity"
    TASK = "task"
    PROCESS = "process"


class ClockName(str, Enum):
    RESPONSE = "response"
    RESOLUTION = "resolution"


class ClockStatus(str, Enum):
    RUNNING = "running"
    MET = "met"
    BREACHED = "breached"


class SlaEventType(str, Enum):
    CREATED = "created"
    PAUSED = "paused"
    RESUMED = "resumed"
    MET = "met"
    WARNING = "warning"
    BREACHED = "breached"
    CLOSED = "closed"


class InvalidSlaDefinitionError(ValidationFailed):
    pass


class SlaDefinition(VersionedRecord):
    workspace_id: str
    name: str = ""
    target_type: SlaTargetType = SlaTargetType.ENTITY
    response_target_minutes: int | None = None
    resolution_target_minutes: int | None = None
    warning_threshold_percent: float = 80.0
    conditions: dict[str, Any] = Field(default_factory=dict)
    priority: int = 0
    is_active: bool = True

    def problems(self) -> list[str]:
        errors: list[str] = []
        if self.response_target_minutes is None and self.resolution_target_minutes is None:
            errors.append("At least one of response or resolution target is required")
        for label, value in (
            ("response", self.response_target_minutes),
            ("resolution", self.resolution_target_minutes),
        ):
            if value is not None and value <= 0:
                errors.append(f"{label} target must be positive")
        if not 0 < self.warning_threshold_percent <= 100:
            errors.append("warning threshold must be in (0, 100]")
        return errors

    def target_minutes(self, which: ClockName) -> int | None:
        if which is ClockName.RESPONSE:
            return self.response_target_minutes
        return self.resolution_target_minutes


class SubClock(BaseModel):
    status: ClockStatus = ClockStatus.RUNNING
    warning_fired: bool = False
    due_at: datetime
    target_minutes: int
    completed_at: datetime | None = None
    # Elapsed working time when the clock stopped; views of stopped clocks use this.
    elapsed_ms: int | None = None

    @property
    def is_stopped(self) -> bool:
        return self.completed_at is not None


class SlaInstance(VersionedRecord):
    workspace_id: str
    definition_id: str
    target_type: SlaTargetType
    target_id: str
    warning_threshold_percent: float = 80.0
    started_at: datetime
    response: SubClock | None = None
    resolution: SubClock | None = None
    paused_at: datetime | None = None
    pause_reason: str | None = None
    accumulated_paused_ms: int = 0
    closed_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.closed_at is None

    @property
    def is_paused(self) -> bool:
        return self.paused_at is not None

    def clocks(self) -> list[tuple[ClockName, SubClock]]:
        out: list[tuple[ClockName, SubClock]] = []
        if self.response is not None:
            out.append((ClockName.RESPONSE, self.response))
        if self.resolution is not None:
            out.append((ClockName.RESOLUTION, self.resolution))
        return out

    def clock(self, which: ClockName) -> SubClock | None:
        return self.response if which is ClockName.RESPONSE else self.resolution


class SlaEvent(VersionedRecord):
    instance_id: str
    workspace_id: str
    type: SlaEventType
    timestamp: datetime
    data: dict[str, Any] = Field(default_factory=dict)
