from __future__ import annotations

from process_orchestrator.sla.engine import SlaClockEngine, TickReport, instance_view
from process_orchestrator.sla.models import (
    ClockName,
    ClockStatus,
    InvalidSlaDefinitionError,
    SlaDefinition,
    SlaEvent,
    SlaEventType,
    SlaInstance,
    SlaTargetType,
    SubClock,
)

__all__ = [
    "ClockName",
    "ClockStatus",
    "InvalidSlaDefinitionError",
    "SlaClockEngine",
    "SlaDefinition",
    "SlaEvent",
    "SlaEventType",
    "SlaInstance",
    "SlaTargetType",
    "SubClock",
    "TickReport",
    "instance_view",
]
