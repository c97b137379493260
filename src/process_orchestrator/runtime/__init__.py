from __future__ import annotations

from process_orchestrator.runtime.client import HttpProcessRuntime
from process_orchestrator.runtime.port import (
    InstanceCompleted,
    InstanceTerminated,
    ProcessRuntime,
    ProcessRuntimeError,
    RuntimeEvent,
    RuntimeRejectedError,
    RuntimeTimeoutError,
    RuntimeUnavailableError,
    TaskCreated,
    runtime_event_from_json,
)

__all__ = [
    "HttpProcessRuntime",
    "InstanceCompleted",
    "InstanceTerminated",
    "ProcessRuntime",
    "ProcessRuntimeError",
    "RuntimeEvent",
    "RuntimeRejectedError",
    "RuntimeTimeoutError",
    "RuntimeUnavailableError",
    "TaskCreated",
    "runtime_event_from_json",
]
