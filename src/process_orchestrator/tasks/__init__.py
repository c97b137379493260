from __future__ import annotations

from process_orchestrator.tasks.forms import FormValidationError, validate_form
from process_orchestrator.tasks.manager import (
    AlreadyClaimedError,
    BatchClaimResult,
    TaskFilter,
    TaskLifecycleManager,
    TaskPermissionError,
)
from process_orchestrator.tasks.models import (
    HistoryEntry,
    HistoryType,
    TaskInstance,
    TaskStateError,
    TaskStatus,
)

__all__ = [
    "AlreadyClaimedError",
    "BatchClaimResult",
    "FormValidationError",
    "HistoryEntry",
    "HistoryType",
    "TaskFilter",
    "TaskInstance",
    "TaskLifecycleManager",
    "TaskPermissionError",
    "TaskStateError",
    "TaskStatus",
    "validate_form",
]
