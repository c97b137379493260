from __future__ import annotations

from process_orchestrator.triggers.evaluator import TriggerEvaluator
from process_orchestrator.triggers.events import CausationChain, DomainEvent
from process_orchestrator.triggers.models import (
    ExecutionStatus,
    InvalidTriggerError,
    TriggerDefinition,
    TriggerExecution,
    TriggerType,
)
from process_orchestrator.triggers.webhook import WebhookAuthError

__all__ = [
    "CausationChain",
    "DomainEvent",
    "ExecutionStatus",
    "InvalidTriggerError",
    "TriggerDefinition",
    "TriggerEvaluator",
    "TriggerExecution",
    "TriggerType",
    "WebhookAuthError",
]
