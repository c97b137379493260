from __future__ import annotations

import uuid
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from process_orchestrator.store import utc_now

CAUSATION_VARIABLE = "_causation"


@dataclass(frozen=True, slots=True)
class CausationChain:
    """Triggers that (transitively) caused an event, oldest first.

    Threaded through events and process variables explicitly so that cycle detection
    needs no shared state.
    """

    trigger_ids: tuple[str, ...] = ()
    depth: int = 0

    def contains(self, trigger_id: str) -> bool:
        return trigger_id in self.trigger_ids

    def extend(self, trigger_id: str) -> CausationChain:
        return CausationChain(trigger_ids=(*self.trigger_ids, trigger_id), depth=self.depth + 1)

    def merge(self, other: CausationChain) -> CausationChain:
        extra = tuple(i for i in other.trigger_ids if i not in self.trigger_ids)
        return CausationChain(
            trigger_ids=(*self.trigger_ids, *extra), depth=max(self.depth, other.depth)
        )

    def to_json(self) -> dict[str, object]:
        return {"trigger_ids": list(self.trigger_ids), "depth": self.depth}

    @staticmethod
    def from_json(obj: object) -> CausationChain:
        if not isinstance(obj, Mapping):
            return CausationChain()
        ids_raw = obj.get("trigger_ids") or obj.get("triggerIds") or []
        ids = tuple(str(i) for i in ids_raw) if isinstance(ids_raw, (list, tuple)) else ()
        depth_raw = obj.get("depth")
        depth = depth_raw if isinstance(depth_raw, int) else len(ids)
        return CausationChain(trigger_ids=ids, depth=depth)

    @staticmethod
    def from_variables(variables: Mapping[str, Any]) -> CausationChain:
        return CausationChain.from_json(variables.get(CAUSATION_VARIABLE))


# Payload keys accepted for the two sides of a status change.
_FROM_KEYS = ("fromStatus", "from", "oldStatus")
_TO_KEYS = ("toStatus", "to", "newStatus")


@dataclass(frozen=True, slots=True)
class DomainEvent:
    """A fact about an entity that triggers may react to.

    ``type`` uses the trigger type names (``status_changed``, ``entity_created``, ...).
    """

    type: str
    workspace_id: str
    payload: dict[str, Any] = field(default_factory=dict)
    entity_id: str | None = None
    actor_id: str | None = None
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    occurred_at: datetime = field(default_factory=utc_now)
    causation: CausationChain = field(default_factory=CausationChain)

    def with_causation(self, causation: CausationChain) -> DomainEvent:
        return replace(self, causation=causation)

    def context(self) -> dict[str, Any]:
        """Flat view used for condition matching and variable mapping."""

        ctx: dict[str, Any] = dict(self.payload)
        ctx.setdefault("entityId", self.entity_id)
        ctx.setdefault("workspaceId", self.workspace_id)
        ctx.setdefault("triggerType", self.type)
        ctx.setdefault("eventId", self.id)
        if self.actor_id is not None:
            ctx.setdefault("userId", self.actor_id)
        for key in _FROM_KEYS:
            if key in self.payload:
                ctx.setdefault("oldStatus", self.payload[key])
                break
        for key in _TO_KEYS:
            if key in self.payload:
                ctx.setdefault("newStatus", self.payload[key])
                break
        return ctx

    def to_json(self) -> dict[str, object]:
        return {
            "id": self.id,
            "type": self.type,
            "workspace_id": self.workspace_id,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "payload": self.payload,
            "occurred_at": self.occurred_at.isoformat(),
            "causation": self.causation.to_json(),
        }
