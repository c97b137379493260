"""SLA clocks: response and resolution deadlines attached to a target object.

Time is wall-clock time minus paused intervals::

    elapsed_ms   = now - started_at - accumulated_paused_ms
    used_percent = max(0, elapsed_ms / target_ms * 100)
    remaining_ms = target_ms - elapsed_ms

Pausing freezes ``elapsed_ms``. Resuming adds the paused interval to
``accumulated_paused_ms`` and moves every still-running ``due_at`` forward by the same
amount, so ``due_at`` always equals ``started_at + target + accumulated_paused``.

Warnings and breaches are one-shot: the flag or status change is written with a
compare-and-swap update first and the event is emitted only once that write won.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any

from process_orchestrator.errors import ValidationFailed
from process_orchestrator.notifications import SLA_BATCH_UPDATE, SLA_BREACH, SLA_WARNING, Notifier
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
from process_orchestrator.store import VersionedStore, utc_now

logger = logging.getLogger(__name__)

_MS_PER_MINUTE = 60_000


@dataclass(frozen=True, slots=True)
class TickReport:
    workspace_id: str
    processed: int
    failed: int
    warnings: int
    breaches: int

    def to_json(self) -> dict[str, object]:
        return {
            "workspace_id": self.workspace_id,
            "processed": self.processed,
            "failed": self.failed,
            "warnings": self.warnings,
            "breaches": self.breaches,
        }


def _ms(delta: timedelta) -> int:
    return int(delta.total_seconds() * 1000)


def elapsed_ms(instance: SlaInstance, now: datetime) -> int:
    """Working time consumed so far; frozen while paused and after close."""

    reference = now
    for stop in (instance.paused_at, instance.closed_at):
        if stop is not None and stop < reference:
            reference = stop
    return max(0, _ms(reference - instance.started_at) - instance.accumulated_paused_ms)


def clock_view(clock: SubClock, elapsed: int) -> dict[str, object]:
    if clock.elapsed_ms is not None:
        elapsed = clock.elapsed_ms
    target_ms = clock.target_minutes * _MS_PER_MINUTE
    used_percent = max(0.0, elapsed / target_ms * 100)
    remaining_ms = target_ms - elapsed
    return {
        "status": clock.status.value,
        "used_percent": round(used_percent, 2),
        "remaining_minutes": round(remaining_ms / _MS_PER_MINUTE, 2),
        "due_at": clock.due_at.isoformat(),
        "warning_fired": clock.warning_fired,
    }


def instance_view(instance: SlaInstance, now: datetime) -> dict[str, object]:
    elapsed = elapsed_ms(instance, now)
    view: dict[str, object] = {
        "instance_id": instance.id,
        "definition_id": instance.definition_id,
        "target_type": instance.target_type.value,
        "target_id": instance.target_id,
        "started_at": instance.started_at.isoformat(),
        "is_paused": instance.is_paused,
        "pause_reason": instance.pause_reason,
        "closed_at": instance.closed_at.isoformat() if instance.closed_at else None,
    }
    for which, clock in instance.clocks():
        view[which.value] = clock_view(clock, elapsed)
    return view


def _condition_matches(expected: Any, actual: Any) -> bool:
    if isinstance(expected, list):
        return any(_condition_matches(e, actual) for e in expected)
    if isinstance(expected, str) and isinstance(actual, str):
        return expected.casefold() == actual.casefold()
    return bool(expected == actual)


class SlaClockEngine:
    def __init__(
        self,
        *,
        definitions: VersionedStore[SlaDefinition],
        instances: VersionedStore[SlaInstance],
        events: VersionedStore[SlaEvent],
        notifier: Notifier,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._definitions = definitions
        self._instances = instances
        self._events = events
        self._notifier = notifier
        self._clock = clock

    # Definitions

    def save_definition(self, definition: SlaDefinition) -> SlaDefinition:
        problems = definition.problems()
        if problems:
            raise InvalidSlaDefinitionError("; ".join(problems))
        if self._definitions.get(definition.id) is None:
            return self._definitions.insert(definition)
        return self._definitions.update(
            definition.id,
            lambda current: definition.model_copy(update={"version": current.version}),
        )

    def list_definitions(self, workspace_id: str) -> list[SlaDefinition]:
        return self._definitions.find(lambda d: d.workspace_id == workspace_id)

    # Lifecycle

    def _record(
        self, instance: SlaInstance, type: SlaEventType, data: dict[str, Any] | None = None
    ) -> None:
        self._events.insert(
            SlaEvent(
                id=uuid.uuid4().hex,
                instance_id=instance.id,
                workspace_id=instance.workspace_id,
                type=type,
                timestamp=self._clock(),
                data=data or {},
            )
        )

    def start(self, definition_id: str, target_type: SlaTargetType, target_id: str) -> SlaInstance:
        definition = self._definitions.require(definition_id)
        if not definition.is_active:
            raise ValidationFailed(f"SLA definition {definition_id} is not active")
        now = self._clock()

        def sub_clock(which: ClockName) -> SubClock | None:
            minutes = definition.target_minutes(which)
            if minutes is None:
                return None
            return SubClock(due_at=now + timedelta(minutes=minutes), target_minutes=minutes)

        candidate = SlaInstance(
            id=uuid.uuid4().hex,
            workspace_id=definition.workspace_id,
            definition_id=definition.id,
            target_type=target_type,
            target_id=target_id,
            warning_threshold_percent=definition.warning_threshold_percent,
            started_at=now,
            response=sub_clock(ClockName.RESPONSE),
            resolution=sub_clock(ClockName.RESOLUTION),
        )
        instance, inserted = self._instances.insert_unless(
            candidate,
            lambda i: i.is_active
            and i.definition_id == definition_id
            and i.target_type is target_type
            and i.target_id == target_id,
        )
        if inserted:
            self._record(instance, SlaEventType.CREATED, {"definitionId": definition_id})
            logger.info(
                "SLA started",
                extra={
                    "instance_id": instance.id,
                    "target_type": target_type.value,
                    "target_id": target_id,
                },
            )
        return instance

    def start_for_target(
        self,
        workspace_id: str,
        target_type: SlaTargetType,
        target_id: str,
        context: Mapping[str, Any] | None = None,
    ) -> SlaInstance | None:
        """Start the highest-priority active definition whose conditions match ``context``."""

        context = context or {}
        candidates = [
            d
            for d in self._definitions.find(
                lambda d: d.workspace_id == workspace_id
                and d.is_active
                and d.target_type is target_type
            )
            if all(_condition_matches(v, context.get(k)) for k, v in d.conditions.items())
        ]
        if not candidates:
            return None
        chosen = max(candidates, key=lambda d: d.priority)
        return self.start(chosen.id, target_type, target_id)

    def pause(self, instance_id: str, reason: str = "") -> SlaInstance:
        now = self._clock()
        changed = False

        def mutate(current: SlaInstance) -> SlaInstance | None:
            nonlocal changed
            changed = False
            if current.is_paused or not current.is_active:
                return None
            changed = True
            return current.model_copy(update={"paused_at": now, "pause_reason": reason or None})

        instance = self._instances.update(instance_id, mutate)
        if changed:
            self._record(instance, SlaEventType.PAUSED, {"reason": reason})
        return instance

    def resume(self, instance_id: str) -> SlaInstance:
        now = self._clock()
        delta_ms = 0
        changed = False

        def mutate(current: SlaInstance) -> SlaInstance | None:
            nonlocal delta_ms, changed
            delta_ms = 0
            changed = False
            if current.paused_at is None:
                return None
            changed = True
            delta = max(timedelta(0), now - current.paused_at)
            delta_ms = _ms(delta)
            update: dict[str, Any] = {
                "paused_at": None,
                "pause_reason": None,
                "accumulated_paused_ms": current.accumulated_paused_ms + delta_ms,
            }
            for which, clock in current.clocks():
                if clock.status is ClockStatus.RUNNING and not clock.is_stopped:
                    update[which.value] = clock.model_copy(update={"due_at": clock.due_at + delta})
            return current.model_copy(update=update)

        instance = self._instances.update(instance_id, mutate)
        if changed:
            self._record(instance, SlaEventType.RESUMED, {"pausedMs": delta_ms})
        return instance

    def _stop_clock(
        self, instance_id: str, which: ClockName, *, breach_if_late: bool
    ) -> tuple[SlaInstance, list[SlaEventType]]:
        now = self._clock()
        fired: list[SlaEventType] = []

        def mutate(current: SlaInstance) -> SlaInstance | None:
            fired.clear()
            clock = current.clock(which)
            if clock is None:
                raise ValidationFailed(f"SLA instance {instance_id} has no {which.value} clock")
            if clock.is_stopped or not current.is_active:
                return None
            elapsed = elapsed_ms(current, now)
            status = clock.status
            if status is ClockStatus.RUNNING:
                late = breach_if_late and elapsed >= clock.target_minutes * _MS_PER_MINUTE
                status = ClockStatus.BREACHED if late else ClockStatus.MET
                fired.append(SlaEventType.BREACHED if late else SlaEventType.MET)
            stopped = clock.model_copy(
                update={"status": status, "completed_at": now, "elapsed_ms": elapsed}
            )
            updated = current.model_copy(update={which.value: stopped})
            if all(c.is_stopped for _, c in updated.clocks()):
                updated = updated.model_copy(update={"closed_at": now})
                fired.append(SlaEventType.CLOSED)
            return updated

        instance = self._instances.update(instance_id, mutate)
        for event_type in fired:
            self._record(instance, event_type, {"clock": which.value})
            if event_type is SlaEventType.BREACHED:
                self._notify_threshold(instance, which, SLA_BREACH)
        return instance, list(fired)

    def mark_met(self, instance_id: str, which: ClockName) -> SlaInstance:
        """Stop ``which`` as met. A clock that already breached stays breached but stops."""

        instance, _ = self._stop_clock(instance_id, which, breach_if_late=False)
        return instance

    def _record_for_target(
        self, target_type: SlaTargetType, target_id: str, which: ClockName
    ) -> list[SlaInstance]:
        out: list[SlaInstance] = []
        for instance in self._instances.find(
            lambda i: i.is_active and i.target_type is target_type and i.target_id == target_id
        ):
            if instance.clock(which) is None:
                continue
            updated, _ = self._stop_clock(instance.id, which, breach_if_late=True)
            out.append(updated)
        return out

    def record_response(self, target_type: SlaTargetType, target_id: str) -> list[SlaInstance]:
        return self._record_for_target(target_type, target_id, ClockName.RESPONSE)

    def record_resolution(self, target_type: SlaTargetType, target_id: str) -> list[SlaInstance]:
        return self._record_for_target(target_type, target_id, ClockName.RESOLUTION)

    def active_for_target(self, target_type: SlaTargetType, target_id: str) -> list[SlaInstance]:
        return self._instances.find(
            lambda i: i.is_active and i.target_type is target_type and i.target_id == target_id
        )

    def close(self, target_type: SlaTargetType, target_id: str) -> list[SlaInstance]:
        """The target left scope: freeze every active instance for it."""

        now = self._clock()
        closed: list[SlaInstance] = []
        for instance in self.active_for_target(target_type, target_id):
            changed = False

            def mutate(current: SlaInstance) -> SlaInstance | None:
                nonlocal changed
                changed = current.is_active
                if not changed:
                    return None
                return current.model_copy(update={"closed_at": now})

            updated = self._instances.update(instance.id, mutate)
            if changed:
                self._record(updated, SlaEventType.CLOSED, {"reason": "target closed"})
                closed.append(updated)
        return closed

    # Tick

    def _notify_threshold(self, instance: SlaInstance, which: ClockName, message_type: str) -> None:
        clock = instance.clock(which)
        if clock is None:
            return
        now = self._clock()
        view = clock_view(clock, elapsed_ms(instance, now))
        self._notifier.publish(
            instance.workspace_id,
            message_type,
            {
                "instanceId": instance.id,
                "targetType": instance.target_type.value,
                "targetId": instance.target_id,
                "clock": which.value,
                "usedPercent": view["used_percent"],
                "dueAt": view["due_at"],
            },
        )

    def _tick_instance(self, instance_id: str, now: datetime) -> tuple[SlaInstance, int, int]:
        fired: list[tuple[ClockName, SlaEventType]] = []

        def mutate(current: SlaInstance) -> SlaInstance | None:
            fired.clear()
            if not current.is_active or current.is_paused:
                return None
            elapsed = elapsed_ms(current, now)
            update: dict[str, Any] = {}
            for which, clock in current.clocks():
                if clock.status is not ClockStatus.RUNNING or clock.is_stopped:
                    continue
                target_ms = clock.target_minutes * _MS_PER_MINUTE
                used_percent = max(0.0, elapsed / target_ms * 100)
                changes: dict[str, Any] = {}
                if used_percent >= current.warning_threshold_percent and not clock.warning_fired:
                    changes["warning_fired"] = True
                    fired.append((which, SlaEventType.WARNING))
                if target_ms - elapsed <= 0:
                    changes["status"] = ClockStatus.BREACHED
                    fired.append((which, SlaEventType.BREACHED))
                if changes:
                    update[which.value] = clock.model_copy(update=changes)
            if not update:
                return None
            return current.model_copy(update=update)

        instance = self._instances.update(instance_id, mutate)
        warnings = breaches = 0
        for which, event_type in fired:
            self._record(instance, event_type, {"clock": which.value})
            if event_type is SlaEventType.WARNING:
                warnings += 1
                self._notify_threshold(instance, which, SLA_WARNING)
            else:
                breaches += 1
                self._notify_threshold(instance, which, SLA_BREACH)
                logger.warning(
                    "SLA breached",
                    extra={
                        "instance_id": instance.id,
                        "clock": which.value,
                        "target_id": instance.target_id,
                    },
                )
        return instance, warnings, breaches

    def tick(self, workspace_id: str) -> TickReport:
        """Recompute every active instance of one workspace and publish one batch update."""

        now = self._clock()
        active = self._instances.find(lambda i: i.workspace_id == workspace_id and i.is_active)
        views: list[dict[str, object]] = []
        failed = warnings = breaches = 0

        for instance in active:
            try:
                updated, w, b = self._tick_instance(instance.id, now)
            except Exception:
                # Retried on the next tick.
                failed += 1
                logger.exception(
                    "SLA tick failed for instance",
                    extra={"workspace_id": workspace_id, "instance_id": instance.id},
                )
                continue
            warnings += w
            breaches += b
            views.append(instance_view(updated, now))

        if views:
            self._notifier.publish(
                workspace_id, SLA_BATCH_UPDATE, {"instances": views, "tickedAt": now.isoformat()}
            )
        return TickReport(
            workspace_id=workspace_id,
            processed=len(views),
            failed=failed,
            warnings=warnings,
            breaches=breaches,
        )

    def workspaces_with_active_instances(self) -> list[str]:
        return sorted({i.workspace_id for i in self._instances.find(lambda i: i.is_active)})

    # Queries

    def get_instance(self, instance_id: str) -> SlaInstance:
        return self._instances.require(instance_id)

    def get_status(self, target_type: SlaTargetType, target_id: str) -> dict[str, object] | None:
        instances = self._instances.find(
            lambda i: i.target_type is target_type and i.target_id == target_id
        )
        if not instances:
            return None
        latest = max(instances, key=lambda i: i.started_at)
        return instance_view(latest, self._clock())

    def dashboard(self, workspace_id: str) -> dict[str, int]:
        now = self._clock()
        counts = {"total": 0, "running": 0, "paused": 0, "met": 0, "breached": 0, "at_risk": 0}
        for instance in self._instances.find(lambda i: i.workspace_id == workspace_id):
            counts["total"] += 1
            statuses = [c.status for _, c in instance.clocks()]
            if ClockStatus.BREACHED in statuses:
                counts["breached"] += 1
            elif statuses and all(s is ClockStatus.MET for s in statuses):
                counts["met"] += 1
            elif instance.is_active and instance.is_paused:
                counts["paused"] += 1
            elif instance.is_active:
                counts["running"] += 1
                elapsed = elapsed_ms(instance, now)
                if any(
                    c.status is ClockStatus.RUNNING
                    and elapsed / (c.target_minutes * _MS_PER_MINUTE) * 100
                    >= instance.warning_threshold_percent
                    for _, c in instance.clocks()
                ):
                    counts["at_risk"] += 1
        return counts

    def events(self, instance_id: str) -> list[SlaEvent]:
        return sorted(
            self._events.find(lambda e: e.instance_id == instance_id), key=lambda e: e.timestamp
        )
