"""Lifecycle of human tasks spawned by running process instances.

Every transition is a compare-and-swap write through :meth:`VersionedStore.update`: the
mutation is computed against the version that was read and retried against fresh state
when another writer got there first. Guards run inside the mutation, so a claim that
lost the race sees the winner's assignee and fails with :class:`AlreadyClaimedError`.
"""

from __future__ import annotations

import logging
import uuid
from collections import Counter
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from process_orchestrator.errors import (
    ConflictError,
    OrchestrationError,
    PermissionDeniedError,
    ValidationFailed,
)
from process_orchestrator.notifications import TASK_CREATED, TASK_UPDATED, Notifier
from process_orchestrator.processes import ProcessInstanceRegistry
from process_orchestrator.runtime.port import ProcessRuntime, TaskCreated
from process_orchestrator.store import VersionedStore, utc_now
from process_orchestrator.tasks.forms import ensure_valid_form
from process_orchestrator.tasks.models import (
    ASSIGNED_STATUSES,
    SYSTEM_ACTOR,
    HistoryEntry,
    HistoryType,
    TaskInstance,
    TaskStateError,
    TaskStatus,
    transition,
)

logger = logging.getLogger(__name__)

GroupResolver = Callable[[str], Iterable[str]]


class AlreadyClaimedError(ConflictError):
    def __init__(self, task_id: str, assignee_id: str | None) -> None:
        super().__init__(f"Task {task_id} is already claimed by {assignee_id}")
        self.task_id = task_id
        self.assignee_id = assignee_id


class TaskPermissionError(PermissionDeniedError):
    def __init__(self, task_id: str, actor_id: str, action: str) -> None:
        super().__init__(f"{actor_id} may not {action} task {task_id}")
        self.task_id = task_id
        self.actor_id = actor_id
        self.action = action


@dataclass(frozen=True, slots=True)
class BatchClaimResult:
    id: str
    ok: bool
    error: str | None = None
    error_kind: str | None = None

    def to_json(self) -> dict[str, object]:
        out: dict[str, object] = {"id": self.id, "ok": self.ok}
        if self.error is not None:
            out["error"] = self.error
            out["error_kind"] = self.error_kind
        return out


@dataclass(frozen=True, slots=True)
class TaskFilter:
    workspace_id: str | None = None
    status: TaskStatus | None = None
    assignee_id: str | None = None
    process_instance_id: str | None = None

    def matches(self, task: TaskInstance) -> bool:
        if self.workspace_id is not None and task.workspace_id != self.workspace_id:
            return False
        if self.status is not None and task.status is not self.status:
            return False
        if self.assignee_id is not None and task.assignee_id != self.assignee_id:
            return False
        if (
            self.process_instance_id is not None
            and task.process_instance_id != self.process_instance_id
        ):
            return False
        return True


def _no_groups(_user_id: str) -> Iterable[str]:
    return ()


class TaskLifecycleManager:
    def __init__(
        self,
        *,
        store: VersionedStore[TaskInstance],
        runtime: ProcessRuntime,
        notifier: Notifier,
        processes: ProcessInstanceRegistry,
        is_privileged: Callable[[str], bool] = lambda _actor: False,
        group_resolver: GroupResolver = _no_groups,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._runtime = runtime
        self._notifier = notifier
        self._processes = processes
        self._is_privileged = is_privileged
        self._groups = group_resolver
        self._clock = clock

    def _entry(
        self, type: HistoryType, actor_id: str, payload: dict[str, Any] | None = None
    ) -> HistoryEntry:
        return HistoryEntry(
            type=type, actor_id=actor_id, timestamp=self._clock(), payload=payload or {}
        )

    def _notify(self, task: TaskInstance, message_type: str, action: str) -> None:
        self._notifier.publish(
            task.workspace_id,
            message_type,
            {
                "taskId": task.id,
                "action": action,
                "status": task.status.value,
                "assigneeId": task.assignee_id,
                "processInstanceId": task.process_instance_id,
            },
        )

    def _is_candidate(self, task: TaskInstance, user_id: str) -> bool:
        if not task.candidate_users and not task.candidate_groups:
            return True
        if user_id in task.candidate_users:
            return True
        return bool(set(task.candidate_groups) & set(self._groups(user_id)))

    # Runtime signals

    def on_task_created(self, event: TaskCreated) -> TaskInstance:
        existing = self._store.find(lambda t: t.task_key == event.task_key)
        if existing:
            return existing[0]

        ref = self._processes.find_by_instance_key(event.process_instance_key)
        if ref is None:
            raise ValidationFailed(
                f"Unknown process instance {event.process_instance_key} for task {event.task_key}"
            )

        history = [self._entry(HistoryType.CREATED, SYSTEM_ACTOR, {"taskKey": event.task_key})]
        status = TaskStatus.CREATED
        if event.assignee:
            status = TaskStatus.CLAIMED
            history.append(
                self._entry(HistoryType.CLAIMED, SYSTEM_ACTOR, {"assigneeId": event.assignee})
            )

        task = TaskInstance(
            id=uuid.uuid4().hex,
            workspace_id=ref.workspace_id,
            process_instance_id=ref.id,
            task_key=event.task_key,
            element_id=event.element_id,
            element_name=event.element_name,
            status=status,
            assignee_id=event.assignee,
            candidate_users=list(event.candidate_users),
            candidate_groups=list(event.candidate_groups),
            form_schema=event.form_schema,
            entity_id=ref.bound_entity_id,
            due_at=event.due_at,
            priority=event.priority,
            created_at=self._clock(),
            history=history,
        )
        stored, inserted = self._store.insert_unless(task, lambda t: t.task_key == event.task_key)
        if inserted:
            logger.info(
                "User task created",
                extra={
                    "task_id": stored.id,
                    "task_key": stored.task_key,
                    "workspace_id": stored.workspace_id,
                },
            )
            self._notify(stored, TASK_CREATED, "created")
        return stored

    def on_instance_terminated(
        self, process_instance_key: str, reason: str = ""
    ) -> list[TaskInstance]:
        """Cancel every open task of a terminated instance.

        Already-terminal tasks are left alone.
        """

        ref = self._processes.find_by_instance_key(process_instance_key)
        if ref is None:
            return []

        cancelled: list[TaskInstance] = []
        open_tasks = self._store.find(
            lambda t: t.process_instance_id == ref.id and not t.is_terminal
        )
        for task in open_tasks:
            changed = False

            def mutate(current: TaskInstance) -> TaskInstance | None:
                nonlocal changed
                if current.is_terminal:
                    return None
                changed = True
                return transition(
                    current,
                    to=TaskStatus.CANCELLED,
                    entry=self._entry(
                        HistoryType.CANCELLED,
                        SYSTEM_ACTOR,
                        {"reason": reason or "instance terminated"},
                    ),
                    assignee_id=None,
                )

            updated = self._store.update(task.id, mutate)
            if changed:
                cancelled.append(updated)
                self._notify(updated, TASK_UPDATED, "cancelled")

        if cancelled:
            logger.info(
                "Cancelled tasks of terminated instance",
                extra={"process_instance_key": process_instance_key, "count": len(cancelled)},
            )
        return cancelled

    # User actions

    def claim(self, task_id: str, user_id: str) -> TaskInstance:
        changed = False

        def mutate(current: TaskInstance) -> TaskInstance | None:
            nonlocal changed
            changed = False
            if current.status in ASSIGNED_STATUSES:
                if current.assignee_id == user_id:
                    return None
                raise AlreadyClaimedError(current.id, current.assignee_id)
            if current.status is not TaskStatus.CREATED:
                raise TaskStateError(current.id, current.status, TaskStatus.CLAIMED)
            if not (self._is_candidate(current, user_id) or self._is_privileged(user_id)):
                raise TaskPermissionError(current.id, user_id, "claim")
            changed = True
            return transition(
                current,
                to=TaskStatus.CLAIMED,
                entry=self._entry(HistoryType.CLAIMED, user_id),
                assignee_id=user_id,
            )

        task = self._store.update(task_id, mutate)
        if changed:
            logger.info("Task claimed", extra={"task_id": task_id, "user_id": user_id})
            self._notify(task, TASK_UPDATED, "claimed")
        return task

    def unclaim(self, task_id: str, user_id: str) -> TaskInstance:
        def mutate(current: TaskInstance) -> TaskInstance:
            if current.status not in ASSIGNED_STATUSES:
                raise TaskStateError(current.id, current.status, TaskStatus.CREATED)
            if current.assignee_id != user_id and not self._is_privileged(user_id):
                raise TaskPermissionError(current.id, user_id, "unclaim")
            return transition(
                current,
                to=TaskStatus.CREATED,
                entry=self._entry(
                    HistoryType.UNCLAIMED, user_id, {"previousAssigneeId": current.assignee_id}
                ),
                assignee_id=None,
            )

        task = self._store.update(task_id, mutate)
        self._notify(task, TASK_UPDATED, "unclaimed")
        return task

    def delegate(self, task_id: str, from_user_id: str, to_user_id: str) -> TaskInstance:
        if not to_user_id.strip():
            raise ValidationFailed("Delegation target user is required")

        def mutate(current: TaskInstance) -> TaskInstance:
            if current.status not in ASSIGNED_STATUSES:
                raise TaskStateError(current.id, current.status, TaskStatus.DELEGATED)
            if current.assignee_id != from_user_id and not self._is_privileged(from_user_id):
                raise TaskPermissionError(current.id, from_user_id, "delegate")
            return transition(
                current,
                to=TaskStatus.DELEGATED,
                entry=self._entry(
                    HistoryType.DELEGATED,
                    from_user_id,
                    {"fromUserId": current.assignee_id, "toUserId": to_user_id},
                ),
                assignee_id=to_user_id,
            )

        task = self._store.update(task_id, mutate)
        logger.info(
            "Task delegated",
            extra={"task_id": task_id, "from_user_id": from_user_id, "to_user_id": to_user_id},
        )
        self._notify(task, TASK_UPDATED, "delegated")
        return task

    def complete(self, task_id: str, actor_id: str, form_data: Mapping[str, Any]) -> TaskInstance:
        task = self._store.require(task_id)
        if task.status not in ASSIGNED_STATUSES:
            raise TaskStateError(task.id, task.status, TaskStatus.COMPLETED)
        if task.assignee_id != actor_id and not self._is_privileged(actor_id):
            raise TaskPermissionError(task.id, actor_id, "complete")
        ensure_valid_form(task.form_schema, form_data)

        # Not retried: the runtime may have applied a call that timed out.
        self._runtime.complete_user_task(task.task_key, form_data)

        completed_at = self._clock()

        def mutate(current: TaskInstance) -> TaskInstance | None:
            if current.is_terminal:
                return None
            return transition(
                current,
                to=TaskStatus.COMPLETED,
                entry=self._entry(HistoryType.COMPLETED, actor_id, {"formData": dict(form_data)}),
                assignee_id=None,
                completed_at=completed_at,
                completed_by=actor_id,
                form_data=dict(form_data),
            )

        completed = self._store.update(task_id, mutate)
        logger.info("Task completed", extra={"task_id": task_id, "actor_id": actor_id})
        self._notify(completed, TASK_UPDATED, "completed")
        return completed

    def add_comment(self, task_id: str, actor_id: str, content: str) -> TaskInstance:
        if not content.strip():
            raise ValidationFailed("Comment content must not be empty")

        def mutate(current: TaskInstance) -> TaskInstance:
            entry = self._entry(HistoryType.COMMENTED, actor_id, {"content": content})
            return current.model_copy(update={"history": [*current.history, entry]})

        task = self._store.update(task_id, mutate)
        self._notify(task, TASK_UPDATED, "commented")
        return task

    def batch_claim(self, task_ids: Iterable[str], user_id: str) -> list[BatchClaimResult]:
        results: list[BatchClaimResult] = []
        for task_id in task_ids:
            try:
                self.claim(task_id, user_id)
            except OrchestrationError as e:
                results.append(
                    BatchClaimResult(id=task_id, ok=False, error=str(e), error_kind=e.kind)
                )
            else:
                results.append(BatchClaimResult(id=task_id, ok=True))
        return results

    # Queries

    def get(self, task_id: str) -> TaskInstance:
        return self._store.require(task_id)

    def list_tasks(self, task_filter: TaskFilter | None = None) -> list[TaskInstance]:
        task_filter = task_filter or TaskFilter()
        tasks = self._store.find(task_filter.matches)
        return sorted(tasks, key=lambda t: (-t.priority, t.created_at))

    def inbox(self, user_id: str, workspace_id: str) -> list[TaskInstance]:
        """Open tasks assigned to ``user_id`` plus unclaimed tasks the user may claim."""

        def visible(task: TaskInstance) -> bool:
            if task.workspace_id != workspace_id or task.is_terminal:
                return False
            if task.status in ASSIGNED_STATUSES:
                return task.assignee_id == user_id
            return self._is_candidate(task, user_id)

        return sorted(self._store.find(visible), key=lambda t: (-t.priority, t.created_at))

    def statistics(self, workspace_id: str) -> dict[str, object]:
        tasks = self._store.find(lambda t: t.workspace_id == workspace_id)
        now = self._clock()
        by_status = Counter(t.status.value for t in tasks)
        overdue = sum(
            1 for t in tasks if not t.is_terminal and t.due_at is not None and t.due_at < now
        )
        durations = [
            (t.completed_at - t.created_at).total_seconds() * 1000
            for t in tasks
            if t.status is TaskStatus.COMPLETED and t.completed_at is not None
        ]
        return {
            "total": len(tasks),
            "by_status": {s.value: by_status.get(s.value, 0) for s in TaskStatus},
            "overdue": overdue,
            "avg_completion_ms": round(sum(durations) / len(durations)) if durations else None,
        }
