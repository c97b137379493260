"""Unit tests for the human task lifecycle."""

from __future__ import annotations

import threading
from datetime import UTC, datetime
from typing import Any

import pytest

from process_orchestrator.core import OrchestrationCore
from process_orchestrator.errors import OrchestrationError, ValidationFailed
from process_orchestrator.processes import ProcessDefinitionRecord
from process_orchestrator.runtime import RuntimeTimeoutError, TaskCreated
from process_orchestrator.tasks import (
    AlreadyClaimedError,
    FormValidationError,
    HistoryType,
    TaskFilter,
    TaskInstance,
    TaskPermissionError,
    TaskStateError,
    TaskStatus,
)


def _start_instance(core: OrchestrationCore, definition: ProcessDefinitionRecord) -> str:
    ref, _ = core.processes.start(definition_id=definition.id, variables={})
    assert ref.process_instance_key is not None
    return ref.process_instance_key


def _create_task(
    core: OrchestrationCore,
    definition: ProcessDefinitionRecord,
    task_key: str = "ut-1",
    **fields: Any,
) -> TaskInstance:
    instance_key = fields.pop("process_instance_key", None) or _start_instance(core, definition)
    event = TaskCreated(
        process_instance_key=instance_key,
        element_id="review",
        element_name="Review application",
        task_key=task_key,
        **fields,
    )
    return core.tasks.on_task_created(event)


def _history_types(task: TaskInstance) -> list[HistoryType]:
    return [entry.type for entry in task.history]


def test_task_created_from_runtime_signal(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    task = _create_task(core, deployed_definition, priority=80)

    assert task.status is TaskStatus.CREATED
    assert task.assignee_id is None
    assert task.workspace_id == "ws-1"
    assert task.priority == 80
    assert _history_types(task) == [HistoryType.CREATED]
    assert [n.type for n in core.notifier.poll("ws-1")] == ["task:created"]


def test_task_created_is_idempotent_per_task_key(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    first = _create_task(core, deployed_definition)
    again = _create_task(core, deployed_definition, process_instance_key="pi-1")

    assert again.id == first.id
    assert len(core.tasks.list_tasks()) == 1


def test_task_with_preset_assignee_starts_claimed(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    task = _create_task(core, deployed_definition, assignee="alice")

    assert task.status is TaskStatus.CLAIMED
    assert task.assignee_id == "alice"
    assert _history_types(task) == [HistoryType.CREATED, HistoryType.CLAIMED]
    assert task.history[1].actor_id == "system"


def test_task_for_unknown_instance_is_rejected(core: OrchestrationCore) -> None:
    event = TaskCreated(
        process_instance_key="unknown", element_id="e", element_name="E", task_key="k"
    )
    with pytest.raises(ValidationFailed):
        core.tasks.on_task_created(event)


def test_claim_then_reclaim_by_same_user_is_a_noop(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    task = _create_task(core, deployed_definition)

    claimed = core.tasks.claim(task.id, "alice")
    again = core.tasks.claim(task.id, "alice")

    assert claimed.status is TaskStatus.CLAIMED
    assert again.version == claimed.version
    assert _history_types(again).count(HistoryType.CLAIMED) == 1


def test_claim_by_other_user_fails(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    task = _create_task(core, deployed_definition)
    core.tasks.claim(task.id, "alice")

    with pytest.raises(AlreadyClaimedError) as exc:
        core.tasks.claim(task.id, "bob")

    assert exc.value.assignee_id == "alice"


def test_concurrent_claims_have_exactly_one_winner(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    task = _create_task(core, deployed_definition)
    users = [f"user-{i}" for i in range(8)]
    barrier = threading.Barrier(len(users))
    winners: list[str] = []
    losers: list[str] = []
    lock = threading.Lock()

    def attempt(user_id: str) -> None:
        barrier.wait()
        try:
            core.tasks.claim(task.id, user_id)
        except AlreadyClaimedError:
            with lock:
                losers.append(user_id)
        else:
            with lock:
                winners.append(user_id)

    threads = [threading.Thread(target=attempt, args=(u,)) for u in users]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    final = core.tasks.get(task.id)
    assert len(winners) == 1
    assert len(losers) == len(users) - 1
    assert final.assignee_id == winners[0]
    assert _history_types(final).count(HistoryType.CLAIMED) == 1


def test_candidates_restrict_claims_unless_privileged(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    task = _create_task(core, deployed_definition, candidate_users=("alice",))

    with pytest.raises(TaskPermissionError):
        core.tasks.claim(task.id, "bob")

    claimed = core.tasks.claim(task.id, "admin")
    assert claimed.assignee_id == "admin"


def test_candidate_groups_use_group_resolver(
    settings: Any, runtime: Any, clock: Any
) -> None:
    core = OrchestrationCore(
        settings=settings,
        runtime=runtime,
        group_resolver=lambda user: ["reviewers"] if user == "carol" else [],
        clock=clock,
    )
    definition = core.processes.deploy(
        core.processes.save_definition(workspace_id="ws-1", name="P", bpmn_xml="<x/>").id
    )
    task = _create_task(core, definition, candidate_groups=("reviewers",))

    assert core.tasks.claim(task.id, "carol").assignee_id == "carol"


def test_unclaim_returns_task_to_pool(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    task = _create_task(core, deployed_definition)
    core.tasks.claim(task.id, "alice")

    with pytest.raises(TaskPermissionError):
        core.tasks.unclaim(task.id, "bob")

    released = core.tasks.unclaim(task.id, "alice")
    assert released.status is TaskStatus.CREATED
    assert released.assignee_id is None
    assert released.history[-1].payload == {"previousAssigneeId": "alice"}

    with pytest.raises(TaskStateError):
        core.tasks.unclaim(task.id, "alice")


def test_delegate_moves_assignee_and_records_both_users(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    task = _create_task(core, deployed_definition)
    core.tasks.claim(task.id, "alice")

    delegated = core.tasks.delegate(task.id, "alice", "bob")

    assert delegated.status is TaskStatus.DELEGATED
    assert delegated.assignee_id == "bob"
    assert delegated.history[-1].payload == {"fromUserId": "alice", "toUserId": "bob"}

    redelegated = core.tasks.delegate(task.id, "bob", "carol")
    assert redelegated.assignee_id == "carol"


def test_delegate_requires_assignment_and_target(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    task = _create_task(core, deployed_definition)

    with pytest.raises(TaskStateError):
        core.tasks.delegate(task.id, "alice", "bob")
    with pytest.raises(ValidationFailed):
        core.tasks.delegate(task.id, "alice", "  ")


def test_complete_calls_runtime_then_records_completion(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord, runtime: Any
) -> None:
    schema = {"properties": {"approved": {"type": "boolean"}}, "required": ["approved"]}
    task = _create_task(core, deployed_definition, form_schema=schema)
    core.tasks.claim(task.id, "alice")

    done = core.tasks.complete(task.id, "alice", {"approved": True})

    runtime.complete_user_task.assert_called_once_with("ut-1", {"approved": True})
    assert done.status is TaskStatus.COMPLETED
    assert done.assignee_id is None
    assert done.completed_by == "alice"
    assert done.form_data == {"approved": True}
    assert done.history[-1].type is HistoryType.COMPLETED


def test_complete_with_invalid_form_never_reaches_runtime(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord, runtime: Any
) -> None:
    schema = {"properties": {"amount": {"type": "number"}}, "required": ["amount"]}
    task = _create_task(core, deployed_definition, form_schema=schema)
    core.tasks.claim(task.id, "alice")

    with pytest.raises(FormValidationError) as exc:
        core.tasks.complete(task.id, "alice", {})

    assert exc.value.errors == ["'amount' is a required property"]
    runtime.complete_user_task.assert_not_called()
    assert core.tasks.get(task.id).status is TaskStatus.CLAIMED


def test_complete_requires_assignee(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    task = _create_task(core, deployed_definition)

    with pytest.raises(TaskStateError):
        core.tasks.complete(task.id, "alice", {})

    core.tasks.claim(task.id, "alice")
    with pytest.raises(TaskPermissionError):
        core.tasks.complete(task.id, "bob", {})


def test_runtime_timeout_leaves_task_claimed(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord, runtime: Any
) -> None:
    task = _create_task(core, deployed_definition)
    core.tasks.claim(task.id, "alice")
    runtime.complete_user_task.side_effect = RuntimeTimeoutError("timed out")

    with pytest.raises(RuntimeTimeoutError):
        core.tasks.complete(task.id, "alice", {})

    assert runtime.complete_user_task.call_count == 1
    current = core.tasks.get(task.id)
    assert current.status is TaskStatus.CLAIMED
    assert current.assignee_id == "alice"


def test_terminal_tasks_accept_no_transitions(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    task = _create_task(core, deployed_definition)
    core.tasks.claim(task.id, "alice")
    core.tasks.complete(task.id, "alice", {})

    with pytest.raises(TaskStateError):
        core.tasks.claim(task.id, "bob")
    with pytest.raises(TaskStateError):
        core.tasks.delegate(task.id, "alice", "bob")


def test_comments_append_history_without_changing_status(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    task = _create_task(core, deployed_definition)

    commented = core.tasks.add_comment(task.id, "bob", "Looks fine")

    assert commented.status is TaskStatus.CREATED
    assert commented.history[-1].type is HistoryType.COMMENTED
    assert commented.history[-1].payload == {"content": "Looks fine"}
    with pytest.raises(ValidationFailed):
        core.tasks.add_comment(task.id, "bob", "   ")


def test_batch_claim_reports_each_id(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    free = _create_task(core, deployed_definition, task_key="ut-free")
    taken = _create_task(core, deployed_definition, task_key="ut-taken")
    core.tasks.claim(taken.id, "bob")

    results = core.tasks.batch_claim([free.id, taken.id, "missing"], "alice")

    assert [r.ok for r in results] == [True, False, False]
    assert results[1].error_kind == "conflict"
    assert results[2].error_kind == "not_found"
    assert results[0].to_json() == {"id": free.id, "ok": True}
    assert core.tasks.get(free.id).assignee_id == "alice"


def test_instance_termination_cancels_open_tasks(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    instance_key = _start_instance(core, deployed_definition)
    open_task = _create_task(
        core, deployed_definition, task_key="a", process_instance_key=instance_key
    )
    claimed = _create_task(
        core, deployed_definition, task_key="b", process_instance_key=instance_key
    )
    core.tasks.claim(claimed.id, "alice")

    cancelled = core.tasks.on_instance_terminated(instance_key, "operator abort")

    assert {t.id for t in cancelled} == {open_task.id, claimed.id}
    for task in cancelled:
        assert task.status is TaskStatus.CANCELLED
        assert task.assignee_id is None
        assert task.history[-1].payload == {"reason": "operator abort"}
    assert core.tasks.on_instance_terminated(instance_key) == []


def test_inbox_and_filters(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    mine = _create_task(core, deployed_definition, task_key="mine", priority=10)
    pool = _create_task(core, deployed_definition, task_key="pool", priority=90)
    theirs = _create_task(core, deployed_definition, task_key="theirs")
    restricted = _create_task(
        core, deployed_definition, task_key="restricted", candidate_users=("bob",)
    )
    core.tasks.claim(mine.id, "alice")
    core.tasks.claim(theirs.id, "bob")

    inbox = core.tasks.inbox("alice", "ws-1")

    assert [t.id for t in inbox] == [pool.id, mine.id]
    assert restricted.id not in {t.id for t in inbox}
    claimed = core.tasks.list_tasks(TaskFilter(status=TaskStatus.CLAIMED))
    assert {t.id for t in claimed} == {mine.id, theirs.id}
    assert core.tasks.list_tasks(TaskFilter(workspace_id="other")) == []


def test_statistics(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord, clock: Any
) -> None:
    overdue = _create_task(
        core, deployed_definition, task_key="late", due_at=datetime(2024, 3, 4, 8, tzinfo=UTC)
    )
    done = _create_task(core, deployed_definition, task_key="done")
    core.tasks.claim(done.id, "alice")
    clock.advance(minutes=30)
    core.tasks.complete(done.id, "alice", {})

    stats = core.tasks.statistics("ws-1")

    assert stats["total"] == 2
    assert stats["by_status"] == {
        "created": 1,
        "claimed": 0,
        "delegated": 0,
        "completed": 1,
        "cancelled": 0,
    }
    assert stats["overdue"] == 1
    assert stats["avg_completion_ms"] == 30 * 60 * 1000
    assert overdue.due_at is not None


def test_every_mutation_notifies(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    task = _create_task(core, deployed_definition)
    core.tasks.claim(task.id, "alice")
    core.tasks.delegate(task.id, "alice", "bob")
    core.tasks.add_comment(task.id, "bob", "on it")
    core.tasks.complete(task.id, "bob", {})

    actions = [n.payload["action"] for n in core.notifier.poll("ws-1")]

    assert actions == ["created", "claimed", "delegated", "commented", "completed"]


def test_errors_carry_kinds(
    core: OrchestrationCore, deployed_definition: ProcessDefinitionRecord
) -> None:
    task = _create_task(core, deployed_definition, candidate_users=("alice",))

    with pytest.raises(OrchestrationError) as exc:
        core.tasks.claim(task.id, "mallory")

    assert exc.value.kind == "forbidden"
