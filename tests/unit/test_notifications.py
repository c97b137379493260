"""Unit tests for the per-workspace notification hub."""

from __future__ import annotations

from datetime import UTC, datetime

from process_orchestrator.notifications import Notification, NotificationHub


def _hub(buffer_size: int = 500) -> NotificationHub:
    return NotificationHub(
        buffer_size=buffer_size, clock=lambda: datetime(2024, 3, 4, 9, 0, tzinfo=UTC)
    )


def test_sequence_numbers_are_per_workspace() -> None:
    hub = _hub()

    a1 = hub.publish("a", "task:created", {})
    b1 = hub.publish("b", "task:created", {})
    a2 = hub.publish("a", "task:updated", {})

    assert (a1.seq, a2.seq, b1.seq) == (1, 2, 1)


def test_poll_after_sequence_with_limit() -> None:
    hub = _hub()
    for i in range(5):
        hub.publish("a", "task:updated", {"i": i})

    assert [m.seq for m in hub.poll("a", after=2)] == [3, 4, 5]
    assert [m.seq for m in hub.poll("a", after=0, limit=2)] == [1, 2]
    assert hub.poll("unknown") == []


def test_buffer_is_bounded() -> None:
    hub = _hub(buffer_size=3)
    for _ in range(5):
        hub.publish("a", "task:updated", {})

    assert [m.seq for m in hub.poll("a")] == [3, 4, 5]


def test_subscribers_receive_messages_and_can_unsubscribe() -> None:
    hub = _hub()
    received: list[Notification] = []
    unsubscribe = hub.subscribe("a", received.append)

    hub.publish("a", "sla:warning", {"x": 1})
    hub.publish("b", "sla:warning", {})
    unsubscribe()
    hub.publish("a", "sla:breach", {})

    assert [m.type for m in received] == ["sla:warning"]
    assert received[0].to_json() == {
        "seq": 1,
        "workspace_id": "a",
        "type": "sla:warning",
        "payload": {"x": 1},
        "sent_at": "2024-03-04T09:00:00+00:00",
    }


def test_failing_subscriber_does_not_break_publish() -> None:
    hub = _hub()
    received: list[int] = []

    def broken(_message: Notification) -> None:
        raise RuntimeError("socket closed")

    hub.subscribe("a", broken)
    hub.subscribe("a", lambda m: received.append(m.seq))

    message = hub.publish("a", "task:created", {})

    assert message.seq == 1
    assert received == [1]
