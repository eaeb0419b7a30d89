"""Tests for the event bus."""

from stepwise.events import EventBus
from stepwise.schemas import EventType


def test_typed_handlers_run_before_global_handlers():
    bus = EventBus()
    calls: list[str] = []

    bus.on_all(lambda event: calls.append(f"all:{event.type.value}"))
    bus.on(EventType.PLAN_START, lambda event: calls.append("typed"))

    bus.plan_start("plan_1", "Title", "Goal", 3)

    assert calls == ["typed", "all:PLAN_START"]


def test_unsubscribe_stops_delivery():
    bus = EventBus()
    received = []
    unsubscribe = bus.on(EventType.STEP_START, received.append)

    bus.step_start("plan_1", "step_1", "Research", "web_search")
    unsubscribe()
    bus.step_start("plan_1", "step_2", "Compose", None)

    assert len(received) == 1
    assert received[0].payload["stepId"] == "step_1"
    assert bus.handler_count() == 0


def test_failing_handler_does_not_block_others():
    bus = EventBus()
    received = []

    def broken(event):
        raise RuntimeError("listener bug")

    bus.on(EventType.STATUS_CHANGE, broken)
    bus.on(EventType.STATUS_CHANGE, received.append)

    event = bus.status_change("retrying", attempt=1)

    assert received == [event]
    assert event.payload == {"status": "retrying", "attempt": 1}


def test_snapshot_is_bounded_and_latest_filters_by_type():
    bus = EventBus(history_size=3)
    for index in range(5):
        bus.step_progress("plan_1", f"step_{index}", "working")
    bus.plan_complete("plan_1", 1200, 2, 1)

    snapshot = bus.snapshot()
    assert len(snapshot) == 3
    assert snapshot[-1].type == EventType.PLAN_COMPLETE
    assert snapshot[-1].payload == {"totalDurationMs": 1200, "doneCount": 2, "failedCount": 1}

    progress = bus.latest(EventType.STEP_PROGRESS, count=5)
    assert [event.step_id for event in progress] == ["step_3", "step_4"]


def test_reset_drops_handlers_and_history():
    bus = EventBus()
    bus.on_all(lambda event: None)
    bus.tool_call_start("web_search", {"query": "x"})

    bus.reset()

    assert bus.handler_count() == 0
    assert bus.snapshot() == []
