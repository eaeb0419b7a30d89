"""Tests for plan classification, construction and step transitions."""

from datetime import datetime, timedelta, timezone

import pytest

from stepwise.events import EventBus
from stepwise.planner import MAX_STEPS, SKIPPED_RESULT, TaskPlanner, build_task_plan_doc
from stepwise.schemas import EventType, PlanStatus, StepStatus, TaskStep

FIBONACCI = "Write a Python script that calculates the Fibonacci sequence and then plot the result"


class FakeClock:
    def __init__(self) -> None:
        self.now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def events():
    return EventBus()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def planner(events, clock):
    return TaskPlanner(events, clock=clock)


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


@pytest.mark.parametrize(
    "message",
    ["Hallo", "hi", "Thanks, that was great help for me today", "ok"],
)
def test_greetings_are_never_planned(planner, message):
    assert planner.should_plan(message) is False


def test_short_messages_are_never_planned(planner):
    assert planner.should_plan("Build and test it") is False


def test_plain_question_is_not_planned(planner):
    assert planner.should_plan("Who painted the famous ceiling of that chapel?") is False


def test_multi_step_request_is_planned(planner):
    assert planner.should_plan(FIBONACCI) is True
    assert planner.score(FIBONACCI) >= 0.6


def test_german_request_is_planned_with_python_and_summary(planner):
    message = "Erstelle ein Python Script das Fibonacci berechnet und visualisiere es"

    assert planner.should_plan(message) is True
    plan = planner.create_plan(message)

    assert [step.tool for step in plan.steps] == ["execute_python", None]
    assert plan.steps[-1].title == "📋 Summary"
    assert len(plan.steps) <= MAX_STEPS


def test_threshold_is_configurable(events):
    strict = TaskPlanner(events, threshold=2.0)
    assert strict.should_plan(FIBONACCI) is False


# ---------------------------------------------------------------------------
# Plan construction
# ---------------------------------------------------------------------------


def test_fibonacci_plan_runs_python_then_summary(planner, events):
    plan = planner.create_plan(FIBONACCI)

    assert [step.tool for step in plan.steps] == ["execute_python", None]
    assert [step.title for step in plan.steps] == ["🐍 Run Python code", "📋 Summary"]
    assert plan.steps[0].tool_params == {"task": FIBONACCI}
    assert plan.status == PlanStatus.PLANNING
    assert plan.title == "Write a Python script that calculates..."
    assert all(step.status == StepStatus.PENDING and step.retry_count == 0 for step in plan.steps)
    assert [step.id for step in plan.steps] == [f"step_{plan.id}_0", f"step_{plan.id}_1"]

    emitted = [event.type for event in events.snapshot()]
    assert emitted == [EventType.PLAN_START, EventType.PLAN_STEP_ADD, EventType.PLAN_STEP_ADD]
    assert events.snapshot()[0].payload["stepCount"] == 2


def test_research_step_comes_first_for_comparisons(planner):
    plan = planner.create_plan("Compare the three best laptops for students and then summarize them")

    assert plan.steps[0].tool == "web_search"
    assert plan.steps[0].tool_params == {"query": plan.goal}
    assert plan.steps[-1].title == "📋 Summary"


def test_request_without_tools_gets_generic_steps(planner):
    plan = planner.create_plan("Explain how photosynthesis works in detail and then give an example")

    assert [step.title for step in plan.steps] == ["🧠 Analysis", "✍️ Compose answer", "📋 Summary"]
    assert all(step.tool is None for step in plan.steps)


def test_many_tools_stay_under_step_cap(planner):
    plan = planner.create_plan(
        "Research the latest news, then calculate statistics in python, build a javascript "
        "website, run an sql query and save everything to a file"
    )

    tools = [step.tool for step in plan.steps]
    assert 2 <= len(plan.steps) <= MAX_STEPS
    assert tools[0] == "web_search"
    assert {"execute_python", "execute_javascript", "execute_sql", "create_file"} <= set(tools)
    assert plan.steps[-1].title == "📋 Summary"


def test_detect_tools(planner):
    assert planner.detect_tools("Run a select on the orders table") == ["execute_sql"]
    assert planner.detect_tools("nothing relevant here") == []


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------


def test_running_to_done_records_duration_and_document(planner, events, clock):
    plan = planner.start(planner.create_plan(FIBONACCI))
    step_id = plan.steps[0].id

    running = planner.update_step_status(plan, step_id, StepStatus.RUNNING)
    clock.advance(milliseconds=1500)
    done = planner.update_step_status(running, step_id, StepStatus.DONE, result="0 1 1 2 3 5")

    step = done.step(step_id)
    assert step.result == "0 1 1 2 3 5"
    assert step.duration_ms == 1500
    assert "- [x] 🐍 Run Python code (1.5s)" in done.context.task_plan
    assert "- [ ] 📋 Summary" in done.context.task_plan
    assert plan.step(step_id).status == StepStatus.PENDING  # input plan untouched
    assert events.latest(EventType.STEP_COMPLETE)[0].payload["durationMs"] == 1500


def test_invalid_transitions_raise(planner):
    plan = planner.create_plan(FIBONACCI)
    step_id = plan.steps[0].id

    with pytest.raises(ValueError):
        planner.update_step_status(plan, step_id, StepStatus.DONE)
    with pytest.raises(KeyError):
        planner.update_step_status(plan, "missing", StepStatus.RUNNING)


def test_record_failure_requeues_until_retries_exhausted(planner, events):
    plan = planner.start(planner.create_plan(FIBONACCI))
    step_id = plan.steps[0].id

    plan = planner.update_step_status(plan, step_id, StepStatus.RUNNING)
    plan = planner.record_failure(plan, step_id, "SyntaxError")
    step = plan.step(step_id)
    assert step.status == StepStatus.PENDING
    assert step.retry_count == 1
    assert planner.get_next_step(plan).id == step_id

    plan = planner.update_step_status(plan, step_id, StepStatus.RUNNING)
    plan = planner.record_failure(plan, step_id, "SyntaxError again")
    step = plan.step(step_id)
    assert step.status == StepStatus.FAILED
    assert step.retry_count == 2
    assert planner.can_retry(step) is False
    assert "❌ SyntaxError again" in plan.context.task_plan

    fails = events.latest(EventType.STEP_FAIL, count=2)
    assert [event.payload["canRetry"] for event in fails] == [True, False]
    assert events.latest(EventType.PLAN_COMPLETE) == []


def test_can_retry():
    failed = TaskStep(id="s", title="t", status=StepStatus.FAILED, retry_count=1)
    assert TaskPlanner.can_retry(failed) is True
    assert TaskPlanner.can_retry(failed.model_copy(update={"retry_count": 2})) is False
    assert TaskPlanner.can_retry(failed.model_copy(update={"status": StepStatus.DONE})) is False


def test_plan_completes_once_with_failed_count(planner, events, clock):
    plan = planner.start(planner.create_plan(FIBONACCI))
    python_id, summary_id = (step.id for step in plan.steps)

    for _ in range(2):
        plan = planner.update_step_status(plan, python_id, StepStatus.RUNNING)
        plan = planner.record_failure(plan, python_id, "boom")
    assert planner.get_progress(plan) == 0.5

    plan = planner.update_step_status(plan, summary_id, StepStatus.RUNNING)
    clock.advance(seconds=3)
    plan = planner.update_step_status(plan, summary_id, StepStatus.DONE, result="Summary")

    assert plan.status == PlanStatus.COMPLETE
    assert planner.get_progress(plan) == 1.0
    assert plan.total_duration_ms == 3000
    completes = events.latest(EventType.PLAN_COMPLETE, count=5)
    assert len(completes) == 1
    assert completes[0].payload["doneCount"] == 1
    assert completes[0].payload["failedCount"] == 1

    # Further terminal-to-terminal updates keep the plan complete without re-announcing it
    plan = planner.update_step_status(plan, summary_id, StepStatus.SKIPPED)
    assert plan.status == PlanStatus.COMPLETE
    assert plan.step(summary_id).result == SKIPPED_RESULT
    assert len(events.latest(EventType.PLAN_COMPLETE, count=5)) == 1


def test_notes_and_deliverable_accumulate(planner):
    plan = planner.create_plan(FIBONACCI)

    plan = planner.add_notes(plan, "first finding")
    plan = planner.add_notes(plan, "second finding")
    plan = planner.add_deliverable(plan, "Part 1. ")
    plan = planner.add_deliverable(plan, "Part 2.")

    assert plan.context.notes == "first finding\n\n---\n\nsecond finding"
    assert plan.context.deliverable == "Part 1. Part 2."


def test_build_task_plan_doc_renders_every_status():
    steps = [
        TaskStep(id="1", title="Done", status=StepStatus.DONE, duration_ms=2000),
        TaskStep(id="2", title="Running", status=StepStatus.RUNNING),
        TaskStep(id="3", title="Failed", status=StepStatus.FAILED, error="timeout"),
        TaskStep(id="4", title="Skipped", status=StepStatus.SKIPPED),
        TaskStep(id="5", title="Pending"),
    ]

    assert build_task_plan_doc("Plan", steps) == (
        "# Plan\n\n"
        "- [x] Done (2.0s)\n"
        "- [~] Running\n"
        "- [!] Failed ❌ timeout\n"
        "- [-] Skipped\n"
        "- [ ] Pending"
    )
