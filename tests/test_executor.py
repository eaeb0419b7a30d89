"""Tests for plan execution through tools, retries, memory and degradation."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from stepwise.events import EventBus
from stepwise.exceptions import is_transient
from stepwise.executor import PlanExecutor
from stepwise.memory import MemoryManager
from stepwise.planner import SKIPPED_RESULT, TaskPlanner
from stepwise.resilience import ErrorHandler
from stepwise.retrieval import HashingEmbedder, HybridRetrievalStore
from stepwise.schemas import ContextWindow, EventType, MemoryType, PlanStatus, StepStatus
from stepwise.tools import ToolRegistry

FIBONACCI = "Write a Python script that calculates the Fibonacci sequence and then plot the result"
RESEARCH = "Compare the three best laptops for students and then summarize them"


class RecordingSleep:
    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


def make_executor(tools, *, events=None, sleep=None, **kwargs):
    events = events or EventBus()
    planner = TaskPlanner(events)
    error_handler = ErrorHandler(
        events,
        sleep=sleep or RecordingSleep(),
        rng=lambda: 1.0,
        retry_on=is_transient,
    )
    executor = PlanExecutor(
        planner,
        ToolRegistry(tools),
        error_handler=error_handler,
        events=events,
        **kwargs,
    )
    return executor, planner, events


@pytest.mark.asyncio
async def test_fibonacci_plan_runs_to_completion():
    python_tool = AsyncMock(return_value="0 1 1 2 3 5 8")
    executor, planner, events = make_executor({"execute_python": python_tool})

    plan = await executor.execute(planner.create_plan(FIBONACCI))

    assert plan.status == PlanStatus.COMPLETE
    assert [step.status for step in plan.steps] == [StepStatus.DONE, StepStatus.DONE]
    assert plan.steps[0].result == "0 1 1 2 3 5 8"
    python_tool.assert_awaited_once_with({"task": FIBONACCI})

    assert plan.context.deliverable == (
        f"## {plan.title}\n\n- 🐍 Run Python code: 0 1 1 2 3 5 8"
    )
    assert [e.payload["success"] for e in events.latest(EventType.TOOL_CALL_END)] == [True]
    assert len(events.latest(EventType.PLAN_COMPLETE, count=5)) == 1


@pytest.mark.asyncio
async def test_tool_failure_fails_step_but_plan_completes():
    python_tool = AsyncMock(side_effect=ValueError("SyntaxError in generated code"))
    executor, planner, events = make_executor({"execute_python": python_tool})

    plan = await executor.execute(planner.create_plan(FIBONACCI))

    python_step, summary_step = plan.steps
    assert plan.status == PlanStatus.COMPLETE
    assert python_step.status == StepStatus.FAILED
    assert python_step.retry_count == 2
    # Non-transient errors skip the retry loop; the step itself is attempted twice
    assert python_tool.await_count == 2
    assert summary_step.status == StepStatus.DONE
    assert "failed (SyntaxError in generated code)" in plan.context.deliverable

    complete = events.latest(EventType.PLAN_COMPLETE)[0]
    assert complete.payload["failedCount"] == 1
    assert complete.payload["doneCount"] == 1


@pytest.mark.asyncio
async def test_transient_errors_are_retried_inside_the_step():
    sleep = RecordingSleep()
    python_tool = AsyncMock(
        side_effect=[ConnectionError("network unreachable"), ConnectionError("network unreachable"), "42"]
    )
    executor, planner, events = make_executor({"execute_python": python_tool}, sleep=sleep)

    plan = await executor.execute(planner.create_plan(FIBONACCI))

    assert plan.steps[0].status == StepStatus.DONE
    assert plan.steps[0].result == "42"
    assert plan.steps[0].retry_count == 0
    assert python_tool.await_count == 3
    # Network recovery wait plus backoff, twice
    assert sleep.delays == [5.0, 1.0, 5.0, 2.0]
    statuses = [event.payload["status"] for event in events.latest(EventType.STATUS_CHANGE, count=10)]
    assert statuses.count("retrying") == 2


@pytest.mark.asyncio
async def test_exhausted_retries_fail_the_step():
    python_tool = AsyncMock(side_effect=TimeoutError("request timed out"))
    executor, planner, _ = make_executor({"execute_python": python_tool})

    plan = await executor.execute(planner.create_plan(FIBONACCI))

    step = plan.steps[0]
    assert step.status == StepStatus.FAILED
    assert "after 3 attempts" in step.error
    assert python_tool.await_count == 6


@pytest.mark.asyncio
async def test_unknown_tool_fails_step():
    executor, planner, _ = make_executor({})

    plan = await executor.execute(planner.create_plan(FIBONACCI))

    assert plan.steps[0].status == StepStatus.FAILED
    assert plan.steps[0].error == "Unknown tool: execute_python"
    assert plan.status == PlanStatus.COMPLETE


@pytest.mark.asyncio
async def test_tool_results_are_cached_between_plans():
    python_tool = AsyncMock(return_value="0 1 1 2")
    memory = MemoryManager()
    executor, planner, events = make_executor({"execute_python": python_tool}, memory=memory)

    await executor.execute(planner.create_plan(FIBONACCI))
    second = await executor.execute(planner.create_plan(FIBONACCI))

    assert python_tool.await_count == 1
    assert second.steps[0].result == "0 1 1 2"
    progress = events.latest(EventType.STEP_PROGRESS)
    assert progress[0].payload["message"] == "Using cached result for execute_python"


@pytest.mark.asyncio
async def test_completed_plan_is_summarised_in_memory_and_memory_feeds_notes():
    memory = MemoryManager()
    await memory.store_learned_fact("The user prefers Python type hints", "chat")
    executor, planner, _ = make_executor(
        {"execute_python": AsyncMock(return_value="done")}, memory=memory
    )

    plan = await executor.execute(planner.create_plan(FIBONACCI))

    assert "[AGENT MEMORY" in plan.context.notes
    assert "The user prefers Python type hints" in plan.context.notes
    summaries = [entry for entry in memory.entries() if entry.type == MemoryType.TASK_SUMMARY]
    assert len(summaries) == 1
    assert summaries[0].content.startswith(f"Task: {plan.title}")


@pytest.mark.asyncio
async def test_retrieved_passages_are_added_to_notes():
    retrieval = HybridRetrievalStore(HashingEmbedder())
    await retrieval.add_document("fib-notes", "The Fibonacci sequence starts with 0 and 1.")
    executor, planner, _ = make_executor(
        {"execute_python": AsyncMock(return_value="ok")}, retrieval=retrieval
    )

    plan = await executor.execute(planner.create_plan(FIBONACCI))

    assert "[RETRIEVED CONTEXT]" in plan.context.notes
    assert "(fib-notes, p.1) The Fibonacci sequence starts with 0 and 1." in plan.context.notes


@pytest.mark.asyncio
async def test_responder_answers_tool_less_steps():
    responder = AsyncMock(return_value="Here is your Fibonacci summary.")
    executor, planner, _ = make_executor(
        {"execute_python": AsyncMock(return_value="0 1 1 2 3")}, responder=responder
    )

    plan = await executor.execute(planner.create_plan(FIBONACCI), system_prompt="Be brief.")

    assert plan.context.deliverable == "Here is your Fibonacci summary."
    instruction, window = responder.await_args.args
    assert instruction.startswith("📋 Summary")
    assert isinstance(window, ContextWindow)
    assert window.system_context == "Be brief."
    assert "• execute_python: 0 1 1 2 3" in window.tool_results


@pytest.mark.asyncio
async def test_failing_responder_degrades_to_composed_answer():
    responder = AsyncMock(side_effect=RuntimeError("model offline"))
    executor, planner, _ = make_executor(
        {"execute_python": AsyncMock(return_value="8")}, responder=responder
    )

    plan = await executor.execute(planner.create_plan(FIBONACCI))

    assert plan.steps[-1].status == StepStatus.DONE
    assert plan.context.deliverable.startswith("## ")
    assert executor.error_handler.degradation.is_feature_enabled("inference") is False


@pytest.mark.asyncio
async def test_cancel_skips_remaining_steps():
    executor = None

    async def search(params):
        executor.cancel()
        return "laptop reviews"

    executor, planner, _ = make_executor({"web_search": search})

    plan = await executor.execute(planner.create_plan(RESEARCH))

    assert plan.steps[0].status == StepStatus.DONE
    assert all(step.status == StepStatus.SKIPPED for step in plan.steps[1:])
    assert plan.steps[-1].result == SKIPPED_RESULT
    assert plan.status == PlanStatus.COMPLETE
    assert executor.running_plans() == []
    assert executor.is_cancelled(plan.id) is False


@pytest.mark.asyncio
async def test_research_results_are_noted_and_chained():
    seen_params = {}

    async def search(params):
        return "Laptop A is fastest"

    async def python(params):
        seen_params.update(params)
        return "table"

    executor, planner, _ = make_executor({"web_search": search, "execute_python": python})
    plan = await executor.execute(
        planner.create_plan("Research the latest laptops and then calculate a python price chart")
    )

    assert "🔍 Web research\nLaptop A is fastest" in plan.context.notes
    assert "• web_search: Laptop A is fastest" in seen_params["context"]


@pytest.mark.asyncio
async def test_cancelling_one_plan_leaves_concurrent_plan_running():
    sorting = "Write a Python script that sorts a list of numbers and then plot the result"
    started = asyncio.Event()
    release = asyncio.Event()

    async def python(params):
        if params["task"] == FIBONACCI:
            started.set()
            await release.wait()
        return "ok"

    executor, planner, _ = make_executor({"execute_python": python})
    fibonacci_plan = planner.create_plan(FIBONACCI)
    sorting_plan = planner.create_plan(sorting)

    fibonacci_run = asyncio.ensure_future(executor.execute(fibonacci_plan))
    await started.wait()
    executor.cancel(fibonacci_plan.id)

    sorted_result = await executor.execute(sorting_plan)
    release.set()
    fibonacci_result = await fibonacci_run

    assert [step.status for step in fibonacci_result.steps] == [StepStatus.DONE, StepStatus.SKIPPED]
    assert all(step.status == StepStatus.DONE for step in sorted_result.steps)
    assert executor.running_plans() == []
