"""
Plan executor: runs the steps of a ``TaskPlan`` one at a time.

Execution flow per plan:
1. Mark the plan executing, pull relevant memories and retrieved passages
   into the plan notes
2. Loop ``get_next_step`` -> ``running`` -> tool call (or responder) -> ``done``
3. On failure, record it on the step; retryable failures are re-queued
4. Stop early only through cooperative ``cancel()``: remaining steps are skipped
5. Store a task summary in memory once the plan completes

Step-level errors never propagate out of ``execute``; the returned plan
carries every failure on its steps.
"""

from __future__ import annotations

import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Set

from .context import ContextWindowManager, Message, ResultPipeline
from .events import EventBus
from .logging_utils import log_error, log_info, log_planner, log_warning
from .memory import MemoryManager
from .planner import TaskPlanner
from .resilience import ErrorHandler
from .retrieval import HybridRetrievalStore
from .schemas import ContextWindow, PlanStatus, SearchResult, StepStatus, TaskPlan, TaskStep
from .tools import ToolRegistry

Responder = Callable[[str, ContextWindow], Awaitable[str]]

RETRIEVAL_TOP_K = 3
SUMMARY_RESULT_CHARS = 200
INFERENCE_FEATURE = "inference"
RETRIEVAL_FEATURE = "retrieval"


def format_retrieved(results: Sequence[SearchResult]) -> str:
    lines = ["[RETRIEVED CONTEXT]"]
    for result in results:
        lines.append(f"• ({result.document_id}, p.{result.page_number}) {result.text}")
    return "\n".join(lines)


class PlanExecutor:
    """Drive a plan to completion through tools, retries and degradation.

    Args:
        planner: Planner owning the step state machine
        tools: Registry the tool-backed steps call into
        error_handler: Resilience facade (retry for tool calls, degradation flags)
        events: Event bus for tool-call events
        memory: Optional memory manager (context, tool cache, task summaries)
        retrieval: Optional retrieval store consulted once per plan
        responder: Optional inference responder for tool-less steps
        context_manager: Builds the context window handed to the responder
    """

    def __init__(
        self,
        planner: TaskPlanner,
        tools: ToolRegistry,
        *,
        error_handler: ErrorHandler,
        events: EventBus,
        memory: Optional[MemoryManager] = None,
        retrieval: Optional[HybridRetrievalStore] = None,
        responder: Optional[Responder] = None,
        context_manager: Optional[ContextWindowManager] = None,
    ) -> None:
        self.planner = planner
        self.tools = tools
        self.error_handler = error_handler
        self.events = events
        self.memory = memory
        self.retrieval = retrieval
        self.responder = responder
        self.context_manager = context_manager or ContextWindowManager()
        self._running: Set[str] = set()
        self._cancel_requested: Set[str] = set()

    def cancel(self, plan_id: Optional[str] = None) -> None:
        """Request cooperative cancellation; the running step finishes first.

        Without ``plan_id`` every plan currently executing is cancelled.
        """

        targets = {plan_id} if plan_id is not None else set(self._running)
        self._cancel_requested.update(targets)

    def is_cancelled(self, plan_id: str) -> bool:
        return plan_id in self._cancel_requested

    def running_plans(self) -> List[str]:
        return sorted(self._running)

    # ------------------------------------------------------------------
    # Plan loop
    # ------------------------------------------------------------------

    async def execute(
        self,
        plan: TaskPlan,
        *,
        system_prompt: str = "",
        history: Sequence[Message] = (),
    ) -> TaskPlan:
        """Run ``plan`` to completion (or cancellation) and return the final copy.

        Each call keeps its own pipeline and cancellation state, so several
        plans may run concurrently on one executor.
        """

        self._running.add(plan.id)
        try:
            return await self._execute(plan, system_prompt, history)
        finally:
            self._running.discard(plan.id)
            self._cancel_requested.discard(plan.id)

    async def _execute(
        self,
        plan: TaskPlan,
        system_prompt: str,
        history: Sequence[Message],
    ) -> TaskPlan:
        pipeline = ResultPipeline()
        plan = self.planner.start(plan)
        log_info(f"[Executor] Executing '{plan.title}' ({len(plan.steps)} steps)")

        memory_context = await self._memory_context(plan.goal)
        if memory_context:
            plan = self.planner.add_notes(plan, memory_context)

        retrieved = await self._retrieve(plan.goal)
        if retrieved:
            plan = self.planner.add_notes(plan, format_retrieved(retrieved))

        while True:
            if self.is_cancelled(plan.id):
                plan = self._skip_remaining(plan)
                break

            step = self.planner.get_next_step(plan)
            if step is None:
                break

            plan = self.planner.update_step_status(plan, step.id, StepStatus.RUNNING)
            try:
                result = await self._run_step(
                    plan, step, pipeline, system_prompt, history, memory_context
                )
            except Exception as exc:
                log_error(f"[Executor] Step '{step.title}' failed: {exc}")
                plan = self.planner.record_failure(plan, step.id, str(exc))
                continue

            pipeline.add_result(step.id, step.tool or "reasoning", result)
            plan = self.planner.update_step_status(plan, step.id, StepStatus.DONE, result=result)
            plan = self._collect(plan, step, result)

        if plan.status == PlanStatus.COMPLETE:
            await self._remember(plan)
        return plan

    def _skip_remaining(self, plan: TaskPlan) -> TaskPlan:
        log_warning(f"[Executor] Cancelled '{plan.title}', skipping remaining steps")
        for step in plan.steps:
            if step.status == StepStatus.PENDING:
                plan = self.planner.update_step_status(plan, step.id, StepStatus.SKIPPED)
        return plan

    def _collect(self, plan: TaskPlan, step: TaskStep, result: str) -> TaskPlan:
        """Route a step result into the plan's notes or deliverable."""

        if step.id == plan.steps[-1].id:
            return self.planner.add_deliverable(plan, result)
        if step.tool is None or step.tool == "web_search":
            return self.planner.add_notes(plan, f"{step.title}\n{result}")
        return plan

    # ------------------------------------------------------------------
    # Context gathering
    # ------------------------------------------------------------------

    async def _memory_context(self, goal: str) -> str:
        if self.memory is None:
            return ""
        try:
            return await self.memory.build_memory_context(goal)
        except Exception as exc:
            log_warning(f"[Executor] Memory context unavailable: {exc}")
            return ""

    async def _retrieve(self, goal: str) -> List[SearchResult]:
        if self.retrieval is None or self.retrieval.size == 0:
            return []

        async def search() -> List[SearchResult]:
            return await self.retrieval.hybrid_search(goal, top_k=RETRIEVAL_TOP_K)

        async def nothing() -> List[SearchResult]:
            return []

        return await self.error_handler.degradation.execute_feature(
            RETRIEVAL_FEATURE, search, nothing
        )

    # ------------------------------------------------------------------
    # Step execution
    # ------------------------------------------------------------------

    async def _run_step(
        self,
        plan: TaskPlan,
        step: TaskStep,
        pipeline: ResultPipeline,
        system_prompt: str,
        history: Sequence[Message],
        memory_context: str,
    ) -> str:
        if step.tool is not None:
            return await self._run_tool(plan, step, pipeline)

        window = self.context_manager.build_window(
            system_prompt,
            history,
            memory_context=memory_context,
            tool_results=pipeline.build_chaining_context(),
        )
        instruction = f"{step.title}: {step.description}\nTask: {plan.goal}"

        async def compose() -> str:
            return self.compose(plan, step, pipeline)

        if self.responder is None:
            return await compose()

        responder = self.responder

        async def infer() -> str:
            return await responder(instruction, window)

        return await self.error_handler.degradation.execute_feature(
            INFERENCE_FEATURE, infer, compose
        )

    async def _run_tool(self, plan: TaskPlan, step: TaskStep, pipeline: ResultPipeline) -> str:
        tool = step.tool
        params: Dict[str, Any] = dict(step.tool_params)

        cached = await self._cached(tool, params)
        if cached is not None:
            self.events.step_progress(plan.id, step.id, f"Using cached result for {tool}")
            log_planner(f"[Executor] Cache hit for {tool}")
            return cached

        chaining = pipeline.build_chaining_context()
        if chaining:
            params["context"] = chaining

        self.events.tool_call_start(tool, params, plan_id=plan.id, step_id=step.id)
        started = time.monotonic()
        try:
            result = await self.error_handler.retry.retry(
                lambda: self.tools.invoke(tool, params),
                f"tool:{tool}",
            )
        except Exception:
            self.events.tool_call_end(
                tool,
                success=False,
                duration_ms=int((time.monotonic() - started) * 1000),
                plan_id=plan.id,
                step_id=step.id,
            )
            raise

        self.events.tool_call_end(
            tool,
            success=True,
            duration_ms=int((time.monotonic() - started) * 1000),
            plan_id=plan.id,
            step_id=step.id,
        )
        await self._cache(tool, step.tool_params, result)
        return result

    async def _cached(self, tool: str, params: Dict[str, Any]) -> Optional[str]:
        if self.memory is None:
            return None
        try:
            return await self.memory.get_cached_tool_result(tool, params)
        except Exception as exc:
            log_warning(f"[Executor] Tool cache lookup failed: {exc}")
            return None

    async def _cache(self, tool: str, params: Dict[str, Any], result: str) -> None:
        if self.memory is None:
            return
        try:
            await self.memory.cache_tool_result(tool, params, result)
        except Exception as exc:
            log_warning(f"[Executor] Could not cache {tool} result: {exc}")

    @staticmethod
    def compose(plan: TaskPlan, step: TaskStep, pipeline: ResultPipeline) -> str:
        """Deterministic answer for tool-less steps when no responder is usable."""

        if step.id != plan.steps[-1].id:
            chaining = pipeline.build_chaining_context()
            return f"{step.title}: {plan.goal}" + (f"\n\n{chaining}" if chaining else "")

        lines = [f"## {plan.title}", ""]
        for candidate in plan.steps:
            if candidate.id == step.id:
                continue
            if candidate.status == StepStatus.DONE:
                lines.append(f"- {candidate.title}: {(candidate.result or '')[:SUMMARY_RESULT_CHARS]}")
            elif candidate.status == StepStatus.FAILED:
                lines.append(f"- {candidate.title}: failed ({candidate.error})")
            elif candidate.status == StepStatus.SKIPPED:
                lines.append(f"- {candidate.title}: skipped")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Completion
    # ------------------------------------------------------------------

    async def _remember(self, plan: TaskPlan) -> None:
        if self.memory is None:
            return
        titles = [step.title for step in plan.steps]
        result = plan.context.deliverable or next(
            (step.result for step in reversed(plan.steps) if step.result), ""
        )
        try:
            await self.memory.store_task_summary(
                plan.title,
                titles,
                result[:SUMMARY_RESULT_CHARS],
                plan.total_duration_ms or 0,
            )
        except Exception as exc:
            log_warning(f"[Executor] Could not store task summary: {exc}")


__all__ = ["PlanExecutor", "Responder", "format_retrieved"]
