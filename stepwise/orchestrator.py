"""
Top-level message orchestrator.

Fully decoupled from file I/O, database, and config.
All dependencies are injected by the user.

Handles one user message at a time:
1. Score the message with the planner (``should_plan``)
2. Planned turns: build a ``TaskPlan`` and run it through the executor
3. Chat turns: assemble a context window and ask the responder
4. Optionally record both sides of the turn in chat history (debounced)
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Sequence

from .capabilities import Capabilities
from .context import ContextWindowManager, Message
from .events import EventBus
from .exceptions import is_transient
from .executor import PlanExecutor, Responder
from .history import ChatHistoryService
from .logging_utils import log_info, log_planner, log_success, log_warning
from .memory import MemoryManager
from .planner import TaskPlanner
from .resilience import ErrorHandler
from .retrieval import HybridRetrievalStore
from .schemas import SerializedMessage, TaskPlan, generate_id
from .storage import KeyValueStorage
from .tools import ToolRegistry

INFERENCE_FEATURE = "inference"
NO_INFERENCE_ANSWER = "No language model is available to answer this message."


@dataclass
class MessageOutcome:
    """Result of ``Orchestrator.handle_message``."""

    planned: bool
    plan: Optional[TaskPlan]
    answer: str


class Orchestrator:
    """Route user messages to the planner/executor or straight to the responder.

    Args:
        tools: Tool registry for planned steps (empty registry by default)
        responder: Inference responder ``(instruction, window) -> text``
        memory: Memory manager shared with the executor
        retrieval: Retrieval store consulted for planned goals
        history: Chat history service used when a ``conversation_id`` is given
        storage: Backend closed by ``close()`` (usually shared with memory/history)
        events: Event bus; a private bus is created when omitted
        error_handler: Resilience facade; defaults to retrying transient errors only
        capabilities: Detected capability flags; inference off skips the responder
        system_prompt: System text placed at the head of every context window
        plan_threshold: Minimum planner score for a message to be planned
    """

    def __init__(
        self,
        *,
        tools: Optional[ToolRegistry] = None,
        responder: Optional[Responder] = None,
        memory: Optional[MemoryManager] = None,
        retrieval: Optional[HybridRetrievalStore] = None,
        history: Optional[ChatHistoryService] = None,
        storage: Optional[KeyValueStorage] = None,
        events: Optional[EventBus] = None,
        error_handler: Optional[ErrorHandler] = None,
        capabilities: Optional[Capabilities] = None,
        context_manager: Optional[ContextWindowManager] = None,
        system_prompt: str = "",
        plan_threshold: Optional[float] = None,
    ) -> None:
        self.events = events or EventBus()
        self.error_handler = error_handler or ErrorHandler(self.events, retry_on=is_transient)
        self.capabilities = capabilities or Capabilities(
            storage=storage is not None,
            embeddings=retrieval is not None,
            inference=responder is not None,
        )
        self.responder = responder if self.capabilities.inference else None
        self.memory = memory
        self.retrieval = retrieval
        self.history = history
        self.storage = storage
        self.system_prompt = system_prompt
        self.context_manager = context_manager or ContextWindowManager()

        if plan_threshold is None:
            self.planner = TaskPlanner(self.events)
        else:
            self.planner = TaskPlanner(self.events, threshold=plan_threshold)

        self.executor = PlanExecutor(
            self.planner,
            tools or ToolRegistry(),
            error_handler=self.error_handler,
            events=self.events,
            memory=memory,
            retrieval=retrieval,
            responder=self.responder,
            context_manager=self.context_manager,
        )

    async def initialize(self) -> None:
        """Load persisted memories and retrieval documents."""

        if self.memory is not None:
            await self.memory.initialize()
        if self.retrieval is not None and self.retrieval.storage is not None:
            loaded = await self.retrieval.load()
            log_info(f"[Orchestrator] Loaded {loaded} retrieval chunk(s)")
        log_info(f"[Orchestrator] Ready ({self.capabilities.describe()})")

    async def handle_message(
        self,
        message: str,
        *,
        history: Sequence[Message] = (),
        conversation_id: Optional[str] = None,
    ) -> MessageOutcome:
        if self.planner.should_plan(message):
            plan = self.planner.create_plan(message)
            log_planner(f"[Orchestrator] Planning '{plan.title}' ({len(plan.steps)} steps)")
            plan = await self.executor.execute(
                plan, system_prompt=self.system_prompt, history=history
            )
            answer = plan.context.deliverable or next(
                (step.result for step in reversed(plan.steps) if step.result), ""
            )
            outcome = MessageOutcome(planned=True, plan=plan, answer=answer)
        else:
            outcome = MessageOutcome(
                planned=False, plan=None, answer=await self._chat(message, history)
            )

        if conversation_id is not None:
            self._record_turn(conversation_id, history, message, outcome.answer)
        return outcome

    async def _chat(self, message: str, history: Sequence[Message]) -> str:
        memory_context = ""
        if self.memory is not None:
            try:
                memory_context = await self.memory.build_memory_context(message)
            except Exception as exc:
                log_warning(f"[Orchestrator] Memory context unavailable: {exc}")

        window = self.context_manager.build_window(
            self.system_prompt, history, memory_context=memory_context
        )

        async def unavailable() -> str:
            return NO_INFERENCE_ANSWER

        if self.responder is None:
            return await unavailable()

        responder = self.responder

        async def infer() -> str:
            return await responder(message, window)

        return await self.error_handler.degradation.execute_feature(
            INFERENCE_FEATURE, infer, unavailable
        )

    def _record_turn(
        self,
        conversation_id: str,
        history: Sequence[Message],
        message: str,
        answer: str,
    ) -> None:
        if self.history is None:
            return
        messages: List[SerializedMessage] = []
        for item in history:
            if isinstance(item, SerializedMessage):
                messages.append(item)
            else:
                messages.append(
                    SerializedMessage(
                        id=generate_id("msg"), role=item["role"], content=item["content"]
                    )
                )
        messages.append(SerializedMessage(id=generate_id("msg"), role="user", content=message))
        messages.append(SerializedMessage(id=generate_id("msg"), role="assistant", content=answer))
        self.history.save_conversation_debounced(conversation_id, messages)

    def cancel(self, plan_id: Optional[str] = None) -> None:
        """Cooperatively cancel one executing plan, or all of them."""

        self.executor.cancel(plan_id)

    async def flush(self) -> int:
        """Run every debounced write now; returns the number of saves performed."""

        if self.history is None:
            return 0
        return await self.history.flush_pending_saves()

    async def close(self) -> None:
        await self.flush()
        if self.history is not None:
            await self.history.close()
        if self.storage is not None:
            await self.storage.close()
        self.error_handler.cleanup()
        log_success("[Orchestrator] Closed")


__all__ = ["Orchestrator", "MessageOutcome"]
