"""Assistant demo wiring the planner, retrieval, memory and history together.

By default the demo runs fully offline: tools are canned, embeddings come from
the hashing embedder and tool-less steps are composed deterministically.

    uv run python examples/assistant/run.py

To answer chat turns and summary steps with a model, pass `--llm`:

    uv run python examples/assistant/run.py --llm

Environment variables expected when `--llm` is used:
- `LLM_PROVIDER` (e.g., `ollama` or `openai`)
- `LLM_MODEL` (e.g., `llama3.1`)
- Provider-specific API key for hosted providers (e.g., `OPENAI_API_KEY`)

Pass `--data-dir` to persist memory, documents and conversations as JSON files.
"""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Any, Dict

from stepwise import (
    Capabilities,
    ChatHistoryService,
    EventBus,
    HashingEmbedder,
    HybridRetrievalStore,
    InMemoryStorage,
    JsonFileStorage,
    LLMResponder,
    MemoryManager,
    Orchestrator,
    ToolRegistry,
)
from stepwise.config import Config
from stepwise.context import ContextWindowManager
from stepwise.logging_utils import set_log_level
from stepwise.schemas import AgentEvent, EventType

SYSTEM_PROMPT = "You are Stepwise, a careful local assistant. Answer briefly."

HANDBOOK = """
The Fibonacci sequence starts with 0 and 1; every later number is the sum of
the two before it. Plotting the first twenty values shows exponential growth.

Laptops for students should balance weight, battery life and price. Reviewers
rate battery life above raw processor speed for note taking.
"""

MESSAGES = [
    "Hello there",
    "Write a Python script that calculates the Fibonacci sequence and then plot the result",
    "Compare the three best laptops for students and then summarize them",
]


async def execute_python(params: Dict[str, Any]) -> str:
    values = [0, 1]
    while len(values) < 12:
        values.append(values[-1] + values[-2])
    return "Fibonacci: " + " ".join(str(value) for value in values)


async def web_search(params: Dict[str, Any]) -> str:
    return (
        "Laptop A: 1.2 kg, 14 h battery. "
        "Laptop B: 1.6 kg, 10 h battery. "
        "Laptop C: 1.1 kg, 12 h battery."
    )


def print_event(event: AgentEvent) -> None:
    if event.type in (EventType.STEP_START, EventType.STEP_COMPLETE, EventType.STEP_FAIL):
        title = event.payload.get("title") or event.payload.get("error") or ""
        print(f"    {event.type.value:<14} {event.step_id} {title}")
    elif event.type == EventType.PLAN_COMPLETE:
        print(
            f"    {event.type.value:<14} done={event.payload['doneCount']} "
            f"failed={event.payload['failedCount']}"
        )


async def run_demo(*, use_llm: bool, data_dir: Path | None) -> None:
    storage = JsonFileStorage(data_dir) if data_dir else InMemoryStorage()
    embedder = HashingEmbedder()
    responder = LLMResponder() if use_llm else None

    capabilities = await Capabilities.detect(storage, embedder, responder)
    events = EventBus()
    events.on_all(print_event)

    memory = MemoryManager(
        storage,
        max_entries=Config.MEMORY_MAX_ENTRIES,
        capabilities=capabilities,
    )
    retrieval = HybridRetrievalStore(
        embedder,
        storage=storage if capabilities.storage else None,
        max_entries=Config.VECTOR_MAX_ENTRIES,
        events=events,
    )
    history = ChatHistoryService(storage, debounce_seconds=Config.SAVE_DEBOUNCE_SECONDS)

    orchestrator = Orchestrator(
        tools=ToolRegistry({"execute_python": execute_python, "web_search": web_search}),
        responder=responder,
        memory=memory,
        retrieval=retrieval,
        history=history,
        storage=storage,
        events=events,
        capabilities=capabilities,
        context_manager=ContextWindowManager(max_tokens=Config.CONTEXT_MAX_TOKENS),
        system_prompt=SYSTEM_PROMPT,
        plan_threshold=Config.PLAN_THRESHOLD,
    )
    await orchestrator.initialize()
    if "handbook" not in retrieval.documents():
        await retrieval.add_document("handbook", HANDBOOK)

    conversation_id = await history.create_conversation(MESSAGES[0])
    turns: list[dict[str, str]] = []
    try:
        for message in MESSAGES:
            print(f"\n> {message}")
            outcome = await orchestrator.handle_message(
                message, history=turns, conversation_id=conversation_id
            )
            label = "plan" if outcome.planned else "chat"
            print(f"[{label}] {outcome.answer}")
            turns.append({"role": "user", "content": message})
            turns.append({"role": "assistant", "content": outcome.answer})
    finally:
        await orchestrator.close()

    print(f"\nMemory: {memory.get_stats()}")


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Stepwise assistant demo")
    parser.add_argument("--llm", action="store_true", help="Answer with the configured LLM")
    parser.add_argument("--data-dir", type=Path, default=None, help="Persist state as JSON files here")
    return parser.parse_args()


async def main(args: argparse.Namespace) -> None:
    set_log_level(Config.LOG_LEVEL)
    if args.llm:
        Config.validate()
        print(Config.display())
    await run_demo(use_llm=args.llm, data_dir=args.data_dir)


if __name__ == "__main__":
    asyncio.run(main(parse_args()))
