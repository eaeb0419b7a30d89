"""Token-budgeted prompt assembly and step-to-step result chaining."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Mapping, Optional, Sequence, Tuple, Union

from .memory import CHARS_PER_TOKEN
from .schemas import ContextWindow, SerializedMessage, utcnow

SYSTEM_SHARE = 0.30
HISTORY_SHARE = 0.40
MEMORY_SHARE = 0.15
TOOL_SHARE = 0.15

TRUNCATED_MARKER = "\n[...truncated]"
MORE_MEMORIES_MARKER = "\n[...more memories available]"

RESULT_MAX_CHARS = 2000
CHAINING_LINE_MAX_CHARS = 500
CHAINING_HEADER = "[PREVIOUS STEP RESULTS — Use these to continue the task]"

Message = Union[SerializedMessage, Mapping[str, str]]


def _role_and_content(message: Message) -> Tuple[str, str]:
    if isinstance(message, SerializedMessage):
        return message.role, message.content
    return message["role"], message["content"]


class ContextWindowManager:
    """Split a token budget across system, history, memory and tool-result sections.

    Shares are fixed at 30/40/15/15 percent; each share is converted to a
    character budget at four characters per token.
    """

    def __init__(self, max_tokens: int = 4096) -> None:
        self.max_tokens = max_tokens

    def set_max_tokens(self, max_tokens: int) -> None:
        if max_tokens <= 0:
            raise ValueError("max_tokens must be positive")
        self.max_tokens = max_tokens

    def _budget(self, share: float) -> int:
        return math.floor(self.max_tokens * share * CHARS_PER_TOKEN)

    def build_window(
        self,
        system_prompt: str,
        messages: Sequence[Message] = (),
        memory_context: str = "",
        tool_results: str = "",
    ) -> ContextWindow:
        """Assemble a ``ContextWindow`` from live inputs.

        - System text keeps its head and gets a truncation marker.
        - History is collected backwards from the newest turn and stops
          before the first turn that does not fit; turns are never split.
        - Memory keeps its head, tool results keep their most recent tail.
        """

        system_max = self._budget(SYSTEM_SHARE)
        history_max = self._budget(HISTORY_SHARE)
        memory_max = self._budget(MEMORY_SHARE)
        tool_max = self._budget(TOOL_SHARE)

        if len(system_prompt) > system_max:
            system_context = system_prompt[:system_max] + TRUNCATED_MARKER
        else:
            system_context = system_prompt

        history_chars = 0
        turns: List[str] = []
        for message in reversed(list(messages)):
            role, content = _role_and_content(message)
            line = f"{role}: {content}"
            if history_chars + len(line) > history_max:
                break
            history_chars += len(line)
            turns.insert(0, line)

        if len(memory_context) > memory_max:
            relevant_memory = memory_context[:memory_max] + MORE_MEMORIES_MARKER
        else:
            relevant_memory = memory_context

        if len(tool_results) > tool_max:
            tool_context = tool_results[-tool_max:] if tool_max > 0 else ""
        else:
            tool_context = tool_results

        total_chars = len(system_context) + history_chars + len(relevant_memory) + len(tool_context)
        return ContextWindow(
            system_context=system_context,
            recent_history="\n".join(turns),
            relevant_memory=relevant_memory,
            tool_results=tool_context,
            total_token_estimate=math.ceil(total_chars / CHARS_PER_TOKEN),
        )


@dataclass
class PipelineResult:
    step_id: str
    tool: str
    output: str
    timestamp: datetime = field(default_factory=utcnow)


class ResultPipeline:
    """Ordered record of step outputs, rendered as context for the next step."""

    def __init__(self) -> None:
        self._by_step: Dict[str, str] = {}
        self._ordered: List[PipelineResult] = []

    def __len__(self) -> int:
        return len(self._ordered)

    def add_result(self, step_id: str, tool: str, output: str) -> None:
        self._by_step[step_id] = output
        self._ordered.append(PipelineResult(step_id, tool, output[:RESULT_MAX_CHARS]))

    def last_result(self) -> Optional[str]:
        return self._ordered[-1].output if self._ordered else None

    def get_result(self, step_id: str) -> Optional[str]:
        return self._by_step.get(step_id)

    def build_chaining_context(self, max_results: int = 3) -> str:
        if not self._ordered or max_results <= 0:
            return ""
        lines = [CHAINING_HEADER]
        for result in self._ordered[-max_results:]:
            lines.append(f"• {result.tool}: {result.output[:CHAINING_LINE_MAX_CHARS]}")
        return "\n".join(lines)

    def clear(self) -> None:
        self._by_step.clear()
        self._ordered.clear()


__all__ = ["ContextWindowManager", "ResultPipeline", "PipelineResult"]
