"""
Task planner: decides whether a request needs a multi-step plan and builds it.

Planning is deterministic and keyword-driven (no inference call), so it is
cheap enough to run on every inbound message:

1. ``should_plan`` scores the message with capped, additive contributions
   (action verbs, multi-step connectives, length, technical terms) and a
   penalty for plain questions.
2. ``create_plan`` matches a tool-hint table and lays out steps in a fixed
   priority order, always ending with a summary step.
3. ``update_step_status`` and friends return updated copies of the plan;
   the plan passed in is never mutated.

Every state change is reported on the event bus and reflected in the
checkbox-style ``task_plan`` document kept in the plan context.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from .events import EventBus
from .logging_utils import log_planner, log_success
from .schemas import (
    PlanStatus,
    StepStatus,
    TaskContext,
    TaskPlan,
    TaskStep,
    generate_id,
    utcnow,
)

PLAN_THRESHOLD = 0.6
MAX_RETRIES_PER_STEP = 2
MAX_STEPS = 8
MIN_WORDS = 5
TITLE_WORDS = 6
NOTES_SEPARATOR = "\n\n---\n\n"
SKIPPED_RESULT = "Skipped"

ACTION_VERBS = (
    # German
    "erstelle", "erstell", "baue", "bau", "analysiere", "analysier",
    "vergleiche", "vergleich", "schreibe", "schreib", "generiere", "generier",
    "implementiere", "implementier", "entwickle", "entwickel", "berechne",
    "optimiere", "optimier", "teste", "test", "debugge", "fixe", "fix",
    "konvertiere", "konvertier", "transformiere", "übersetze", "visualisiere",
    "zeichne", "plotte", "zeige", "mache", "mach",
    # English
    "create", "build", "analyze", "compare", "write", "generate", "implement",
    "develop", "calculate", "optimize", "test", "debug", "fix", "convert",
    "transform", "translate", "visualize", "draw", "plot", "show", "make",
    "design", "research", "investigate",
)

MULTI_STEP_INDICATORS = (
    "und dann", "und", "außerdem", "danach", "anschließend", "zusätzlich",
    "schritt für schritt", "step by step", "zuerst", "erstens", "zweitens",
    "and then", "additionally", "furthermore", "also", "first", "then",
    "finally", "next", "after that",
)

GREETINGS = (
    "hallo", "hi", "hey", "moin", "servus", "guten tag", "guten morgen",
    "guten abend", "hello", "good morning", "good evening", "sup", "yo",
    "danke", "thanks", "thank you", "tschüss", "bye", "ciao", "ja", "nein",
    "ok", "okay", "klar", "sure", "yes", "no", "alright",
)

TECH_TERMS = (
    "api", "code", "function", "class", "algorithmus", "algorithm",
    "database", "datenbank", "frontend", "backend", "server", "deploy",
    "python", "javascript", "typescript", "react", "sql",
)

TOOL_HINTS: Dict[str, Tuple[str, ...]] = {
    "execute_python": (
        "diagramm", "chart", "plot", "berechne", "calculate", "graph",
        "matplotlib", "daten", "data", "analyse", "statistik", "python",
        "script", "algorithmus", "sortier", "fibonacci", "primzahl",
    ),
    "web_search": (
        "suche", "finde", "recherche", "search", "find", "research", "aktuell",
        "current", "latest", "news", "was ist", "what is", "wer ist",
        "who is", "wie viel", "how much", "vergleiche",
    ),
    "execute_javascript": (
        "javascript", "js", "html", "css", "dom", "browser", "website",
        "webpage", "react", "frontend",
    ),
    "execute_sql": (
        "sql", "datenbank", "database", "tabelle", "table", "query",
        "abfrage", "select", "insert",
    ),
    "create_file": (
        "datei", "file", "erstelle datei", "create file", "speichere",
        "save", "schreibe in", "write to",
    ),
}

_RESEARCH_PATTERN = re.compile(
    r"recherch|such|find|aktuell|current|latest|top \d+|best \d+|vergleich|compar",
    re.IGNORECASE,
)
_FILE_PATTERN = re.compile(r"datei|file|speicher|save|export", re.IGNORECASE)

_CHECKBOXES = {
    StepStatus.DONE: "[x]",
    StepStatus.RUNNING: "[~]",
    StepStatus.FAILED: "[!]",
    StepStatus.SKIPPED: "[-]",
    StepStatus.PENDING: "[ ]",
}

_ALLOWED_TRANSITIONS = {
    StepStatus.PENDING: {StepStatus.RUNNING, StepStatus.SKIPPED},
    StepStatus.RUNNING: {StepStatus.DONE, StepStatus.FAILED, StepStatus.SKIPPED},
    StepStatus.FAILED: {StepStatus.PENDING, StepStatus.SKIPPED},
    StepStatus.DONE: {StepStatus.SKIPPED},
    StepStatus.SKIPPED: {StepStatus.SKIPPED},
}


def build_task_plan_doc(title: str, steps: Sequence[TaskStep]) -> str:
    """Render the checkbox progress document for a plan."""

    lines = [f"# {title}\n"]
    for step in steps:
        line = f"- {_CHECKBOXES[step.status]} {step.title}"
        if step.duration_ms:
            line += f" ({step.duration_ms / 1000:.1f}s)"
        if step.error:
            line += f" ❌ {step.error}"
        lines.append(line)
    return "\n".join(lines)


def _elapsed_ms(start: Optional[datetime], end: datetime) -> int:
    if start is None:
        return 0
    return max(0, int((end - start).total_seconds() * 1000))


class TaskPlanner:
    """Heuristic planner producing tool-backed step lists.

    Args:
        events: Event bus receiving plan and step lifecycle events
        threshold: Minimum ``should_plan`` score (default 0.6)
        clock: Returns the current time; tests inject a fake clock
    """

    def __init__(
        self,
        events: EventBus,
        *,
        threshold: float = PLAN_THRESHOLD,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.events = events
        self.threshold = threshold
        self.clock = clock

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    @staticmethod
    def is_greeting(message: str) -> bool:
        lower = message.strip().lower()
        return any(
            lower == greeting
            or lower.startswith(greeting + " ")
            or lower.startswith(greeting + ",")
            for greeting in GREETINGS
        )

    def score(self, message: str) -> float:
        """Planning score of a message (greeting and length gates not applied)."""

        lower = message.strip().lower()
        words = lower.split()

        action_count = sum(1 for verb in ACTION_VERBS if verb in lower)
        score = min(action_count * 0.3, 0.6)

        multi_step_count = sum(1 for indicator in MULTI_STEP_INDICATORS if indicator in lower)
        score += min(multi_step_count * 0.3, 0.6)

        if len(words) > 15:
            score += 0.2
        if len(words) > 25:
            score += 0.2

        if lower.endswith("?") and action_count == 0:
            score -= 0.2

        tech_count = sum(1 for term in TECH_TERMS if term in lower)
        score += min(tech_count * 0.15, 0.3)
        return score

    def should_plan(self, message: str) -> bool:
        """Return True when the message warrants multi-step execution."""

        if self.is_greeting(message):
            return False
        if len(message.split()) < MIN_WORDS:
            return False
        score = self.score(message)
        log_planner(f"[TaskPlanner] Planning score {score:.2f} (threshold {self.threshold})")
        return score >= self.threshold

    # ------------------------------------------------------------------
    # Plan construction
    # ------------------------------------------------------------------

    @staticmethod
    def detect_tools(message: str) -> List[str]:
        lower = message.lower()
        return [
            tool
            for tool, keywords in TOOL_HINTS.items()
            if any(keyword in lower for keyword in keywords)
        ]

    @staticmethod
    def generate_title(message: str) -> str:
        words = message.split()
        title = " ".join(words[:TITLE_WORDS])
        if len(words) > TITLE_WORDS:
            title += "..."
        return title

    def _generate_steps(self, message: str, tools: Sequence[str], plan_id: str) -> List[TaskStep]:
        lower = message.lower()
        layout: List[Tuple[str, str, Optional[str]]] = []

        needs_research = "web_search" in tools or bool(_RESEARCH_PATTERN.search(lower))
        if needs_research:
            layout.append(("🔍 Web research", "Collect current information on the topic", "web_search"))

        if "execute_python" in tools:
            if needs_research:
                layout.append(
                    ("📊 Prepare data", "Structure and analyse the research results", "execute_python")
                )
            layout.append(("🐍 Run Python code", "Write and execute a Python script", "execute_python"))

        if "execute_javascript" in tools:
            layout.append(
                ("⚡ Run JavaScript", "Write JavaScript and execute it in the sandbox", "execute_javascript")
            )

        if "execute_sql" in tools:
            layout.append(("🗄️ Database query", "Write and run an SQL query", "execute_sql"))

        if "create_file" in tools or _FILE_PATTERN.search(lower):
            layout.append(("📝 Create file", "Save the result as a file in the workspace", "create_file"))

        if not layout:
            layout.append(("🧠 Analysis", "Analyse the request and gather information", None))
            layout.append(("✍️ Compose answer", "Formulate a detailed answer", None))

        # The summary step always survives truncation
        layout = layout[: MAX_STEPS - 1]
        layout.append(("📋 Summary", "Summarise and present the results", None))

        steps = []
        for index, (title, description, tool) in enumerate(layout):
            params: Dict[str, str] = {}
            if tool == "web_search":
                params = {"query": message}
            elif tool is not None:
                params = {"task": message}
            steps.append(
                TaskStep(
                    id=f"step_{plan_id}_{index}",
                    title=title,
                    description=description,
                    tool=tool,
                    tool_params=params,
                )
            )
        return steps

    def create_plan(self, message: str) -> TaskPlan:
        """Decompose ``message`` into an ordered plan and announce it."""

        plan_id = generate_id("plan")
        tools = self.detect_tools(message)
        steps = self._generate_steps(message, tools, plan_id)
        title = self.generate_title(message)

        plan = TaskPlan(
            id=plan_id,
            title=title,
            goal=message,
            steps=steps,
            status=PlanStatus.PLANNING,
            context=TaskContext(task_plan=build_task_plan_doc(title, steps)),
            created_at=self.clock(),
        )

        self.events.plan_start(plan_id, title, message, len(steps))
        for index, step in enumerate(steps):
            self.events.plan_step_add(plan_id, step.id, step.title, step.tool, index)

        log_planner(f"[TaskPlanner] Created plan '{title}' with {len(steps)} steps")
        return plan

    # ------------------------------------------------------------------
    # State transitions
    # ------------------------------------------------------------------

    def start(self, plan: TaskPlan) -> TaskPlan:
        """Mark a freshly built plan as executing."""

        if plan.status != PlanStatus.PLANNING:
            return plan
        return plan.model_copy(update={"status": PlanStatus.EXECUTING})

    def _transition(
        self,
        plan: TaskPlan,
        step_id: str,
        status: StepStatus,
        result: Optional[str],
        error: Optional[str],
    ) -> List[TaskStep]:
        step = plan.step(step_id)
        if status not in _ALLOWED_TRANSITIONS[step.status]:
            raise ValueError(
                f"Invalid transition for step {step_id}: {step.status.value} -> {status.value}"
            )

        now = self.clock()
        update: Dict[str, object] = {"status": status}

        if status == StepStatus.RUNNING:
            update["started_at"] = now
            self.events.step_start(plan.id, step_id, step.title, step.tool)
        elif status == StepStatus.DONE:
            duration = _elapsed_ms(step.started_at, now)
            update.update(
                completed_at=now, result=result, error=None, duration_ms=duration
            )
            self.events.step_complete(plan.id, step_id, result or "", duration)
        elif status == StepStatus.FAILED:
            retry_count = step.retry_count + 1
            update.update(
                completed_at=now,
                error=error or "Unknown error",
                duration_ms=_elapsed_ms(step.started_at, now),
                retry_count=retry_count,
            )
            self.events.step_fail(
                plan.id,
                step_id,
                error or "Unknown error",
                retry_count < MAX_RETRIES_PER_STEP,
                retry_count,
            )
        elif status == StepStatus.SKIPPED:
            update["result"] = SKIPPED_RESULT
            self.events.step_complete(plan.id, step_id, SKIPPED_RESULT, 0)
        # failed -> pending re-queues the step silently

        return [
            candidate.model_copy(update=update) if candidate.id == step_id else candidate
            for candidate in plan.steps
        ]

    def _finalize(self, plan: TaskPlan, steps: List[TaskStep]) -> TaskPlan:
        all_terminal = bool(steps) and all(step.status.is_terminal for step in steps)
        update: Dict[str, object] = {
            "steps": steps,
            "context": plan.context.model_copy(
                update={"task_plan": build_task_plan_doc(plan.title, steps)}
            ),
        }

        if all_terminal and plan.status != PlanStatus.COMPLETE:
            now = self.clock()
            total = _elapsed_ms(plan.created_at, now)
            done = sum(1 for step in steps if step.status == StepStatus.DONE)
            failed = sum(1 for step in steps if step.status == StepStatus.FAILED)
            update.update(status=PlanStatus.COMPLETE, completed_at=now, total_duration_ms=total)
            self.events.plan_complete(plan.id, total, done, failed)
            log_success(f"[TaskPlanner] Plan '{plan.title}' complete ({done} done, {failed} failed)")
        elif not all_terminal and plan.status == PlanStatus.COMPLETE:
            update.update(status=PlanStatus.EXECUTING, completed_at=None, total_duration_ms=None)
        elif not all_terminal and plan.status == PlanStatus.PLANNING:
            update["status"] = PlanStatus.EXECUTING

        return plan.model_copy(update=update)

    def update_step_status(
        self,
        plan: TaskPlan,
        step_id: str,
        status: Union[StepStatus, str],
        result: Optional[str] = None,
        error: Optional[str] = None,
    ) -> TaskPlan:
        """Return a copy of ``plan`` with one step moved to ``status``.

        Args:
            plan: Current plan (left untouched)
            step_id: Step to update
            status: Target status
            result: Output of a completed step
            error: Error text of a failed step

        Returns:
            Updated plan with recomputed status and progress document

        Raises:
            KeyError: Unknown step id
            ValueError: Transition not allowed from the step's current status
        """

        steps = self._transition(plan, step_id, StepStatus(status), result, error)
        return self._finalize(plan, steps)

    def record_failure(self, plan: TaskPlan, step_id: str, error: str) -> TaskPlan:
        """Fail a running step and re-queue it when another attempt is allowed.

        Both transitions are applied before plan completion is evaluated, so a
        step that will be retried never completes the plan early.
        """

        failed_steps = self._transition(plan, step_id, StepStatus.FAILED, None, error)
        failed_plan = plan.model_copy(update={"steps": failed_steps})
        if self.can_retry(failed_plan.step(step_id)):
            log_planner(f"[TaskPlanner] Re-queueing step {step_id} after failure")
            failed_steps = self._transition(failed_plan, step_id, StepStatus.PENDING, None, None)
        return self._finalize(plan, failed_steps)

    # ------------------------------------------------------------------
    # Queries and context accumulators
    # ------------------------------------------------------------------

    @staticmethod
    def can_retry(step: TaskStep) -> bool:
        return step.status == StepStatus.FAILED and step.retry_count < MAX_RETRIES_PER_STEP

    @staticmethod
    def get_next_step(plan: TaskPlan) -> Optional[TaskStep]:
        return next((step for step in plan.steps if step.status == StepStatus.PENDING), None)

    @staticmethod
    def get_progress(plan: TaskPlan) -> float:
        if not plan.steps:
            return 0.0
        terminal = sum(1 for step in plan.steps if step.status.is_terminal)
        return terminal / len(plan.steps)

    @staticmethod
    def add_notes(plan: TaskPlan, note: str) -> TaskPlan:
        notes = f"{plan.context.notes}{NOTES_SEPARATOR}{note}" if plan.context.notes else note
        return plan.model_copy(update={"context": plan.context.model_copy(update={"notes": notes})})

    @staticmethod
    def add_deliverable(plan: TaskPlan, content: str) -> TaskPlan:
        deliverable = plan.context.deliverable + content
        return plan.model_copy(
            update={"context": plan.context.model_copy(update={"deliverable": deliverable})}
        )


__all__ = [
    "TaskPlanner",
    "build_task_plan_doc",
    "PLAN_THRESHOLD",
    "MAX_RETRIES_PER_STEP",
    "MAX_STEPS",
    "TOOL_HINTS",
    "SKIPPED_RESULT",
]
