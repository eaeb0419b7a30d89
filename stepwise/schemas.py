"""
Pydantic schemas for the stepwise planning core.

All records that cross a component boundary are defined here: plans and
steps, indexed chunks, memory entries, assembled context windows, resilience
policies and lifecycle events.

Design Philosophy:
- Copy-on-write updates via ``model_copy(update=...)`` (plans are never
  mutated in place by the planner)
- Memory metadata is a discriminated union keyed by ``type`` so consumers
  match on the variant class instead of probing an open dict
- JSON-compatible dumps (``model_dump(mode="json")``) are what storage backends
  persist
"""

from __future__ import annotations

import random
import string
import time
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


def utcnow() -> datetime:
    """Timezone-aware current time (default clock for every component)."""

    return datetime.now(timezone.utc)


_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_id(prefix: str) -> str:
    """Return an id of the form ``<prefix>_<epoch-ms>_<random6>``."""

    suffix = "".join(random.choices(_ID_ALPHABET, k=6))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


# ============================================================================
# Task Planning Schemas
# ============================================================================


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.DONE, StepStatus.FAILED, StepStatus.SKIPPED)


class PlanStatus(str, Enum):
    PLANNING = "planning"
    EXECUTING = "executing"
    COMPLETE = "complete"
    FAILED = "failed"


class TaskStep(BaseModel):
    """One unit of plan execution.

    Status moves ``pending -> running -> done | failed``; any state may move to
    ``skipped``. A failed step that can still be retried is re-queued as
    ``pending`` by the executor.
    """

    id: str = Field(..., description="Step identifier (step_<plan_id>_<index>)")
    title: str = Field(..., description="Short human-readable title")
    description: str = Field("", description="What the step is supposed to achieve")
    tool: Optional[str] = Field(None, description="Tool registry name, None for reasoning-only steps")
    tool_params: Dict[str, Any] = Field(default_factory=dict, description="Parameters passed to the tool")
    status: StepStatus = Field(StepStatus.PENDING, description="Lifecycle status")
    result: Optional[str] = Field(None, description="Output of a completed step")
    error: Optional[str] = Field(None, description="Error text of the last failure")
    confidence: Optional[float] = Field(None, ge=0.0, le=1.0, description="Optional 0-1 confidence")
    retry_count: int = Field(0, ge=0, description="Number of failures recorded so far")
    started_at: Optional[datetime] = Field(None, description="When the step last started running")
    completed_at: Optional[datetime] = Field(None, description="When the step last finished")
    duration_ms: Optional[int] = Field(None, ge=0, description="Elapsed milliseconds of the last run")


class TaskContext(BaseModel):
    """Three-document working context of a plan."""

    task_plan: str = Field("", description="Checkbox-style markdown progress document")
    notes: str = Field("", description="Research findings, separated by horizontal rules")
    deliverable: str = Field("", description="Output buffer, concatenated verbatim")


class TaskPlan(BaseModel):
    """Execution plan for one user request."""

    id: str = Field(..., description="Plan identifier (plan_<ts>_<rand>)")
    title: str = Field(..., description="Short title derived from the request")
    goal: str = Field(..., description="Original request text")
    steps: List[TaskStep] = Field(default_factory=list, description="Ordered steps")
    status: PlanStatus = Field(PlanStatus.PLANNING, description="Plan lifecycle status")
    context: TaskContext = Field(default_factory=TaskContext, description="Working documents")
    created_at: datetime = Field(default_factory=utcnow, description="Creation time")
    completed_at: Optional[datetime] = Field(None, description="Time all steps became terminal")
    total_duration_ms: Optional[int] = Field(None, ge=0, description="Creation-to-completion time")

    def step(self, step_id: str) -> TaskStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(f"Step '{step_id}' not found in plan {self.id}")


# ============================================================================
# Retrieval Schemas
# ============================================================================


class VectorEntry(BaseModel):
    """One indexed chunk of a document."""

    text: str = Field(..., description="Chunk text")
    embedding: List[float] = Field(..., description="Dense embedding vector")
    document_id: str = Field(..., description="Owning document identifier")
    page_number: int = Field(1, ge=0, description="Page (or section) the chunk came from")
    chunk_index: int = Field(0, ge=0, description="Position of the chunk within its page")


class SearchResult(BaseModel):
    """A ranked chunk returned from the retrieval store."""

    text: str
    score: float
    document_id: str
    page_number: int = 1
    chunk_index: int = 0


# ============================================================================
# Memory Schemas
# ============================================================================


class MemoryType(str, Enum):
    TASK_SUMMARY = "task_summary"
    USER_PREFERENCE = "user_preference"
    TOOL_CACHE = "tool_cache"
    CONTEXT_SNAPSHOT = "context_snapshot"
    LEARNED_FACT = "learned_fact"


class Importance(str, Enum):
    """Importance tier; the weight drives both ranking and eviction order."""

    CRITICAL = "critical"
    USEFUL = "useful"
    AMBIENT = "ambient"

    @property
    def weight(self) -> int:
        return _IMPORTANCE_WEIGHTS[self]


_IMPORTANCE_WEIGHTS = {
    Importance.CRITICAL: 3,
    Importance.USEFUL: 2,
    Importance.AMBIENT: 1,
}


class TaskSummaryMetadata(BaseModel):
    type: Literal["task_summary"] = "task_summary"
    title: str
    step_count: int
    duration_ms: int
    completed_at: datetime


class UserPreferenceMetadata(BaseModel):
    type: Literal["user_preference"] = "user_preference"
    key: str
    value: str


class ToolCacheMetadata(BaseModel):
    type: Literal["tool_cache"] = "tool_cache"
    cache_key: str
    tool_name: str
    params_hash: Optional[str] = None


class ContextSnapshotMetadata(BaseModel):
    type: Literal["context_snapshot"] = "context_snapshot"
    window_id: str
    extra: Dict[str, Any] = Field(default_factory=dict)


class LearnedFactMetadata(BaseModel):
    type: Literal["learned_fact"] = "learned_fact"
    source: str
    learned_at: datetime


MemoryMetadata = Annotated[
    Union[
        TaskSummaryMetadata,
        UserPreferenceMetadata,
        ToolCacheMetadata,
        ContextSnapshotMetadata,
        LearnedFactMetadata,
    ],
    Field(discriminator="type"),
]


class MemoryEntry(BaseModel):
    """One persisted fact, preference or cached result."""

    id: str = Field(..., description="Memory identifier (mem_<ts>_<rand>)")
    type: MemoryType = Field(..., description="Kind of memory")
    importance: Importance = Field(..., description="Importance tier")
    content: str = Field(..., description="Natural-language content")
    metadata: MemoryMetadata = Field(..., description="Type-specific metadata")
    created_at: datetime = Field(default_factory=utcnow)
    accessed_at: datetime = Field(default_factory=utcnow)
    access_count: int = Field(0, ge=0, description="Number of retrievals (never decreases)")
    expires_at: Optional[datetime] = Field(None, description="Optional hard expiry")

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at is not None and self.expires_at < now


class ContextWindow(BaseModel):
    """Token-budgeted prompt context assembled for one inference call."""

    system_context: str = ""
    recent_history: str = ""
    relevant_memory: str = ""
    tool_results: str = ""
    total_token_estimate: int = 0

    def render(self) -> str:
        sections = [
            self.system_context,
            self.relevant_memory,
            self.tool_results,
            self.recent_history,
        ]
        return "\n\n".join(section for section in sections if section)


# ============================================================================
# Resilience Schemas
# ============================================================================


class RetryConfig(BaseModel):
    """Static retry policy. Delays are in seconds."""

    max_attempts: int = Field(3, ge=1)
    base_delay: float = Field(1.0, ge=0.0)
    max_delay: float = Field(30.0, ge=0.0)
    exponential_backoff: bool = True
    jitter: bool = True


class ErrorContext(BaseModel):
    """Record of one failed attempt, handed to recovery strategies."""

    operation: str
    error: str
    error_type: str = "Exception"
    attempt: int = 1
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: Dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_exception(
        cls,
        operation: str,
        exc: BaseException,
        attempt: int = 1,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> "ErrorContext":
        return cls(
            operation=operation,
            error=str(exc),
            error_type=type(exc).__name__,
            attempt=attempt,
            metadata=dict(metadata or {}),
        )


# ============================================================================
# Event Schemas
# ============================================================================


class EventType(str, Enum):
    PLAN_START = "PLAN_START"
    PLAN_STEP_ADD = "PLAN_STEP_ADD"
    STEP_START = "STEP_START"
    STEP_PROGRESS = "STEP_PROGRESS"
    STEP_COMPLETE = "STEP_COMPLETE"
    STEP_FAIL = "STEP_FAIL"
    TOOL_CALL_START = "TOOL_CALL_START"
    TOOL_CALL_END = "TOOL_CALL_END"
    STATUS_CHANGE = "STATUS_CHANGE"
    PLAN_COMPLETE = "PLAN_COMPLETE"


class AgentEvent(BaseModel):
    """Lifecycle event published on the event bus."""

    type: EventType
    timestamp: datetime = Field(default_factory=utcnow)
    plan_id: Optional[str] = None
    step_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)


# ============================================================================
# Conversation Schemas
# ============================================================================


class MessageArtifact(BaseModel):
    id: str
    type: str
    content: str
    language: Optional[str] = None
    title: Optional[str] = None


class SerializedMessage(BaseModel):
    id: str
    role: Literal["user", "assistant"]
    content: str
    timestamp: datetime = Field(default_factory=utcnow)
    artifacts: List[MessageArtifact] = Field(default_factory=list)


class Conversation(BaseModel):
    id: str
    title: str
    messages: List[SerializedMessage] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class ConversationSummary(BaseModel):
    id: str
    title: str
    message_count: int
    created_at: datetime
    updated_at: datetime
    preview: str = Field("", description="First user message, truncated")
