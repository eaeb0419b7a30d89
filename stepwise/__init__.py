"""
Stepwise - decision-and-execution core for a local autonomous assistant.

Plans multi-step tasks, retrieves from local documents, remembers across
sessions and keeps going when tools or models fail.

No global config. No singletons.
All dependencies injected by user.
"""

__version__ = "0.1.0"

# Main entry points
from .orchestrator import Orchestrator, MessageOutcome
from .executor import PlanExecutor
from .planner import TaskPlanner, build_task_plan_doc

# Subsystems
from .events import EventBus
from .retrieval import (
    HybridRetrievalStore,
    HashingEmbedder,
    EmbeddingProvider,
    bm25_score,
    chunk_text,
    cosine_similarity,
    rrf_score,
    tokenize,
)
from .memory import MemoryManager
from .context import ContextWindowManager, ResultPipeline
from .history import ChatHistoryService
from .resilience import (
    ErrorHandler,
    ErrorRecoveryManager,
    FallbackExecutor,
    GracefulDegradation,
    RetryHandler,
)
from .timers import Debouncer
from .tools import ToolRegistry
from .capabilities import Capabilities
from .storage import (
    KeyValueStorage,
    InMemoryStorage,
    JsonFileStorage,
    PostgresStorage,
)

# Inference adapters
from .llm_utils import LLMResponder, call_llm_with_retries
from .local_llm import OllamaEmbedder, LocalLLMError

# Core schemas
from .schemas import (
    AgentEvent,
    ContextWindow,
    Conversation,
    ConversationSummary,
    ErrorContext,
    EventType,
    Importance,
    MemoryEntry,
    MemoryType,
    PlanStatus,
    RetryConfig,
    SearchResult,
    SerializedMessage,
    StepStatus,
    TaskContext,
    TaskPlan,
    TaskStep,
    VectorEntry,
)

# Errors
from .exceptions import (
    StepwiseError,
    RetryExhaustedError,
    FallbackExhaustedError,
    UnknownToolError,
    StorageUnavailableError,
    EmbeddingError,
    is_transient,
)

from .config import Config

__all__ = [
    # Version
    "__version__",
    # Entry points
    "Orchestrator",
    "MessageOutcome",
    "PlanExecutor",
    "TaskPlanner",
    "build_task_plan_doc",
    # Subsystems
    "EventBus",
    "HybridRetrievalStore",
    "HashingEmbedder",
    "EmbeddingProvider",
    "bm25_score",
    "chunk_text",
    "cosine_similarity",
    "rrf_score",
    "tokenize",
    "MemoryManager",
    "ContextWindowManager",
    "ResultPipeline",
    "ChatHistoryService",
    "ErrorHandler",
    "ErrorRecoveryManager",
    "FallbackExecutor",
    "GracefulDegradation",
    "RetryHandler",
    "Debouncer",
    "ToolRegistry",
    "Capabilities",
    "KeyValueStorage",
    "InMemoryStorage",
    "JsonFileStorage",
    "PostgresStorage",
    # Inference
    "LLMResponder",
    "call_llm_with_retries",
    "OllamaEmbedder",
    "LocalLLMError",
    # Schemas
    "AgentEvent",
    "ContextWindow",
    "Conversation",
    "ConversationSummary",
    "ErrorContext",
    "EventType",
    "Importance",
    "MemoryEntry",
    "MemoryType",
    "PlanStatus",
    "RetryConfig",
    "SearchResult",
    "SerializedMessage",
    "StepStatus",
    "TaskContext",
    "TaskPlan",
    "TaskStep",
    "VectorEntry",
    # Errors
    "StepwiseError",
    "RetryExhaustedError",
    "FallbackExhaustedError",
    "UnknownToolError",
    "StorageUnavailableError",
    "EmbeddingError",
    "is_transient",
    # Config
    "Config",
]
