"""Exception hierarchy shared by the planner, stores and resilience layer."""

from __future__ import annotations

import asyncio
from typing import List, Optional


class StepwiseError(Exception):
    """Base class for all stepwise errors."""


class RetryExhaustedError(StepwiseError):
    """Raised when every retry attempt of an operation failed.

    The last underlying error is kept on ``last_error`` and chained as
    ``__cause__`` so callers can inspect the original failure.
    """

    def __init__(
        self,
        *,
        operation: str,
        attempts: int,
        last_error: Optional[BaseException],
    ) -> None:
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        detail = str(last_error) if last_error is not None else "unknown error"
        super().__init__(f"{operation} failed after {attempts} attempts: {detail}")


class FallbackExhaustedError(StepwiseError):
    """Raised when the primary operation and every fallback failed."""

    def __init__(self, errors: List[BaseException]) -> None:
        self.errors = errors
        super().__init__(f"All fallbacks exhausted ({len(errors)} operations failed)")


class UnknownToolError(StepwiseError, KeyError):
    """Raised when a plan step references a tool that is not registered."""

    def __init__(self, tool_name: str) -> None:
        self.tool_name = tool_name
        super().__init__(f"Unknown tool: {tool_name}")

    def __str__(self) -> str:
        return f"Unknown tool: {self.tool_name}"


class StorageUnavailableError(StepwiseError):
    """Raised by storage backends that cannot be reached."""


class EmbeddingError(StepwiseError):
    """Raised when the embedding collaborator fails or returns an invalid vector."""


_TRANSIENT_MARKERS = ("network", "timeout", "timed out", "memory", "connection")


def is_transient(error: BaseException) -> bool:
    """Return True for network, timeout and resource errors worth retrying."""

    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError, MemoryError)):
        return True
    message = str(error).lower()
    return any(marker in message for marker in _TRANSIENT_MARKERS)


__all__ = [
    "StepwiseError",
    "RetryExhaustedError",
    "FallbackExhaustedError",
    "UnknownToolError",
    "StorageUnavailableError",
    "EmbeddingError",
    "is_transient",
]
