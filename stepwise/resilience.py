"""
Resilience layer: retry with backoff, fallback chains, recovery strategies
and graceful degradation.

Every fallible call the executor makes (tool invocations, embedding calls,
inference) goes through one of these wrappers. The retry loop is driven by
tenacity's ``AsyncRetrying`` with a custom wait strategy so the backoff
formula, jitter and sleep function stay under our control.

Usage pattern:
    events = EventBus()
    handler = ErrorHandler(events)

    result = await handler.retry.retry(lambda: fetch(url), "fetch")
    answer = await handler.fallback.execute_with_fallback(
        primary, [secondary], final_fallback=lambda: "offline"
    )
"""

from __future__ import annotations

import asyncio
import gc
import inspect
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, TypeVar

from tenacity import AsyncRetrying, RetryCallState, RetryError, retry_if_exception, stop_after_attempt

from .events import EventBus
from .exceptions import FallbackExhaustedError, RetryExhaustedError
from .logging_utils import log_error, log_info, log_warning
from .schemas import ErrorContext, RetryConfig

T = TypeVar("T")
Operation = Callable[[], Awaitable[T]]
Sleep = Callable[[float], Awaitable[None]]

NETWORK_RECOVERY_WAIT_SECONDS = 5.0
DEFAULT_TIMEOUT_SECONDS = 5.0


async def _maybe_await(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


# ============================================================================
# Recovery strategies
# ============================================================================


@dataclass
class RecoveryStrategy:
    """A named ``(condition, action)`` pair consulted after a failure."""

    name: str
    condition: Callable[[BaseException], bool]
    action: Callable[[ErrorContext], Any]


class ErrorRecoveryManager:
    """Ordered registry of recovery strategies.

    The first strategy whose condition matches the error runs its action
    (sync or async). The caller decides afterwards whether to retry.
    """

    def __init__(self, events: Optional[EventBus] = None) -> None:
        self.events = events
        self._strategies: List[RecoveryStrategy] = []

    def register_strategy(
        self,
        name: str,
        condition: Callable[[BaseException], bool],
        action: Callable[[ErrorContext], Any],
    ) -> None:
        self._strategies.append(RecoveryStrategy(name, condition, action))

    def strategies(self) -> List[str]:
        return [strategy.name for strategy in self._strategies]

    def clear_strategies(self) -> None:
        self._strategies.clear()

    async def recover(self, error: BaseException, context: ErrorContext) -> bool:
        """Run the first matching strategy; returns True if one ran successfully."""

        for strategy in self._strategies:
            if not strategy.condition(error):
                continue
            log_info(f"[Recovery] Applying '{strategy.name}' to {context.operation}")
            if self.events is not None:
                self.events.status_change(
                    "recovering", strategy=strategy.name, operation=context.operation
                )
            try:
                await _maybe_await(strategy.action(context))
            except Exception as exc:
                log_error(f"[Recovery] Strategy '{strategy.name}' failed: {exc}")
                return False
            return True
        return False


# ============================================================================
# Retry
# ============================================================================


class RetryHandler:
    """Retry an async operation with exponential (or linear) backoff.

    Args:
        config: Retry policy (defaults: 3 attempts, 1s base, 30s cap, jitter)
        events: Optional event bus; ``STATUS_CHANGE(retrying)`` is emitted before each wait
        sleep: Awaitable used for backoff waits
        rng: Source of uniform [0, 1) numbers for jitter
        retry_on: Optional predicate; errors it rejects propagate immediately
        recovery: Optional recovery manager consulted after every failure
    """

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        *,
        events: Optional[EventBus] = None,
        sleep: Sleep = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        retry_on: Optional[Callable[[BaseException], bool]] = None,
        recovery: Optional[ErrorRecoveryManager] = None,
    ) -> None:
        self.config = config or RetryConfig()
        self.events = events
        self._sleep = sleep
        self._rng = rng
        self.retry_on = retry_on
        self.recovery = recovery

    def calculate_delay(self, attempt: int, config: Optional[RetryConfig] = None) -> float:
        """Delay in seconds before attempt ``attempt + 1``."""

        policy = config or self.config
        if policy.exponential_backoff:
            delay = policy.base_delay * (2 ** (attempt - 1))
        else:
            delay = policy.base_delay * attempt
        delay = min(delay, policy.max_delay)
        if policy.jitter:
            delay *= 0.5 + 0.5 * self._rng()
        return delay

    def _should_retry(self, error: BaseException) -> bool:
        # Cancellation is never retried
        if not isinstance(error, Exception):
            return False
        return self.retry_on is None or self.retry_on(error)

    async def retry(
        self,
        operation: Operation[T],
        name: str = "operation",
        *,
        config: Optional[RetryConfig] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> T:
        """Run ``operation`` until it succeeds or the attempts are exhausted.

        Args:
            operation: Zero-argument coroutine function
            name: Operation name used in logs, events and errors
            config: Per-call policy override
            metadata: Mutable dict shared with recovery strategies (for example
                a ``timeout`` a strategy may enlarge for the next attempt)

        Returns:
            The operation's result

        Raises:
            RetryExhaustedError: Every attempt failed with a retryable error
            Exception: A non-retryable error, propagated unchanged
        """

        policy = config or self.config
        shared = metadata if metadata is not None else {}

        def wait(retry_state: RetryCallState) -> float:
            return self.calculate_delay(retry_state.attempt_number, policy)

        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
            log_error(
                f"[Retry] {name} attempt {retry_state.attempt_number}/{policy.max_attempts} "
                f"failed: {error}. Retrying in {delay:.2f}s"
            )
            if self.events is not None:
                self.events.status_change(
                    "retrying",
                    attempt=retry_state.attempt_number,
                    maxAttempts=policy.max_attempts,
                    operation=name,
                    delay=delay,
                )

        attempt_number = 0
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(policy.max_attempts),
                wait=wait,
                retry=retry_if_exception(self._should_retry),
                before_sleep=before_sleep,
                sleep=self._sleep,
            ):
                with attempt:
                    attempt_number += 1
                    try:
                        return await operation()
                    except Exception as exc:
                        # Recovery only prepares a next attempt; the last one has none
                        if (
                            self.recovery is not None
                            and attempt_number < policy.max_attempts
                            and self._should_retry(exc)
                        ):
                            context = ErrorContext.from_exception(
                                name, exc, attempt_number, shared
                            )
                            if await self.recovery.recover(exc, context):
                                shared.update(context.metadata)
                        raise
        except RetryError as exc:
            last_error = exc.last_attempt.exception()
            raise RetryExhaustedError(
                operation=name,
                attempts=attempt_number,
                last_error=last_error,
            ) from last_error

        raise RuntimeError("Retry loop exited unexpectedly")


# ============================================================================
# Fallback chains
# ============================================================================


class FallbackExecutor:
    """Try a primary operation, then each fallback in order.

    When everything fails, the synchronous ``final_fallback`` produces a
    degraded result; without one, ``FallbackExhaustedError`` is raised.
    """

    def __init__(self, events: Optional[EventBus] = None) -> None:
        self.events = events

    async def execute_with_fallback(
        self,
        primary: Operation[T],
        fallbacks: Sequence[Operation[T]] = (),
        final_fallback: Optional[Callable[[], T]] = None,
        *,
        name: str = "operation",
    ) -> T:
        errors: List[BaseException] = []
        chain = [primary, *fallbacks]
        for index, operation in enumerate(chain):
            if index > 0:
                log_warning(f"[Fallback] {name}: trying fallback {index}/{len(fallbacks)}")
                if self.events is not None:
                    self.events.status_change("fallback", operation=name, fallback=index)
            try:
                return await operation()
            except Exception as exc:
                log_error(f"[Fallback] {name} option {index} failed: {exc}")
                errors.append(exc)

        if final_fallback is not None:
            log_warning(f"[Fallback] {name}: using final fallback")
            if self.events is not None:
                self.events.status_change("fallback", operation=name, fallback="final")
            return final_fallback()

        raise FallbackExhaustedError(errors) from errors[-1]


# ============================================================================
# Graceful degradation
# ============================================================================


class GracefulDegradation:
    """Named feature flags that switch off permanently on first failure."""

    def __init__(self, events: Optional[EventBus] = None) -> None:
        self.events = events
        self._features: Dict[str, bool] = {}

    def enable_feature(self, name: str) -> None:
        self._features[name] = True

    def disable_feature(self, name: str) -> None:
        self._features[name] = False

    def is_feature_enabled(self, name: str) -> bool:
        return self._features.get(name, True)

    def disabled_features(self) -> List[str]:
        return [name for name, enabled in self._features.items() if not enabled]

    async def execute_feature(
        self,
        name: str,
        impl: Callable[[], Awaitable[T]],
        fallback: Callable[[], Awaitable[T]],
    ) -> T:
        if not self.is_feature_enabled(name):
            return await fallback()
        try:
            return await impl()
        except Exception as exc:
            self.disable_feature(name)
            log_warning(f"[Degradation] Feature '{name}' disabled after failure: {exc}")
            if self.events is not None:
                self.events.status_change("degraded", feature=name, error=str(exc))
            return await fallback()

    def reset(self) -> None:
        self._features.clear()


# ============================================================================
# Facade
# ============================================================================


def _message(error: BaseException) -> str:
    return str(error).lower()


def _is_network_error(error: BaseException) -> bool:
    if isinstance(error, ConnectionError):
        return True
    message = _message(error)
    return "network" in message or "connection" in message or "fetch" in message


def _is_memory_error(error: BaseException) -> bool:
    return isinstance(error, MemoryError) or "memory" in _message(error)


def _is_timeout_error(error: BaseException) -> bool:
    if isinstance(error, (TimeoutError, asyncio.TimeoutError)):
        return True
    message = _message(error)
    return "timeout" in message or "timed out" in message


class ErrorHandler:
    """Bundle of retry, fallback, recovery and degradation with default strategies.

    Default recovery strategies:
    - ``network``: wait five seconds for connectivity to return
    - ``memory``: run the garbage collector
    - ``timeout``: double ``metadata["timeout"]`` (seconds, default 5) for the next attempt
    """

    def __init__(
        self,
        events: Optional[EventBus] = None,
        *,
        config: Optional[RetryConfig] = None,
        sleep: Sleep = asyncio.sleep,
        rng: Callable[[], float] = random.random,
        retry_on: Optional[Callable[[BaseException], bool]] = None,
    ) -> None:
        self.events = events
        self._sleep = sleep
        self.recovery = ErrorRecoveryManager(events)
        self.retry = RetryHandler(
            config,
            events=events,
            sleep=sleep,
            rng=rng,
            retry_on=retry_on,
            recovery=self.recovery,
        )
        self.fallback = FallbackExecutor(events)
        self.degradation = GracefulDegradation(events)
        self._register_default_strategies()

    def _register_default_strategies(self) -> None:
        async def wait_for_network(context: ErrorContext) -> None:
            await self._sleep(NETWORK_RECOVERY_WAIT_SECONDS)

        def reclaim_memory(context: ErrorContext) -> None:
            gc.collect()

        def extend_timeout(context: ErrorContext) -> None:
            current = float(context.metadata.get("timeout", DEFAULT_TIMEOUT_SECONDS))
            context.metadata["timeout"] = current * 2

        self.recovery.register_strategy("network", _is_network_error, wait_for_network)
        self.recovery.register_strategy("memory", _is_memory_error, reclaim_memory)
        self.recovery.register_strategy("timeout", _is_timeout_error, extend_timeout)

    async def handle_error(self, error: BaseException, operation: str, **metadata: Any) -> bool:
        """Record a failure outside the retry loop and attempt recovery."""

        context = ErrorContext.from_exception(operation, error, metadata=metadata)
        log_error(f"[ErrorHandler] {operation} failed: {error}")
        return await self.recovery.recover(error, context)

    def cleanup(self) -> None:
        self.recovery.clear_strategies()
        self.degradation.reset()


__all__ = [
    "RecoveryStrategy",
    "ErrorRecoveryManager",
    "RetryHandler",
    "FallbackExecutor",
    "GracefulDegradation",
    "ErrorHandler",
]
