"""
Publish/subscribe channel for plan and step lifecycle events.

The bus is a plain object constructed by the host and handed to every
component that reports progress (planner, executor, retry handler). Handlers
are synchronous callables invoked in subscription order: typed handlers
first, then global handlers. A handler that raises is logged and skipped so
one faulty listener cannot break plan execution.
"""

from __future__ import annotations

from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

from .logging_utils import log_error
from .schemas import AgentEvent, EventType

EventHandler = Callable[[AgentEvent], None]
Unsubscribe = Callable[[], None]

SNAPSHOT_SIZE = 200


class EventBus:
    """In-process event bus with a bounded replay buffer."""

    def __init__(self, *, history_size: int = SNAPSHOT_SIZE) -> None:
        self._handlers: Dict[EventType, List[EventHandler]] = {}
        self._global_handlers: List[EventHandler] = []
        self._history: Deque[AgentEvent] = deque(maxlen=history_size)

    # ------------------------------------------------------------------
    # Subscription
    # ------------------------------------------------------------------

    def on(self, event_type: EventType, handler: EventHandler) -> Unsubscribe:
        """Subscribe ``handler`` to one event type; returns an unsubscribe callable."""

        handlers = self._handlers.setdefault(event_type, [])
        handlers.append(handler)

        def unsubscribe() -> None:
            if handler in handlers:
                handlers.remove(handler)

        return unsubscribe

    def on_all(self, handler: EventHandler) -> Unsubscribe:
        """Subscribe ``handler`` to every event."""

        self._global_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._global_handlers:
                self._global_handlers.remove(handler)

        return unsubscribe

    def handler_count(self) -> int:
        typed = sum(len(handlers) for handlers in self._handlers.values())
        return typed + len(self._global_handlers)

    def remove_all_listeners(self) -> None:
        self._handlers.clear()
        self._global_handlers.clear()

    def reset(self) -> None:
        """Drop all handlers and the replay buffer (test isolation)."""

        self.remove_all_listeners()
        self._history.clear()

    # ------------------------------------------------------------------
    # Dispatch
    # ------------------------------------------------------------------

    def emit(
        self,
        event_type: EventType,
        payload: Optional[Dict[str, Any]] = None,
        *,
        plan_id: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> AgentEvent:
        event = AgentEvent(
            type=event_type,
            plan_id=plan_id,
            step_id=step_id,
            payload=dict(payload or {}),
        )
        self._history.append(event)

        # Copy so handlers may unsubscribe themselves during dispatch
        for handler in list(self._handlers.get(event_type, ())):
            self._dispatch(handler, event)
        for handler in list(self._global_handlers):
            self._dispatch(handler, event)
        return event

    @staticmethod
    def _dispatch(handler: EventHandler, event: AgentEvent) -> None:
        try:
            handler(event)
        except Exception as exc:
            log_error(f"[EventBus] Handler error for {event.type.value}: {exc}")

    def snapshot(self) -> List[AgentEvent]:
        """Return the buffered events, oldest first."""

        return list(self._history)

    def latest(self, event_type: EventType, count: int = 1) -> List[AgentEvent]:
        matching = [event for event in self._history if event.type == event_type]
        return matching[-count:] if count > 0 else []

    # ------------------------------------------------------------------
    # Typed helpers
    # ------------------------------------------------------------------

    def plan_start(self, plan_id: str, title: str, goal: str, step_count: int) -> AgentEvent:
        return self.emit(
            EventType.PLAN_START,
            {"title": title, "goal": goal, "stepCount": step_count},
            plan_id=plan_id,
        )

    def plan_step_add(
        self, plan_id: str, step_id: str, title: str, tool: Optional[str], index: int
    ) -> AgentEvent:
        return self.emit(
            EventType.PLAN_STEP_ADD,
            {"stepId": step_id, "title": title, "tool": tool, "index": index},
            plan_id=plan_id,
            step_id=step_id,
        )

    def step_start(
        self, plan_id: str, step_id: str, title: str, tool: Optional[str] = None
    ) -> AgentEvent:
        return self.emit(
            EventType.STEP_START,
            {"stepId": step_id, "title": title, "tool": tool},
            plan_id=plan_id,
            step_id=step_id,
        )

    def step_progress(self, plan_id: str, step_id: str, message: str) -> AgentEvent:
        return self.emit(
            EventType.STEP_PROGRESS,
            {"stepId": step_id, "message": message},
            plan_id=plan_id,
            step_id=step_id,
        )

    def step_complete(
        self, plan_id: str, step_id: str, result: str, duration_ms: int
    ) -> AgentEvent:
        return self.emit(
            EventType.STEP_COMPLETE,
            {"stepId": step_id, "result": result, "durationMs": duration_ms},
            plan_id=plan_id,
            step_id=step_id,
        )

    def step_fail(
        self, plan_id: str, step_id: str, error: str, can_retry: bool, retry_count: int
    ) -> AgentEvent:
        return self.emit(
            EventType.STEP_FAIL,
            {
                "stepId": step_id,
                "error": error,
                "canRetry": can_retry,
                "retryCount": retry_count,
            },
            plan_id=plan_id,
            step_id=step_id,
        )

    def tool_call_start(
        self, tool: str, params: Dict[str, Any], *, plan_id: Optional[str] = None, step_id: Optional[str] = None
    ) -> AgentEvent:
        return self.emit(
            EventType.TOOL_CALL_START,
            {"tool": tool, "params": params},
            plan_id=plan_id,
            step_id=step_id,
        )

    def tool_call_end(
        self,
        tool: str,
        *,
        success: bool,
        duration_ms: int,
        plan_id: Optional[str] = None,
        step_id: Optional[str] = None,
    ) -> AgentEvent:
        return self.emit(
            EventType.TOOL_CALL_END,
            {"tool": tool, "success": success, "durationMs": duration_ms},
            plan_id=plan_id,
            step_id=step_id,
        )

    def status_change(self, status: str, **metadata: Any) -> AgentEvent:
        return self.emit(EventType.STATUS_CHANGE, {"status": status, **metadata})

    def plan_complete(
        self, plan_id: str, total_duration_ms: int, done_count: int, failed_count: int
    ) -> AgentEvent:
        return self.emit(
            EventType.PLAN_COMPLETE,
            {
                "totalDurationMs": total_duration_ms,
                "doneCount": done_count,
                "failedCount": failed_count,
            },
            plan_id=plan_id,
        )


__all__ = ["EventBus", "EventHandler", "Unsubscribe", "SNAPSHOT_SIZE"]
