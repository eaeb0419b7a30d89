"""Keyed debounce timers with cancel-and-flush semantics."""

from __future__ import annotations

import asyncio
from typing import Awaitable, Callable, Dict, List, Set

from .logging_utils import log_error

Action = Callable[[], Awaitable[None]]
Sleep = Callable[[float], Awaitable[None]]


class Debouncer:
    """Coalesce bursts of scheduled actions per key into one delayed run.

    Scheduling a key that already has a pending action replaces the action and
    restarts the quiet period. ``flush()`` cancels every timer, runs the queued
    actions once and waits for actions whose timer already fired; a second
    flush with nothing queued or running does nothing.

    Args:
        delay: Quiet period in seconds
        sleep: Awaitable used for the quiet period (tests inject a fake)
    """

    def __init__(self, delay: float, *, sleep: Sleep = asyncio.sleep) -> None:
        self.delay = delay
        self._sleep = sleep
        self._actions: Dict[str, Action] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        self._running: Set[asyncio.Task] = set()

    def schedule(self, key: str, action: Action) -> None:
        self._cancel_timer(key)
        self._actions[key] = action
        self._timers[key] = asyncio.get_running_loop().create_task(self._fire_later(key))

    def cancel(self, key: str) -> bool:
        """Drop the pending action for ``key`` without running it."""

        self._cancel_timer(key)
        return self._actions.pop(key, None) is not None

    def pending(self) -> List[str]:
        return list(self._actions)

    def in_flight(self) -> int:
        return len(self._running)

    async def flush(self) -> int:
        """Run all queued actions now and wait for running ones.

        Returns:
            Number of actions that completed during this flush
        """

        for key in list(self._timers):
            self._cancel_timer(key)
        actions = list(self._actions.items())
        self._actions.clear()
        for key, action in actions:
            await self._run(key, action)

        running = [task for task in self._running if task is not asyncio.current_task()]
        if running:
            await asyncio.gather(*running, return_exceptions=True)
        return len(actions) + len(running)

    async def close(self) -> None:
        await self.flush()

    async def _fire_later(self, key: str) -> None:
        try:
            await self._sleep(self.delay)
        except asyncio.CancelledError:
            return
        self._timers.pop(key, None)
        action = self._actions.pop(key, None)
        if action is None:
            return

        task = asyncio.current_task()
        self._running.add(task)
        try:
            await self._run(key, action)
        finally:
            self._running.discard(task)

    def _cancel_timer(self, key: str) -> None:
        timer = self._timers.pop(key, None)
        if timer is not None and not timer.done():
            timer.cancel()

    @staticmethod
    async def _run(key: str, action: Action) -> None:
        try:
            await action()
        except Exception as exc:
            log_error(f"[Debouncer] Action for '{key}' failed: {exc}")


__all__ = ["Debouncer"]
