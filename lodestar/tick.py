"""Named recurring timers.

Extensions schedule background work (the points payout, for example)
by name. Setting an interval that already exists replaces it, so
re-running setup never stacks duplicate timers.
"""

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional

import structlog

logger = structlog.get_logger("lodestar.core")

TickFn = Callable[[], Any]


class Ticker:
    """Runs named callables on fixed periods as asyncio tasks."""

    def __init__(self):
        self._tasks: Dict[str, asyncio.Task] = {}

    def set_interval(
        self,
        name: str,
        fn: TickFn,
        seconds: float,
        delay: Optional[float] = None,
    ) -> None:
        """Run ``fn`` every ``seconds``.

        Args:
            name: Timer name; an existing timer with this name is cancelled.
            fn: Sync or async callable taking no arguments.
            seconds: Period between runs.
            delay: Wait before the first run (defaults to ``seconds``).
        """
        self.clear_interval(name)
        first = seconds if delay is None else delay
        self._tasks[name] = asyncio.create_task(self._loop(name, fn, seconds, first))
        logger.info("interval_scheduled", name=name, seconds=seconds)

    async def _loop(self, name: str, fn: TickFn, seconds: float, first: float):
        wait = first
        while True:
            try:
                await asyncio.sleep(wait)
                wait = seconds
                result = fn()
                if inspect.isawaitable(result):
                    await result
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("interval_run_error", name=name, error=str(e),
                             error_type=type(e).__name__)

    def clear_interval(self, name: str) -> bool:
        task = self._tasks.pop(name, None)
        if task is None:
            return False
        if not task.done():
            task.cancel()
        logger.info("interval_cleared", name=name)
        return True

    async def clear_all(self) -> None:
        """Cancel every timer and wait for them to stop."""
        tasks = list(self._tasks.values())
        self._tasks.clear()
        for task in tasks:
            if not task.done():
                task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass

    def names(self) -> List[str]:
        return sorted(self._tasks)
