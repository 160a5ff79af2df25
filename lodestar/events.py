"""Namespaced event bus.

Event names are ``:``-delimited (``command:points:add``). Listener
patterns may use ``*`` to match exactly one segment and ``**`` to match
any number of trailing segments.

``on`` defaults to single mode: an identical listener already attached
to the same pattern is removed before the new one is added, so
re-running initialization (reconnects, reloads) never stacks duplicate
listeners.

The same class serves as the host/engine bridge: ``forward`` relays
every emitted event, unchanged, to another bus.
"""

import asyncio
import inspect
from typing import Any, Callable, Dict, List, Optional, Set

import structlog

logger = structlog.get_logger("lodestar.core")

Listener = Callable[..., Any]

DEFAULT_MAX_LISTENERS = 30


def event_matches(pattern: str, event: str) -> bool:
    """Return True if ``event`` is selected by ``pattern``."""
    if pattern == event:
        return True
    p_parts = pattern.split(":")
    e_parts = event.split(":")
    for i, part in enumerate(p_parts):
        if part == "**":
            return True
        if i >= len(e_parts):
            return False
        if part != "*" and part != e_parts[i]:
            return False
    return len(p_parts) == len(e_parts)


class _Entry:
    __slots__ = ("fn", "once")

    def __init__(self, fn: Listener, once: bool):
        self.fn = fn
        self.once = once


class EventBus:
    """Wildcard event emitter with duplicate-listener protection.

    Args:
        name: Label used in log events.
        max_listeners: Warn when a single pattern exceeds this many
            listeners (a leak indicator, not a hard limit).
    """

    def __init__(self, name: str = "core", max_listeners: int = DEFAULT_MAX_LISTENERS):
        self.name = name
        self.max_listeners = max_listeners
        self._listeners: Dict[str, List[_Entry]] = {}
        self._forwards: List["EventBus"] = []
        self._pending: Set[asyncio.Task] = set()
        self._forwarding = False

    def on(self, event: str, fn: Listener, single: bool = True) -> None:
        """Attach ``fn`` to ``event``.

        Args:
            event: Event name or pattern.
            fn: Sync or async callable receiving the emitted payload.
            single: Remove an identical existing listener first.
        """
        if single:
            self.off(event, fn)
        entries = self._listeners.setdefault(event, [])
        entries.append(_Entry(fn, once=False))
        if len(entries) > self.max_listeners:
            logger.warning(
                "event_max_listeners_exceeded",
                bus=self.name, event_name=event, count=len(entries),
            )

    def once(self, event: str, fn: Listener) -> None:
        """Attach ``fn`` for a single delivery."""
        self.off(event, fn)
        self._listeners.setdefault(event, []).append(_Entry(fn, once=True))

    def off(self, event: str, fn: Listener) -> bool:
        """Detach ``fn`` from ``event``. Returns True if it was attached."""
        entries = self._listeners.get(event)
        if not entries:
            return False
        kept = [e for e in entries if e.fn != fn]
        removed = len(kept) != len(entries)
        if kept:
            self._listeners[event] = kept
        else:
            del self._listeners[event]
        return removed

    def remove_all_listeners(self, event: Optional[str] = None) -> None:
        if event is None:
            self._listeners.clear()
        else:
            self._listeners.pop(event, None)

    def listener_count(self, event: str) -> int:
        """Number of listeners that an emit of ``event`` would reach."""
        return sum(
            len(entries)
            for pattern, entries in self._listeners.items()
            if event_matches(pattern, event)
        )

    def forward(self, target: "EventBus") -> None:
        """Relay every event emitted here to ``target`` as well."""
        if target is self or target in self._forwards:
            return
        self._forwards.append(target)

    def unforward(self, target: "EventBus") -> None:
        if target in self._forwards:
            self._forwards.remove(target)

    def emit(self, event: str, *payload: Any) -> bool:
        """Deliver ``payload`` to every matching listener.

        Sync listeners run inline. Coroutines returned by async
        listeners are scheduled as tasks; their failures are logged.
        A listener that raises is logged and does not stop delivery.

        Returns:
            True if at least one listener (here or on a forward target)
            received the event.
        """
        delivered = False
        for pattern, entries in list(self._listeners.items()):
            if not event_matches(pattern, event):
                continue
            for entry in list(entries):
                if entry.once:
                    self.off(pattern, entry.fn)
                delivered = True
                self._invoke(event, entry.fn, payload)

        if self._forwards and not self._forwarding:
            self._forwarding = True
            try:
                for target in list(self._forwards):
                    delivered = target.emit(event, *payload) or delivered
            finally:
                self._forwarding = False
        return delivered

    def _invoke(self, event: str, fn: Listener, payload: tuple) -> None:
        try:
            result = fn(*payload)
        except Exception as e:
            logger.error(
                "event_listener_error",
                bus=self.name, event_name=event, error=str(e), error_type=type(e).__name__,
            )
            return
        if inspect.isawaitable(result):
            try:
                task = asyncio.ensure_future(result)
            except RuntimeError:
                # No running loop (sync context)
                if inspect.iscoroutine(result):
                    result.close()
                logger.warning("event_listener_not_scheduled", bus=self.name, event_name=event)
                return
            self._pending.add(task)
            task.add_done_callback(lambda t: self._task_done(event, t))

    def _task_done(self, event: str, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error(
                "event_listener_error",
                bus=self.name, event_name=event, error=str(exc), error_type=type(exc).__name__,
            )

    async def drain(self) -> None:
        """Wait for every scheduled async listener to finish."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
