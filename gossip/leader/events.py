"""Leadership events and the registry of their handlers."""

from __future__ import annotations

import functools
import threading
from enum import IntEnum
from typing import Callable

from ..ids import NodeID

__all__ = ["EventType", "LeaderEventHandler", "EventHandlers"]


class EventType(IntEnum):
    """Kinds of leadership change."""

    LEADER_ELECTED = 0
    LEADER_LOST = 1
    BECAME_LEADER = 2
    STEPPED_DOWN = 3

    def __str__(self) -> str:
        return _EVENT_NAMES[self]


_EVENT_NAMES = {
    EventType.LEADER_ELECTED: "Leader Elected",
    EventType.LEADER_LOST: "Leader Lost",
    EventType.BECAME_LEADER: "Became Leader",
    EventType.STEPPED_DOWN: "Stepped Down",
}

LeaderEventHandler = Callable[[EventType, NodeID], None]
Runner = Callable[[Callable[[], None]], None]


def _run_in_thread(task: Callable[[], None]) -> None:
    threading.Thread(target=task, name="leader-event", daemon=True).start()


class EventHandlers:
    """Handlers grouped by event type.

    Each dispatched call is handed to ``runner``, which by default starts it
    on a new daemon thread so that handlers never block the caller.
    """

    def __init__(self, runner: Runner | None = None) -> None:
        self._runner = runner if runner is not None else _run_in_thread
        self._handlers: dict[EventType, tuple[LeaderEventHandler, ...]] = {}
        self._lock = threading.Lock()

    def add(self, event_type: EventType, handler: LeaderEventHandler) -> None:
        """Register ``handler`` for ``event_type``."""
        event_type = EventType(event_type)
        with self._lock:
            updated = dict(self._handlers)
            updated[event_type] = updated.get(event_type, ()) + (handler,)
            self._handlers = updated

    def dispatch(self, event_type: EventType, leader_id: NodeID) -> int:
        """Run every handler of ``event_type``; return how many were started."""
        event_type = EventType(event_type)
        handlers = self._handlers.get(event_type, ())
        for handler in handlers:
            self._runner(functools.partial(handler, event_type, leader_id))
        return len(handlers)