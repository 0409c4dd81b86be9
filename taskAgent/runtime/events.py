"""Task event channel.

Orchestrators publish lifecycle and streaming events; a console or UI
consumes them. Publishing never blocks the task loop.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Dict, List

LOGGER = logging.getLogger(__name__)


class EventType(str, Enum):
    STATE_CHANGED = "state_changed"
    TEXT_DELTA = "text_delta"
    TOOL_STARTED = "tool_started"
    TOOL_DELTA = "tool_delta"
    TOOL_FINISHED = "tool_finished"
    TURN_COMMITTED = "turn_committed"
    NOTICE = "notice"
    CONTEXT_REDUCED = "context_reduced"
    USAGE = "usage"
    CHILD_SPAWNED = "child_spawned"
    CHILD_FINISHED = "child_finished"
    ERROR = "error"


@dataclass(frozen=True)
class TaskEvent:
    type: EventType
    task_id: str
    payload: Dict[str, Any] = field(default_factory=dict)
    ts: float = field(default_factory=time.time)


class EventBus:
    """Bounded asyncio queue shared by every task of a runtime."""

    def __init__(self, maxsize: int = 5000) -> None:
        self._queue: asyncio.Queue[TaskEvent] = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: TaskEvent) -> None:
        if self._closed:
            return
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            LOGGER.warning(f"EventBus full, dropping {event.type.value} for task {event.task_id}")

    def emit(self, event_type: EventType, task_id: str, **payload: Any) -> TaskEvent:
        event = TaskEvent(type=event_type, task_id=task_id, payload=payload)
        self.publish(event)
        return event

    async def consume(self) -> AsyncIterator[TaskEvent]:
        """Yield events as they arrive. Stops once closed and drained."""
        while not (self._closed and self._queue.empty()):
            try:
                event = await asyncio.wait_for(self._queue.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            yield event

    def drain(self) -> List[TaskEvent]:
        """Remove and return everything queued right now."""
        events = []
        while not self._queue.empty():
            events.append(self._queue.get_nowait())
        return events

    def close(self) -> None:
        self._closed = True


__all__ = ["EventBus", "EventType", "TaskEvent"]
