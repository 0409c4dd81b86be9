"""Task lifecycle, orchestration and runtime assembly."""

from .app import RuntimeServices, build_runtime
from .events import EventBus, EventType, TaskEvent
from .orchestrator import TaskOrchestrator, TaskRunResult
from .registry import TaskRegistry
from .task import TERMINAL_STATES, Task, TaskState

__all__ = [
    "EventBus",
    "EventType",
    "RuntimeServices",
    "TERMINAL_STATES",
    "Task",
    "TaskEvent",
    "TaskOrchestrator",
    "TaskRegistry",
    "TaskRunResult",
    "TaskState",
    "build_runtime",
]
