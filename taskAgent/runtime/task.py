"""Task record and lifecycle state machine.

State Diagram:

    CREATED ──> INITIALIZING ──> ACTIVE ──┬──> COMPLETED
                     │              ▲     │
                     │              │     ├──> ABANDONED  (turn limit)
                     └──> PAUSED ───┘<────┤
                                          └──> ABORTED    (from any live state)

    Any live state ──> ERROR_SUSPENDED ──> INITIALIZING  (resume after a fatal I/O error)
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional

from taskAgent.protocol.chunks import ToolProtocol
from taskAgent.tools.context import TodoItem
from taskAgent.utils.error_handler import InvalidTransitionError
from taskAgent.utils.logging_utils import log_state_transition

LOGGER = logging.getLogger(__name__)


class TaskState(str, Enum):
    CREATED = "created"
    INITIALIZING = "initializing"
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"
    ABORTED = "aborted"
    ABANDONED = "abandoned"
    ERROR_SUSPENDED = "error_suspended"


TERMINAL_STATES = frozenset({TaskState.COMPLETED, TaskState.ABORTED, TaskState.ABANDONED})

VALID_TRANSITIONS: Dict[TaskState, FrozenSet[TaskState]] = {
    TaskState.CREATED: frozenset({
        TaskState.INITIALIZING,
        TaskState.ABORTED,
        TaskState.ERROR_SUSPENDED,
    }),
    TaskState.INITIALIZING: frozenset({
        TaskState.ACTIVE,
        TaskState.PAUSED,  # resumed while waiting on a child
        TaskState.ABORTED,
        TaskState.ERROR_SUSPENDED,
    }),
    TaskState.ACTIVE: frozenset({
        TaskState.PAUSED,
        TaskState.COMPLETED,
        TaskState.ABORTED,
        TaskState.ABANDONED,
        TaskState.ERROR_SUSPENDED,
    }),
    TaskState.PAUSED: frozenset({
        TaskState.ACTIVE,
        TaskState.ABORTED,
        TaskState.ERROR_SUSPENDED,
    }),
    TaskState.ERROR_SUSPENDED: frozenset({
        TaskState.INITIALIZING,
        TaskState.ABORTED,
    }),
    TaskState.COMPLETED: frozenset(),
    TaskState.ABORTED: frozenset(),
    TaskState.ABANDONED: frozenset(),
}


def validate_transition(task_id: str, current: TaskState, target: TaskState) -> None:
    """Raise InvalidTransitionError unless ``current -> target`` is in the table."""
    if target not in VALID_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransitionError(task_id, current.value, target.value)


@dataclass
class Task:
    """One unit of agent work.

    Identity, mode and protocol are fixed at construction; assigning any of
    them afterwards raises AttributeError. Parent and root are plain ids
    resolved through the TaskRegistry.
    """

    task_id: str
    mode: str
    protocol: ToolProtocol = ToolProtocol.NATIVE
    parent_task_id: Optional[str] = None
    root_task_id: Optional[str] = None
    depth: int = 0
    provider: str = "openai"
    state: TaskState = TaskState.CREATED
    todos: List[TodoItem] = field(default_factory=list)
    result: Optional[str] = None
    error: Optional[str] = None
    turns: int = 0
    consecutive_mistakes: int = 0

    # Synchronous delegation in progress
    pending_invocation_id: Optional[str] = None
    pending_child_id: Optional[str] = None
    pending_turn: Optional[Dict[str, Any]] = None

    # Background delegation: child task id -> delegating invocation id
    background_children: Dict[str, str] = field(default_factory=dict)

    created_at: float = field(default_factory=time.time)

    LOCKED_FIELDS: ClassVar[FrozenSet[str]] = frozenset(
        {"task_id", "mode", "protocol", "parent_task_id", "root_task_id"}
    )

    def __post_init__(self) -> None:
        object.__setattr__(self, "protocol", ToolProtocol(self.protocol))
        if self.root_task_id is None:
            object.__setattr__(self, "root_task_id", self.parent_task_id or self.task_id)

    def __setattr__(self, name: str, value: Any) -> None:
        if name in self.LOCKED_FIELDS and name in self.__dict__:
            raise AttributeError(f"Task.{name} is fixed at construction")
        super().__setattr__(name, value)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def is_child(self) -> bool:
        return self.parent_task_id is not None

    def transition(self, target: TaskState, reason: str = "") -> TaskState:
        """Move to ``target``.

        Returns:
            The previous state

        Raises:
            InvalidTransitionError: The edge is not in VALID_TRANSITIONS
        """
        previous = self.state
        validate_transition(self.task_id, previous, target)
        self.state = target
        log_state_transition(LOGGER, self.task_id, previous.value, target.value, reason)
        return previous

    # ========== Persistence ==========

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "task_id": self.task_id,
            "mode": self.mode,
            "protocol": self.protocol.value,
            "parent_task_id": self.parent_task_id,
            "root_task_id": self.root_task_id,
            "depth": self.depth,
            "provider": self.provider,
            "state": self.state.value,
            "todos": [t.to_dict() for t in self.todos],
            "result": self.result,
            "error": self.error,
            "turns": self.turns,
            "consecutive_mistakes": self.consecutive_mistakes,
            "pending_invocation_id": self.pending_invocation_id,
            "pending_child_id": self.pending_child_id,
            "pending_turn": self.pending_turn,
            "background_children": dict(self.background_children),
            "created_at": self.created_at,
        }

    @classmethod
    def from_metadata(cls, data: Dict[str, Any]) -> "Task":
        """Rebuild a task from saved metadata.

        Live states restart at CREATED so the orchestrator re-runs
        initialization; terminal states are kept.
        """
        stored = TaskState(data.get("state", TaskState.CREATED.value))
        return cls(
            task_id=data["task_id"],
            mode=data["mode"],
            protocol=ToolProtocol(data.get("protocol", ToolProtocol.NATIVE.value)),
            parent_task_id=data.get("parent_task_id"),
            root_task_id=data.get("root_task_id"),
            depth=int(data.get("depth", 0)),
            provider=data.get("provider", "openai"),
            state=stored if stored in TERMINAL_STATES else TaskState.CREATED,
            todos=[TodoItem.from_dict(t) for t in data.get("todos") or []],
            result=data.get("result"),
            error=data.get("error"),
            turns=int(data.get("turns", 0)),
            consecutive_mistakes=int(data.get("consecutive_mistakes", 0)),
            pending_invocation_id=data.get("pending_invocation_id"),
            pending_child_id=data.get("pending_child_id"),
            pending_turn=data.get("pending_turn"),
            background_children=dict(data.get("background_children") or {}),
            created_at=float(data.get("created_at", time.time())),
        )


__all__ = ["TERMINAL_STATES", "Task", "TaskState", "VALID_TRANSITIONS", "validate_transition"]
