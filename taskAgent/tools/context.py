"""Task-side state handed to tool implementations."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

from taskAgent.utils.error_handler import ToolExecutionError

TODO_STATUSES = ("pending", "in_progress", "completed")


@dataclass
class TodoItem:
    id: str
    content: str
    status: str = "pending"

    @property
    def is_open(self) -> bool:
        return self.status != "completed"

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "content": self.content, "status": self.status}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TodoItem":
        return cls(id=data.get("id") or str(uuid.uuid4())[:8], content=data["content"], status=data.get("status", "pending"))


AskUser = Callable[[str, Sequence[str]], Awaitable[str]]


class TaskContext:
    """Injected into tools as the ``task`` argument.

    Kept a plain class: argument validation passes plain instances through
    as-is, so ``todos`` stays the task's own list.
    """

    def __init__(
        self,
        task_id: str,
        mode: str,
        workspace_root: Path,
        todos: Optional[List[TodoItem]] = None,
        ask_user: Optional[AskUser] = None,
    ) -> None:
        self.task_id = task_id
        self.mode = mode
        self.workspace_root = Path(workspace_root).resolve()
        self.todos: List[TodoItem] = todos if todos is not None else []
        self._ask_user = ask_user

    def resolve_path(self, path: str) -> Path:
        """Resolve a workspace-relative path, refusing anything outside the workspace."""
        if not path or path.startswith("/") or ".." in Path(path).parts:
            raise ToolExecutionError(f"Access denied. Invalid path: {path}")
        target = (self.workspace_root / path).resolve()
        try:
            target.relative_to(self.workspace_root)
        except ValueError:
            raise ToolExecutionError(f"Access denied. Path escapes the workspace: {path}")
        return target

    def relative(self, path: Path) -> str:
        return path.resolve().relative_to(self.workspace_root).as_posix()

    async def ask(self, question: str, options: Sequence[str] = ()) -> str:
        if self._ask_user is None:
            raise ToolExecutionError("No user is available to answer questions for this task")
        return await self._ask_user(question, options)

    def __repr__(self) -> str:
        return f"TaskContext(task_id={self.task_id!r}, mode={self.mode!r}, todos={len(self.todos)})"


__all__ = ["TODO_STATUSES", "TaskContext", "TodoItem"]
