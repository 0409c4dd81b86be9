"""Todo write tool for creating and updating task lists."""

from __future__ import annotations

import uuid
from typing import Annotated, List

from langchain_core.tools import InjectedToolArg, tool

from taskAgent.tools.context import TODO_STATUSES, TaskContext, TodoItem
from taskAgent.utils.error_handler import ToolExecutionError


@tool
def todo_write(
    todos: List[dict],
    task: Annotated[TaskContext, InjectedToolArg],
) -> str:
    """Track multi-step tasks (3+ steps). Replaces the whole todo list.

    Use when: Complex multi-step tasks, user requests it, user provides list
    Don't use: Single task, trivial tasks (<3 steps), conversational requests

    Task states: pending | in_progress | completed
    Required fields: content, status
    Optional fields: id (auto-generated if missing)

    Rules:
    - Mark in_progress BEFORE starting work
    - Mark completed IMMEDIATELY after finishing (don't batch)
    - Only ONE in_progress at a time
    - Completion is refused while items are still open

    Examples:
        todo_write([
            {"content": "Read the failing test", "status": "in_progress"},
            {"content": "Fix the parser", "status": "pending"}
        ])
    """
    items = []
    for todo in todos:
        if "content" not in todo or "status" not in todo:
            raise ToolExecutionError("Each todo item must have 'content' and 'status' fields")
        if todo["status"] not in TODO_STATUSES:
            raise ToolExecutionError(
                f"Invalid status '{todo['status']}', must be one of {'/'.join(TODO_STATUSES)}"
            )
        items.append(TodoItem(id=todo.get("id") or str(uuid.uuid4())[:8], content=todo["content"], status=todo["status"]))

    in_progress = [t for t in items if t.status == "in_progress"]
    if len(in_progress) > 1:
        raise ToolExecutionError(f"Only one todo can be 'in_progress', got {len(in_progress)}")

    # In place: the list belongs to the task
    task.todos[:] = items

    open_count = len([t for t in items if t.is_open])
    completed_count = len(items) - open_count
    return f"Todo list updated: {open_count} open, {completed_count} completed"


__all__ = ["todo_write"]
