"""Todo read tool."""

from __future__ import annotations

from typing import Annotated

from langchain_core.tools import InjectedToolArg, tool

from taskAgent.tools.context import TaskContext

_STATUS_MARKS = {"pending": "[ ]", "in_progress": "[>]", "completed": "[x]"}


def format_todos(todos) -> str:
    if not todos:
        return "The todo list is empty."
    lines = [f"{_STATUS_MARKS.get(t.status, '[?]')} {t.content} (id: {t.id})" for t in todos]
    return "\n".join(lines)


@tool
def todo_read(task: Annotated[TaskContext, InjectedToolArg]) -> str:
    """Show the current todo list with statuses."""
    return format_todos(task.todos)


__all__ = ["todo_read", "format_todos"]
