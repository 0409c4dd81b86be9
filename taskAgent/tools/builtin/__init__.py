"""Builtin tools and their governance metadata."""

from __future__ import annotations

from typing import List, Tuple

from langchain_core.tools import BaseTool

from taskAgent.tools.registry import ToolMeta, ToolRegistry

from .ask_followup_question import ask_followup_question
from .control import attempt_completion, delegate_task
from .edit_file import edit_file
from .file_ops import list_files, read_file, write_file
from .run_command import run_command
from .search_files import search_files
from .todo_read import todo_read
from .todo_write import todo_write

COMPLETION_TOOL = "attempt_completion"
DELEGATION_TOOL = "delegate_task"

BUILTIN_TOOLS: List[Tuple[BaseTool, ToolMeta]] = [
    (read_file, ToolMeta(name="read_file", group="read", tags=["file"])),
    (list_files, ToolMeta(name="list_files", group="read", tags=["file"])),
    (search_files, ToolMeta(name="search_files", group="read", tags=["file", "search"])),
    (write_file, ToolMeta(name="write_file", group="edit", risk="medium", tags=["file"], path_argument="path")),
    (edit_file, ToolMeta(name="edit_file", group="edit", risk="medium", tags=["file"], path_argument="path")),
    (run_command, ToolMeta(name="run_command", group="command", risk="high", tags=["shell"])),
    (todo_write, ToolMeta(name="todo_write", group="workflow", tags=["todo"], always_available=True)),
    (todo_read, ToolMeta(name="todo_read", group="workflow", tags=["todo"], always_available=True)),
    (ask_followup_question, ToolMeta(name="ask_followup_question", group="workflow", always_available=True)),
    (attempt_completion, ToolMeta(name=COMPLETION_TOOL, group="control", always_available=True, control=True)),
    (delegate_task, ToolMeta(name=DELEGATION_TOOL, group="control", always_available=True, control=True)),
]


def build_default_registry() -> ToolRegistry:
    """A fresh registry holding every builtin tool."""
    registry = ToolRegistry()
    for tool, meta in BUILTIN_TOOLS:
        registry.register(tool, meta)
    return registry


__all__ = [
    "BUILTIN_TOOLS",
    "COMPLETION_TOOL",
    "DELEGATION_TOOL",
    "build_default_registry",
]
