"""Tool registry, validation pipeline and builtin tools."""

from .context import TaskContext, TodoItem
from .pipeline import InvocationStatus, ToolOutcome, ToolPipeline
from .registry import ToolMeta, ToolRegistry
from .repetition import RepetitionGuard

__all__ = [
    "InvocationStatus",
    "RepetitionGuard",
    "TaskContext",
    "TodoItem",
    "ToolMeta",
    "ToolOutcome",
    "ToolPipeline",
    "ToolRegistry",
]
