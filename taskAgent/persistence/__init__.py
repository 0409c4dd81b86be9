"""Task persistence."""

from .task_store import SqliteTaskStore, TaskSnapshot, TaskStore, TaskSummary

__all__ = ["SqliteTaskStore", "TaskSnapshot", "TaskStore", "TaskSummary"]
