"""Task persistence: the store interface and its SQLite implementation."""

from __future__ import annotations

import abc
import json
import logging
import os
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from taskAgent.history.messages import (
    ContextMessage,
    DisplayMessage,
    context_message_from_dict,
    context_message_to_dict,
    display_message_from_dict,
    display_message_to_dict,
)
from taskAgent.utils.error_handler import TaskPersistenceError

LOGGER = logging.getLogger(__name__)


@dataclass
class TaskSnapshot:
    """Everything needed to resume a task."""

    task_id: str
    display: List[DisplayMessage] = field(default_factory=list)
    context: List[ContextMessage] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TaskSummary:
    task_id: str
    parent_task_id: Optional[str]
    state: str
    mode: str
    created_at: str
    updated_at: str
    message_count: int


class TaskStore(abc.ABC):
    """Persistence contract. A save is atomic: a later load sees all of it or none of it."""

    @abc.abstractmethod
    def save(
        self,
        task_id: str,
        display: Sequence[DisplayMessage],
        context: Sequence[ContextMessage],
        metadata: Dict[str, Any],
    ) -> None:
        raise NotImplementedError

    @abc.abstractmethod
    def load(self, task_id: str) -> Optional[TaskSnapshot]:
        raise NotImplementedError

    @abc.abstractmethod
    def list_tasks(self) -> List[TaskSummary]:
        raise NotImplementedError

    @abc.abstractmethod
    def delete(self, task_id: str) -> None:
        raise NotImplementedError


class SqliteTaskStore(TaskStore):
    """SQLite store: one row per task, histories and metadata as JSON."""

    def __init__(self, db_path: str = "data/tasks.db"):
        """Initialize the task store.

        Args:
            db_path: Path to SQLite database file
        """
        db_dir = os.path.dirname(db_path)
        if db_dir and not os.path.exists(db_dir):
            os.makedirs(db_dir, exist_ok=True)

        self.db_path = db_path
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path, timeout=10.0)

    def _init_db(self):
        """Initialize database schema."""
        try:
            conn = self._connect()
            try:
                conn.execute("""
                    CREATE TABLE IF NOT EXISTS tasks (
                        task_id TEXT PRIMARY KEY,
                        parent_task_id TEXT,
                        state TEXT NOT NULL,
                        mode TEXT NOT NULL,
                        display_json TEXT NOT NULL,
                        context_json TEXT NOT NULL,
                        metadata_json TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL,
                        message_count INTEGER DEFAULT 0
                    )
                """)
                conn.commit()
            finally:
                conn.close()
        except sqlite3.Error as e:
            raise TaskPersistenceError(f"Could not initialize task store at {self.db_path}: {e}") from e

    def save(
        self,
        task_id: str,
        display: Sequence[DisplayMessage],
        context: Sequence[ContextMessage],
        metadata: Dict[str, Any],
    ) -> None:
        """Insert or replace the task row in a single transaction.

        Raises:
            TaskPersistenceError: Serialization or database failure
        """
        try:
            display_json = json.dumps([display_message_to_dict(m) for m in display], ensure_ascii=False, default=str)
            context_json = json.dumps([context_message_to_dict(m) for m in context], ensure_ascii=False, default=str)
            metadata_json = json.dumps(metadata, ensure_ascii=False, default=str)
        except (TypeError, ValueError) as e:
            raise TaskPersistenceError(f"Could not serialize task {task_id}: {e}") from e

        now = datetime.now(timezone.utc).isoformat()
        try:
            conn = self._connect()
            try:
                # The connection context manager commits or rolls back as one transaction
                with conn:
                    conn.execute(
                        """INSERT INTO tasks (task_id, parent_task_id, state, mode, display_json, context_json,
                                              metadata_json, created_at, updated_at, message_count)
                           VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                           ON CONFLICT(task_id) DO UPDATE SET
                               state = excluded.state,
                               display_json = excluded.display_json,
                               context_json = excluded.context_json,
                               metadata_json = excluded.metadata_json,
                               updated_at = excluded.updated_at,
                               message_count = excluded.message_count""",
                        (
                            task_id,
                            metadata.get("parent_task_id"),
                            str(metadata.get("state", "")),
                            str(metadata.get("mode", "")),
                            display_json,
                            context_json,
                            metadata_json,
                            now,
                            now,
                            len(display),
                        ),
                    )
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            LOGGER.error(f"Failed to save task {task_id}: {e}")
            raise TaskPersistenceError(f"Could not save task {task_id}: {e}") from e
        LOGGER.debug(f"Saved task {task_id} ({len(display)} display / {len(context)} context messages)")

    def load(self, task_id: str) -> Optional[TaskSnapshot]:
        """Load a task.

        Returns:
            The snapshot, or None if the task is unknown

        Raises:
            TaskPersistenceError: Database failure or corrupt row
        """
        try:
            conn = self._connect()
            try:
                row = conn.execute(
                    "SELECT display_json, context_json, metadata_json FROM tasks WHERE task_id = ?",
                    (task_id,),
                ).fetchone()
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise TaskPersistenceError(f"Could not load task {task_id}: {e}") from e

        if row is None:
            return None

        try:
            return TaskSnapshot(
                task_id=task_id,
                display=[display_message_from_dict(m) for m in json.loads(row[0])],
                context=[context_message_from_dict(m) for m in json.loads(row[1])],
                metadata=json.loads(row[2]),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise TaskPersistenceError(f"Stored task {task_id} is corrupt: {e}") from e

    def list_tasks(self) -> List[TaskSummary]:
        """List saved tasks, most recently updated first."""
        try:
            conn = self._connect()
            try:
                rows = conn.execute(
                    """SELECT task_id, parent_task_id, state, mode, created_at, updated_at, message_count
                       FROM tasks
                       ORDER BY updated_at DESC"""
                ).fetchall()
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise TaskPersistenceError(f"Could not list tasks: {e}") from e
        return [TaskSummary(*row) for row in rows]

    def delete(self, task_id: str) -> None:
        try:
            conn = self._connect()
            try:
                with conn:
                    conn.execute("DELETE FROM tasks WHERE task_id = ?", (task_id,))
            finally:
                conn.close()
        except (sqlite3.Error, OSError) as e:
            raise TaskPersistenceError(f"Could not delete task {task_id}: {e}") from e


__all__ = ["SqliteTaskStore", "TaskSnapshot", "TaskStore", "TaskSummary"]
