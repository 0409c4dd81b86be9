"""Task registry: creates, tracks and resumes task orchestrators.

Parent/child links are plain task ids; the registry is the only place that
turns an id back into a live orchestrator.
"""

from __future__ import annotations

import logging
import uuid
from typing import TYPE_CHECKING, Dict, List, Optional

from taskAgent.history.manager import HistoryManager
from taskAgent.protocol.chunks import ToolProtocol
from taskAgent.runtime.orchestrator import TaskOrchestrator
from taskAgent.runtime.task import Task

if TYPE_CHECKING:
    from taskAgent.runtime.app import RuntimeServices

LOGGER = logging.getLogger(__name__)


def new_task_id() -> str:
    return uuid.uuid4().hex[:12]


class TaskRegistry:
    """In-memory index of the orchestrators of one runtime."""

    def __init__(self, services: "RuntimeServices") -> None:
        self.services = services
        self._orchestrators: Dict[str, TaskOrchestrator] = {}

    def create_task(
        self,
        text: str,
        mode: Optional[str] = None,
        protocol: Optional[str] = None,
        provider: Optional[str] = None,
    ) -> TaskOrchestrator:
        """Create a root task.

        Raises:
            KeyError: Unknown mode
            ValueError: Unknown protocol
        """
        settings = self.services.settings
        mode = mode or settings.default_mode
        self.services.mode_provider.resolve(mode)

        task = Task(
            task_id=new_task_id(),
            mode=mode,
            protocol=ToolProtocol(protocol or settings.default_protocol),
            provider=provider or settings.backend.provider,
        )
        return self._register(TaskOrchestrator(task, self.services, initial_message=text))

    def create_child(self, parent: Task, message: str, mode: Optional[str] = None) -> TaskOrchestrator:
        """Create a child task that inherits the parent's protocol and provider.

        Raises:
            KeyError: Unknown mode
        """
        mode = mode or parent.mode
        self.services.mode_provider.resolve(mode)

        task = Task(
            task_id=new_task_id(),
            mode=mode,
            protocol=parent.protocol,
            parent_task_id=parent.task_id,
            root_task_id=parent.root_task_id,
            depth=parent.depth + 1,
            provider=parent.provider,
        )
        LOGGER.info(f"Created child task {task.task_id} of {parent.task_id} in mode {mode} (depth {task.depth})")
        return self._register(TaskOrchestrator(task, self.services, initial_message=message))

    def resume(self, task_id: str) -> TaskOrchestrator:
        """Return the live orchestrator for ``task_id``, loading it from the store if needed.

        Raises:
            KeyError: The task is neither live nor stored
            TaskPersistenceError: The store could not be read
        """
        live = self._orchestrators.get(task_id)
        if live is not None:
            return live

        snapshot = self.services.store.load(task_id)
        if snapshot is None:
            raise KeyError(f"Unknown task: {task_id}")

        task = Task.from_metadata(snapshot.metadata)
        history = HistoryManager(display=snapshot.display, context=snapshot.context)
        LOGGER.info(
            f"Resuming task {task_id} ({len(snapshot.display)} display / {len(snapshot.context)} context messages, "
            f"state {task.state.value})"
        )
        return self._register(
            TaskOrchestrator(task, self.services, history=history, usage=snapshot.metadata.get("usage"))
        )

    def get(self, task_id: str) -> Optional[Task]:
        orchestrator = self._orchestrators.get(task_id)
        return orchestrator.task if orchestrator is not None else None

    def get_orchestrator(self, task_id: str) -> Optional[TaskOrchestrator]:
        return self._orchestrators.get(task_id)

    def children(self, task_id: str) -> List[Task]:
        return [o.task for o in self._orchestrators.values() if o.task.parent_task_id == task_id]

    def lineage(self, task_id: str) -> List[Task]:
        """The task and its ancestors, root last. Stops at the first ancestor not in memory."""
        chain = []
        task = self.get(task_id)
        while task is not None:
            chain.append(task)
            task = self.get(task.parent_task_id) if task.parent_task_id else None
        return chain

    def abort(self, task_id: str, reason: str = "aborted by user") -> None:
        orchestrator = self._orchestrators.get(task_id)
        if orchestrator is None:
            raise KeyError(f"Unknown task: {task_id}")
        orchestrator.abort(reason)

    def _register(self, orchestrator: TaskOrchestrator) -> TaskOrchestrator:
        self._orchestrators[orchestrator.task.task_id] = orchestrator
        return orchestrator


__all__ = ["TaskRegistry", "new_task_id"]
