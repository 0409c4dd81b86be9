"""Runtime assembly for the task agent."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from taskAgent.backends import BackendRegistry, build_default_backend_registry
from taskAgent.config import Settings, get_settings
from taskAgent.config.modes import ModeProvider
from taskAgent.hitl import ApprovalChecker, ApprovalGate, ApprovalProvider, AutoApprovalProvider
from taskAgent.persistence import SqliteTaskStore, TaskStore
from taskAgent.runtime.events import EventBus
from taskAgent.runtime.registry import TaskRegistry
from taskAgent.tools.builtin import build_default_registry
from taskAgent.tools.registry import ToolRegistry

LOGGER = logging.getLogger(__name__)


@dataclass
class RuntimeServices:
    """Everything an orchestrator needs, shared by all tasks of one runtime."""

    settings: Settings
    tool_registry: ToolRegistry
    mode_provider: ModeProvider
    backend_registry: BackendRegistry
    approval_gate: ApprovalGate
    approval_checker: ApprovalChecker
    store: TaskStore
    events: EventBus
    workspace_root: Path
    tasks: Optional[TaskRegistry] = None


def build_runtime(
    settings: Optional[Settings] = None,
    *,
    backend_registry: Optional[BackendRegistry] = None,
    approval_provider: Optional[ApprovalProvider] = None,
    workspace: Optional[Path] = None,
    store: Optional[TaskStore] = None,
    tool_registry: Optional[ToolRegistry] = None,
) -> RuntimeServices:
    """Wire settings, registries, approval and persistence into one runtime.

    Args:
        settings: Defaults to the cached environment settings
        backend_registry: Defaults to the builtin provider factories
        approval_provider: Who answers approval requests; defaults to
            approving everything
        workspace: Directory the file and command tools operate in
        store: Task store; defaults to SQLite at ``task_db_path``
        tool_registry: Defaults to every builtin tool

    Returns:
        RuntimeServices with ``tasks`` ready to create tasks
    """
    settings = settings or get_settings()

    workspace_root = Path(workspace or settings.workspace_root).resolve()
    workspace_root.mkdir(parents=True, exist_ok=True)
    LOGGER.info(f"Workspace: {workspace_root}")

    tool_registry = tool_registry or build_default_registry()
    LOGGER.info(f"Registered {len(tool_registry.list_tools())} tools")

    mode_provider = ModeProvider(tool_registry)
    LOGGER.info(f"Modes available: {', '.join(mode_provider.list_modes())}")

    approval_checker = ApprovalChecker.from_settings(settings.governance)
    approval_gate = ApprovalGate(
        approval_provider or AutoApprovalProvider(),
        timeout_seconds=settings.governance.approval_timeout_seconds,
    )

    if store is None:
        store = SqliteTaskStore(settings.observability.task_db_path)

    services = RuntimeServices(
        settings=settings,
        tool_registry=tool_registry,
        mode_provider=mode_provider,
        backend_registry=backend_registry or build_default_backend_registry(),
        approval_gate=approval_gate,
        approval_checker=approval_checker,
        store=store,
        events=EventBus(),
        workspace_root=workspace_root,
    )
    services.tasks = TaskRegistry(services)
    return services


__all__ = ["RuntimeServices", "build_runtime"]
