"""Pytest configuration and fixtures for all tests.

This file is automatically loaded by pytest and ensures proper test environment setup.
"""

import sys
from pathlib import Path

import pytest

# Ensure project root is in PYTHONPATH for imports to work
project_root = Path(__file__).parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

tests_dir = Path(__file__).parent
if str(tests_dir) not in sys.path:
    sys.path.insert(0, str(tests_dir))

from taskAgent.backends import BackendRegistry  # noqa: E402
from taskAgent.config.settings import (  # noqa: E402
    BackendSettings,
    ContextManagementSettings,
    GovernanceSettings,
    ObservabilitySettings,
    Settings,
)
from taskAgent.persistence import SqliteTaskStore  # noqa: E402
from taskAgent.runtime import build_runtime  # noqa: E402

from fakes import ScriptedApprovalProvider, ScriptedBackend  # noqa: E402


@pytest.fixture
def workspace(tmp_path):
    path = tmp_path / "workspace"
    path.mkdir()
    return path


@pytest.fixture
def make_settings(tmp_path, workspace):
    """Settings factory; keyword groups override the matching settings section."""

    def _make(governance=None, context=None, backend=None, **fields):
        return Settings(
            workspace_root=str(workspace),
            backend=BackendSettings(
                api_key="test-key",
                model="scripted-model",
                request_retry_delay_seconds=0.0,
                **(backend or {}),
            ),
            governance=GovernanceSettings(**(governance or {})),
            context=ContextManagementSettings(**(context or {})),
            observability=ObservabilitySettings(
                log_dir=str(tmp_path / "logs"),
                task_db_path=str(tmp_path / "tasks.db"),
            ),
            **fields,
        )

    return _make


@pytest.fixture
def make_runtime(tmp_path, workspace, make_settings):
    """Build a runtime wired to a ScriptedBackend and a ScriptedApprovalProvider.

    Returns (services, backend, approvals).
    """

    def _make(scripts=(), approvals=None, summaries=(), context_window=128000, **settings_groups):
        settings = make_settings(**settings_groups)
        backend = ScriptedBackend(scripts, summaries=summaries, context_window=context_window)
        provider = approvals or ScriptedApprovalProvider()
        services = build_runtime(
            settings,
            backend_registry=BackendRegistry({"openai": lambda _settings: backend}),
            approval_provider=provider,
            workspace=workspace,
            store=SqliteTaskStore(str(tmp_path / "tasks.db")),
        )
        return services, backend, provider

    return _make
