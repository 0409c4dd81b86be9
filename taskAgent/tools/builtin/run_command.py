"""Execute shell commands in the task workspace."""

from __future__ import annotations

import logging
import os
import subprocess
import sys
from pathlib import Path
from typing import Annotated

from langchain_core.tools import InjectedToolArg, tool

from taskAgent.tools.context import TaskContext
from taskAgent.utils.error_handler import ToolExecutionError

LOGGER = logging.getLogger(__name__)

MAX_OUTPUT_CHARS = 30_000


def _command_env(workspace_path: Path) -> dict:
    env = {
        "PATH": os.environ.get("PATH", "/usr/bin:/bin:/usr/sbin:/sbin"),
        "HOME": str(workspace_path),
        "AGENT_WORKSPACE_PATH": str(workspace_path),
    }

    # Current interpreter first, so venv/uv/conda tools resolve
    python_dir = Path(sys.executable).parent
    separator = ";" if sys.platform == "win32" else ":"
    env["PATH"] = f"{python_dir}{separator}{env['PATH']}"

    if sys.prefix != sys.base_prefix:
        env["VIRTUAL_ENV"] = sys.prefix
    return env


@tool
def run_command(
    command: Annotated[str, "Shell command to execute (e.g., 'ls -la', 'pytest -q')"],
    task: Annotated[TaskContext, InjectedToolArg],
    cwd: Annotated[str, "Working directory relative to workspace root"] = ".",
    timeout: Annotated[int, "Timeout in seconds"] = 60,
) -> str:
    """Execute a shell command in the workspace directory.

    - Commands run in the workspace (or cwd inside it)
    - Output is truncated to the last 30,000 characters
    - A non-zero exit code is reported in the result, not raised

    Examples:
        run_command("ls -la src/")
        run_command("python -m pytest tests/unit -q", timeout=300)
    """
    workspace_path = task.workspace_root
    directory = workspace_path if cwd in ("", ".") else task.resolve_path(cwd)
    if not directory.is_dir():
        raise ToolExecutionError(f"Working directory not found: {cwd}")

    LOGGER.info(f"Executing command: {command}")
    try:
        result = subprocess.run(
            command,
            cwd=directory,
            env=_command_env(workspace_path),
            capture_output=True,
            text=True,
            timeout=timeout,
            shell=True,
        )
    except subprocess.TimeoutExpired:
        raise ToolExecutionError(f"Command timeout ({timeout}s): {command}")

    output = result.stdout
    if result.stderr:
        output += f"\n[stderr]\n{result.stderr}"
    if len(output) > MAX_OUTPUT_CHARS:
        output = "... (output truncated)\n" + output[-MAX_OUTPUT_CHARS:]

    if result.returncode != 0:
        return f"Command failed (exit code {result.returncode}):\n{output}"
    return output or "Command completed (no output)"


__all__ = ["run_command"]
