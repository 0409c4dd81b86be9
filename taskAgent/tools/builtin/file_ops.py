"""File operation tools with workspace isolation."""

from __future__ import annotations

import logging
from typing import Annotated

from langchain_core.tools import InjectedToolArg, tool

from taskAgent.tools.context import TaskContext
from taskAgent.utils.error_handler import ToolExecutionError

LOGGER = logging.getLogger(__name__)

__all__ = ["read_file", "write_file", "list_files"]

MAX_READ_CHARS = 100_000
MAX_LIST_ENTRIES = 500


@tool
def read_file(
    path: Annotated[str, "File path relative to workspace root"],
    task: Annotated[TaskContext, InjectedToolArg],
    start_line: Annotated[int, "First line to return (1-based)"] = 1,
    max_lines: Annotated[int, "Maximum number of lines to return (0 = all)"] = 0,
) -> str:
    """Read a text file from the workspace. Output lines are prefixed with line numbers.

    Large files are truncated; use start_line/max_lines to page through them.
    NEVER use ".." or "/" prefix.

    Examples:
        read_file("src/app.py")
        read_file("logs/build.log", start_line=200, max_lines=50)
    """
    target = task.resolve_path(path)
    if not target.exists():
        raise ToolExecutionError(f"File not found: {path}")
    if not target.is_file():
        raise ToolExecutionError(f"Not a file: {path}")

    try:
        content = target.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        raise ToolExecutionError(f"File is not a text file (binary content detected): {path}")

    lines = content.splitlines()
    first = max(start_line, 1)
    selected = lines[first - 1:]
    if max_lines > 0:
        selected = selected[:max_lines]

    numbered = "\n".join(f"{first + i:>6} | {line}" for i, line in enumerate(selected))
    truncated = len(numbered) > MAX_READ_CHARS
    if truncated:
        numbered = numbered[:MAX_READ_CHARS]

    LOGGER.info(f"Read file: {path} ({len(selected)} lines)")
    header = f"=== {path} ({len(lines)} lines) ==="
    if truncated:
        return f"{header}\n{numbered}\n\n⚠️ Output truncated at {MAX_READ_CHARS:,} chars; use start_line to continue"
    return f"{header}\n{numbered}"


@tool
def write_file(
    path: Annotated[str, "File path relative to workspace (e.g., 'notes/plan.md')"],
    content: Annotated[str, "Complete file content to write"],
    task: Annotated[TaskContext, InjectedToolArg],
) -> str:
    """Write a file in the workspace, creating parent directories as needed.

    Overwrites the existing file if there is one. Prefer edit_file for
    targeted changes to existing files.

    Examples:
        write_file("notes/plan.md", "# Plan\\n\\n## Phase 1\\n")
    """
    target = task.resolve_path(path)
    if target.exists() and not target.is_file():
        raise ToolExecutionError(f"Not a file: {path}")

    existed = target.exists()
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")

    LOGGER.info(f"Wrote file: {path} ({len(content)} chars)")
    action = "Updated" if existed else "Created"
    return f"Success: {action} {path} ({len(content.splitlines())} lines)"


@tool
def list_files(
    task: Annotated[TaskContext, InjectedToolArg],
    path: Annotated[str, "Directory relative to workspace root"] = ".",
    recursive: Annotated[bool, "List subdirectories recursively"] = False,
) -> str:
    """List files and directories in the workspace. Hidden entries are skipped.

    Examples:
        list_files()
        list_files("src", recursive=True)
    """
    directory = task.workspace_root if path in ("", ".") else task.resolve_path(path)
    if not directory.exists():
        raise ToolExecutionError(f"Directory not found: {path}")
    if not directory.is_dir():
        raise ToolExecutionError(f"Not a directory: {path}")

    entries = directory.rglob("*") if recursive else directory.iterdir()
    lines = []
    for entry in sorted(entries):
        relative = entry.relative_to(task.workspace_root)
        if any(part.startswith(".") for part in relative.parts):
            continue
        lines.append(relative.as_posix() + ("/" if entry.is_dir() else ""))
        if len(lines) >= MAX_LIST_ENTRIES:
            lines.append(f"... (stopped after {MAX_LIST_ENTRIES} entries)")
            break

    if not lines:
        return f"No files found in {path}"
    return "\n".join(lines)
