"""Search for content within workspace files."""

from __future__ import annotations

import logging
import re
from typing import Annotated

from langchain_core.tools import InjectedToolArg, tool

from taskAgent.tools.context import TaskContext
from taskAgent.utils.error_handler import ToolExecutionError

LOGGER = logging.getLogger(__name__)

__all__ = ["search_files"]


@tool
def search_files(
    pattern: Annotated[str, "Regular expression to search for"],
    task: Annotated[TaskContext, InjectedToolArg],
    path: Annotated[str, "Directory to search (default: workspace root)"] = ".",
    file_glob: Annotated[str, "Only search files whose name matches this glob (e.g., '*.py')"] = "*",
    max_results: Annotated[int, "Maximum matching lines to return"] = 50,
) -> str:
    """Search text files for a regular expression and return matching lines with locations.

    Binary files and hidden directories are skipped.

    Examples:
        search_files("def main")
        search_files("TODO|FIXME", path="src", file_glob="*.ts")
    """
    try:
        regex = re.compile(pattern)
    except re.error as e:
        raise ToolExecutionError(f"Invalid regular expression '{pattern}': {e}")

    directory = task.workspace_root if path in ("", ".") else task.resolve_path(path)
    if not directory.is_dir():
        raise ToolExecutionError(f"Directory not found: {path}")

    matches = []
    for file_path in sorted(directory.rglob(file_glob)):
        relative = file_path.relative_to(task.workspace_root)
        if not file_path.is_file() or any(part.startswith(".") for part in relative.parts):
            continue
        try:
            lines = file_path.read_text(encoding="utf-8").splitlines()
        except (UnicodeDecodeError, OSError):
            continue
        for number, line in enumerate(lines, 1):
            if regex.search(line):
                matches.append(f"{relative.as_posix()}:{number}: {line.strip()[:200]}")
                if len(matches) >= max_results:
                    break
        if len(matches) >= max_results:
            break

    LOGGER.info(f"search_files '{pattern}' in {path}: {len(matches)} match(es)")
    if not matches:
        return f"No matches for '{pattern}' in {path}"
    return "\n".join(matches)
