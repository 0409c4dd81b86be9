"""Edit file tool for precise string replacements."""

from __future__ import annotations

import logging
from typing import Annotated

from langchain_core.tools import InjectedToolArg, tool

from taskAgent.tools.context import TaskContext
from taskAgent.utils.error_handler import ToolExecutionError

LOGGER = logging.getLogger(__name__)

__all__ = ["edit_file"]


@tool
def edit_file(
    path: Annotated[str, "File path relative to workspace root"],
    old_string: Annotated[str, "The exact text to replace"],
    new_string: Annotated[str, "The text to replace it with"],
    task: Annotated[TaskContext, InjectedToolArg],
    replace_all: Annotated[bool, "Replace all occurrences (default: False)"] = False,
) -> str:
    """Exact string replacement in files. Safer than write_file for targeted edits.

    MUST use read_file first to see contents.
    old_string must match EXACTLY (whitespace, indentation) and must not
    include the line-number prefix read_file adds.

    Fails if old_string is not found or not unique (unless replace_all=True).

    Examples:
        edit_file("config/app.toml", "port = 8080", "port = 3000")
        edit_file("src/util.py", "foo", "bar", replace_all=True)
    """
    if old_string == new_string:
        raise ToolExecutionError("old_string and new_string must be different")

    target = task.resolve_path(path)
    if not target.exists():
        raise ToolExecutionError(f"File not found: {path}")
    if not target.is_file():
        raise ToolExecutionError(f"Not a file: {path}")

    try:
        content = target.read_text(encoding="utf-8")
    except UnicodeDecodeError:
        raise ToolExecutionError(f"File is not a text file (binary content detected): {path}")

    occurrences = content.count(old_string)
    if occurrences == 0:
        raise ToolExecutionError(f"String not found in {path}: {old_string[:100]}")
    if not replace_all and occurrences > 1:
        raise ToolExecutionError(
            f"Found {occurrences} occurrences of old_string, but replace_all=False. "
            f"Either provide a more unique string or set replace_all=True."
        )

    if replace_all:
        new_content = content.replace(old_string, new_string)
        replacements = occurrences
    else:
        new_content = content.replace(old_string, new_string, 1)
        replacements = 1

    target.write_text(new_content, encoding="utf-8")

    LOGGER.info(f"Edited file: {path} ({replacements} replacement(s))")
    return f"Success: Replaced {replacements} occurrence(s) in {path}"
