"""Control tools carried out by the orchestrator.

The pipeline validates these calls like any other tool; the orchestrator
then performs the completion or delegation itself, so the function bodies
only run if one of them is invoked outside a task loop.
"""

from __future__ import annotations

from typing import Optional

from langchain_core.tools import tool
from pydantic import BaseModel, Field

from taskAgent.utils.error_handler import ToolExecutionError


class AttemptCompletionInput(BaseModel):
    """attempt_completion arguments"""

    result: str = Field(..., min_length=1, description="Final result of the task, written for the user")


class DelegateTaskInput(BaseModel):
    """delegate_task arguments"""

    message: str = Field(..., min_length=1, description="Complete instructions for the child task")
    mode: Optional[str] = Field(default=None, description="Mode slug for the child task (default: current mode)")


@tool(args_schema=AttemptCompletionInput)
def attempt_completion(result: str) -> str:
    """Present the final result once the task is done.

    Only call this after every tool call succeeded and every todo item is
    completed. The user reviews the result and may send feedback, in which
    case continue working on it.
    """
    raise ToolExecutionError("attempt_completion is handled by the task orchestrator")


@tool(args_schema=DelegateTaskInput)
def delegate_task(message: str, mode: Optional[str] = None) -> str:
    """Delegate a self-contained subtask to a new child task.

    The child starts with a fresh history and only sees `message`, so
    include all context it needs. Its final result is returned to you as this
    tool's result.

    Examples:
        delegate_task("Write unit tests for src/parser.py covering empty input", mode="code")
    """
    raise ToolExecutionError("delegate_task is handled by the task orchestrator")


__all__ = ["attempt_completion", "delegate_task", "AttemptCompletionInput", "DelegateTaskInput"]
