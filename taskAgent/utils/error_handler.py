"""Unified error taxonomy for the task execution core."""

from __future__ import annotations

import functools
import logging
from typing import Any, Callable, Iterable, Optional

LOGGER = logging.getLogger(__name__)


class TaskAgentError(Exception):
    """Base exception for taskAgent errors."""

    def __init__(self, message: str, user_message: str = None):
        super().__init__(message)
        self.user_message = user_message or message


# ========== Recovered locally and fed back to the model ==========

class ProtocolParseError(TaskAgentError):
    """Tool call arguments could not be parsed when the call finished streaming."""

    def __init__(self, call_id: str, tool_name: str, raw_arguments: str, reason: str):
        super().__init__(
            f"Could not parse arguments for tool call {call_id} ({tool_name or 'unnamed'}): {reason}",
            user_message=(
                f"The arguments for '{tool_name or 'unnamed'}' were not valid JSON ({reason}). "
                "Resend the tool call with a complete JSON object."
            ),
        )
        self.call_id = call_id
        self.tool_name = tool_name
        self.raw_arguments = raw_arguments
        self.reason = reason


class ValidationError(TaskAgentError):
    """Unknown tool, tool not allowed in the mode, restricted path or bad arguments."""

    def __init__(
        self,
        message: str,
        tool_name: str = "",
        pattern: Optional[str] = None,
        path: Optional[str] = None,
        available_tools: Iterable[str] = (),
    ):
        super().__init__(message)
        self.tool_name = tool_name
        self.pattern = pattern
        self.path = path
        self.available_tools = list(available_tools)


class RepetitionLimitError(TaskAgentError):
    """The same tool was called too often within the repetition window."""

    def __init__(self, tool_name: str, count: int, threshold: int):
        super().__init__(
            f"Tool '{tool_name}' was called {count} times in the recent window (limit {threshold}). "
            "Try a different approach instead of repeating the same call."
        )
        self.tool_name = tool_name
        self.count = count
        self.threshold = threshold


class ExecutionError(TaskAgentError):
    """A tool implementation raised while executing."""

    def __init__(self, tool_name: str, cause: BaseException):
        detail = getattr(cause, "user_message", None) or str(cause) or type(cause).__name__
        super().__init__(f"Tool '{tool_name}' failed: {detail}")
        self.tool_name = tool_name
        self.cause = cause


class ToolExecutionError(TaskAgentError):
    """Raised by tool implementations for expected failures (missing file, bad edit, ...)."""
    pass


class UserRejection(TaskAgentError):
    """The user declined an approval request."""

    def __init__(self, tool_name: str, feedback: Optional[str] = None):
        message = f"The user denied the '{tool_name}' operation."
        if feedback:
            message += f"\nUser feedback: {feedback}"
        super().__init__(message)
        self.tool_name = tool_name
        self.feedback = feedback


class CompletionBlockedError(TaskAgentError):
    """attempt_completion was refused because the task is not finished."""

    def __init__(self, reasons: Iterable[str]):
        self.reasons = list(reasons)
        super().__init__(
            "Completion is blocked:\n" + "\n".join(f"- {reason}" for reason in self.reasons)
        )


# ========== Reported upward ==========

class BudgetExceededError(TaskAgentError):
    """No reduction strategy brought the context under its target limit."""

    retryable = True

    def __init__(self, tokens: int, target: int):
        super().__init__(
            f"Context is {tokens} tokens after all reduction strategies (target {target})",
            user_message="The conversation no longer fits the model's context window.",
        )
        self.tokens = tokens
        self.target = target


class BackendError(TaskAgentError):
    """The model backend failed while serving a request."""

    retryable = True


class TaskPersistenceError(TaskAgentError):
    """Saving or loading a task failed. Fatal to the task."""
    pass


class TaskInitializationError(TaskAgentError):
    """A task could not be set up to run (mode, backend or window unavailable)."""

    def __init__(self, task_id: str, cause: BaseException):
        if isinstance(cause, KeyError) and cause.args:
            detail = str(cause.args[0])
        else:
            detail = getattr(cause, "user_message", None) or str(cause) or type(cause).__name__
        super().__init__(
            f"Task {task_id} failed to initialize: {type(cause).__name__}: {detail}",
            user_message=f"The task could not be started: {detail}",
        )
        self.task_id = task_id
        self.cause = cause


# ========== Internal invariants ==========

class HistoryInconsistencyError(TaskAgentError):
    """Display and context histories disagree at a commit boundary."""
    pass


class RewindError(TaskAgentError):
    """A rewind would leave the histories in an invalid state."""
    pass


class InvalidTransitionError(TaskAgentError):
    """A task lifecycle transition that the state machine does not allow."""

    def __init__(self, task_id: str, current: Any, target: Any):
        super().__init__(f"Invalid transition for task {task_id}: {current} -> {target}")
        self.task_id = task_id
        self.current = current
        self.target = target


def with_error_boundary(entry_name: str):
    """Decorator for top-level entry points.

    Wraps a coroutine function. Catches taskAgent errors and unexpected
    exceptions, logs them and returns an exit code instead of letting a
    traceback reach the user.

    Args:
        entry_name: Name of the entry point for logging

    Example:
        @with_error_boundary("cli")
        async def run(args) -> int:
            ...
    """
    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        async def async_wrapper(*args: Any, **kwargs: Any) -> int:
            try:
                return await func(*args, **kwargs)
            except TaskAgentError as e:
                LOGGER.error(f"{entry_name} failed: {e}")
                print(f"Error: {e.user_message}")
                return 1
            except Exception as e:
                LOGGER.exception(f"{entry_name} unexpected error", exc_info=e)
                print("Error: unexpected failure, see the log file for details.")
                return 1

        return async_wrapper

    return decorator


def handle_backend_error(error: Exception) -> str:
    """Convert backend request errors to user-friendly messages.

    Args:
        error: Exception raised while streaming from the backend

    Returns:
        User-friendly error message
    """
    error_str = str(error).lower()

    if "rate_limit" in error_str or "429" in error_str:
        return "Rate limited by the model provider, retrying later may help"

    if "timeout" in error_str or "timed out" in error_str:
        return "The model provider did not respond in time"

    if "context_length" in error_str or "maximum context" in error_str:
        return "The request exceeded the model's context length"

    if "invalid_api_key" in error_str or "authentication" in error_str or "401" in error_str:
        return "The API key was rejected by the model provider"

    if "quota" in error_str or "insufficient" in error_str:
        return "The model provider quota is exhausted"

    return f"Model provider request failed: {error}"
