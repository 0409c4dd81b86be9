"""Utilities for taskAgent."""

from .logging_utils import (
    log_error,
    log_prompt,
    log_state_transition,
    log_tool_call,
    log_tool_result,
    setup_logging,
)
from .error_handler import (
    TaskAgentError,
    handle_backend_error,
    with_error_boundary,
)

__all__ = [
    "TaskAgentError",
    "handle_backend_error",
    "log_error",
    "log_prompt",
    "log_state_transition",
    "log_tool_call",
    "log_tool_result",
    "setup_logging",
    "with_error_boundary",
]
