"""Display and context histories."""

from taskAgent.history.manager import AssistantTurn, HistoryManager, find_pairing_problem
from taskAgent.history.messages import (
    ContextMessage,
    DisplayMessage,
    TextBlock,
    ToolInvocation,
    ToolResult,
    ToolResultBlock,
    ToolUseBlock,
)

__all__ = [
    "AssistantTurn",
    "ContextMessage",
    "DisplayMessage",
    "HistoryManager",
    "TextBlock",
    "ToolInvocation",
    "ToolResult",
    "ToolResultBlock",
    "ToolUseBlock",
    "find_pairing_problem",
]
