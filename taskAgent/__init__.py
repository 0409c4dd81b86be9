"""Agent task execution core: streaming tool calls, governed tool execution,
context window management and delegating task orchestration."""

__version__ = "0.1.0"
