"""Logging utilities for taskAgent."""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

ROOT_LOGGER_NAME = "taskAgent"


def setup_logging(level: int = logging.INFO, log_dir: str = "logs", console_level: int = logging.WARNING) -> logging.Logger:
    """Setup logging configuration for taskAgent.

    Args:
        level: File logging level (default: INFO)
        log_dir: Directory for per-run log files
        console_level: Console logging level (default: WARNING)

    Returns:
        Configured logger instance
    """
    logs_dir = Path(log_dir)
    logs_dir.mkdir(parents=True, exist_ok=True)
    log_file = logs_dir / f"taskagent_{datetime.now().strftime('%Y%m%d_%H%M%S')}.log"

    logger = logging.getLogger(ROOT_LOGGER_NAME)
    logger.setLevel(logging.DEBUG)  # Children decide; handlers filter
    logger.propagate = False

    logger.handlers = []

    # File handler (detailed logs)
    file_handler = logging.FileHandler(log_file, encoding="utf-8")
    file_handler.setLevel(level)
    file_handler.setFormatter(logging.Formatter(
        "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    ))

    # Console handler (user-friendly)
    console_handler = logging.StreamHandler()
    console_handler.setLevel(console_level)
    console_handler.setFormatter(logging.Formatter("%(levelname)s: %(message)s"))

    logger.addHandler(file_handler)
    logger.addHandler(console_handler)

    logger.info("=" * 80)
    logger.info("taskAgent session started")
    logger.info(f"Log file: {log_file}")
    logger.info("=" * 80)

    return logger


def _preview(value: Any, limit: int = 500) -> str:
    text = str(value)
    if len(text) > limit:
        return text[:limit] + "... (truncated)"
    return text


def log_state_transition(logger: logging.Logger, task_id: str, from_state: str, to_state: str, reason: str = "") -> None:
    """Log a task lifecycle transition.

    Args:
        logger: Logger instance
        task_id: Task identifier
        from_state: Previous state value
        to_state: New state value
        reason: Why the transition happened
    """
    suffix = f" ({reason})" if reason else ""
    logger.info(f"Task {task_id}: {from_state} → {to_state}{suffix}")


def log_tool_call(logger: logging.Logger, tool_name: str, args: Dict[str, Any], invocation_id: str = "") -> None:
    """Log tool invocation.

    Args:
        logger: Logger instance
        tool_name: Name of the tool being called
        args: Tool arguments
        invocation_id: Tool call id from the model
    """
    logger.info(f"Tool call: {tool_name} [{invocation_id}]")
    logger.debug(f"  Arguments: {json.dumps(args, ensure_ascii=False, indent=2, default=str)}")


def log_tool_result(logger: logging.Logger, tool_name: str, result: Any, success: bool = True) -> None:
    """Log tool execution result.

    Args:
        logger: Logger instance
        tool_name: Name of the tool
        result: Tool execution result
        success: Whether the tool executed successfully
    """
    status = "✓ Success" if success else "✗ Failed"
    logger.info(f"Tool result: {tool_name} - {status}")
    logger.debug(f"  Result: {_preview(result)}")


def log_prompt(logger: logging.Logger, task_id: str, prompt: str, max_length: Optional[int] = None) -> None:
    """Log the system prompt sent with a request.

    Args:
        logger: Logger instance
        task_id: Task identifier
        prompt: System prompt content
        max_length: Truncate the logged prompt to this many characters
    """
    logger.debug(f"System prompt for task {task_id}:")
    logger.debug(_preview(prompt, max_length) if max_length else prompt)


def log_error(logger: logging.Logger, error: Exception, context: str = "") -> None:
    """Log error with context.

    Args:
        logger: Logger instance
        error: Exception instance
        context: Additional context about where the error occurred
    """
    logger.error(f"Error occurred: {type(error).__name__}: {str(error)}")
    if context:
        logger.error(f"  Context: {context}")
    logger.debug("Full traceback:", exc_info=error)
