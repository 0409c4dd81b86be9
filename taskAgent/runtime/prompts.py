"""System prompt assembly for task requests."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List

from langchain_core.utils.function_calling import convert_to_openai_tool

from taskAgent.config.modes import Mode
from taskAgent.protocol.chunks import ToolProtocol
from taskAgent.tools.builtin import COMPLETION_TOOL, DELEGATION_TOOL
from taskAgent.tools.registry import ToolRegistry
from taskAgent.utils.prompt_builder import PromptBuilder


def get_current_datetime_tag() -> str:
    """Get current date and time in XML tag format.

    Returns:
        String like "<current_datetime>2025-01-24 15:30:45 UTC</current_datetime>"
    """
    now = datetime.now(timezone.utc)
    datetime_str = now.strftime("%Y-%m-%d %H:%M:%S UTC")
    return f"<current_datetime>{datetime_str}</current_datetime>"


def describe_tools(registry: ToolRegistry, allowed: Iterable[str]) -> List[Dict[str, Any]]:
    """Name, description and parameters of each allowed tool, for text-protocol prompts."""
    described = []
    for tool in registry.allowed_tools(allowed):
        function = convert_to_openai_tool(tool)["function"]
        parameters = function.get("parameters") or {}
        described.append({
            "name": function["name"],
            "description": function.get("description", ""),
            "parameters": parameters.get("properties", {}),
            "required": parameters.get("required", []),
        })
    return described


def build_system_prompt(
    task,
    mode: Mode,
    registry: ToolRegistry,
    *,
    can_delegate: bool = True,
) -> str:
    """Render the system prompt for one request of ``task``."""
    is_xml = task.protocol == ToolProtocol.XML
    return PromptBuilder.load_system_prompt(
        role_definition=mode.role_definition,
        mode_name=mode.name,
        mode_slug=mode.slug,
        custom_instructions=mode.custom_instructions,
        path_restrictions=list(mode.path_restrictions),
        protocol=task.protocol.value,
        tools=describe_tools(registry, mode.allowed_tools) if is_xml else [],
        todos=[t.to_dict() for t in task.todos],
        is_child_task=task.is_child,
        can_delegate=can_delegate and mode.allows(DELEGATION_TOOL),
        completion_tool=COMPLETION_TOOL,
        delegation_tool=DELEGATION_TOOL,
        datetime_tag=get_current_datetime_tag(),
    )


__all__ = ["build_system_prompt", "describe_tools", "get_current_datetime_tag"]
