"""Tool metadata management and registration."""

from __future__ import annotations

import types
from dataclasses import dataclass, field
from typing import Annotated, Any, Dict, Iterable, List, Optional, Union, get_args, get_origin

from langchain_core.tools import BaseTool
from langchain_core.utils.function_calling import convert_to_openai_tool

TOOL_GROUPS = ("read", "edit", "command", "workflow", "control")


def _is_text(annotation: Any) -> bool:
    if get_origin(annotation) is Annotated:
        annotation = get_args(annotation)[0]
    if annotation is str:
        return True
    if get_origin(annotation) in (Union, types.UnionType):
        members = [a for a in get_args(annotation) if a is not type(None)]
        return members == [str]
    return False


@dataclass(frozen=True, slots=True)
class ToolMeta:
    """Describes governance attributes for a tool.

    - group: permission group modes grant (read/edit/command/workflow/control)
    - risk: default risk level reported with approval requests
    - path_argument: argument holding the target path for edit-group tools
    - always_available: granted to every mode regardless of its groups
    - control: validated by the pipeline but carried out by the orchestrator
    - rejection_is_error: a declined approval is reported as an error result
    """

    name: str
    group: str
    risk: str = "low"
    tags: List[str] = field(default_factory=list)
    path_argument: Optional[str] = None
    always_available: bool = False
    control: bool = False
    rejection_is_error: bool = False

    def __post_init__(self) -> None:
        if self.group not in TOOL_GROUPS:
            raise ValueError(f"Unknown tool group '{self.group}' for tool {self.name}")


class ToolRegistry:
    """Tracks tool instances and governance metadata.

    Constructed once per runtime and passed to every task that needs it.
    """

    def __init__(self, tools: Optional[Iterable[BaseTool]] = None, meta: Optional[Iterable[ToolMeta]] = None) -> None:
        self._tools: Dict[str, BaseTool] = {}
        self._meta: Dict[str, ToolMeta] = {}
        if tools:
            for tool in tools:
                self.register_tool(tool)
        if meta:
            for item in meta:
                self.register_meta(item)

    def register(self, tool: BaseTool, meta: ToolMeta) -> None:
        if tool.name != meta.name:
            raise ValueError(f"Tool name {tool.name} does not match metadata name {meta.name}")
        self.register_tool(tool)
        self.register_meta(meta)

    def register_tool(self, tool: BaseTool) -> None:
        self._tools[tool.name] = tool

    def register_meta(self, metadata: ToolMeta) -> None:
        self._meta[metadata.name] = metadata

    def has(self, name: str) -> bool:
        return name in self._tools

    def get_tool(self, name: str) -> BaseTool:
        if name not in self._tools:
            raise KeyError(f"Unknown tool: {name}")
        return self._tools[name]

    def get_meta_optional(self, name: str) -> ToolMeta | None:
        return self._meta.get(name)

    def list_tools(self) -> List[BaseTool]:
        return list(self._tools.values())

    def tool_names(self) -> List[str]:
        return list(self._tools)

    def tools_in_group(self, group: str) -> List[str]:
        return [m.name for m in self._meta.values() if m.group == group and m.name in self._tools]

    def always_available(self) -> List[str]:
        return [m.name for m in self._meta.values() if m.always_available and m.name in self._tools]

    def allowed_tools(self, allowlist: Optional[Iterable[str]]) -> List[BaseTool]:
        if not allowlist:
            return []
        allowed = set(allowlist)
        # Registration order keeps the schema stable between requests
        return [tool for name, tool in self._tools.items() if name in allowed]

    def tool_schemas(self, allowlist: Optional[Iterable[str]]) -> List[Dict[str, Any]]:
        """OpenAI-style function schemas for the allowed tools.

        Injected arguments (the task context) are not part of the schema.
        """
        return [convert_to_openai_tool(tool) for tool in self.allowed_tools(allowlist)]

    def text_arguments(self, name: str) -> List[str]:
        """Arguments of ``name`` declared as plain strings (optional or not)."""
        tool = self._tools.get(name)
        schema = tool.args_schema if tool is not None else None
        fields = getattr(schema, "model_fields", {}) if schema is not None else {}
        return [field_name for field_name, info in fields.items() if _is_text(info.annotation)]
