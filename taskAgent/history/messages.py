"""Message, content block and tool call records shared by both histories."""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

Role = Literal["user", "assistant"]


@dataclass(frozen=True)
class TextBlock:
    text: str
    type: Literal["text"] = "text"


@dataclass(frozen=True)
class ToolUseBlock:
    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    type: Literal["tool_use"] = "tool_use"


@dataclass(frozen=True)
class ToolResultBlock:
    tool_use_id: str
    content: str
    is_error: bool = False
    type: Literal["tool_result"] = "tool_result"


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock]


@dataclass
class ToolInvocation:
    """A tool call decoded from the model stream.

    ``is_partial`` is True while arguments are still streaming and flips to
    False exactly once, through ``finalize``.
    """

    id: str
    name: str
    arguments: Dict[str, Any] = field(default_factory=dict)
    is_partial: bool = True

    def finalize(self, arguments: Dict[str, Any]) -> "ToolInvocation":
        if not self.is_partial:
            raise ValueError(f"Tool invocation {self.id} is already finalized")
        return replace(self, arguments=arguments, is_partial=False)

    def to_block(self) -> ToolUseBlock:
        return ToolUseBlock(id=self.id, name=self.name, arguments=dict(self.arguments))


@dataclass(frozen=True)
class ToolResult:
    invocation_id: str
    content: str
    is_error: bool = False

    def to_block(self) -> ToolResultBlock:
        return ToolResultBlock(tool_use_id=self.invocation_id, content=self.content, is_error=self.is_error)


@dataclass
class ContextMessage:
    """Minimal, backend-ready message.

    ``display_index`` points at the display message this one was committed
    with. A summary message stands in for the display range
    ``summarized_range`` (inclusive) and carries the index of its last
    covered message.
    """

    role: Role
    content: List[ContentBlock]
    display_index: int = -1
    is_summary: bool = False
    summarized_range: Optional[Tuple[int, int]] = None

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))

    @property
    def tool_use_ids(self) -> List[str]:
        return [b.id for b in self.content if isinstance(b, ToolUseBlock)]

    @property
    def tool_result_ids(self) -> List[str]:
        return [b.tool_use_id for b in self.content if isinstance(b, ToolResultBlock)]

    @property
    def has_error(self) -> bool:
        return any(isinstance(b, ToolResultBlock) and b.is_error for b in self.content)


@dataclass
class DisplayMessage:
    """Rich message shown to the user.

    ``approvals`` maps invocation ids to the approval outcome, ``notices``
    carries validation and execution failures surfaced for this message.
    """

    role: Role
    content: List[ContentBlock]
    ts: float = field(default_factory=time.time)
    turn: int = 0
    partial: bool = False
    approvals: Dict[str, str] = field(default_factory=dict)
    notices: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def text(self) -> str:
        return "\n".join(b.text for b in self.content if isinstance(b, TextBlock))


def block_to_dict(block: ContentBlock) -> Dict[str, Any]:
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "arguments": block.arguments}
    return {
        "type": "tool_result",
        "tool_use_id": block.tool_use_id,
        "content": block.content,
        "is_error": block.is_error,
    }


def block_from_dict(data: Dict[str, Any]) -> ContentBlock:
    kind = data.get("type")
    if kind == "text":
        return TextBlock(text=data["text"])
    if kind == "tool_use":
        return ToolUseBlock(id=data["id"], name=data["name"], arguments=data.get("arguments") or {})
    if kind == "tool_result":
        return ToolResultBlock(
            tool_use_id=data["tool_use_id"],
            content=data.get("content", ""),
            is_error=bool(data.get("is_error", False)),
        )
    raise ValueError(f"Unknown content block type: {kind}")


def context_message_to_dict(message: ContextMessage) -> Dict[str, Any]:
    return {
        "role": message.role,
        "content": [block_to_dict(b) for b in message.content],
        "display_index": message.display_index,
        "is_summary": message.is_summary,
        "summarized_range": list(message.summarized_range) if message.summarized_range else None,
    }


def context_message_from_dict(data: Dict[str, Any]) -> ContextMessage:
    summarized = data.get("summarized_range")
    return ContextMessage(
        role=data["role"],
        content=[block_from_dict(b) for b in data.get("content", [])],
        display_index=data.get("display_index", -1),
        is_summary=bool(data.get("is_summary", False)),
        summarized_range=tuple(summarized) if summarized else None,
    )


def display_message_to_dict(message: DisplayMessage) -> Dict[str, Any]:
    return {
        "role": message.role,
        "content": [block_to_dict(b) for b in message.content],
        "ts": message.ts,
        "turn": message.turn,
        "partial": message.partial,
        "approvals": dict(message.approvals),
        "notices": list(message.notices),
        "metadata": message.metadata,
    }


def display_message_from_dict(data: Dict[str, Any]) -> DisplayMessage:
    return DisplayMessage(
        role=data["role"],
        content=[block_from_dict(b) for b in data.get("content", [])],
        ts=data.get("ts", 0.0),
        turn=data.get("turn", 0),
        partial=bool(data.get("partial", False)),
        approvals=dict(data.get("approvals") or {}),
        notices=list(data.get("notices") or []),
        metadata=dict(data.get("metadata") or {}),
    )


def block_char_count(block: ContentBlock) -> int:
    """Characters a block contributes to the request payload."""
    if isinstance(block, TextBlock):
        return len(block.text)
    if isinstance(block, ToolUseBlock):
        return len(block.name) + len(json.dumps(block.arguments, ensure_ascii=False, default=str))
    return len(block.content)


__all__ = [
    "ContentBlock",
    "ContextMessage",
    "DisplayMessage",
    "Role",
    "TextBlock",
    "ToolInvocation",
    "ToolResult",
    "ToolResultBlock",
    "ToolUseBlock",
    "block_char_count",
    "context_message_from_dict",
    "context_message_to_dict",
    "display_message_from_dict",
    "display_message_to_dict",
]
