"""Stream chunk types produced by backends."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional, Union


class ToolProtocol(str, Enum):
    """How tool calls travel in the model stream."""

    NATIVE = "native"  # provider tool-call fragments
    XML = "xml"        # tool tags embedded in assistant text


@dataclass(frozen=True)
class TextChunk:
    text: str


@dataclass(frozen=True)
class ToolCallFragment:
    """Start and/or argument data for one streaming tool call.

    A fragment carrying ``id`` or ``name`` starts the call, one carrying
    ``arguments`` extends it. Providers that only send the id on the first
    fragment identify the rest by ``index``.
    """

    index: Optional[int] = None
    id: Optional[str] = None
    name: Optional[str] = None
    arguments: Optional[str] = None


@dataclass(frozen=True)
class ToolCallEnd:
    id: Optional[str] = None
    index: Optional[int] = None


@dataclass(frozen=True)
class UsageChunk:
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class FinishChunk:
    reason: str


StreamChunk = Union[TextChunk, ToolCallFragment, ToolCallEnd, UsageChunk, FinishChunk]


__all__ = [
    "FinishChunk",
    "StreamChunk",
    "TextChunk",
    "ToolCallEnd",
    "ToolCallFragment",
    "ToolProtocol",
    "UsageChunk",
]
