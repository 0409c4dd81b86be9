"""Stream protocol: chunk types, incremental decoder, XML tool tag parser."""

from taskAgent.protocol.chunks import (
    FinishChunk,
    StreamChunk,
    TextChunk,
    ToolCallEnd,
    ToolCallFragment,
    ToolProtocol,
    UsageChunk,
)
from taskAgent.protocol.decoder import (
    StreamDecoder,
    ToolCallDelta,
    ToolCallFinalized,
    ToolCallStarted,
)
from taskAgent.protocol.xml_parser import XmlToolCallParser

__all__ = [
    "FinishChunk",
    "StreamChunk",
    "StreamDecoder",
    "TextChunk",
    "ToolCallDelta",
    "ToolCallEnd",
    "ToolCallFinalized",
    "ToolCallFragment",
    "ToolCallStarted",
    "ToolProtocol",
    "UsageChunk",
    "XmlToolCallParser",
]
