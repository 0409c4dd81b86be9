"""Text-embedded tool call parser for tasks locked to the XML protocol.

Tool calls arrive inside assistant text as::

    <read_file>
    <path>src/main.py</path>
    </read_file>

The parser splits the text stream into display text and the same
ToolCallFragment/ToolCallEnd chunks native backends produce, so the
decoder and everything after it do not depend on the protocol.
"""

from __future__ import annotations

import json
import re
import uuid
from dataclasses import dataclass, replace
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from taskAgent.history.messages import ContentBlock, ContextMessage, TextBlock, ToolResultBlock, ToolUseBlock
from taskAgent.protocol.chunks import ToolCallEnd, ToolCallFragment

_PARAM_RE = re.compile(r"<([A-Za-z_][\w\-]*)>(.*?)</\1>", re.DOTALL)

XmlChunk = Union[ToolCallFragment, ToolCallEnd]


@dataclass
class _OpenCall:
    id: str
    name: str
    index: int


def coerce_value(value: str) -> Any:
    """Turn a parameter body into a JSON value where it clearly is one."""
    stripped = value.strip()
    if stripped[:1] in ("[", "{"):
        try:
            return json.loads(stripped)
        except (ValueError, RecursionError):
            return value
    if stripped in ("true", "false"):
        return stripped == "true"
    if re.fullmatch(r"-?\d+", stripped):
        return int(stripped)
    return value


def parse_parameters(body: str, text_fields: Iterable[str] = ()) -> Dict[str, Any]:
    """Parameters of one call body. Names in ``text_fields`` keep their raw text."""
    text_fields = set(text_fields)
    params: Dict[str, Any] = {}
    for match in _PARAM_RE.finditer(body):
        value = match.group(2)
        # One newline after the opening tag and before the closing tag is layout
        if value.startswith("\n"):
            value = value[1:]
        if value.endswith("\n"):
            value = value[:-1]
        name = match.group(1)
        params[name] = value if name in text_fields else coerce_value(value)
    return params


class XmlToolCallParser:
    """Incremental splitter of text and XML tool calls.

    ``text_fields`` maps a tool name to the arguments it declares as strings;
    those are passed through verbatim instead of being read as JSON values.
    """

    def __init__(self, tool_names: Iterable[str], text_fields: Optional[Dict[str, Iterable[str]]] = None) -> None:
        self._text_fields = {name: frozenset(fields) for name, fields in (text_fields or {}).items()}
        self._names = sorted(set(tool_names), key=len, reverse=True)
        pattern = "|".join(re.escape(n) for n in self._names) or r"(?!x)x"
        self._open_re = re.compile(rf"<({pattern})>")
        self._buffer = ""
        self._current: Optional[_OpenCall] = None
        self._count = 0

    def feed(self, text: str) -> Tuple[str, List[XmlChunk]]:
        """Consume streamed text.

        Returns:
            (text safe to display, tool call chunks completed by this text)
        """
        self._buffer += text
        shown: List[str] = []
        chunks: List[XmlChunk] = []

        while True:
            if self._current is None:
                match = self._open_re.search(self._buffer)
                if match is None:
                    cut = self._safe_cut(self._buffer)
                    shown.append(self._buffer[:cut])
                    self._buffer = self._buffer[cut:]
                    break
                shown.append(self._buffer[:match.start()])
                self._buffer = self._buffer[match.end():]
                self._current = _OpenCall(id=f"xml_{uuid.uuid4().hex[:12]}", name=match.group(1), index=self._count)
                self._count += 1
                chunks.append(ToolCallFragment(index=self._current.index, id=self._current.id, name=self._current.name))
                continue

            closing = f"</{self._current.name}>"
            position = self._buffer.find(closing)
            if position < 0:
                break
            body = self._buffer[:position]
            self._buffer = self._buffer[position + len(closing):]
            chunks.append(
                ToolCallFragment(
                    index=self._current.index,
                    id=self._current.id,
                    arguments=json.dumps(
                        parse_parameters(body, self._text_fields.get(self._current.name, ())),
                        ensure_ascii=False,
                    ),
                )
            )
            chunks.append(ToolCallEnd(id=self._current.id, index=self._current.index))
            self._current = None

        return "".join(shown), chunks

    def flush(self) -> Tuple[str, List[XmlChunk]]:
        """End of stream: release held-back text and close any unterminated call.

        An unterminated call is forwarded as an unterminated JSON object so the
        decoder reports it as a parse failure.
        """
        chunks: List[XmlChunk] = []
        text = ""
        if self._current is not None:
            truncated = "{" + json.dumps(self._buffer, ensure_ascii=False)
            chunks.append(ToolCallFragment(index=self._current.index, id=self._current.id, arguments=truncated))
            chunks.append(ToolCallEnd(id=self._current.id, index=self._current.index))
            self._current = None
        else:
            text = self._buffer
        self._buffer = ""
        return text, chunks

    def _safe_cut(self, buffer: str) -> int:
        # Hold back a trailing "<rea" that may still become "<read_file>"
        start = buffer.rfind("<")
        if start < 0:
            return len(buffer)
        tail = buffer[start:]
        if any(f"<{name}>".startswith(tail) for name in self._names):
            return start
        return len(buffer)


def render_tool_call(name: str, arguments: Dict[str, Any]) -> str:
    """Inverse of parsing: the tag form of one call, as the model wrote it."""
    lines = [f"<{name}>"]
    for key, value in arguments.items():
        body = value if isinstance(value, str) else json.dumps(value, ensure_ascii=False)
        lines.append(f"<{key}>{body}</{key}>")
    lines.append(f"</{name}>")
    return "\n".join(lines)


def as_text_protocol(messages: Sequence[ContextMessage]) -> List[ContextMessage]:
    """Rewrite tool blocks as plain text for backends driven by XML tags.

    Tool calls become their tag form inside the assistant text; results
    become labelled text in the user message that answers them.
    """
    names: Dict[str, str] = {}
    rewritten: List[ContextMessage] = []
    for message in messages:
        blocks: List[ContentBlock] = []
        for block in message.content:
            if isinstance(block, ToolUseBlock):
                names[block.id] = block.name
                blocks.append(TextBlock(text=render_tool_call(block.name, block.arguments)))
            elif isinstance(block, ToolResultBlock):
                label = names.get(block.tool_use_id, "tool")
                status = "error" if block.is_error else "result"
                blocks.append(TextBlock(text=f"[{label} {status}]\n{block.content}"))
            else:
                blocks.append(block)
        rewritten.append(replace(message, content=blocks))
    return rewritten


__all__ = ["XmlToolCallParser", "as_text_protocol", "coerce_value", "parse_parameters", "render_tool_call"]
