"""Incremental tool-call decoder.

Turns streamed tool-call fragments into started/delta/finalized events.
Arguments are parsed leniently while streaming (for live display) and
strictly once a call ends. The decoder never raises: a call whose
arguments cannot be parsed finalizes with a ProtocolParseError value.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Union

from langchain_core.utils.json import parse_partial_json

from taskAgent.history.messages import ToolInvocation
from taskAgent.protocol.chunks import ToolCallFragment
from taskAgent.utils.error_handler import ProtocolParseError

LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class ToolCallStarted:
    id: str
    name: str


@dataclass(frozen=True)
class ToolCallDelta:
    id: str
    fragment: str
    partial: Optional[ToolInvocation] = None


@dataclass(frozen=True)
class ToolCallFinalized:
    """A finished call: exactly one of ``invocation`` and ``error`` is set."""

    id: str
    invocation: Optional[ToolInvocation] = None
    error: Optional[ProtocolParseError] = None

    @property
    def ok(self) -> bool:
        return self.invocation is not None


DecoderEvent = Union[ToolCallStarted, ToolCallDelta, ToolCallFinalized]


@dataclass
class _StreamingCall:
    id: str
    index: Optional[int]
    name: str = ""
    buffer: List[str] = field(default_factory=list)
    started: bool = False

    @property
    def raw(self) -> str:
        return "".join(self.buffer)


class StreamDecoder:
    """Per-request decoder state, keyed by tool call id.

    One decoder serves one backend request. It is drained with ``finish``
    when the stream ends, or emptied with ``reset`` when the request is
    aborted.
    """

    def __init__(self) -> None:
        self._calls: Dict[str, _StreamingCall] = {}
        self._index_to_id: Dict[int, str] = {}
        self._finalized: set = set()

    @property
    def open_call_ids(self) -> List[str]:
        return list(self._calls)

    def partial_invocations(self) -> List[ToolInvocation]:
        """Best-effort view of every open call, for display.

        Calls whose buffered arguments cannot be read yet are left out.
        """
        partials = []
        for call in self._calls.values():
            if not call.name:
                continue
            try:
                arguments = self._lenient_parse(call.raw)
            except Exception as e:
                LOGGER.debug(f"No partial view for tool call {call.id}: {e}")
                continue
            partials.append(ToolInvocation(id=call.id, name=call.name, arguments=arguments))
        return partials

    def feed(self, fragment: ToolCallFragment) -> List[DecoderEvent]:
        """Consume one fragment and return the events it produced."""
        try:
            return self._feed(fragment)
        except Exception as e:
            LOGGER.exception(f"Decoder failed on fragment {fragment!r}", exc_info=e)
            return []

    def _feed(self, fragment: ToolCallFragment) -> List[DecoderEvent]:
        call_id = self._resolve_id(fragment.id, fragment.index)
        if call_id is None:
            LOGGER.warning(f"Dropping tool call fragment without id or index: {fragment!r}")
            return []
        if call_id in self._finalized:
            LOGGER.warning(f"Ignoring fragment for already finalized tool call {call_id}")
            return []

        events: List[DecoderEvent] = []
        call = self._calls.get(call_id)
        if call is None:
            call = _StreamingCall(id=call_id, index=fragment.index)
            self._calls[call_id] = call
        if fragment.name and not call.name:
            call.name = fragment.name
        if call.name and not call.started:
            call.started = True
            events.append(ToolCallStarted(id=call_id, name=call.name))

        if fragment.arguments:
            call.buffer.append(fragment.arguments)
            partial = None
            if call.name:
                partial = ToolInvocation(id=call_id, name=call.name, arguments=self._lenient_parse(call.raw))
            events.append(ToolCallDelta(id=call_id, fragment=fragment.arguments, partial=partial))
        return events

    def end(self, call_id: Optional[str] = None, index: Optional[int] = None) -> Optional[ToolCallFinalized]:
        """Finalize one call. Returns None if no such call is streaming."""
        try:
            resolved = call_id
            if resolved not in self._calls and index is not None:
                resolved = self._index_to_id.get(index)
            if resolved is None or resolved not in self._calls:
                LOGGER.warning(f"End signal for unknown tool call (id={call_id}, index={index})")
                return None
            return self._finalize(self._calls.pop(resolved))
        except Exception as e:
            LOGGER.exception(f"Decoder failed to finalize tool call {call_id}", exc_info=e)
            failed_id = call_id or f"call_{index}"
            return ToolCallFinalized(
                id=failed_id,
                error=ProtocolParseError(failed_id, "", "", f"internal decoder error: {e}"),
            )

    def finish(self) -> List[ToolCallFinalized]:
        """Finalize every call still open when the stream ends, in start order."""
        finalized = []
        for call_id in list(self._calls):
            result = self.end(call_id)
            if result is not None:
                finalized.append(result)
        return finalized

    def reset(self) -> int:
        """Discard all in-flight state. Returns how many open calls were dropped."""
        dropped = len(self._calls)
        if dropped:
            LOGGER.info(f"Discarding {dropped} in-flight tool call(s)")
        self._calls.clear()
        self._index_to_id.clear()
        self._finalized.clear()
        return dropped

    def _resolve_id(self, call_id: Optional[str], index: Optional[int]) -> Optional[str]:
        if call_id:
            if index is not None:
                self._index_to_id[index] = call_id
            return call_id
        if index is None:
            return None
        if index not in self._index_to_id:
            self._index_to_id[index] = f"call_{index}"
        return self._index_to_id[index]

    def _finalize(self, call: _StreamingCall) -> ToolCallFinalized:
        self._finalized.add(call.id)
        raw = call.raw
        if not call.name:
            return ToolCallFinalized(id=call.id, error=ProtocolParseError(call.id, "", raw, "missing tool name"))

        text = raw.strip()
        if not text:
            arguments = {}
        else:
            try:
                arguments = json.loads(text)
            except (ValueError, RecursionError) as e:
                LOGGER.info(f"Tool call {call.id} ({call.name}) has malformed arguments: {e}")
                return ToolCallFinalized(id=call.id, error=ProtocolParseError(call.id, call.name, raw, str(e)))
            if not isinstance(arguments, dict):
                return ToolCallFinalized(
                    id=call.id,
                    error=ProtocolParseError(
                        call.id, call.name, raw, f"expected a JSON object, got {type(arguments).__name__}"
                    ),
                )

        invocation = ToolInvocation(id=call.id, name=call.name).finalize(arguments)
        return ToolCallFinalized(id=call.id, invocation=invocation)

    @staticmethod
    def _lenient_parse(raw: str) -> Dict:
        # Incomplete JSON here only means "not enough data yet"
        if not raw.strip():
            return {}
        try:
            parsed = parse_partial_json(raw)
        except (ValueError, RecursionError):
            return {}
        return parsed if isinstance(parsed, dict) else {}


__all__ = [
    "DecoderEvent",
    "StreamDecoder",
    "ToolCallDelta",
    "ToolCallFinalized",
    "ToolCallStarted",
]
