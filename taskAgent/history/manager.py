"""Conversation history manager.

Owns the display history (everything the user sees) and the context history
(what the model is sent) and mutates them together. Every context message
records the index of the display message it was committed with, which is
what keeps the two sequences aligned across truncation and rewinds.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from taskAgent.history.messages import (
    ContentBlock,
    ContextMessage,
    DisplayMessage,
    TextBlock,
    ToolInvocation,
    ToolResult,
    context_message_from_dict,
    context_message_to_dict,
    display_message_from_dict,
    display_message_to_dict,
)
from taskAgent.utils.error_handler import HistoryInconsistencyError, RewindError

LOGGER = logging.getLogger(__name__)


@dataclass
class AssistantTurn:
    """A completed assistant response, ready to be committed."""

    text: str
    invocations: List[ToolInvocation] = field(default_factory=list)
    finish_reason: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.text.strip() and not self.invocations


def find_pairing_problem(messages: Sequence[ContextMessage]) -> Optional[str]:
    """Check that every tool use is answered by the next message and vice versa.

    Returns:
        Description of the first violation, or None when the sequence is valid
    """
    for i, message in enumerate(messages):
        uses = message.tool_use_ids
        if message.role == "assistant" and uses:
            following = messages[i + 1] if i + 1 < len(messages) else None
            if following is None or following.role != "user":
                return f"tool calls {uses} at position {i} have no following result message"
            missing = [u for u in uses if u not in following.tool_result_ids]
            if missing:
                return f"tool calls {missing} at position {i} have no matching result"

        results = message.tool_result_ids
        if results:
            previous = messages[i - 1] if i > 0 else None
            previous_uses = previous.tool_use_ids if previous is not None and previous.role == "assistant" else []
            orphans = [r for r in results if r not in previous_uses]
            if orphans:
                return f"tool results {orphans} at position {i} have no matching tool call"
    return None


class HistoryManager:
    """Keeps the display and context histories consistent as a unit."""

    def __init__(
        self,
        display: Optional[Iterable[DisplayMessage]] = None,
        context: Optional[Iterable[ContextMessage]] = None,
    ) -> None:
        self._display: List[DisplayMessage] = list(display or [])
        self._context: List[ContextMessage] = list(context or [])
        self._partial: Optional[DisplayMessage] = None
        if self._display or self._context:
            self.check_alignment()

    # ========== Views ==========

    @property
    def display(self) -> List[DisplayMessage]:
        """Committed display messages, plus the streaming message if one is open."""
        messages = list(self._display)
        if self._partial is not None:
            messages.append(self._partial)
        return messages

    @property
    def committed_display(self) -> List[DisplayMessage]:
        return list(self._display)

    @property
    def context(self) -> List[ContextMessage]:
        return list(self._context)

    @property
    def turn_count(self) -> int:
        return sum(1 for m in self._display if m.role == "assistant")

    @property
    def is_streaming(self) -> bool:
        return self._partial is not None

    def is_empty(self) -> bool:
        return not self._display

    # ========== Appends ==========

    def append_user_message(
        self,
        text: str,
        notices: Sequence[str] = (),
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Append standalone user input (task text or guidance) to both histories.

        Returns:
            Display index of the new message
        """
        self._require_not_streaming("append a user message")
        blocks: List[ContentBlock] = [TextBlock(text=text)]
        index = len(self._display)
        self._display.append(
            DisplayMessage(
                role="user",
                content=list(blocks),
                turn=self.turn_count,
                notices=list(notices),
                metadata=dict(metadata or {}),
            )
        )
        self._context.append(ContextMessage(role="user", content=list(blocks), display_index=index))
        self.check_alignment()
        return index

    def inject_user_note(self, text: str, notices: Sequence[str] = ()) -> int:
        """Attach text to the latest user message, or append one if the last message is not user input."""
        self._require_not_streaming("inject a note")
        last_context = self._context[-1] if self._context else None
        last_index = len(self._display) - 1
        if (
            last_context is not None
            and last_context.role == "user"
            and not last_context.is_summary
            and last_context.display_index == last_index
        ):
            block = TextBlock(text=text)
            last_context.content.append(block)
            display = self._display[last_index]
            display.content.append(block)
            display.notices.extend(notices)
            return last_index
        return self.append_user_message(text, notices=notices)

    def begin_partial(self) -> DisplayMessage:
        """Open the streaming display message for the turn in progress."""
        self._require_not_streaming("start a new partial turn")
        self._partial = DisplayMessage(role="assistant", content=[], turn=self.turn_count + 1, partial=True)
        return self._partial

    def update_partial(self, text: str, invocations: Sequence[ToolInvocation] = ()) -> None:
        if self._partial is None:
            raise HistoryInconsistencyError("No partial turn is streaming")
        blocks: List[ContentBlock] = [TextBlock(text=text)] if text else []
        blocks.extend(inv.to_block() for inv in invocations)
        self._partial.content = blocks

    def discard_partial(self) -> None:
        """Drop the streaming display message; committed histories are untouched."""
        if self._partial is not None:
            LOGGER.debug(f"Discarding partial turn {self._partial.turn}")
        self._partial = None

    def commit_turn(
        self,
        turn: AssistantTurn,
        results: Sequence[ToolResult],
        *,
        user_text: Sequence[str] = (),
        notices: Sequence[str] = (),
        approvals: Optional[Dict[str, str]] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> int:
        """Commit an assistant turn and the user message answering it.

        Results are ordered to match the invocations. Every invocation must
        have exactly one result before anything is appended.

        Returns:
            The committed turn number
        """
        if turn.is_empty:
            raise ValueError("Cannot commit an empty assistant turn")

        invocation_ids = [inv.id for inv in turn.invocations]
        by_id: Dict[str, ToolResult] = {}
        for result in results:
            if result.invocation_id in by_id:
                self._fail(f"Duplicate tool result for invocation {result.invocation_id}")
            by_id[result.invocation_id] = result
        missing = [i for i in invocation_ids if i not in by_id]
        extra = [i for i in by_id if i not in invocation_ids]
        if missing or extra or len(set(invocation_ids)) != len(invocation_ids):
            self._fail(
                f"Tool results do not match invocations (missing={missing}, unexpected={extra}, "
                f"invocations={invocation_ids})"
            )

        user_blocks: List[ContentBlock] = [by_id[i].to_block() for i in invocation_ids]
        user_blocks.extend(TextBlock(text=t) for t in user_text if t)
        if not user_blocks:
            raise ValueError("A committed turn needs tool results or user text to answer it")

        assistant_blocks: List[ContentBlock] = [TextBlock(text=turn.text)] if turn.text else []
        assistant_blocks.extend(inv.to_block() for inv in turn.invocations)

        turn_number = self.turn_count + 1
        assistant_index = len(self._display)

        display_metadata = dict(turn.metadata)
        if turn.finish_reason:
            display_metadata["finish_reason"] = turn.finish_reason

        self._display.append(
            DisplayMessage(
                role="assistant",
                content=list(assistant_blocks),
                turn=turn_number,
                approvals=dict(approvals or {}),
                metadata=display_metadata,
            )
        )
        self._display.append(
            DisplayMessage(
                role="user",
                content=list(user_blocks),
                turn=turn_number,
                notices=list(notices),
                metadata=dict(metadata or {}),
            )
        )
        self._context.append(ContextMessage(role="assistant", content=assistant_blocks, display_index=assistant_index))
        self._context.append(ContextMessage(role="user", content=user_blocks, display_index=assistant_index + 1))
        self._partial = None

        self.check_alignment()
        return turn_number

    # ========== Truncation and rewind ==========

    def replace_context(self, messages: Sequence[ContextMessage]) -> None:
        """Swap in a reduced context history. The display history is not touched."""
        self._require_not_streaming("replace the context history")
        candidate = list(messages)
        problem = self._find_structure_problem(candidate)
        if problem is None and candidate and self._context and candidate[0].display_index != self._context[0].display_index:
            problem = "the first message was dropped"
        if problem:
            self._fail(f"Rejected reduced context: {problem}")
        self._context = candidate

    def rewind(self, to_index: int) -> int:
        """Truncate both histories so that ``to_index`` display messages remain.

        Transactional: on any violation a RewindError is raised and neither
        history changes.

        Returns:
            Number of display messages removed
        """
        if self._partial is not None:
            raise RewindError("Cannot rewind while a turn is streaming")
        if not 1 <= to_index <= len(self._display):
            raise RewindError(f"Rewind target {to_index} is outside 1..{len(self._display)}")
        if to_index == len(self._display):
            return 0

        kept_display = self._display[:to_index]
        if kept_display[-1].role != "user":
            raise RewindError(
                f"Rewind target {to_index} would end on an assistant message and leave its tool calls unanswered"
            )

        kept_context: List[ContextMessage] = []
        for message in self._context:
            if message.display_index < to_index:
                kept_context.append(message)
            elif message.is_summary and message.summarized_range and message.summarized_range[0] < to_index:
                raise RewindError(
                    f"Rewind target {to_index} falls inside summarized messages {message.summarized_range}"
                )

        if not kept_context or kept_context[-1].display_index != to_index - 1:
            raise RewindError(f"Message {to_index - 1} is no longer part of the model context")

        problem = find_pairing_problem(kept_context)
        if problem:
            raise RewindError(f"Rewind target {to_index} would break tool call pairing: {problem}")

        removed = len(self._display) - to_index
        self._display = kept_display
        self._context = kept_context
        LOGGER.info(f"Rewound history to {to_index} messages ({removed} removed)")
        return removed

    def rewind_to_turn(self, turn: int) -> int:
        """Rewind to the end of ``turn``; turn 0 is the initial task message."""
        to_index = sum(1 for m in self._display if m.turn <= turn)
        return self.rewind(to_index)

    # ========== Invariants ==========

    def check_alignment(self) -> None:
        """Verify the histories correspond at a commit boundary.

        Raises:
            HistoryInconsistencyError: Logged at CRITICAL; never patched silently
        """
        if not self._display and not self._context:
            return
        if not self._display or not self._context:
            self._fail(f"One history is empty (display={len(self._display)}, context={len(self._context)})")
        problem = self._find_structure_problem(self._context)
        if problem:
            self._fail(problem)
        last = self._context[-1]
        if last.display_index != len(self._display) - 1:
            self._fail(
                f"Context ends at display message {last.display_index} but display has {len(self._display)} messages"
            )

    def _find_structure_problem(self, messages: Sequence[ContextMessage]) -> Optional[str]:
        if not messages:
            return "context history is empty"
        previous = -1
        for position, message in enumerate(messages):
            index = message.display_index
            if not 0 <= index < len(self._display):
                return f"context message {position} points at missing display message {index}"
            if index <= previous:
                return f"context message {position} is out of order (display index {index} after {previous})"
            if not message.is_summary and self._display[index].role != message.role:
                return (
                    f"context message {position} is '{message.role}' but display message {index} "
                    f"is '{self._display[index].role}'"
                )
            previous = index
        return find_pairing_problem(messages)

    def _fail(self, message: str) -> None:
        LOGGER.critical(f"History inconsistency: {message}")
        raise HistoryInconsistencyError(message)

    def _require_not_streaming(self, action: str) -> None:
        if self._partial is not None:
            raise HistoryInconsistencyError(f"Cannot {action} while a turn is streaming")

    # ========== Persistence ==========

    def to_dict(self) -> Dict[str, Any]:
        return {
            "display": [display_message_to_dict(m) for m in self._display],
            "context": [context_message_to_dict(m) for m in self._context],
        }

    @classmethod
    def from_lists(cls, display: Sequence[Dict[str, Any]], context: Sequence[Dict[str, Any]]) -> "HistoryManager":
        return cls(
            display=[display_message_from_dict(m) for m in display],
            context=[context_message_from_dict(m) for m in context],
        )


__all__ = ["AssistantTurn", "HistoryManager", "find_pairing_problem"]
