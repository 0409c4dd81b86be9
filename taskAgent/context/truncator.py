"""
消息截断器（不调用 LLM 的裁剪策略）

负责：
1. 把上下文切分为不可拆分的单元（tool_use 与其 tool_result 永远在同一单元）
2. 滑动窗口：从最早的单元开始丢弃
3. 选择性截断：按信息量打分，保留高分单元后恢复原始顺序

首条消息和最后一个单元永远保留。
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from taskAgent.context.token_tracker import estimate_tokens
from taskAgent.history.messages import ContextMessage

LOGGER = logging.getLogger(__name__)

ERROR_SCORE = 6.0
SUMMARY_SCORE = 4.5
TOOL_SCORE = 3.0
TEXT_BASE_SCORE = 1.0


@dataclass
class MessageUnit:
    """Messages that are kept or dropped together."""

    messages: List[ContextMessage] = field(default_factory=list)
    tokens: int = 0

    @property
    def is_summary(self) -> bool:
        return any(m.is_summary for m in self.messages)

    @property
    def has_error(self) -> bool:
        return any(m.has_error for m in self.messages)

    @property
    def tool_calls(self) -> int:
        return sum(len(m.tool_use_ids) for m in self.messages)

    @property
    def text_chars(self) -> int:
        return sum(len(m.text) for m in self.messages)


def group_units(messages: Sequence[ContextMessage], chars_per_token: float = 4.0) -> List[MessageUnit]:
    """Split a context history into droppable units.

    The first message is a unit of its own. Every assistant message starts a
    unit that also holds the user messages answering it. A summary message is
    a unit of its own.
    """
    units: List[MessageUnit] = []
    for position, message in enumerate(messages):
        starts_unit = (
            position == 0
            or message.role == "assistant"
            or message.is_summary
            or len(units) == 1
            or units[-1].is_summary
        )
        if starts_unit:
            units.append(MessageUnit())
        units[-1].messages.append(message)

    for unit in units:
        unit.tokens = estimate_tokens(unit.messages, chars_per_token)
    return units


def flatten(units: Sequence[MessageUnit]) -> List[ContextMessage]:
    return [message for unit in units for message in unit.messages]


def score_unit(unit: MessageUnit) -> float:
    """Information score: errors highest, tool work high, short chatter low."""
    if unit.has_error:
        return ERROR_SCORE
    if unit.is_summary:
        return SUMMARY_SCORE
    if unit.tool_calls:
        return TOOL_SCORE + min(0.5 * (unit.tool_calls - 1), 1.0)
    return TEXT_BASE_SCORE + min(unit.text_chars / 1000.0, 1.5)


def sliding_window(
    messages: Sequence[ContextMessage],
    target_tokens: int,
    chars_per_token: float = 4.0,
    max_drop_ratio: Optional[float] = None,
) -> List[ContextMessage]:
    """Drop the oldest units until the history fits ``target_tokens``.

    Args:
        messages: Context history
        target_tokens: Budget for the returned history
        chars_per_token: Estimation ratio
        max_drop_ratio: Cap on the share of droppable units removed in one
            pass; None removes as many as needed

    Returns:
        New list; the input is returned unchanged (as a copy) when it fits
    """
    units = group_units(messages, chars_per_token)
    total = sum(u.tokens for u in units)
    if total <= target_tokens or len(units) <= 2:
        return list(messages)

    droppable = len(units) - 2
    limit = droppable if max_drop_ratio is None else max(1, int(droppable * max_drop_ratio))

    cut = 1
    while total > target_tokens and cut - 1 < limit:
        total -= units[cut].tokens
        cut += 1

    kept = [units[0]] + units[cut:]
    LOGGER.info(
        f"Sliding window dropped {cut - 1} of {droppable} droppable units "
        f"({len(messages)} → {sum(len(u.messages) for u in kept)} messages, ~{total:,} tokens)"
    )
    return flatten(kept)


def selective(
    messages: Sequence[ContextMessage],
    target_tokens: int,
    protected_score: float = 5.0,
    chars_per_token: float = 4.0,
) -> List[ContextMessage]:
    """Keep the most informative units that fit ``target_tokens``.

    The first and last units and units scoring at least ``protected_score``
    are always kept; the rest are taken by descending score (newer first on
    ties) while they fit, then restored to their original order.
    """
    units = group_units(messages, chars_per_token)
    total = sum(u.tokens for u in units)
    if total <= target_tokens or len(units) <= 2:
        return list(messages)

    scores = [score_unit(u) for u in units]
    last = len(units) - 1
    keep = {0, last}
    keep.update(i for i in range(1, last) if scores[i] >= protected_score)
    used = sum(units[i].tokens for i in keep)

    candidates = sorted((i for i in range(1, last) if i not in keep), key=lambda i: (-scores[i], -i))
    for i in candidates:
        if used + units[i].tokens <= target_tokens:
            keep.add(i)
            used += units[i].tokens

    kept = [units[i] for i in sorted(keep)]
    LOGGER.info(
        f"Selective truncation kept {len(kept)} of {len(units)} units "
        f"(~{total:,} → ~{used:,} tokens)"
    )
    return flatten(kept)


__all__ = ["MessageUnit", "flatten", "group_units", "score_unit", "selective", "sliding_window"]
