"""
上下文摘要器

负责：
1. 选出可摘要的早期区间（首条消息之后、最近 N 个单元之前）
2. 调用 backend 生成摘要，替换为一条 summary 消息
3. 校验结果确实变小，否则视为失败
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, List, Optional, Sequence

from taskAgent.context.token_tracker import estimate_tokens
from taskAgent.context.truncator import flatten, group_units
from taskAgent.history.messages import ContextMessage, TextBlock, ToolResultBlock, ToolUseBlock
from taskAgent.utils.cancellation import CancellationToken
from taskAgent.utils.prompt_builder import PromptBuilder

if TYPE_CHECKING:
    from taskAgent.backends.base import Backend

LOGGER = logging.getLogger(__name__)

SUMMARY_HEADER = "[Summary of earlier conversation]"
MAX_TEXT_CHARS = 2000
MAX_RESULT_CHARS = 500


def format_transcript(messages: Sequence[ContextMessage]) -> str:
    """将消息格式化为文本（供 LLM 摘要）"""
    formatted = []
    for message in messages:
        role = "Summary" if message.is_summary else message.role.capitalize()
        for block in message.content:
            if isinstance(block, TextBlock):
                formatted.append(f"[{role}] {block.text[:MAX_TEXT_CHARS]}")
            elif isinstance(block, ToolUseBlock):
                formatted.append(f"[{role}] called {block.name}({block.arguments})")
            elif isinstance(block, ToolResultBlock):
                status = "error" if block.is_error else "result"
                content = block.content
                if len(content) > MAX_RESULT_CHARS:
                    content = content[:MAX_RESULT_CHARS] + "..."
                formatted.append(f"[Tool {status}] {content}")
    return "\n\n".join(formatted)


class ConversationSummarizer:
    """Condenses an early span of the context history into one summary message."""

    def __init__(
        self,
        backend: "Backend",
        max_tokens: int = 1440,
        chars_per_token: float = 4.0,
    ):
        self.backend = backend
        self.max_tokens = max_tokens
        self.chars_per_token = chars_per_token

    async def summarize(
        self,
        messages: Sequence[ContextMessage],
        keep_recent_units: int = 2,
        cancel_token: Optional[CancellationToken] = None,
    ) -> Optional[List[ContextMessage]]:
        """
        执行摘要

        Returns:
            摘要后的新消息列表；无可摘要区间或结果未变小时返回 None

        Raises:
            BackendError: 摘要请求失败
        """
        units = group_units(messages, self.chars_per_token)
        end = len(units) - keep_recent_units
        if end <= 1:
            LOGGER.debug(f"Nothing to summarize ({len(units)} units, keeping {keep_recent_units})")
            return None

        span = flatten(units[1:end])
        if len(span) == 1 and span[0].is_summary:
            return None

        prompt = PromptBuilder.load_summarize_prompt(
            transcript=format_transcript(span),
            message_count=len(span),
        )
        LOGGER.info(f"Summarizing {len(span)} messages in a single request")
        summary_text = await self.backend.complete(prompt, max_tokens=self.max_tokens, cancel_token=cancel_token)
        summary_text = summary_text.strip()
        if not summary_text:
            LOGGER.warning("Summary request returned no text")
            return None

        start = min(m.summarized_range[0] if m.summarized_range else m.display_index for m in span)
        last = span[-1].display_index
        summary = ContextMessage(
            role="user",
            content=[TextBlock(text=f"{SUMMARY_HEADER}\n{summary_text}")],
            display_index=last,
            is_summary=True,
            summarized_range=(start, last),
        )
        candidate = flatten(units[:1]) + [summary] + flatten(units[end:])

        before = estimate_tokens(messages, self.chars_per_token)
        after = estimate_tokens(candidate, self.chars_per_token)
        if after >= before:
            LOGGER.warning(f"Summary did not shrink the context (~{before:,} → ~{after:,} tokens); discarding it")
            return None

        LOGGER.info(
            f"Summarization complete: {len(messages)} → {len(candidate)} messages, "
            f"~{before:,} → ~{after:,} tokens"
        )
        return candidate


__all__ = ["ConversationSummarizer", "SUMMARY_HEADER", "format_transcript"]
