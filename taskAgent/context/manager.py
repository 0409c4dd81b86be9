"""
上下文窗口管理器 - 统一入口

每次请求前调用 fit()：
1. 估算上下文 token
2. 超出预算时按顺序尝试：滑动窗口 → 选择性截断 → 摘要
3. 摘要后仍超出时，对结果再做一次不限比例的滑动窗口
4. 仍然超出则抛出 BudgetExceededError（仅本次请求失败）
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Literal, Optional, Sequence

from taskAgent.context.compressor import ConversationSummarizer
from taskAgent.context.token_tracker import ContextBudget, estimate_tokens
from taskAgent.context.truncator import selective, sliding_window
from taskAgent.history.messages import ContextMessage
from taskAgent.utils.cancellation import CancellationToken
from taskAgent.utils.error_handler import BackendError, BudgetExceededError

LOGGER = logging.getLogger(__name__)

Action = Literal["none", "sliding_window", "selective", "summarization", "emergency_window"]


@dataclass
class ContextManagementReport:
    """上下文管理操作报告"""

    action: Action
    messages: List[ContextMessage]
    before_tokens: int
    after_tokens: int
    limit: int
    strategies: List[str] = field(default_factory=list)

    @property
    def changed(self) -> bool:
        return self.action != "none"

    def describe(self) -> str:
        if not self.changed:
            return "Context within budget"
        return (
            f"Context reduced with {' → '.join(self.strategies)}: "
            f"~{self.before_tokens:,} → ~{self.after_tokens:,} tokens (limit {self.limit:,})"
        )


class ContextWindowManager:
    """Keeps a context history within its request budget."""

    def __init__(self, settings, summarizer: Optional[ConversationSummarizer] = None):
        """
        Args:
            settings: ContextManagementSettings
            summarizer: 摘要器；为 None 时跳过摘要策略
        """
        self.settings = settings
        self.summarizer = summarizer

    def estimate(self, messages: Sequence[ContextMessage]) -> int:
        return estimate_tokens(messages, self.settings.chars_per_token)

    async def fit(
        self,
        messages: Sequence[ContextMessage],
        budget: ContextBudget,
        overhead_tokens: int = 0,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ContextManagementReport:
        """Return a context history that fits ``budget`` after ``overhead_tokens``.

        A history that already fits comes back unchanged with action "none".

        Raises:
            BudgetExceededError: Every strategy left the history over budget
        """
        limit = budget.target_limit - overhead_tokens
        before = self.estimate(messages)

        if before <= limit or not self.settings.enabled:
            if before > limit:
                LOGGER.warning(f"Context ~{before:,} tokens exceeds limit {limit:,} but management is disabled")
            return ContextManagementReport("none", list(messages), before, before, limit)

        if limit <= 0:
            raise BudgetExceededError(before, limit)

        LOGGER.info(f"Context ~{before:,} tokens exceeds limit {limit:,}, reducing")
        cpt = self.settings.chars_per_token
        strategies: List[str] = []

        current = sliding_window(messages, limit, cpt, max_drop_ratio=self.settings.window_max_drop_ratio)
        strategies.append("sliding_window")
        if self.estimate(current) <= limit:
            return self._report(strategies, current, before, limit)

        current = selective(current, limit, protected_score=self.settings.selective_protected_score, chars_per_token=cpt)
        strategies.append("selective")
        if self.estimate(current) <= limit:
            return self._report(strategies, current, before, limit)

        if self.summarizer is not None:
            try:
                summarized = await self.summarizer.summarize(
                    current,
                    keep_recent_units=self.settings.summary_keep_recent_units,
                    cancel_token=cancel_token,
                )
            except BackendError as e:
                LOGGER.warning(f"Summarization failed: {e}")
                summarized = None
            if summarized is not None:
                current = summarized
                strategies.append("summarization")
                if self.estimate(current) <= limit:
                    return self._report(strategies, current, before, limit)

        current = sliding_window(current, limit, cpt, max_drop_ratio=None)
        strategies.append("emergency_window")
        after = self.estimate(current)
        if after > limit:
            LOGGER.error(f"Context still ~{after:,} tokens after {', '.join(strategies)} (limit {limit:,})")
            raise BudgetExceededError(after, limit)
        return self._report(strategies, current, before, limit)

    def _report(
        self,
        strategies: List[str],
        messages: List[ContextMessage],
        before: int,
        limit: int,
    ) -> ContextManagementReport:
        report = ContextManagementReport(
            action=strategies[-1],
            messages=messages,
            before_tokens=before,
            after_tokens=self.estimate(messages),
            limit=limit,
            strategies=list(strategies),
        )
        LOGGER.info(report.describe())
        return report


__all__ = ["ContextManagementReport", "ContextWindowManager"]
