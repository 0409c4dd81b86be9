"""
上下文管理模块

- 基于字符数的 token 估算与请求预算（ContextBudget）
- 逐级裁剪：滑动窗口 → 选择性截断 → 摘要
- provider usage 累积与状态级别
"""

from .compressor import ConversationSummarizer
from .manager import ContextManagementReport, ContextWindowManager
from .token_tracker import (
    ContextBudget,
    ContextStatus,
    TokenTracker,
    TokenUsage,
    estimate_tokens,
    get_context_window,
)
from .truncator import group_units, selective, sliding_window

__all__ = [
    "ContextBudget",
    "ContextManagementReport",
    "ContextStatus",
    "ContextWindowManager",
    "ConversationSummarizer",
    "TokenTracker",
    "TokenUsage",
    "estimate_tokens",
    "get_context_window",
    "group_units",
    "selective",
    "sliding_window",
]
