"""
Token 估算、预算与使用量追踪

负责：
1. 按字符数估算上下文 token（请求前预算检查用）
2. 根据模型窗口计算 ContextBudget
3. 累积 provider 返回的 usage，判断状态级别（normal/info/warning/critical）
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Dict, Literal, Optional, Sequence

from taskAgent.history.messages import ContextMessage, block_char_count

LOGGER = logging.getLogger(__name__)

# Per-message framing the provider adds on top of the content
MESSAGE_OVERHEAD_TOKENS = 4


# 模型上下文窗口配置（支持前缀匹配）
MODEL_CONTEXT_WINDOWS: Dict[str, int] = {
    # OpenAI
    "gpt-4": 8_192,
    "gpt-4-32k": 32_768,
    "gpt-4-turbo": 128_000,
    "gpt-4o": 128_000,
    "gpt-4o-mini": 128_000,
    "gpt-4.1": 1_047_576,
    "o3": 200_000,
    "o4-mini": 200_000,

    # DeepSeek
    "deepseek-chat": 128_000,
    "deepseek-reasoner": 128_000,

    # Kimi (Moonshot)
    "moonshot-v1-8k": 8_000,
    "moonshot-v1-32k": 32_000,
    "moonshot-v1-128k": 128_000,

    # GLM
    "glm-4": 128_000,
    "glm-4-plus": 128_000,

    # Claude
    "claude-3-5-sonnet": 200_000,
    "claude-3-7-sonnet": 200_000,
    "claude-sonnet-4": 200_000,

    "default": 128_000,
}


def get_context_window(model_id: str, override: Optional[int] = None) -> int:
    """
    获取模型的上下文窗口大小

    支持精确匹配和前缀匹配（如 "gpt-4o-2024-08-06" 匹配 "gpt-4o"），
    前缀匹配取最长的 key。
    """
    if override:
        return override

    if model_id in MODEL_CONTEXT_WINDOWS:
        return MODEL_CONTEXT_WINDOWS[model_id]

    matches = [key for key in MODEL_CONTEXT_WINDOWS if key != "default" and model_id.startswith(key)]
    if matches:
        return MODEL_CONTEXT_WINDOWS[max(matches, key=len)]

    LOGGER.warning(
        f"Unknown model '{model_id}', using default context window "
        f"{MODEL_CONTEXT_WINDOWS['default']}"
    )
    return MODEL_CONTEXT_WINDOWS["default"]


def estimate_text_tokens(text: str, chars_per_token: float = 4.0) -> int:
    return math.ceil(len(text) / chars_per_token) if text else 0


def estimate_message_tokens(message: ContextMessage, chars_per_token: float = 4.0) -> int:
    chars = sum(block_char_count(block) for block in message.content)
    return math.ceil(chars / chars_per_token) + MESSAGE_OVERHEAD_TOKENS


def estimate_tokens(messages: Sequence[ContextMessage], chars_per_token: float = 4.0) -> int:
    """Character-based estimate of what ``messages`` cost in a request."""
    return sum(estimate_message_tokens(m, chars_per_token) for m in messages)


@dataclass(frozen=True)
class ContextBudget:
    """Token budget for one request.

    ``reserved_overhead`` is kept free for the response plus a safety
    buffer; ``target_limit`` is what the request itself may use.
    """

    model_limit: int
    reserved_overhead: int
    target_limit: int

    def __post_init__(self) -> None:
        if not 0 < self.target_limit < self.model_limit:
            raise ValueError(
                f"target_limit must be in (0, {self.model_limit}), got {self.target_limit}"
            )

    @classmethod
    def for_window(cls, model_limit: int, max_response_tokens: int, buffer_ratio: float = 0.1) -> "ContextBudget":
        # A response reservation above a quarter of the window would starve the history
        response_reserve = min(max_response_tokens, model_limit // 4)
        reserved = response_reserve + int(model_limit * buffer_ratio)
        return cls(model_limit=model_limit, reserved_overhead=reserved, target_limit=model_limit - reserved)


@dataclass
class TokenUsage:
    """单次请求的 Token 使用情况"""

    input_tokens: int = 0
    output_tokens: int = 0


@dataclass
class ContextStatus:
    """上下文状态评估结果"""

    prompt_tokens: int
    context_window: int
    usage_ratio: float  # 0.0 to 1.0
    level: Literal["normal", "info", "warning", "critical"]
    message: Optional[str] = None


class TokenTracker:
    """Token 使用量追踪和状态评估器（每个 Task 一个）"""

    def __init__(self, settings, context_window: int):
        """
        Args:
            settings: ContextManagementSettings
            context_window: 模型上下文窗口大小
        """
        self.settings = settings
        self.context_window = context_window
        self.total_input_tokens = 0
        self.total_output_tokens = 0
        self.last_prompt_tokens = 0
        self.requests = 0

    def record(self, usage: TokenUsage) -> ContextStatus:
        """累积一次请求的 usage 并返回当前状态"""
        self.requests += 1
        self.total_input_tokens += usage.input_tokens
        self.total_output_tokens += usage.output_tokens
        self.last_prompt_tokens = usage.input_tokens

        status = self.check_status(usage.input_tokens)
        LOGGER.info(
            f"Token usage - Prompt: {usage.input_tokens:,} / {self.context_window:,} "
            f"({status.usage_ratio:.1%}), completion: {usage.output_tokens:,} - Level: {status.level}"
        )
        return status

    def check_status(self, prompt_tokens: int) -> ContextStatus:
        """
        检查当前上下文状态

        响应级别：
        - normal (< info_threshold)
        - info (< warning_threshold)
        - warning (< critical_threshold)
        - critical (>= critical_threshold): 下一次请求前必然触发裁剪
        """
        ratio = prompt_tokens / self.context_window if self.context_window > 0 else 0.0

        if ratio < self.settings.info_threshold:
            return ContextStatus(prompt_tokens, self.context_window, ratio, "normal")

        if ratio < self.settings.warning_threshold:
            level = "info"
        elif ratio < self.settings.critical_threshold:
            level = "warning"
        else:
            level = "critical"

        message = (
            f"Context usage {prompt_tokens:,} / {self.context_window:,} tokens ({ratio:.1%}); "
            "older messages will be condensed when the budget is exceeded."
        )
        return ContextStatus(prompt_tokens, self.context_window, ratio, level, message)

    def snapshot(self) -> Dict[str, int]:
        return {
            "requests": self.requests,
            "input_tokens": self.total_input_tokens,
            "output_tokens": self.total_output_tokens,
            "last_prompt_tokens": self.last_prompt_tokens,
        }

    def restore(self, data: Dict[str, int]) -> None:
        self.requests = int(data.get("requests", 0))
        self.total_input_tokens = int(data.get("input_tokens", 0))
        self.total_output_tokens = int(data.get("output_tokens", 0))
        self.last_prompt_tokens = int(data.get("last_prompt_tokens", 0))


__all__ = [
    "ContextBudget",
    "ContextStatus",
    "MODEL_CONTEXT_WINDOWS",
    "TokenTracker",
    "TokenUsage",
    "estimate_message_tokens",
    "estimate_text_tokens",
    "estimate_tokens",
    "get_context_window",
]
