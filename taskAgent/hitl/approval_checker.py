"""Approval checker for tool execution safety."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, Optional

import yaml

from taskAgent.config.project_root import resolve_config_path

if TYPE_CHECKING:
    from taskAgent.tools.registry import ToolMeta

LOGGER = logging.getLogger(__name__)

DEFAULT_RULES_PATH = resolve_config_path("approval_rules.yaml")


@dataclass
class ApprovalDecision:
    """审批决策结果"""

    needs_approval: bool
    reason: str = ""
    risk_level: str = "low"  # low, medium, high, critical


class ApprovalChecker:
    """工具执行审批检测器

    支持四层规则（优先级从高到低）：
    1. 工具自定义检查器（代码实现，最高优先级）
    2. 全局风险模式（跨工具检测，如敏感信息泄露）
    3. 工具配置规则（工具特定规则）
    4. 默认内置规则（危险命令 + 工具组自动批准策略）
    """

    def __init__(self, config_path: Optional[Path] = None, auto_approve_groups: Iterable[str] = ("read", "workflow", "control")):
        """
        Args:
            config_path: 审批规则配置文件路径（可选）
            auto_approve_groups: 无需审批的工具组
        """
        self.config_path = config_path
        self.rules = self._load_config() if config_path else {}
        self.auto_approve_groups = set(auto_approve_groups)
        self.custom_checkers: Dict[str, Callable[[dict], ApprovalDecision]] = {}
        self.global_patterns = self._load_global_patterns()

    @classmethod
    def from_settings(cls, governance, config_path: Optional[Path] = DEFAULT_RULES_PATH) -> "ApprovalChecker":
        groups = {"workflow", "control"}
        if governance.auto_approve_reads:
            groups.add("read")
        if governance.auto_approve_writes:
            groups.add("edit")
        if governance.auto_approve_commands:
            groups.add("command")
        return cls(config_path=config_path, auto_approve_groups=groups)

    def _load_config(self) -> dict:
        if not self.config_path or not self.config_path.exists():
            return {}

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                return yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            LOGGER.warning(f"Failed to load approval config {self.config_path}: {e}")
            return {}

    def _load_global_patterns(self) -> Dict[str, Any]:
        global_config = self.rules.get("global", {})
        risk_patterns = global_config.get("risk_patterns", {})

        patterns_by_level = {}
        for level, pattern_config in risk_patterns.items():
            if isinstance(pattern_config, dict):
                patterns_by_level[level] = {
                    "patterns": pattern_config.get("patterns", []),
                    "action": pattern_config.get("action", "require_approval"),
                    "reason": pattern_config.get("reason", f"Matched global {level} risk pattern"),
                }

        return patterns_by_level

    def register_checker(self, tool_name: str, checker: Callable[[dict], ApprovalDecision]):
        """注册工具自定义审批检测函数

        Args:
            tool_name: 工具名称
            checker: 检测函数，接收 args，返回 ApprovalDecision
        """
        self.custom_checkers[tool_name] = checker

    def check(self, tool_name: str, args: dict, meta: Optional[ToolMeta] = None) -> ApprovalDecision:
        """检查工具调用是否需要审批

        Args:
            tool_name: 工具名称
            args: 工具参数
            meta: 工具元数据（用于工具组策略）

        Returns:
            ApprovalDecision
        """
        # 1. 工具自定义检测（优先级最高）
        if tool_name in self.custom_checkers:
            return self.custom_checkers[tool_name](args)

        # 2. 全局风险模式检查（跨工具）
        global_decision = self._check_global_patterns(args)
        if global_decision.needs_approval:
            return global_decision

        # 3. 工具配置规则
        if tool_name in self.rules.get("tools", {}):
            decision = self._check_config_rules(tool_name, args)
            if decision.needs_approval:
                return decision

        # 4. 默认内置规则
        return self._check_builtin_rules(tool_name, args, meta)

    def _check_global_patterns(self, args: dict) -> ApprovalDecision:
        if not self.global_patterns:
            return ApprovalDecision(needs_approval=False)

        args_str = " ".join(str(v) for v in args.values())

        for risk_level in ["critical", "high", "medium", "low"]:
            if risk_level not in self.global_patterns:
                continue

            pattern_config = self.global_patterns[risk_level]
            for pattern in pattern_config["patterns"]:
                if re.search(pattern, args_str, re.IGNORECASE) and pattern_config["action"] == "require_approval":
                    return ApprovalDecision(
                        needs_approval=True,
                        reason=pattern_config["reason"],
                        risk_level=risk_level,
                    )

        return ApprovalDecision(needs_approval=False)

    def _check_config_rules(self, tool_name: str, args: dict) -> ApprovalDecision:
        tool_config = self.rules["tools"][tool_name]

        if not tool_config.get("enabled", True):
            return ApprovalDecision(needs_approval=False)

        for risk_level, pattern_list in tool_config.get("patterns", {}).items():
            for pattern in pattern_list:
                if self._matches_pattern(pattern, args):
                    action = tool_config.get("actions", {}).get(risk_level, "require_approval")
                    if action == "require_approval":
                        return ApprovalDecision(
                            needs_approval=True,
                            reason=f"Matched {risk_level} risk pattern: {pattern}",
                            risk_level=risk_level,
                        )

        return ApprovalDecision(needs_approval=False)

    def _matches_pattern(self, pattern: str, args: dict) -> bool:
        args_str = " ".join(str(v) for v in args.values())
        return bool(re.search(pattern, args_str, re.IGNORECASE))

    def _check_builtin_rules(self, tool_name: str, args: dict, meta: Optional[ToolMeta]) -> ApprovalDecision:
        if tool_name == "run_command":
            decision = self._check_shell_command(args.get("command", ""))
            if decision.needs_approval:
                return decision

        # 工具组策略：未自动批准的组需要审批
        if meta is not None and meta.group not in self.auto_approve_groups:
            return ApprovalDecision(
                needs_approval=True,
                reason=f"'{meta.group}' tools require approval",
                risk_level=meta.risk,
            )

        return ApprovalDecision(needs_approval=False)

    def _check_shell_command(self, command: str) -> ApprovalDecision:
        high_risk_patterns = [
            r"\brm\s+-rf\b",
            r"\bsudo\b",
            r"\bchmod\s+777\b",
            r"\bmkfs\b",
            r"\bdd\b.*\bif=/dev/",
            r"\b>\s*/dev/",
        ]

        for pattern in high_risk_patterns:
            if re.search(pattern, command, re.IGNORECASE):
                return ApprovalDecision(
                    needs_approval=True,
                    reason="High-risk shell operation detected",
                    risk_level="high",
                )

        medium_risk_patterns = [
            r"\bcurl\b",
            r"\bwget\b",
            r"\bgit\s+clone\b",
            r"\bpip\s+install\b",
            r"\bnpm\s+install\b",
        ]

        for pattern in medium_risk_patterns:
            if re.search(pattern, command, re.IGNORECASE):
                return ApprovalDecision(
                    needs_approval=True,
                    reason="Network or package installation command",
                    risk_level="medium",
                )

        return ApprovalDecision(needs_approval=False)
