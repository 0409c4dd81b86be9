"""Tests for the approval checker: group policy, global risk patterns and per-tool rules."""

import pytest
import yaml

from taskAgent.config.settings import GovernanceSettings
from taskAgent.hitl import ApprovalChecker, ApprovalDecision
from taskAgent.tools.registry import ToolMeta

READ = ToolMeta(name="read_file", group="read")
WRITE = ToolMeta(name="write_file", group="edit", risk="medium", path_argument="path")
SHELL = ToolMeta(name="run_command", group="command", risk="high")
TODO = ToolMeta(name="todo_write", group="workflow", always_available=True)


class TestGroupPolicy:
    """Group policy derived from governance settings"""

    def test_defaults(self):
        checker = ApprovalChecker.from_settings(GovernanceSettings())

        assert not checker.check("read_file", {"path": "a"}, READ).needs_approval
        assert not checker.check("todo_write", {"todos": []}, TODO).needs_approval
        decision = checker.check("write_file", {"path": "a", "content": "x"}, WRITE)
        assert decision.needs_approval
        assert decision.risk_level == "medium"
        assert "'edit' tools" in decision.reason

    def test_auto_approve_flags(self):
        checker = ApprovalChecker.from_settings(
            GovernanceSettings(auto_approve_reads=False, auto_approve_writes=True, auto_approve_commands=True)
        )

        assert checker.check("read_file", {"path": "a"}, READ).needs_approval
        assert not checker.check("write_file", {"path": "a", "content": "x"}, WRITE).needs_approval
        assert not checker.check("run_command", {"command": "ls"}, SHELL).needs_approval


class TestShellRules:
    """Built-in shell patterns apply even when commands are auto-approved"""

    @pytest.fixture
    def checker(self):
        return ApprovalChecker(auto_approve_groups=("read", "command"))

    @pytest.mark.parametrize("command", ["rm -rf build", "sudo apt update", "chmod 777 /srv", "dd if=/dev/zero of=x"])
    def test_high_risk(self, checker, command):
        decision = checker.check("run_command", {"command": command}, SHELL)

        assert decision.needs_approval
        assert decision.risk_level == "high"

    @pytest.mark.parametrize("command", ["curl https://example.com", "pip install requests"])
    def test_medium_risk(self, checker, command):
        decision = checker.check("run_command", {"command": command}, SHELL)

        assert decision.needs_approval
        assert decision.risk_level == "medium"

    def test_plain_command(self, checker):
        assert not checker.check("run_command", {"command": "pytest -q"}, SHELL).needs_approval


class TestConfiguredRules:
    """Global risk patterns and per-tool patterns loaded from YAML"""

    @pytest.fixture
    def config_path(self, tmp_path):
        config = {
            "global": {
                "risk_patterns": {
                    "critical": {
                        "patterns": [r"api[_-]?key\s*[=:]\s*['\"]?[\w-]{8,}"],
                        "action": "require_approval",
                        "reason": "Credential in arguments",
                    },
                    "medium": {
                        "patterns": [r"/etc/hosts"],
                        "action": "warn",
                        "reason": "Only logged",
                    },
                },
            },
            "tools": {
                "run_command": {
                    "enabled": True,
                    "patterns": {"high": [r"\bgit\s+push\b.*--force"]},
                    "actions": {"high": "require_approval"},
                },
                "write_file": {"enabled": False, "patterns": {"high": [".*"]}},
            },
        }
        path = tmp_path / "approval_rules.yaml"
        path.write_text(yaml.dump(config), encoding="utf-8")
        return path

    @pytest.fixture
    def checker(self, config_path):
        return ApprovalChecker(config_path=config_path, auto_approve_groups=("read", "edit", "command"))

    def test_global_pattern_applies_to_any_tool(self, checker):
        decision = checker.check("write_file", {"path": ".env", "content": "API_KEY=abcdef123456"}, WRITE)

        assert decision.needs_approval
        assert decision.risk_level == "critical"
        assert decision.reason == "Credential in arguments"

    def test_non_blocking_global_action_is_ignored(self, checker):
        assert not checker.check("read_file", {"path": "/etc/hosts"}, READ).needs_approval

    def test_tool_pattern(self, checker):
        decision = checker.check("run_command", {"command": "git push origin main --force"}, SHELL)

        assert decision.needs_approval
        assert decision.risk_level == "high"

    def test_disabled_tool_rules(self, checker):
        assert not checker.check("write_file", {"path": "a", "content": "x"}, WRITE).needs_approval

    def test_missing_config_file(self, tmp_path):
        checker = ApprovalChecker(config_path=tmp_path / "missing.yaml")

        assert checker.rules == {}

    def test_bundled_rules_flag_credentials(self):
        checker = ApprovalChecker.from_settings(GovernanceSettings(auto_approve_writes=True))

        decision = checker.check("write_file", {"path": "cfg", "content": "token = 'abcdefghijklmnopqrstuv'"}, WRITE)

        assert decision.needs_approval
        assert decision.risk_level == "critical"


class TestCustomChecker:
    def test_custom_checker_wins(self):
        checker = ApprovalChecker()
        checker.register_checker("read_file", lambda args: ApprovalDecision(True, "custom", "high"))

        decision = checker.check("read_file", {"path": "a"}, READ)

        assert decision.needs_approval
        assert decision.reason == "custom"
