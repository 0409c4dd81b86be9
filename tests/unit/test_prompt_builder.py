"""Unit tests for prompt templates and system prompt assembly."""

import pytest

from taskAgent.config.modes import ModeProvider
from taskAgent.protocol.chunks import ToolProtocol
from taskAgent.runtime import Task
from taskAgent.runtime.prompts import build_system_prompt, describe_tools, get_current_datetime_tag
from taskAgent.tools import TodoItem
from taskAgent.tools.builtin import build_default_registry
from taskAgent.utils.prompt_builder import PromptBuilder


@pytest.fixture
def registry():
    return build_default_registry()


@pytest.fixture
def modes(registry):
    return ModeProvider(registry)


class TestSystemPrompt:
    def test_native_prompt(self, registry, modes):
        task = Task(task_id="t1", mode="code")

        prompt = build_system_prompt(task, modes.resolve("code"), registry)

        assert "**Code** mode (`code`)" in prompt
        assert "`attempt_completion`" in prompt
        assert "`delegate_task`" in prompt
        assert "# Tool use" not in prompt
        assert "# Subtask" not in prompt
        assert "<current_datetime>" in prompt

    def test_xml_prompt_lists_tools(self, registry, modes):
        task = Task(task_id="t1", mode="ask", protocol=ToolProtocol.XML)

        prompt = build_system_prompt(task, modes.resolve("ask"), registry)

        assert "# Tool use" in prompt
        assert "### read_file" in prompt
        assert "- `path` (required)" in prompt
        assert "### write_file" not in prompt

    def test_child_task_without_delegation(self, registry, modes):
        task = Task(task_id="c1", mode="code", parent_task_id="p1", depth=3)

        prompt = build_system_prompt(task, modes.resolve("code"), registry, can_delegate=False)

        assert "# Subtask" in prompt
        assert "`delegate_task`" not in prompt

    def test_path_restrictions_and_todos(self, registry, modes):
        task = Task(task_id="t1", mode="planning")
        task.todos.append(TodoItem(id="1", content="Draft plan", status="in_progress"))

        prompt = build_system_prompt(task, modes.resolve("planning"), registry)

        assert "- allow `*.md`: Markdown documents only" in prompt
        assert "- [in_progress] Draft plan" in prompt


class TestTemplates:
    def test_summarize_prompt(self):
        prompt = PromptBuilder.load_summarize_prompt(transcript="[User] hello", message_count=7)

        assert "replaces 7 messages" in prompt
        assert "<conversation>\n[User] hello\n</conversation>" in prompt

    def test_templates_are_sandboxed(self):
        assert PromptBuilder._render_template("{{ value.upper() }}", {"value": "ok"}) == "OK"

        with pytest.raises(Exception, match="unsafe"):
            PromptBuilder._render_template("{{ value.__class__.__mro__ }}", {"value": "ok"})

    def test_describe_tools(self, registry):
        described = describe_tools(registry, ["write_file"])

        assert described[0]["name"] == "write_file"
        assert set(described[0]["required"]) == {"path", "content"}
        assert "task" not in described[0]["parameters"]

    def test_datetime_tag(self):
        tag = get_current_datetime_tag()

        assert tag.startswith("<current_datetime>") and tag.endswith("UTC</current_datetime>")
