"""Unit tests for the workspace tools: read/write/edit/list/search, run_command and follow-up questions."""

import pytest

from taskAgent.tools import TaskContext
from taskAgent.tools.builtin.ask_followup_question import ask_followup_question
from taskAgent.tools.builtin.edit_file import edit_file
from taskAgent.tools.builtin.file_ops import list_files, read_file, write_file
from taskAgent.tools.builtin.run_command import run_command
from taskAgent.tools.builtin.search_files import search_files
from taskAgent.utils.error_handler import ToolExecutionError


@pytest.fixture
def task(workspace):
    (workspace / "src").mkdir()
    (workspace / "src" / "app.py").write_text("def main():\n    return 1\n\n# TODO: logging\n")
    (workspace / "README.md").write_text("# Demo\n")
    (workspace / ".git").mkdir()
    (workspace / ".git" / "config").write_text("hidden")
    return TaskContext(task_id="t1", mode="code", workspace_root=workspace)


class TestWorkspaceIsolation:
    @pytest.mark.parametrize("path", ["/etc/passwd", "../outside.txt", "src/../../outside.txt", ""])
    def test_paths_outside_workspace_are_refused(self, task, path):
        with pytest.raises(ToolExecutionError, match="Access denied"):
            task.resolve_path(path)

    def test_relative_path_resolves_inside(self, task, workspace):
        assert task.resolve_path("src/app.py") == (workspace / "src" / "app.py").resolve()


class TestReadWrite:
    def test_read_numbers_lines(self, task):
        result = read_file.invoke({"path": "src/app.py", "task": task})

        assert result.startswith("=== src/app.py (4 lines) ===")
        assert "     1 | def main():" in result

    def test_read_window(self, task):
        result = read_file.invoke({"path": "src/app.py", "task": task, "start_line": 2, "max_lines": 1})

        assert "     2 |     return 1" in result
        assert "def main" not in result

    def test_read_missing_file(self, task):
        with pytest.raises(ToolExecutionError, match="File not found"):
            read_file.invoke({"path": "nope.txt", "task": task})

    def test_write_creates_then_updates(self, task, workspace):
        created = write_file.invoke({"path": "docs/plan.md", "content": "a\nb\n", "task": task})
        updated = write_file.invoke({"path": "docs/plan.md", "content": "c\n", "task": task})

        assert created == "Success: Created docs/plan.md (2 lines)"
        assert updated == "Success: Updated docs/plan.md (1 lines)"
        assert (workspace / "docs" / "plan.md").read_text() == "c\n"


class TestEditFile:
    def test_single_replacement(self, task, workspace):
        result = edit_file.invoke(
            {"path": "src/app.py", "old_string": "return 1", "new_string": "return 2", "task": task}
        )

        assert result == "Success: Replaced 1 occurrence(s) in src/app.py"
        assert "return 2" in (workspace / "src" / "app.py").read_text()

    def test_ambiguous_match_requires_replace_all(self, task, workspace):
        (workspace / "dup.txt").write_text("foo\nfoo\n")

        with pytest.raises(ToolExecutionError, match="2 occurrences"):
            edit_file.invoke({"path": "dup.txt", "old_string": "foo", "new_string": "bar", "task": task})

        edit_file.invoke({"path": "dup.txt", "old_string": "foo", "new_string": "bar", "replace_all": True, "task": task})
        assert (workspace / "dup.txt").read_text() == "bar\nbar\n"

    def test_missing_string(self, task):
        with pytest.raises(ToolExecutionError, match="String not found"):
            edit_file.invoke({"path": "src/app.py", "old_string": "absent", "new_string": "x", "task": task})


class TestListAndSearch:
    def test_list_skips_hidden(self, task):
        result = list_files.invoke({"task": task, "recursive": True})

        assert result.splitlines()[:3] == ["README.md", "src/", "src/app.py"]
        assert ".git" not in result

    def test_search_reports_locations(self, task):
        result = search_files.invoke({"pattern": "TODO", "task": task})

        assert result == "src/app.py:4: # TODO: logging"

    def test_search_invalid_regex(self, task):
        with pytest.raises(ToolExecutionError, match="Invalid regular expression"):
            search_files.invoke({"pattern": "(", "task": task})


class TestRunCommand:
    def test_runs_in_workspace(self, task):
        result = run_command.invoke({"command": "ls", "task": task})

        assert "README.md" in result

    def test_nonzero_exit_is_reported(self, task):
        result = run_command.invoke({"command": "exit 3", "task": task})

        assert result.startswith("Command failed (exit code 3)")


class TestFollowupQuestion:
    @pytest.mark.asyncio
    async def test_answer_is_wrapped(self, workspace):
        async def answer(question, options):
            assert options == ["a", "b"]
            return "pick a"

        task = TaskContext(task_id="t1", mode="code", workspace_root=workspace, ask_user=answer)

        result = await ask_followup_question.ainvoke({"question": "Which?", "options": ["a", "b"], "task": task})

        assert result == "<answer>\npick a\n</answer>"

    @pytest.mark.asyncio
    async def test_without_user(self, workspace):
        task = TaskContext(task_id="t1", mode="code", workspace_root=workspace)

        with pytest.raises(ToolExecutionError, match="No user"):
            await ask_followup_question.ainvoke({"question": "Which?", "task": task})
