"""Unit tests for ToolPipeline.

Tests cover:
1. Existence, mode permission and path restriction checks
2. Repetition limit
3. Approval outcomes: approve, reject, feedback, timeout
4. Execution errors, argument errors and timeouts as error results
5. Control tools and cancellation
"""

import asyncio

import pytest
from langchain_core.tools import tool

from taskAgent.config.modes import ModeProvider
from taskAgent.config.settings import GovernanceSettings
from taskAgent.hitl import ApprovalChecker, ApprovalGate, ApprovalKind, ApprovalResponse
from taskAgent.history.messages import ToolInvocation
from taskAgent.protocol import StreamDecoder, ToolCallFragment
from taskAgent.tools import InvocationStatus, RepetitionGuard, TaskContext, ToolMeta, ToolPipeline
from taskAgent.tools.builtin import build_default_registry
from taskAgent.utils.cancellation import CancellationToken, OperationCancelled

from fakes import NeverAnsweringProvider, ScriptedApprovalProvider


@tool
async def sleepy(seconds: float) -> str:
    """Sleep for the given number of seconds."""
    await asyncio.sleep(seconds)
    return "woke up"


@tool
async def flaky_remote(url: str) -> str:
    """Fetch a URL from a remote that never answers."""
    raise TimeoutError(f"upstream {url} did not answer")


MODES = {
    "code": {"name": "Code", "groups": ["read", "edit", "command"]},
    "ask": {"name": "Ask", "groups": ["read"]},
    "planning": {
        "name": "Planning",
        "groups": ["read", "edit"],
        "path_restrictions": [{"pattern": "*.md", "action": "allow", "description": "Markdown only"}],
    },
    "guarded": {
        "name": "Guarded",
        "groups": ["read", "edit"],
        "path_restrictions": [{"pattern": "src/auth.ts", "action": "deny", "description": "auth is frozen"}],
    },
}


@pytest.fixture
def registry():
    registry = build_default_registry()
    registry.register(sleepy, ToolMeta(name="sleepy", group="read"))
    registry.register(flaky_remote, ToolMeta(name="flaky_remote", group="read"))
    return registry


@pytest.fixture
def approvals():
    return ScriptedApprovalProvider()


@pytest.fixture
def make_pipeline(registry, approvals):
    def _make(mode="code", provider=None, timeout=None, tool_timeout=None, threshold=5, **governance):
        modes = ModeProvider(registry, modes=MODES)
        checker = ApprovalChecker.from_settings(GovernanceSettings(**governance))
        gate = ApprovalGate(provider or approvals, timeout_seconds=timeout)
        return ToolPipeline(
            registry=registry,
            mode=modes.resolve(mode),
            approval_checker=checker,
            approval_gate=gate,
            repetition_guard=RepetitionGuard(threshold=threshold),
            tool_timeout=tool_timeout,
        )

    return _make


@pytest.fixture
def context(workspace):
    return TaskContext(task_id="t1", mode="code", workspace_root=workspace)


def call(name, call_id="c1", **arguments):
    return ToolInvocation(id=call_id, name=name, arguments=arguments, is_partial=False)


class TestPermissionChecks:
    @pytest.mark.asyncio
    async def test_read_file_succeeds(self, make_pipeline, context, workspace):
        (workspace / "notes.txt").write_text("hello\nworld\n")

        outcome = await make_pipeline().run(call("read_file", path="notes.txt"), context)

        assert outcome.status == InvocationStatus.SUCCESS
        assert outcome.result.invocation_id == "c1"
        assert "hello" in outcome.result.content
        assert outcome.result.is_error is False
        assert outcome.approval == "auto"

    @pytest.mark.asyncio
    async def test_unknown_tool_lists_available_tools(self, make_pipeline, context):
        outcome = await make_pipeline(mode="ask").run(call("delete_everything"), context)

        assert outcome.status == InvocationStatus.VALIDATION_ERROR
        assert outcome.result.is_error
        assert outcome.result.content.startswith("Error:")
        assert "read_file" in outcome.result.content
        assert "write_file" not in outcome.result.content

    @pytest.mark.asyncio
    async def test_tool_outside_mode_is_rejected(self, make_pipeline, context, workspace):
        outcome = await make_pipeline(mode="ask").run(call("write_file", path="a.txt", content="x"), context)

        assert outcome.status == InvocationStatus.VALIDATION_ERROR
        assert "not allowed in mode 'ask'" in outcome.result.content
        assert not (workspace / "a.txt").exists()

    @pytest.mark.asyncio
    async def test_denied_path_is_never_written(self, make_pipeline, context, workspace, approvals):
        outcome = await make_pipeline(mode="guarded").run(
            call("write_file", path="src/auth.ts", content="export {}"), context
        )

        assert outcome.status == InvocationStatus.VALIDATION_ERROR
        assert "src/auth.ts" in outcome.result.content
        assert outcome.error.pattern == "src/auth.ts"
        assert not (workspace / "src" / "auth.ts").exists()
        assert approvals.requests == []

    @pytest.mark.asyncio
    async def test_planning_mode_only_writes_markdown(self, make_pipeline, context, workspace):
        pipeline = make_pipeline(mode="planning", auto_approve_writes=True)

        allowed = await pipeline.run(call("write_file", "c1", path="docs/plan.md", content="# Plan"), context)
        denied = await pipeline.run(call("write_file", "c2", path="src/main.py", content="print()"), context)

        assert allowed.status == InvocationStatus.SUCCESS
        assert (workspace / "docs" / "plan.md").read_text() == "# Plan"
        assert denied.status == InvocationStatus.VALIDATION_ERROR
        assert "*.md" in denied.result.content
        assert not (workspace / "src" / "main.py").exists()


class TestRepetition:
    @pytest.mark.asyncio
    async def test_sixth_call_in_window_is_refused(self, make_pipeline, context, workspace):
        (workspace / "a.txt").write_text("a")
        pipeline = make_pipeline(threshold=5)

        outcomes = [await pipeline.run(call("read_file", f"c{i}", path="a.txt"), context) for i in range(6)]

        assert [o.status for o in outcomes[:5]] == [InvocationStatus.SUCCESS] * 5
        assert outcomes[5].status == InvocationStatus.REPETITION_LIMIT
        assert outcomes[5].result.is_error
        assert "read_file" in outcomes[5].result.content

    @pytest.mark.asyncio
    async def test_other_tools_are_unaffected(self, make_pipeline, context, workspace):
        (workspace / "a.txt").write_text("a")
        pipeline = make_pipeline(threshold=2)

        for i in range(2):
            await pipeline.run(call("read_file", f"r{i}", path="a.txt"), context)
        outcome = await pipeline.run(call("list_files", "l1"), context)

        assert outcome.status == InvocationStatus.SUCCESS


class TestApproval:
    @pytest.mark.asyncio
    async def test_edit_requires_approval(self, make_pipeline, context, workspace, approvals):
        outcome = await make_pipeline().run(call("write_file", path="a.txt", content="x"), context)

        assert outcome.status == InvocationStatus.SUCCESS
        assert outcome.approval == "approved"
        assert approvals.asked(ApprovalKind.TOOL)[0]["tool"] == "write_file"
        assert (workspace / "a.txt").read_text() == "x"

    @pytest.mark.asyncio
    async def test_rejection_is_not_an_error(self, make_pipeline, context, workspace, approvals):
        approvals.queue(ApprovalKind.TOOL, ApprovalResponse(approved=False))

        outcome = await make_pipeline().run(call("write_file", path="a.txt", content="x"), context)

        assert outcome.status == InvocationStatus.REJECTED
        assert outcome.approval == "rejected"
        assert outcome.result.is_error is False
        assert not outcome.failed
        assert not (workspace / "a.txt").exists()

    @pytest.mark.asyncio
    async def test_feedback_replaces_execution(self, make_pipeline, context, workspace, approvals):
        approvals.queue(ApprovalKind.TOOL, ApprovalResponse(approved=True, feedback="Use notes.md instead"))

        outcome = await make_pipeline().run(call("write_file", path="a.txt", content="x"), context)

        assert outcome.status == InvocationStatus.FEEDBACK
        assert "Use notes.md instead" in outcome.result.content
        assert not (workspace / "a.txt").exists()

    @pytest.mark.asyncio
    async def test_unanswered_approval_times_out_as_rejection(self, make_pipeline, context, workspace):
        pipeline = make_pipeline(provider=NeverAnsweringProvider(), timeout=0.05)

        outcome = await pipeline.run(call("write_file", path="a.txt", content="x"), context)

        assert outcome.status == InvocationStatus.REJECTED
        assert outcome.approval == "timeout"
        assert not (workspace / "a.txt").exists()

    @pytest.mark.asyncio
    async def test_dangerous_command_needs_approval_even_when_auto_approved(self, make_pipeline, context, approvals):
        approvals.queue(ApprovalKind.TOOL, ApprovalResponse(approved=False))
        pipeline = make_pipeline(auto_approve_commands=True)

        outcome = await pipeline.run(call("run_command", command="sudo rm -rf /tmp/x"), context)

        assert outcome.status == InvocationStatus.REJECTED
        assert approvals.asked(ApprovalKind.TOOL)[0]["risk_level"] == "high"


class TestExecutionErrors:
    @pytest.mark.asyncio
    async def test_tool_exception_becomes_error_result(self, make_pipeline, context):
        outcome = await make_pipeline().run(call("read_file", path="missing.txt"), context)

        assert outcome.status == InvocationStatus.EXECUTION_ERROR
        assert outcome.result.is_error
        assert "File not found" in outcome.result.content
        assert outcome.notice.startswith("⚠️ read_file (c1)")

    @pytest.mark.asyncio
    async def test_missing_argument_is_a_validation_error(self, make_pipeline, context):
        outcome = await make_pipeline().run(call("read_file"), context)

        assert outcome.status == InvocationStatus.VALIDATION_ERROR
        assert "path" in outcome.result.content

    @pytest.mark.asyncio
    async def test_slow_tool_times_out(self, make_pipeline, context):
        outcome = await make_pipeline(tool_timeout=0.05).run(call("sleepy", seconds=5), context)

        assert outcome.status == InvocationStatus.EXECUTION_ERROR
        assert "timed out" in outcome.result.content

    @pytest.mark.asyncio
    @pytest.mark.parametrize("tool_timeout", [None, 5.0])
    async def test_timeout_raised_by_tool_is_an_execution_error(self, make_pipeline, context, tool_timeout):
        outcome = await make_pipeline(tool_timeout=tool_timeout).run(call("flaky_remote", url="http://api"), context)

        assert outcome.status == InvocationStatus.EXECUTION_ERROR
        assert outcome.result.content == "Error: Tool 'flaky_remote' failed: upstream http://api did not answer"
        assert "timed out after" not in outcome.result.content

    @pytest.mark.asyncio
    async def test_escaping_path_is_refused(self, make_pipeline, context):
        outcome = await make_pipeline().run(call("read_file", path="../secrets.txt"), context)

        assert outcome.status == InvocationStatus.EXECUTION_ERROR
        assert "Access denied" in outcome.result.content


class TestControlAndCancellation:
    @pytest.mark.asyncio
    async def test_completion_is_validated_not_executed(self, make_pipeline, context, approvals):
        outcome = await make_pipeline().run(call("attempt_completion", result="All done"), context)

        assert outcome.status == InvocationStatus.CONTROL
        assert approvals.requests == []

    @pytest.mark.asyncio
    async def test_completion_without_result_fails_validation(self, make_pipeline, context):
        outcome = await make_pipeline().run(call("attempt_completion"), context)

        assert outcome.status == InvocationStatus.VALIDATION_ERROR
        assert "result" in outcome.result.content

    def test_parse_failure_keeps_call_id(self, make_pipeline):
        decoder = StreamDecoder()
        decoder.feed(ToolCallFragment(index=0, id="broken", name="read_file", arguments='{"path": '))
        finalized = decoder.end("broken")

        outcome = make_pipeline().parse_failure(finalized)

        assert outcome.status == InvocationStatus.PARSE_ERROR
        assert outcome.invocation.id == "broken"
        assert outcome.result.invocation_id == "broken"
        assert outcome.result.is_error

    @pytest.mark.asyncio
    async def test_abort_interrupts_running_tool(self, make_pipeline, context):
        token = CancellationToken()
        pipeline = make_pipeline()

        async def abort_soon():
            await asyncio.sleep(0.05)
            token.cancel("user abort")

        asyncio.get_running_loop().create_task(abort_soon())
        with pytest.raises(OperationCancelled):
            await pipeline.run(call("sleepy", seconds=5), context, token)

    @pytest.mark.asyncio
    async def test_todo_tool_updates_task_todos(self, make_pipeline, context):
        todos = [{"content": "step one", "status": "in_progress"}, {"content": "step two", "status": "pending"}]

        outcome = await make_pipeline().run(call("todo_write", todos=todos), context)

        assert outcome.status == InvocationStatus.SUCCESS
        assert [t.content for t in context.todos] == ["step one", "step two"]
