"""Integration tests for the task loop: request, decode, tools, commit, lifecycle.

Each test drives a real runtime (tool registry, pipeline, SQLite store) with a
ScriptedBackend in place of the model.
"""

import asyncio

import pytest

from taskAgent.hitl import ApprovalKind, ApprovalResponse
from taskAgent.history import TextBlock, ToolResultBlock
from taskAgent.protocol.chunks import ToolCallEnd, ToolCallFragment
from taskAgent.runtime import TaskState
from taskAgent.runtime.events import EventType
from taskAgent.runtime.orchestrator import NO_TOOLS_USED
from taskAgent.utils.error_handler import BackendError

from fakes import completion, response, text, tool_call


def events_of(services, task_id, event_type):
    return [e.payload for e in services.events.drain() if e.type == event_type and e.task_id == task_id]


def last_user_blocks(request):
    return request["context"][-1].content


class TestCompletion:
    @pytest.mark.asyncio
    async def test_write_then_complete(self, make_runtime, workspace):
        services, backend, provider = make_runtime([
            response(text("Writing the notes."), tool_call("write_file", {"path": "notes.md", "content": "hi"}, "w1")),
            completion("Wrote notes.md"),
        ])
        orchestrator = services.tasks.create_task("Write notes.md")

        result = await orchestrator.run()

        assert result.completed
        assert result.result == "Wrote notes.md"
        assert (workspace / "notes.md").read_text() == "hi"
        assert len(provider.asked(ApprovalKind.TOOL)) == 1
        review = provider.asked(ApprovalKind.COMPLETION)[0]
        assert review["result"] == "Wrote notes.md"
        assert review["is_child_task"] is False

        display = orchestrator.history.committed_display
        assert [m.role for m in display] == ["user", "assistant", "user", "assistant", "user"]
        assert display[2].content[0].content.startswith("Success: Created notes.md")

        states = events_of(services, orchestrator.task.task_id, EventType.STATE_CHANGED)
        assert [s["to_state"] for s in states] == ["initializing", "active", "completed"]

        stored = services.store.load(orchestrator.task.task_id)
        assert stored.metadata["state"] == "completed"
        assert len(stored.display) == 5

    @pytest.mark.asyncio
    async def test_first_request_carries_task_and_tools(self, make_runtime):
        services, backend, _ = make_runtime([completion("done")])

        await services.tasks.create_task("Say hello", mode="ask").run()

        request = backend.requests[0]
        assert request["context"][0].content[0].text == "<task>\nSay hello\n</task>"
        names = {schema["function"]["name"] for schema in request["tool_schema"]}
        assert "read_file" in names
        assert "write_file" not in names
        assert "**Ask** mode" in request["system_prompt"]

    @pytest.mark.asyncio
    async def test_completion_feedback_keeps_task_running(self, make_runtime):
        services, backend, provider = make_runtime([completion("v1", "c1"), completion("v2", "c2")])
        provider.queue(ApprovalKind.COMPLETION, ApprovalResponse(approved=True, feedback="Add a summary"))
        orchestrator = services.tasks.create_task("Draft a reply")

        result = await orchestrator.run()

        assert result.result == "v2"
        feedback = last_user_blocks(backend.requests[1])[0]
        assert isinstance(feedback, ToolResultBlock)
        assert not feedback.is_error
        assert "<feedback>\nAdd a summary\n</feedback>" in feedback.content

    @pytest.mark.asyncio
    async def test_rejected_completion(self, make_runtime):
        services, backend, provider = make_runtime([completion("v1", "c1"), completion("v2", "c2")])
        provider.queue(ApprovalKind.COMPLETION, ApprovalResponse(approved=False))

        result = await services.tasks.create_task("Draft a reply").run()

        assert result.result == "v2"
        assert "did not accept the result" in last_user_blocks(backend.requests[1])[0].content

    @pytest.mark.asyncio
    async def test_calls_after_completion_are_skipped(self, make_runtime):
        services, _, _ = make_runtime([
            response(
                tool_call("attempt_completion", {"result": "done"}, "c1", index=0),
                tool_call("todo_read", {}, "r1", index=1),
            ),
        ])
        orchestrator = services.tasks.create_task("Finish up")

        result = await orchestrator.run()

        assert result.completed
        answer = orchestrator.history.committed_display[-1].content
        assert answer[0].content == "The user accepted the result."
        assert answer[1].content == "Skipped: attempt_completion was called earlier in this turn"

    @pytest.mark.asyncio
    async def test_open_todos_block_completion(self, make_runtime):
        services, backend, provider = make_runtime([
            response(tool_call("todo_write", {"todos": [{"content": "Fix parser", "status": "in_progress"}]}, "t1")),
            completion("done", "c1"),
            response(tool_call("todo_write", {"todos": [{"content": "Fix parser", "status": "completed"}]}, "t2")),
            completion("done", "c2"),
        ])
        orchestrator = services.tasks.create_task("Fix the parser")

        result = await orchestrator.run()

        assert result.completed
        blocked = last_user_blocks(backend.requests[2])[0]
        assert blocked.is_error
        assert blocked.content.startswith("Completion is blocked:")
        assert "'Fix parser' (in_progress)" in blocked.content
        assert len(provider.asked(ApprovalKind.COMPLETION)) == 1
        assert [t.status for t in orchestrator.task.todos] == ["completed"]


class TestMistakes:
    @pytest.mark.asyncio
    async def test_text_only_response_gets_a_reminder(self, make_runtime):
        services, backend, _ = make_runtime([
            response(text("I think it is done."), finish="stop"),
            completion("done"),
        ])
        orchestrator = services.tasks.create_task("Check the build")

        result = await orchestrator.run()

        assert result.completed
        reminder = last_user_blocks(backend.requests[1])
        assert reminder == [TextBlock(text=NO_TOOLS_USED)]
        notices = events_of(services, orchestrator.task.task_id, EventType.NOTICE)
        assert {"message": "The model responded without using a tool"} in notices

    @pytest.mark.asyncio
    async def test_parse_failure_is_fed_back(self, make_runtime):
        broken = [
            ToolCallFragment(index=0, id="bad", name="read_file", arguments='{"path": '),
            ToolCallEnd(id="bad", index=0),
        ]
        services, backend, _ = make_runtime([response(broken), completion("done")])

        result = await services.tasks.create_task("Read a file").run()

        assert result.completed
        error = last_user_blocks(backend.requests[1])[0]
        assert error.tool_use_id == "bad"
        assert error.is_error
        assert error.content.startswith("Error: Could not parse arguments for tool call bad (read_file)")

    @pytest.mark.asyncio
    async def test_deeply_nested_arguments_are_a_parse_failure(self, make_runtime):
        nested = [
            ToolCallFragment(index=0, id="deep", name="read_file", arguments='{"path": ' + "[" * 50000),
            ToolCallEnd(id="deep", index=0),
        ]
        services, backend, _ = make_runtime([response(nested), completion("done")])

        result = await services.tasks.create_task("Read a file").run()

        assert result.completed
        error = last_user_blocks(backend.requests[1])[0]
        assert error.tool_use_id == "deep"
        assert error.is_error
        assert error.content.startswith("Error: Could not parse arguments for tool call deep (read_file)")

    @pytest.mark.asyncio
    async def test_mistake_limit_asks_for_guidance(self, make_runtime):
        services, backend, provider = make_runtime(
            [
                response(text("Thinking."), finish="stop"),
                response(text("Still thinking."), finish="stop"),
                completion("done"),
            ],
            governance={"consecutive_mistake_limit": 2},
        )
        provider.queue(ApprovalKind.MISTAKE_LIMIT, ApprovalResponse(approved=True, feedback="Use read_file first"))
        orchestrator = services.tasks.create_task("Investigate")

        result = await orchestrator.run()

        assert result.completed
        assert provider.asked(ApprovalKind.MISTAKE_LIMIT)[0]["count"] == 2
        texts = [b.text for b in last_user_blocks(backend.requests[2])]
        assert texts == [NO_TOOLS_USED, "<user_guidance>\nUse read_file first\n</user_guidance>"]

    @pytest.mark.asyncio
    async def test_mistake_limit_rejection_pauses(self, make_runtime):
        services, backend, provider = make_runtime(
            [response(text("Hmm."), finish="stop")],
            governance={"consecutive_mistake_limit": 1},
        )
        provider.queue(ApprovalKind.MISTAKE_LIMIT, ApprovalResponse(approved=False))

        result = await services.tasks.create_task("Investigate").run()

        assert result.state == TaskState.PAUSED
        assert len(backend.requests) == 1


class TestStopping:
    @pytest.mark.asyncio
    async def test_turn_limit_abandons_task(self, make_runtime):
        services, backend, _ = make_runtime(
            [
                response(tool_call("todo_read", {}, "r1")),
                response(tool_call("todo_read", {}, "r2")),
            ],
            governance={"max_turns": 2},
        )
        orchestrator = services.tasks.create_task("Loop forever")

        result = await orchestrator.run()

        assert result.state == TaskState.ABANDONED
        assert orchestrator.task.turns == 2
        assert len(backend.requests) == 2
        notices = events_of(services, orchestrator.task.task_id, EventType.NOTICE)
        assert {"message": "Turn limit of 2 reached"} in notices

    @pytest.mark.asyncio
    async def test_abort_during_request(self, make_runtime):
        services, backend, _ = make_runtime([completion("never delivered")])
        backend.gate = asyncio.Event()
        orchestrator = services.tasks.create_task("Wait")

        running = asyncio.ensure_future(orchestrator.run())
        while not backend.requests:
            await asyncio.sleep(0)
        orchestrator.abort("user pressed stop")
        result = await running

        assert result.state == TaskState.ABORTED
        assert not orchestrator.history.is_streaming
        assert len(orchestrator.history.display) == 1
        assert services.store.load(orchestrator.task.task_id).metadata["state"] == "aborted"

    @pytest.mark.asyncio
    async def test_abort_before_run(self, make_runtime):
        services, backend, _ = make_runtime()
        orchestrator = services.tasks.create_task("Never started")

        orchestrator.abort()
        result = await orchestrator.run()

        assert result.state == TaskState.ABORTED
        assert backend.requests == []

    @pytest.mark.asyncio
    async def test_terminal_task_does_not_run_again(self, make_runtime):
        services, backend, _ = make_runtime([completion("done")])
        orchestrator = services.tasks.create_task("Once")
        await orchestrator.run()

        result = await orchestrator.run()

        assert result.completed
        assert len(backend.requests) == 1


class TestRequestFailures:
    @pytest.mark.asyncio
    async def test_transient_failure_is_retried(self, make_runtime):
        services, backend, provider = make_runtime([BackendError("Rate limited"), completion("done")])
        orchestrator = services.tasks.create_task("Retry me")

        result = await orchestrator.run()

        assert result.completed
        assert len(backend.requests) == 2
        assert provider.asked(ApprovalKind.RETRY) == []
        notices = events_of(services, orchestrator.task.task_id, EventType.NOTICE)
        assert {"message": "Request failed, retrying (1/2)"} in notices

    @pytest.mark.asyncio
    async def test_empty_response_counts_as_failure(self, make_runtime):
        services, backend, _ = make_runtime([response(finish="stop"), completion("done")])

        result = await services.tasks.create_task("Say something").run()

        assert result.completed
        assert len(backend.requests) == 2

    @pytest.mark.asyncio
    async def test_user_can_decline_retry_and_resume_later(self, make_runtime):
        services, backend, provider = make_runtime(
            [BackendError("boom", user_message="The provider is unavailable")],
            backend={"request_retry_limit": 0},
        )
        provider.queue(ApprovalKind.RETRY, ApprovalResponse(approved=False))
        orchestrator = services.tasks.create_task("Flaky")

        result = await orchestrator.run()

        assert result.state == TaskState.PAUSED
        assert result.error == "The provider is unavailable"
        assert provider.asked(ApprovalKind.RETRY)[0]["error"] == "The provider is unavailable"

        backend.add(completion("done"))
        resumed = await orchestrator.run()

        assert resumed.completed
        assert len(orchestrator.history.committed_display) == 3


class TestUsageAndProtocols:
    @pytest.mark.asyncio
    async def test_usage_is_reported(self, make_runtime):
        services, _, _ = make_runtime([
            response(tool_call("attempt_completion", {"result": "done"}, "c1"), usage=(1200, 40)),
        ])
        orchestrator = services.tasks.create_task("Count tokens")

        await orchestrator.run()

        usage = events_of(services, orchestrator.task.task_id, EventType.USAGE)
        assert usage[0]["input_tokens"] == 1200
        assert usage[0]["output_tokens"] == 40
        assert usage[0]["level"] == "normal"

    @pytest.mark.asyncio
    async def test_xml_protocol(self, make_runtime, workspace):
        services, backend, _ = make_runtime([
            response(
                text("I'll write it.\n<write_file>\n<path>a.txt</path>\n<content>hello</content>\n</write_file>"),
                finish="stop",
            ),
            response(text("<attempt_completion>\n<result>Done</result>\n</attempt_completion>"), finish="stop"),
        ])
        orchestrator = services.tasks.create_task("Write a.txt", protocol="xml")

        result = await orchestrator.run()

        assert result.completed
        assert result.result == "Done"
        assert (workspace / "a.txt").read_text() == "hello"
        first, second = backend.requests
        assert first["tool_schema"] == []
        assert "# Tool use" in first["system_prompt"]
        blocks = [block for message in second["context"] for block in message.content]
        assert all(isinstance(block, TextBlock) for block in blocks)
        assert any(block.text.startswith("[write_file result]\nSuccess: Created a.txt") for block in blocks)

    @pytest.mark.asyncio
    async def test_xml_protocol_writes_json_content_verbatim(self, make_runtime, workspace):
        manifest = '{\n  "name": "demo",\n  "private": true\n}'
        services, backend, _ = make_runtime([
            response(
                text(f"<write_file>\n<path>package.json</path>\n<content>\n{manifest}\n</content>\n</write_file>"),
                finish="stop",
            ),
            response(text("<write_file>\n<path>VERSION</path>\n<content>42</content>\n</write_file>"), finish="stop"),
            response(text("<attempt_completion>\n<result>Done</result>\n</attempt_completion>"), finish="stop"),
        ])
        orchestrator = services.tasks.create_task("Create package.json", protocol="xml")

        result = await orchestrator.run()

        assert result.completed
        assert (workspace / "package.json").read_text() == manifest
        assert (workspace / "VERSION").read_text() == "42"
        results = [m.content[0] for m in orchestrator.history.committed_display if m.role == "user"][1:3]
        assert not any(block.is_error for block in results)
