"""Scripted stand-ins for the model backend and the approval UI."""

from __future__ import annotations

import asyncio
import json
from collections import deque
from typing import Any, AsyncIterator, Dict, Iterable, List, Optional, Sequence, Union

from taskAgent.backends.base import Backend
from taskAgent.hitl.approval import ApprovalKind, ApprovalProvider, ApprovalResponse
from taskAgent.history.messages import ContextMessage, TextBlock, ToolResultBlock, ToolUseBlock
from taskAgent.protocol.chunks import (
    FinishChunk,
    StreamChunk,
    TextChunk,
    ToolCallEnd,
    ToolCallFragment,
    UsageChunk,
)
from taskAgent.utils.cancellation import CancellationToken

Script = Union[List[StreamChunk], BaseException]


def text(value: str) -> List[StreamChunk]:
    return [TextChunk(text=value)]


def tool_call(name: str, arguments: Dict[str, Any], call_id: str, index: int = 0, split: bool = True) -> List[StreamChunk]:
    """Chunks for one native tool call, with the arguments split across two fragments."""
    raw = json.dumps(arguments)
    if split and len(raw) > 2:
        middle = len(raw) // 2
        fragments = [
            ToolCallFragment(index=index, id=call_id, name=name, arguments=raw[:middle]),
            ToolCallFragment(index=index, arguments=raw[middle:]),
        ]
    else:
        fragments = [ToolCallFragment(index=index, id=call_id, name=name, arguments=raw)]
    return fragments + [ToolCallEnd(id=call_id, index=index)]


def response(*parts: List[StreamChunk], usage: Optional[tuple] = None, finish: str = "tool_calls") -> List[StreamChunk]:
    chunks: List[StreamChunk] = [chunk for part in parts for chunk in part]
    if usage is not None:
        chunks.append(UsageChunk(input_tokens=usage[0], output_tokens=usage[1]))
    chunks.append(FinishChunk(reason=finish))
    return chunks


def completion(result: str, call_id: str = "done") -> List[StreamChunk]:
    return response(tool_call("attempt_completion", {"result": result}, call_id))


def build_context(units: int, size: int = 400, errors: Sequence[int] = ()) -> List[ContextMessage]:
    """A task message followed by ``units`` read_file round trips of roughly ``size`` chars per message.

    Round trip ``i`` occupies display indices ``2i + 1`` and ``2i + 2``.
    """
    messages = [ContextMessage(role="user", content=[TextBlock(text="task " + "x" * size)], display_index=0)]
    for i in range(units):
        call_id = f"c{i}"
        messages.append(
            ContextMessage(
                role="assistant",
                content=[TextBlock(text="a" * size), ToolUseBlock(id=call_id, name="read_file", arguments={"path": "f"})],
                display_index=2 * i + 1,
            )
        )
        messages.append(
            ContextMessage(
                role="user",
                content=[ToolResultBlock(tool_use_id=call_id, content="r" * size, is_error=i in errors)],
                display_index=2 * i + 2,
            )
        )
    return messages


class ScriptedBackend(Backend):
    """Plays back one scripted response per request, in order.

    A script entry that is an exception is raised instead of streaming.
    ``gate`` (when set) is awaited before the first chunk of every request,
    which lets a test abort a task mid-request.
    """

    name = "scripted"

    def __init__(
        self,
        scripts: Iterable[Script] = (),
        summaries: Iterable[str] = (),
        context_window: int = 128000,
        model_id: str = "scripted-model",
    ) -> None:
        super().__init__(model_id=model_id, context_window=context_window)
        self.scripts = deque(scripts)
        self.summaries = deque(summaries)
        self.requests: List[Dict[str, Any]] = []
        self.summary_prompts: List[str] = []
        self.gate: Optional[asyncio.Event] = None

    def add(self, *scripts: Script) -> None:
        self.scripts.extend(scripts)

    async def submit(
        self,
        system_prompt: str,
        context: Sequence[ContextMessage],
        tool_schema: List[Dict[str, Any]],
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StreamChunk]:
        self.requests.append({"system_prompt": system_prompt, "context": list(context), "tool_schema": tool_schema})
        if not self.scripts:
            raise AssertionError(f"ScriptedBackend ran out of responses after {len(self.requests) - 1} requests")
        script = self.scripts.popleft()
        if self.gate is not None:
            await self.gate.wait()
        if isinstance(script, BaseException):
            raise script
        for chunk in script:
            await asyncio.sleep(0)
            yield chunk

    async def complete(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        self.summary_prompts.append(prompt)
        if not self.summaries:
            return ""
        return self.summaries.popleft()


class ScriptedApprovalProvider(ApprovalProvider):
    """Answers approvals from per-kind queues, falling back to approving.

    Follow-up questions without a scripted answer get ``default_answer``.
    """

    def __init__(
        self,
        answers: Optional[Dict[ApprovalKind, Iterable[ApprovalResponse]]] = None,
        default_answer: str = "yes",
    ) -> None:
        self.answers = {kind: deque(items) for kind, items in (answers or {}).items()}
        self.default_answer = default_answer
        self.requests: List[tuple] = []

    def queue(self, kind: ApprovalKind, *responses: ApprovalResponse) -> None:
        self.answers.setdefault(kind, deque()).extend(responses)

    def asked(self, kind: ApprovalKind) -> List[Dict[str, Any]]:
        return [payload for k, payload in self.requests if k == kind]

    async def ask(self, kind: ApprovalKind, payload: Dict[str, Any]) -> ApprovalResponse:
        self.requests.append((kind, payload))
        pending = self.answers.get(kind)
        if pending:
            return pending.popleft()
        if kind == ApprovalKind.FOLLOWUP:
            return ApprovalResponse(approved=True, feedback=self.default_answer)
        return ApprovalResponse(approved=True)


class NeverAnsweringProvider(ApprovalProvider):
    """Blocks until cancelled, like a user who walked away."""

    async def ask(self, kind: ApprovalKind, payload: Dict[str, Any]) -> ApprovalResponse:
        await asyncio.Event().wait()
        raise AssertionError("unreachable")
