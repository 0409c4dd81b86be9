"""Task orchestrator: the per-task loop.

One orchestrator drives one Task through

    fit context -> request -> decode stream -> run tools -> commit -> persist

until the task completes, is aborted, is abandoned at the turn limit or is
paused waiting for the user. Delegation spawns a child orchestrator through
the TaskRegistry; the parent only ever sees the child's result as a
synthetic ToolResult.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Tuple

from taskAgent.backends.base import Backend
from taskAgent.config.modes import Mode
from taskAgent.context.compressor import ConversationSummarizer
from taskAgent.context.manager import ContextWindowManager
from taskAgent.context.token_tracker import (
    ContextBudget,
    TokenTracker,
    TokenUsage,
    estimate_text_tokens,
    get_context_window,
)
from taskAgent.hitl.approval import ApprovalKind
from taskAgent.history.manager import AssistantTurn, HistoryManager
from taskAgent.history.messages import ContextMessage, ToolInvocation, ToolResult
from taskAgent.protocol.chunks import (
    FinishChunk,
    TextChunk,
    ToolCallEnd,
    ToolCallFragment,
    ToolProtocol,
    UsageChunk,
)
from taskAgent.protocol.decoder import StreamDecoder, ToolCallDelta, ToolCallFinalized, ToolCallStarted
from taskAgent.protocol.xml_parser import XmlToolCallParser, as_text_protocol
from taskAgent.runtime.events import EventType
from taskAgent.runtime.prompts import build_system_prompt
from taskAgent.runtime.task import Task, TaskState
from taskAgent.tools.builtin import COMPLETION_TOOL, DELEGATION_TOOL
from taskAgent.tools.context import TaskContext
from taskAgent.tools.pipeline import InvocationStatus, ToolOutcome, ToolPipeline
from taskAgent.tools.repetition import RepetitionGuard
from taskAgent.utils.cancellation import CancellationToken, OperationCancelled
from taskAgent.utils.error_handler import (
    BackendError,
    BudgetExceededError,
    CompletionBlockedError,
    HistoryInconsistencyError,
    TaskAgentError,
    TaskInitializationError,
    TaskPersistenceError,
)
from taskAgent.utils.logging_utils import log_error, log_prompt

if TYPE_CHECKING:
    from taskAgent.runtime.app import RuntimeServices

LOGGER = logging.getLogger(__name__)

NO_TOOLS_USED = (
    "[ERROR] You did not use a tool in your previous response. Every response must call a tool. "
    f"If the task is done, call {COMPLETION_TOOL}; if you need input from the user, call ask_followup_question."
)
RESUMPTION_NOTE = (
    "[TASK RESUMPTION] This task was interrupted. The workspace may have changed since; "
    "re-check the current state before continuing."
)
MAX_RETRY_PROMPTS = 3


@dataclass
class TaskRunResult:
    task_id: str
    state: TaskState
    result: Optional[str] = None
    error: Optional[str] = None

    @property
    def completed(self) -> bool:
        return self.state == TaskState.COMPLETED


@dataclass
class StreamedResponse:
    """One fully drained backend response."""

    text: str
    finalized: List[ToolCallFinalized] = field(default_factory=list)
    finish_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None


def turn_to_dict(turn: AssistantTurn, results: Dict[str, ToolResult], notices: Sequence[str], approvals: Dict[str, str]) -> Dict[str, Any]:
    return {
        "text": turn.text,
        "finish_reason": turn.finish_reason,
        "invocations": [{"id": i.id, "name": i.name, "arguments": i.arguments} for i in turn.invocations],
        "results": [
            {"invocation_id": r.invocation_id, "content": r.content, "is_error": r.is_error}
            for r in results.values()
        ],
        "notices": list(notices),
        "approvals": dict(approvals),
    }


def turn_from_dict(data: Dict[str, Any]) -> Tuple[AssistantTurn, Dict[str, ToolResult], List[str], Dict[str, str]]:
    turn = AssistantTurn(
        text=data.get("text", ""),
        invocations=[
            ToolInvocation(id=i["id"], name=i["name"], arguments=i.get("arguments") or {}, is_partial=False)
            for i in data.get("invocations", [])
        ],
        finish_reason=data.get("finish_reason"),
    )
    results = {
        r["invocation_id"]: ToolResult(r["invocation_id"], r.get("content", ""), bool(r.get("is_error")))
        for r in data.get("results", [])
    }
    return turn, results, list(data.get("notices") or []), dict(data.get("approvals") or {})


class TaskOrchestrator:
    """Drives one Task. Not safe to run concurrently with itself."""

    def __init__(
        self,
        task: Task,
        services: "RuntimeServices",
        history: Optional[HistoryManager] = None,
        initial_message: Optional[str] = None,
        backend: Optional[Backend] = None,
        usage: Optional[Dict[str, int]] = None,
    ) -> None:
        self.task = task
        self.services = services
        self.settings = services.settings
        self.history = history or HistoryManager()
        self.initial_message = initial_message
        self.backend = backend
        self._saved_usage = usage or {}
        self.cancel_token = CancellationToken()

        self.mode: Optional[Mode] = None
        self.pipeline: Optional[ToolPipeline] = None
        self.context_manager: Optional[ContextWindowManager] = None
        self.tracker: Optional[TokenTracker] = None
        self.budget: Optional[ContextBudget] = None
        self.tool_context: Optional[TaskContext] = None

        self._background_runs: Dict[str, asyncio.Task] = {}
        self._resumed = not self.history.is_empty()
        self._running = False

    # ========== Public API ==========

    async def run(self) -> TaskRunResult:
        """Run until the task completes, pauses or stops.

        Never raises for task-level failures; the outcome is in the returned
        result and in ``task.state``.
        """
        if self._running:
            raise RuntimeError(f"Task {self.task.task_id} is already running")
        if self.task.is_terminal:
            return self._run_result()

        self._running = True
        try:
            if self.task.state in (TaskState.CREATED, TaskState.ERROR_SUSPENDED):
                await self._initialize()
            elif self.task.state == TaskState.PAUSED and not self.task.pending_child_id:
                self._attach_background_children()
                self._transition(TaskState.ACTIVE, "resumed by user")

            if self.task.state == TaskState.PAUSED and self.task.pending_child_id:
                await self._resume_delegation()

            await self._loop()
        except OperationCancelled as e:
            self._handle_abort(e.reason)
        except (TaskPersistenceError, HistoryInconsistencyError) as e:
            self._suspend(e)
        except TaskInitializationError as e:
            self._suspend(e, persist=True)
        finally:
            self._running = False
        if self.task.state != TaskState.COMPLETED:
            await self._stop_background_children()
        return self._run_result()

    def abort(self, reason: str = "aborted by user") -> None:
        """Request cancellation. Children of this task are aborted too."""
        LOGGER.info(f"Abort requested for task {self.task.task_id}: {reason}")
        self.cancel_token.cancel(reason)
        child_ids = list(self.task.background_children)
        if self.task.pending_child_id:
            child_ids.append(self.task.pending_child_id)
        for child_id in child_ids:
            child = self.services.tasks.get_orchestrator(child_id)
            if child is not None:
                child.abort(f"parent task {self.task.task_id} aborted")
        if not self._running and not self.task.is_terminal:
            self._handle_abort(reason)

    # ========== Lifecycle ==========

    async def _initialize(self) -> None:
        self._transition(TaskState.INITIALIZING, "resuming" if self._resumed else "starting", persist=False)
        try:
            self._set_up()
        except (OperationCancelled, TaskPersistenceError):
            raise
        except Exception as e:
            raise TaskInitializationError(self.task.task_id, e) from e

        self._attach_background_children()

        if self.task.pending_child_id:
            self._transition(TaskState.PAUSED, "waiting on child task")
        else:
            self._transition(TaskState.ACTIVE)

    def _set_up(self) -> None:
        """Resolve the mode and backend and build the per-task collaborators."""
        self.mode = self.services.mode_provider.resolve(self.task.mode)
        if self.backend is None:
            self.backend = self.services.backend_registry.create(self.settings.backend, self.task.provider)

        governance = self.settings.governance
        context_settings = self.settings.context
        self.pipeline = ToolPipeline(
            registry=self.services.tool_registry,
            mode=self.mode,
            approval_checker=self.services.approval_checker,
            approval_gate=self.services.approval_gate,
            repetition_guard=RepetitionGuard(
                threshold=governance.repetition_threshold,
                window_size=governance.repetition_window_size,
                window_seconds=governance.repetition_window_seconds,
            ),
            tool_timeout=governance.tool_timeout_seconds,
        )
        self.context_manager = ContextWindowManager(
            context_settings,
            ConversationSummarizer(
                self.backend,
                max_tokens=context_settings.summary_max_tokens,
                chars_per_token=context_settings.chars_per_token,
            ),
        )
        window = self.backend.context_window or get_context_window(self.backend.model_id, self.settings.backend.context_window)
        self.budget = ContextBudget.for_window(window, self.settings.backend.max_tokens, context_settings.token_buffer_ratio)
        self.tracker = TokenTracker(context_settings, window)
        if self._saved_usage:
            self.tracker.restore(self._saved_usage)
        self.tool_context = TaskContext(
            task_id=self.task.task_id,
            mode=self.task.mode,
            workspace_root=self.services.workspace_root,
            todos=self.task.todos,
            ask_user=self._ask_user,
        )

        if self.history.is_empty():
            if not self.initial_message:
                raise ValueError(f"Task {self.task.task_id} has no history and no initial message")
            self.history.append_user_message(f"<task>\n{self.initial_message}\n</task>")
        elif not self.task.pending_child_id:
            self.history.inject_user_note(RESUMPTION_NOTE)

    async def _loop(self) -> None:
        governance = self.settings.governance
        while self.task.state == TaskState.ACTIVE:
            self.cancel_token.raise_if_cancelled()

            notes = await self._collect_background_children(block=False)
            if notes:
                self.history.inject_user_note("\n\n".join(notes))
                self._persist()

            if self.task.turns >= governance.max_turns:
                self._emit(EventType.NOTICE, message=f"Turn limit of {governance.max_turns} reached")
                self._transition(TaskState.ABANDONED, f"turn limit {governance.max_turns} reached")
                break

            await self._run_turn()

    async def _run_turn(self) -> None:
        system_prompt, tool_schema = self._build_request()
        context = await self._fit_context(system_prompt, tool_schema)
        if context is None:
            return

        if self.task.protocol == ToolProtocol.XML:
            context = as_text_protocol(context)

        response = await self._request_with_retry(system_prompt, context, tool_schema)
        if response is None:
            return

        if response.usage is not None:
            status = self.tracker.record(response.usage)
            self._emit(
                EventType.USAGE,
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
                level=status.level,
                ratio=status.usage_ratio,
            )
            if status.message and status.level in ("warning", "critical"):
                self._emit(EventType.NOTICE, message=status.message)

        await self._execute_turn(response)

    # ========== Request ==========

    def _build_request(self) -> Tuple[str, List[Dict[str, Any]]]:
        can_delegate = self.task.depth < self.settings.governance.max_delegation_depth
        system_prompt = build_system_prompt(self.task, self.mode, self.services.tool_registry, can_delegate=can_delegate)
        log_prompt(LOGGER, self.task.task_id, system_prompt, self.settings.observability.log_prompt_max_length)
        if self.task.protocol == ToolProtocol.XML:
            return system_prompt, []
        return system_prompt, self.services.tool_registry.tool_schemas(self.mode.allowed_tools)

    async def _fit_context(self, system_prompt: str, tool_schema: List[Dict[str, Any]]) -> Optional[List[ContextMessage]]:
        cpt = self.settings.context.chars_per_token
        overhead = estimate_text_tokens(system_prompt, cpt) + estimate_text_tokens(json.dumps(tool_schema), cpt)
        prompts = 0
        while True:
            try:
                report = await self.context_manager.fit(self.history.context, self.budget, overhead, self.cancel_token)
            except BudgetExceededError as e:
                prompts += 1
                if prompts <= MAX_RETRY_PROMPTS and await self._ask_retry(e):
                    continue
                self._pause_after_failure(e)
                return None

            if report.changed:
                self.history.replace_context(report.messages)
                self._emit(
                    EventType.CONTEXT_REDUCED,
                    strategies=report.strategies,
                    before_tokens=report.before_tokens,
                    after_tokens=report.after_tokens,
                )
                self._persist()
            return report.messages

    async def _request_with_retry(
        self,
        system_prompt: str,
        context: List[ContextMessage],
        tool_schema: List[Dict[str, Any]],
    ) -> Optional[StreamedResponse]:
        limit = self.settings.backend.request_retry_limit
        base_delay = self.settings.backend.request_retry_delay_seconds
        attempt = 0
        prompts = 0
        while True:
            self.cancel_token.raise_if_cancelled()
            try:
                return await self._request(system_prompt, context, tool_schema)
            except BackendError as e:
                attempt += 1
                if attempt <= limit:
                    delay = base_delay * (2 ** (attempt - 1))
                    LOGGER.warning(f"Request failed ({e}); retry {attempt}/{limit} in {delay:.1f}s")
                    self._emit(EventType.NOTICE, message=f"Request failed, retrying ({attempt}/{limit})")
                    await self.cancel_token.race(asyncio.sleep(delay))
                    continue
                prompts += 1
                if prompts <= MAX_RETRY_PROMPTS and await self._ask_retry(e):
                    attempt = 0
                    continue
                self._pause_after_failure(e)
                return None

    async def _request(
        self,
        system_prompt: str,
        context: List[ContextMessage],
        tool_schema: List[Dict[str, Any]],
    ) -> StreamedResponse:
        """Stream one response to completion.

        Raises:
            BackendError: The provider failed or returned nothing
            OperationCancelled: The task was aborted mid-stream
        """
        decoder = StreamDecoder()
        xml_parser = None
        if self.task.protocol == ToolProtocol.XML:
            registry = self.services.tool_registry
            xml_parser = XmlToolCallParser(
                self.mode.allowed_tools,
                {name: registry.text_arguments(name) for name in self.mode.allowed_tools},
            )
        response = StreamedResponse(text="")
        text_parts: List[str] = []

        self.history.begin_partial()
        stream = self.backend.submit(system_prompt, context, tool_schema, self.cancel_token)
        iterator = stream.__aiter__()
        try:
            while True:
                try:
                    chunk = await self.cancel_token.race(iterator.__anext__())
                except StopAsyncIteration:
                    break

                if isinstance(chunk, TextChunk):
                    text = chunk.text
                    if xml_parser is not None:
                        text, tool_chunks = xml_parser.feed(text)
                        for tool_chunk in tool_chunks:
                            self._decode(decoder, tool_chunk, response)
                    if text:
                        text_parts.append(text)
                        self._emit(EventType.TEXT_DELTA, text=text)
                elif isinstance(chunk, (ToolCallFragment, ToolCallEnd)):
                    self._decode(decoder, chunk, response)
                elif isinstance(chunk, UsageChunk):
                    response.usage = TokenUsage(chunk.input_tokens, chunk.output_tokens)
                elif isinstance(chunk, FinishChunk):
                    response.finish_reason = chunk.reason

                self.history.update_partial(
                    "".join(text_parts),
                    [f.invocation for f in response.finalized if f.ok] + decoder.partial_invocations(),
                )

            if xml_parser is not None:
                text, tool_chunks = xml_parser.flush()
                if text:
                    text_parts.append(text)
                    self._emit(EventType.TEXT_DELTA, text=text)
                for tool_chunk in tool_chunks:
                    self._decode(decoder, tool_chunk, response)
            response.finalized.extend(decoder.finish())
        except BaseException:
            dropped = decoder.reset()
            self.history.discard_partial()
            if dropped:
                LOGGER.info(f"Dropped {dropped} in-flight tool call(s) for task {self.task.task_id}")
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                try:
                    await aclose()
                except Exception as e:
                    LOGGER.debug(f"Error closing backend stream: {e}")
            raise

        self.history.discard_partial()
        response.text = "".join(text_parts).strip()
        if not response.text and not response.finalized:
            raise BackendError("The model returned an empty response")
        return response

    def _decode(self, decoder: StreamDecoder, chunk, response: StreamedResponse) -> None:
        if isinstance(chunk, ToolCallEnd):
            finalized = decoder.end(chunk.id, chunk.index)
            if finalized is not None:
                response.finalized.append(finalized)
            return
        for event in decoder.feed(chunk):
            if isinstance(event, ToolCallStarted):
                self._emit(EventType.TOOL_STARTED, invocation_id=event.id, tool=event.name)
            elif isinstance(event, ToolCallDelta):
                self._emit(EventType.TOOL_DELTA, invocation_id=event.id, fragment=event.fragment)

    # ========== Tool execution and commit ==========

    async def _execute_turn(self, response: StreamedResponse) -> None:
        outcomes: List[ToolOutcome] = []
        control: Optional[ToolOutcome] = None
        for finalized in response.finalized:
            if not finalized.ok:
                outcome = self.pipeline.parse_failure(finalized)
            elif control is not None:
                outcome = self.pipeline.skipped(finalized.invocation, f"{control.invocation.name} was called earlier in this turn")
            else:
                outcome = await self.pipeline.run(finalized.invocation, self.tool_context, self.cancel_token)
                if outcome.status == InvocationStatus.CONTROL:
                    control = outcome
            outcomes.append(outcome)
            self._emit(
                EventType.TOOL_FINISHED,
                invocation_id=outcome.invocation.id,
                tool=outcome.invocation.name,
                status=outcome.status.value,
                is_error=outcome.result.is_error,
            )

        turn = AssistantTurn(
            text=response.text,
            invocations=[o.invocation for o in outcomes],
            finish_reason=response.finish_reason,
        )
        results: Dict[str, ToolResult] = {o.invocation.id: o.result for o in outcomes}
        notices = [o.notice for o in outcomes if o.notice]
        approvals = {o.invocation.id: o.approval for o in outcomes if o.approval}
        user_text: List[str] = []
        failed = any(o.failed for o in outcomes)
        mistake = failed

        if not outcomes:
            user_text.append(NO_TOOLS_USED)
            notices.append("The model responded without using a tool")
            mistake = True

        completed = False
        if control is not None and control.invocation.name == COMPLETION_TOOL:
            result, completed, extra_text = await self._attempt_completion(control.invocation, failed)
            results[result.invocation_id] = result
            user_text.extend(extra_text)
            if result.is_error:
                notices.append(f"⚠️ {result.content}")
                mistake = True
        elif control is not None and control.invocation.name == DELEGATION_TOOL:
            result = await self._delegate(control.invocation, turn, results, notices, approvals)
            if result is None:
                return
            results[result.invocation_id] = result
            mistake = mistake or result.is_error

        self._commit(turn, results, user_text, notices, approvals)

        if completed:
            self.task.result = control.invocation.arguments.get("result", "")
            self._transition(TaskState.COMPLETED, "result accepted")
            return

        self.task.consecutive_mistakes = self.task.consecutive_mistakes + 1 if mistake else 0
        if self.task.consecutive_mistakes >= self.settings.governance.consecutive_mistake_limit:
            await self._handle_mistake_limit()

    def _commit(
        self,
        turn: AssistantTurn,
        results: Dict[str, ToolResult],
        user_text: Sequence[str],
        notices: Sequence[str],
        approvals: Dict[str, str],
    ) -> None:
        turn_number = self.history.commit_turn(
            turn,
            [results[i.id] for i in turn.invocations],
            user_text=user_text,
            notices=notices,
            approvals=approvals,
        )
        self.task.turns += 1
        self._emit(
            EventType.TURN_COMMITTED,
            turn=turn_number,
            invocations=len(turn.invocations),
            errors=sum(1 for r in results.values() if r.is_error),
        )
        for notice in notices:
            self._emit(EventType.NOTICE, message=notice)
        self._persist()

    async def _attempt_completion(self, invocation: ToolInvocation, failed: bool) -> Tuple[ToolResult, bool, List[str]]:
        """Gate and review a completion attempt.

        Returns:
            (result for the invocation, whether the task completed, extra user text)
        """
        reasons: List[str] = []
        extra_text: List[str] = []
        if failed:
            reasons.append("a tool call in this turn failed; resolve the error before completing")

        if self.settings.governance.require_todos_complete:
            open_items = [t for t in self.task.todos if t.is_open]
            if open_items:
                listed = ", ".join(f"'{t.content}' ({t.status})" for t in open_items)
                reasons.append(f"{len(open_items)} todo item(s) are not completed: {listed}")

        if self.task.background_children:
            extra_text.extend(await self._collect_background_children(block=True))
            reasons.append("background tasks were still running; their results are included below")

        if reasons:
            error = CompletionBlockedError(reasons)
            LOGGER.info(f"Completion blocked for task {self.task.task_id}: {'; '.join(reasons)}")
            return ToolResult(invocation.id, str(error), is_error=True), False, extra_text

        result_text = invocation.arguments.get("result", "")
        response = await self.services.approval_gate.ask(
            ApprovalKind.COMPLETION,
            {"task_id": self.task.task_id, "result": result_text, "is_child_task": self.task.is_child},
            cancel_token=self.cancel_token,
        )
        if response.approved and not response.has_feedback:
            return ToolResult(invocation.id, "The user accepted the result."), True, extra_text

        if response.has_feedback:
            content = (
                "The user has provided feedback on the result. Address it and attempt completion again.\n"
                f"<feedback>\n{response.feedback}\n</feedback>"
            )
        else:
            content = "The user did not accept the result. Continue working on the task."
        return ToolResult(invocation.id, content), False, extra_text

    async def _handle_mistake_limit(self) -> None:
        count = self.task.consecutive_mistakes
        LOGGER.warning(f"Task {self.task.task_id} hit {count} consecutive mistakes")
        response = await self.services.approval_gate.ask(
            ApprovalKind.MISTAKE_LIMIT,
            {
                "task_id": self.task.task_id,
                "count": count,
                "message": "The model keeps failing. Provide guidance to help it continue.",
            },
            cancel_token=self.cancel_token,
        )
        self.task.consecutive_mistakes = 0
        if response.has_feedback:
            self.history.inject_user_note(f"<user_guidance>\n{response.feedback}\n</user_guidance>")
            self._persist()
        elif not response.approved:
            self._transition(TaskState.PAUSED, "stopped by user after repeated mistakes")
        else:
            self._persist()

    # ========== Delegation ==========

    async def _delegate(
        self,
        invocation: ToolInvocation,
        turn: AssistantTurn,
        results: Dict[str, ToolResult],
        notices: List[str],
        approvals: Dict[str, str],
    ) -> Optional[ToolResult]:
        """Carry out delegate_task.

        Returns:
            The invocation's result, or None when the turn was already
            committed by the synchronous delegation path
        """
        governance = self.settings.governance
        if self.task.depth >= governance.max_delegation_depth:
            return ToolResult(
                invocation.id,
                f"Error: maximum delegation depth ({governance.max_delegation_depth}) reached; do the work directly.",
                is_error=True,
            )

        message = invocation.arguments.get("message", "")
        mode = invocation.arguments.get("mode") or self.task.mode
        try:
            child = self.services.tasks.create_child(self.task, message, mode)
        except KeyError as e:
            return ToolResult(invocation.id, f"Error: {e.args[0] if e.args else e}", is_error=True)

        child_id = child.task.task_id
        self._emit(EventType.CHILD_SPAWNED, child_task_id=child_id, mode=mode, background=governance.delegation_mode == "background")

        if governance.delegation_mode == "background":
            self.task.background_children[child_id] = invocation.id
            self._background_runs[child_id] = asyncio.create_task(child.run())
            return ToolResult(
                invocation.id,
                f"Started background task {child_id}. Its result will be delivered to you when it finishes; "
                "continue with other work meanwhile.",
            )

        self.task.pending_invocation_id = invocation.id
        self.task.pending_child_id = child_id
        self.task.pending_turn = turn_to_dict(turn, {k: v for k, v in results.items() if k != invocation.id}, notices, approvals)
        self._transition(TaskState.PAUSED, f"waiting on child task {child_id}")

        run_result = await child.run()
        self._finish_delegation(run_result)
        return None

    async def _resume_delegation(self) -> None:
        child = self.services.tasks.resume(self.task.pending_child_id)
        LOGGER.info(f"Re-attached child task {child.task.task_id} for task {self.task.task_id}")
        run_result = await child.run()
        self._finish_delegation(run_result)

    def _finish_delegation(self, run_result: TaskRunResult) -> None:
        self.cancel_token.raise_if_cancelled()
        invocation_id = self.task.pending_invocation_id
        turn, results, notices, approvals = turn_from_dict(self.task.pending_turn or {})
        result = self._child_tool_result(invocation_id, run_result)
        results[invocation_id] = result
        if result.is_error:
            notices.append(f"⚠️ {result.content}")

        self._emit(EventType.CHILD_FINISHED, child_task_id=run_result.task_id, state=run_result.state.value)
        self.task.pending_invocation_id = None
        self.task.pending_child_id = None
        self.task.pending_turn = None
        self._commit(turn, results, [], notices, approvals)
        self._transition(TaskState.ACTIVE, f"child task {run_result.task_id} finished")

    @staticmethod
    def _child_tool_result(invocation_id: str, run_result: TaskRunResult) -> ToolResult:
        if run_result.completed:
            return ToolResult(invocation_id, run_result.result or "")
        detail = f": {run_result.error}" if run_result.error else ""
        return ToolResult(
            invocation_id,
            f"Child task {run_result.task_id} ended in state '{run_result.state.value}' without a result{detail}",
            is_error=True,
        )

    def _attach_background_children(self) -> None:
        for child_id in list(self.task.background_children):
            if child_id not in self._background_runs:
                self._attach_background_child(child_id)

    def _attach_background_child(self, child_id: str) -> None:
        try:
            child = self.services.tasks.resume(child_id)
        except KeyError:
            LOGGER.warning(f"Background child {child_id} of task {self.task.task_id} is gone")
            self._background_runs[child_id] = None
            return
        self._background_runs[child_id] = asyncio.create_task(child.run())

    async def _stop_background_children(self) -> None:
        """Abort and await background children still running when the task stops.

        Their entries stay in ``task.background_children`` so a resumed task
        reports how each one ended.
        """
        runs = {child_id: run for child_id, run in self._background_runs.items() if run is not None}
        self._background_runs.clear()
        if not runs:
            return
        reason = f"parent task {self.task.task_id} stopped ({self.task.state.value})"
        for child_id, run in runs.items():
            child = self.services.tasks.get_orchestrator(child_id)
            if child is not None and not run.done():
                child.abort(reason)
        outcomes = await asyncio.gather(*runs.values(), return_exceptions=True)
        for child_id, outcome in zip(runs, outcomes):
            if isinstance(outcome, BaseException):
                LOGGER.warning(f"Background child {child_id} ended with {type(outcome).__name__}: {outcome}")
            else:
                LOGGER.info(f"Background child {child_id} stopped in state {outcome.state.value}")

    async def _collect_background_children(self, block: bool) -> List[str]:
        """Pick up finished background children (all of them when ``block``)."""
        notes = []
        for child_id, invocation_id in list(self.task.background_children.items()):
            run = self._background_runs.get(child_id)
            if run is not None and not run.done() and not block:
                continue

            if run is None:
                run_result = TaskRunResult(child_id, TaskState.ABORTED, error="the child task could not be found")
            else:
                try:
                    run_result = await self.cancel_token.race(asyncio.shield(run))
                except OperationCancelled:
                    raise
                except Exception as e:
                    log_error(LOGGER, e, f"background child {child_id}")
                    run_result = TaskRunResult(child_id, TaskState.ABORTED, error=str(e))

            del self.task.background_children[child_id]
            self._background_runs.pop(child_id, None)
            self._emit(EventType.CHILD_FINISHED, child_task_id=child_id, state=run_result.state.value)

            result = self._child_tool_result(invocation_id, run_result)
            status = "failed" if result.is_error else "finished"
            notes.append(
                f"[Background task {child_id} {status}; it resolves your {DELEGATION_TOOL} call {invocation_id}]\n"
                f"{result.content}"
            )
        return notes

    # ========== Human input ==========

    async def _ask_user(self, question: str, options: Sequence[str]) -> str:
        return await self.services.approval_gate.ask_question(
            question, options, task_id=self.task.task_id, cancel_token=self.cancel_token
        )

    async def _ask_retry(self, error: TaskAgentError) -> bool:
        self._emit(EventType.ERROR, message=error.user_message, retryable=True)
        response = await self.services.approval_gate.ask(
            ApprovalKind.RETRY,
            {"task_id": self.task.task_id, "error": error.user_message, "retryable": True},
            cancel_token=self.cancel_token,
        )
        return response.approved

    def _pause_after_failure(self, error: TaskAgentError) -> None:
        self.task.error = error.user_message
        self._transition(TaskState.PAUSED, f"request failed: {error}")

    # ========== State and persistence ==========

    def _transition(self, target: TaskState, reason: str = "", persist: bool = True) -> None:
        previous = self.task.transition(target, reason)
        self._emit(EventType.STATE_CHANGED, from_state=previous.value, to_state=target.value, reason=reason)
        if persist:
            self._persist()

    def _persist(self) -> None:
        """Save histories and metadata.

        Raises:
            TaskPersistenceError: Fatal to the task
        """
        self.services.store.save(
            self.task.task_id,
            self.history.committed_display,
            self.history.context,
            {**self.task.to_metadata(), "usage": self.tracker.snapshot() if self.tracker else {}},
        )

    def _handle_abort(self, reason: Optional[str]) -> None:
        # Background children were aborted through their own tokens in abort()
        self.history.discard_partial()
        if self.task.is_terminal:
            return
        try:
            self._transition(TaskState.ABORTED, reason or "aborted")
        except TaskPersistenceError as e:
            log_error(LOGGER, e, f"saving aborted task {self.task.task_id}")

    def _suspend(self, error: TaskAgentError, persist: bool = False) -> None:
        log_error(LOGGER, error, f"task {self.task.task_id}")
        self.task.error = str(error)
        self.history.discard_partial()
        if self.task.state != TaskState.ERROR_SUSPENDED and not self.task.is_terminal:
            self._transition(TaskState.ERROR_SUSPENDED, type(error).__name__, persist=False)
        if persist:
            try:
                self._persist()
            except TaskPersistenceError as e:
                log_error(LOGGER, e, f"saving suspended task {self.task.task_id}")
        self._emit(EventType.ERROR, message=error.user_message, retryable=False)

    def _emit(self, event_type: EventType, **payload: Any) -> None:
        self.services.events.emit(event_type, self.task.task_id, **payload)

    def _run_result(self) -> TaskRunResult:
        return TaskRunResult(
            task_id=self.task.task_id,
            state=self.task.state,
            result=self.task.result,
            error=self.task.error,
        )


__all__ = ["StreamedResponse", "TaskOrchestrator", "TaskRunResult"]
