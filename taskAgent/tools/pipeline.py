"""Tool validation and execution pipeline.

Every finalized invocation goes through the same steps:

1. existence check
2. mode permission and path restriction check
3. repetition check
4. approval gate
5. execution
6. result packaging

Each invocation yields exactly one ToolOutcome with exactly one ToolResult.
Failures become error-flagged results so the model can correct itself on
the next turn; nothing here ends the task loop.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Tuple

from langchain_core.tools import BaseTool
from pydantic import ValidationError as PydanticValidationError

from taskAgent.config.modes import Mode
from taskAgent.hitl.approval import ApprovalGate, ApprovalKind, ApprovalResponse
from taskAgent.hitl.approval_checker import ApprovalChecker
from taskAgent.history.messages import ToolInvocation, ToolResult
from taskAgent.protocol.decoder import ToolCallFinalized
from taskAgent.tools.context import TaskContext
from taskAgent.tools.registry import ToolMeta, ToolRegistry
from taskAgent.tools.repetition import RepetitionGuard
from taskAgent.utils.cancellation import CancellationToken, OperationCancelled
from taskAgent.utils.error_handler import (
    ExecutionError,
    ProtocolParseError,
    RepetitionLimitError,
    TaskAgentError,
    UserRejection,
    ValidationError,
)
from taskAgent.utils.logging_utils import log_tool_call, log_tool_result

LOGGER = logging.getLogger(__name__)

TASK_CONTEXT_ARG = "task"


class InvocationStatus(str, Enum):
    SUCCESS = "success"
    CONTROL = "control"              # validated; the orchestrator carries it out
    FEEDBACK = "feedback"            # user answered instead of approving
    REJECTED = "rejected"
    SKIPPED = "skipped"
    PARSE_ERROR = "parse_error"
    VALIDATION_ERROR = "validation_error"
    REPETITION_LIMIT = "repetition_limit"
    EXECUTION_ERROR = "execution_error"


FAILED_STATUSES = frozenset({
    InvocationStatus.PARSE_ERROR,
    InvocationStatus.VALIDATION_ERROR,
    InvocationStatus.REPETITION_LIMIT,
    InvocationStatus.EXECUTION_ERROR,
})


@dataclass
class ToolOutcome:
    invocation: ToolInvocation
    result: ToolResult
    status: InvocationStatus
    error: Optional[TaskAgentError] = None
    approval: Optional[str] = None  # auto / approved / rejected / feedback / timeout

    @property
    def failed(self) -> bool:
        return self.status in FAILED_STATUSES

    @property
    def notice(self) -> Optional[str]:
        """Display notice for failed invocations."""
        if not self.failed or self.error is None:
            return None
        return f"⚠️ {self.invocation.name or 'tool call'} ({self.invocation.id}): {self.error.user_message}"


def format_argument_errors(error: PydanticValidationError) -> str:
    parts = []
    for item in error.errors():
        location = ".".join(str(p) for p in item.get("loc", ())) or "arguments"
        parts.append(f"{location}: {item.get('msg', 'invalid value')}")
    return "; ".join(parts)


def stringify_result(raw: Any) -> str:
    if isinstance(raw, str):
        return raw
    if raw is None:
        return ""
    try:
        return json.dumps(raw, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(raw)


class ToolPipeline:
    """Runs invocations for one task against its locked mode."""

    def __init__(
        self,
        registry: ToolRegistry,
        mode: Mode,
        approval_checker: ApprovalChecker,
        approval_gate: ApprovalGate,
        repetition_guard: Optional[RepetitionGuard] = None,
        tool_timeout: Optional[float] = None,
    ) -> None:
        self.registry = registry
        self.mode = mode
        self.approval_checker = approval_checker
        self.approval_gate = approval_gate
        self.repetition_guard = repetition_guard or RepetitionGuard()
        self.tool_timeout = tool_timeout

    def available_tools(self):
        return sorted(name for name in self.registry.tool_names() if self.mode.allows(name))

    async def run(
        self,
        invocation: ToolInvocation,
        context: TaskContext,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ToolOutcome:
        """Validate, approve and execute one finalized invocation.

        Raises:
            OperationCancelled: Only when the task is aborted mid-invocation
        """
        log_tool_call(LOGGER, invocation.name, invocation.arguments, invocation.id)

        try:
            tool, meta = self._check_permissions(invocation)
            self.repetition_guard.check(invocation.name)
        except ValidationError as e:
            return self._failure(invocation, e, InvocationStatus.VALIDATION_ERROR)
        except RepetitionLimitError as e:
            return self._failure(invocation, e, InvocationStatus.REPETITION_LIMIT)
        self.repetition_guard.record(invocation.name)

        if meta.control:
            try:
                self._validate_arguments(tool, invocation.arguments)
            except PydanticValidationError as e:
                return self._failure(invocation, self._argument_error(invocation, e), InvocationStatus.VALIDATION_ERROR)
            return ToolOutcome(
                invocation=invocation,
                result=ToolResult(invocation_id=invocation.id, content=""),
                status=InvocationStatus.CONTROL,
                approval="auto",
            )

        approval_label, response = await self._request_approval(invocation, meta, context, cancel_token)
        if response is not None and (not response.approved or response.has_feedback):
            return self._declined(invocation, meta, response, approval_label)

        return await self._execute(invocation, tool, context, cancel_token, approval_label)

    def parse_failure(self, event: ToolCallFinalized) -> ToolOutcome:
        """Package a decoder parse failure as an error result for its call id."""
        error = event.error or ProtocolParseError(event.id, "", "", "unknown parse failure")
        invocation = ToolInvocation(id=event.id, name=error.tool_name or "unknown", arguments={}, is_partial=False)
        LOGGER.warning(f"Protocol parse error for {invocation.id}: {error}")
        return self._failure(invocation, error, InvocationStatus.PARSE_ERROR)

    def skipped(self, invocation: ToolInvocation, reason: str) -> ToolOutcome:
        return ToolOutcome(
            invocation=invocation,
            result=ToolResult(invocation_id=invocation.id, content=f"Skipped: {reason}"),
            status=InvocationStatus.SKIPPED,
        )

    # ========== Steps ==========

    def _check_permissions(self, invocation: ToolInvocation) -> Tuple[BaseTool, ToolMeta]:
        name = invocation.name
        available = self.available_tools()
        if not self.registry.has(name):
            raise ValidationError(
                f"Unknown tool '{name}'. Available tools: {', '.join(available)}",
                tool_name=name,
                available_tools=available,
            )

        if not self.mode.allows(name):
            raise ValidationError(
                f"Tool '{name}' is not allowed in mode '{self.mode.slug}'. Available tools: {', '.join(available)}",
                tool_name=name,
                available_tools=available,
            )

        tool = self.registry.get_tool(name)
        meta = self.registry.get_meta_optional(name) or ToolMeta(name=name, group="command", risk="high")

        if meta.group == "edit" and meta.path_argument:
            target = invocation.arguments.get(meta.path_argument)
            if target is not None:
                violated = self.mode.check_path(str(target))
                if violated is not None:
                    rule = "must match" if violated.action == "allow" else "must not match"
                    raise ValidationError(
                        f"Tool '{name}' cannot edit '{target}' in mode '{self.mode.slug}': "
                        f"the path {rule} restriction '{violated.pattern}'"
                        + (f" ({violated.description})" if violated.description else ""),
                        tool_name=name,
                        pattern=violated.pattern,
                        path=str(target),
                    )
        return tool, meta

    async def _request_approval(
        self,
        invocation: ToolInvocation,
        meta: ToolMeta,
        context: TaskContext,
        cancel_token: Optional[CancellationToken],
    ) -> Tuple[str, Optional[ApprovalResponse]]:
        decision = self.approval_checker.check(invocation.name, invocation.arguments, meta)
        if not decision.needs_approval:
            return "auto", None

        LOGGER.info(f"Approval required for {invocation.name}: {decision.reason} ({decision.risk_level})")
        response = await self.approval_gate.ask(
            ApprovalKind.TOOL,
            {
                "task_id": context.task_id,
                "invocation_id": invocation.id,
                "tool": invocation.name,
                "arguments": invocation.arguments,
                "reason": decision.reason,
                "risk_level": decision.risk_level,
            },
            cancel_token=cancel_token,
        )
        if response.timed_out:
            return "timeout", response
        if not response.approved:
            return "rejected", response
        if response.has_feedback:
            return "feedback", response
        return "approved", response

    def _declined(
        self,
        invocation: ToolInvocation,
        meta: ToolMeta,
        response: ApprovalResponse,
        approval_label: str,
    ) -> ToolOutcome:
        if response.approved:
            content = (
                f"The user did not run '{invocation.name}' and responded instead:\n"
                f"<feedback>\n{response.feedback}\n</feedback>"
            )
            return ToolOutcome(
                invocation=invocation,
                result=ToolResult(invocation_id=invocation.id, content=content),
                status=InvocationStatus.FEEDBACK,
                approval=approval_label,
            )

        rejection = UserRejection(invocation.name, response.feedback)
        LOGGER.info(f"Tool {invocation.name} rejected by user")
        return ToolOutcome(
            invocation=invocation,
            result=ToolResult(invocation_id=invocation.id, content=str(rejection), is_error=meta.rejection_is_error),
            status=InvocationStatus.REJECTED,
            error=rejection,
            approval=approval_label,
        )

    async def _execute(
        self,
        invocation: ToolInvocation,
        tool: BaseTool,
        context: TaskContext,
        cancel_token: Optional[CancellationToken],
        approval_label: str,
    ) -> ToolOutcome:
        payload = dict(invocation.arguments)
        if TASK_CONTEXT_ARG in self._schema_fields(tool):
            payload[TASK_CONTEXT_ARG] = context

        call = self._invoke(tool, invocation.name, payload)
        if self.tool_timeout:
            call = asyncio.wait_for(call, timeout=self.tool_timeout)

        try:
            raw = await (cancel_token.race(call) if cancel_token is not None else call)
        except PydanticValidationError as e:
            error = self._argument_error(invocation, e)
            return self._failure(invocation, error, InvocationStatus.VALIDATION_ERROR, approval_label)
        except asyncio.TimeoutError:
            # Only wait_for gets here; a timeout inside the tool arrives as ExecutionError
            error = ExecutionError(invocation.name, TimeoutError(f"timed out after {self.tool_timeout:g}s"))
            return self._failure(invocation, error, InvocationStatus.EXECUTION_ERROR, approval_label)
        except OperationCancelled:
            raise
        except TaskAgentError as e:
            error = e if isinstance(e, ExecutionError) else ExecutionError(invocation.name, e)
            return self._failure(invocation, error, InvocationStatus.EXECUTION_ERROR, approval_label)
        except Exception as e:
            LOGGER.exception(f"Tool {invocation.name} raised", exc_info=e)
            return self._failure(invocation, ExecutionError(invocation.name, e), InvocationStatus.EXECUTION_ERROR, approval_label)

        content = stringify_result(raw)
        log_tool_result(LOGGER, invocation.name, content, success=True)
        return ToolOutcome(
            invocation=invocation,
            result=ToolResult(invocation_id=invocation.id, content=content),
            status=InvocationStatus.SUCCESS,
            approval=approval_label,
        )

    # ========== Helpers ==========

    @staticmethod
    async def _invoke(tool: BaseTool, name: str, payload: dict) -> Any:
        try:
            return await tool.ainvoke(payload)
        except asyncio.TimeoutError as e:
            raise ExecutionError(name, e) from e

    @staticmethod
    def _schema_fields(tool: BaseTool) -> dict:
        schema = tool.args_schema
        return getattr(schema, "model_fields", {}) if schema is not None else {}

    def _validate_arguments(self, tool: BaseTool, arguments: dict) -> None:
        schema = tool.args_schema
        if schema is not None and hasattr(schema, "model_validate"):
            schema.model_validate(arguments)

    @staticmethod
    def _argument_error(invocation: ToolInvocation, error: PydanticValidationError) -> ValidationError:
        return ValidationError(
            f"Invalid arguments for '{invocation.name}': {format_argument_errors(error)}",
            tool_name=invocation.name,
        )

    def _failure(
        self,
        invocation: ToolInvocation,
        error: TaskAgentError,
        status: InvocationStatus,
        approval_label: Optional[str] = None,
    ) -> ToolOutcome:
        log_tool_result(LOGGER, invocation.name, error, success=False)
        return ToolOutcome(
            invocation=invocation,
            result=ToolResult(invocation_id=invocation.id, content=f"Error: {error}", is_error=True),
            status=status,
            error=error,
            approval=approval_label,
        )


__all__ = ["FAILED_STATUSES", "InvocationStatus", "ToolOutcome", "ToolPipeline"]
