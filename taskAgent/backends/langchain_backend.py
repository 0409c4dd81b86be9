"""Backend over LangChain chat models."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from langchain_core.language_models.chat_models import BaseChatModel
from langchain_core.messages import AIMessage, BaseMessage, HumanMessage, SystemMessage, ToolMessage

from taskAgent.backends.base import Backend
from taskAgent.history.messages import ContextMessage, ToolResultBlock, ToolUseBlock
from taskAgent.protocol.chunks import FinishChunk, StreamChunk, TextChunk, ToolCallFragment, UsageChunk
from taskAgent.utils.cancellation import CancellationToken, OperationCancelled
from taskAgent.utils.error_handler import BackendError, handle_backend_error

LOGGER = logging.getLogger(__name__)


def content_text(content: Any) -> str:
    """Text of a message content that may be a string or a list of parts."""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for part in content:
            if isinstance(part, str):
                parts.append(part)
            elif isinstance(part, dict) and part.get("type") == "text":
                parts.append(part.get("text", ""))
        return "".join(parts)
    return ""


def to_langchain_messages(system_prompt: str, context: Sequence[ContextMessage]) -> List[BaseMessage]:
    """Convert context messages to LangChain messages.

    Tool results become ToolMessages placed directly after the AIMessage
    that requested them; any text in the same user message follows as a
    HumanMessage.
    """
    messages: List[BaseMessage] = []
    if system_prompt:
        messages.append(SystemMessage(content=system_prompt))

    for message in context:
        if message.role == "assistant":
            tool_calls = [
                {"id": block.id, "name": block.name, "args": block.arguments, "type": "tool_call"}
                for block in message.content
                if isinstance(block, ToolUseBlock)
            ]
            messages.append(AIMessage(content=message.text, tool_calls=tool_calls))
            continue

        for block in message.content:
            if isinstance(block, ToolResultBlock):
                messages.append(
                    ToolMessage(
                        content=block.content,
                        tool_call_id=block.tool_use_id,
                        status="error" if block.is_error else "success",
                    )
                )
        text = message.text
        if text:
            messages.append(HumanMessage(content=text))
    return messages


class LangChainBackend(Backend):
    """Streams from any LangChain chat model that supports tool calling."""

    name = "langchain"

    def __init__(self, chat_model: BaseChatModel, model_id: str = "", context_window: Optional[int] = None) -> None:
        super().__init__(model_id=model_id or getattr(chat_model, "model_name", "") or "", context_window=context_window)
        self.chat_model = chat_model

    async def submit(
        self,
        system_prompt: str,
        context: Sequence[ContextMessage],
        tool_schema: List[Dict[str, Any]],
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StreamChunk]:
        model = self.chat_model.bind_tools(tool_schema) if tool_schema else self.chat_model
        messages = to_langchain_messages(system_prompt, context)
        LOGGER.debug(f"Submitting {len(messages)} messages with {len(tool_schema)} tools to {self.model_id}")

        finish_reason: Optional[str] = None
        stream = model.astream(messages)
        try:
            async for chunk in stream:
                if cancel_token is not None and cancel_token.cancelled:
                    break

                text = content_text(chunk.content)
                if text:
                    yield TextChunk(text=text)

                for call in getattr(chunk, "tool_call_chunks", None) or []:
                    index = call.get("index")
                    yield ToolCallFragment(
                        index=index if index is not None else 0,
                        id=call.get("id"),
                        name=call.get("name"),
                        arguments=call.get("args"),
                    )

                usage = getattr(chunk, "usage_metadata", None)
                if usage:
                    yield UsageChunk(
                        input_tokens=usage.get("input_tokens", 0),
                        output_tokens=usage.get("output_tokens", 0),
                    )

                reason = (chunk.response_metadata or {}).get("finish_reason")
                if reason:
                    finish_reason = reason
        except OperationCancelled:
            raise
        except Exception as e:
            LOGGER.error(f"Backend stream failed: {e}")
            raise BackendError(str(e), user_message=handle_backend_error(e)) from e
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

        if finish_reason:
            yield FinishChunk(reason=finish_reason)

    async def complete(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        model = self.chat_model.bind(max_tokens=max_tokens) if max_tokens else self.chat_model
        call = model.ainvoke([HumanMessage(content=prompt)])
        try:
            response = await (cancel_token.race(call) if cancel_token is not None else call)
        except OperationCancelled:
            raise
        except Exception as e:
            LOGGER.error(f"Completion request failed: {e}")
            raise BackendError(str(e), user_message=handle_backend_error(e)) from e
        return content_text(response.content)


__all__ = ["LangChainBackend", "content_text", "to_langchain_messages"]
