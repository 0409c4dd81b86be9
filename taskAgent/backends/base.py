"""Backend interface every model provider implements."""

from __future__ import annotations

import abc
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

from taskAgent.history.messages import ContextMessage, TextBlock
from taskAgent.protocol.chunks import StreamChunk, TextChunk
from taskAgent.utils.cancellation import CancellationToken


class Backend(abc.ABC):
    """Streams one model response per request.

    Implementations translate context messages to the provider format and
    provider stream events to chunks. Provider failures surface as
    ``BackendError``; everything else about the wire format stays inside the
    implementation.
    """

    name: str = "backend"

    def __init__(self, model_id: str = "", context_window: Optional[int] = None) -> None:
        self.model_id = model_id
        self.context_window = context_window

    @abc.abstractmethod
    def submit(
        self,
        system_prompt: str,
        context: Sequence[ContextMessage],
        tool_schema: List[Dict[str, Any]],
        cancel_token: Optional[CancellationToken] = None,
    ) -> AsyncIterator[StreamChunk]:
        """Start a request and stream its chunks.

        Raises:
            BackendError: The provider request failed
        """
        raise NotImplementedError

    async def complete(
        self,
        prompt: str,
        max_tokens: Optional[int] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """One-shot text completion without tools (used for summaries)."""
        message = ContextMessage(role="user", content=[TextBlock(text=prompt)], display_index=0)
        parts = []
        async for chunk in self.submit("", [message], [], cancel_token):
            if isinstance(chunk, TextChunk):
                parts.append(chunk.text)
        return "".join(parts)


__all__ = ["Backend"]
