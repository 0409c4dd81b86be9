"""Approval interface between task loops and the human (or policy) answering them."""

from __future__ import annotations

import abc
import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from taskAgent.utils.cancellation import CancellationToken

LOGGER = logging.getLogger(__name__)


class ApprovalKind(str, Enum):
    TOOL = "tool"                    # gated tool call
    COMPLETION = "completion"        # attempt_completion result review
    FOLLOWUP = "followup"            # ask_followup_question
    MISTAKE_LIMIT = "mistake_limit"  # too many failing turns in a row
    RETRY = "retry"                  # request failed or context over budget


@dataclass(frozen=True)
class ApprovalResponse:
    approved: bool
    feedback: Optional[str] = None
    timed_out: bool = False

    @property
    def has_feedback(self) -> bool:
        return bool(self.feedback and self.feedback.strip())


class ApprovalProvider(abc.ABC):
    """Answers approval requests. Implementations may suspend as long as they need."""

    @abc.abstractmethod
    async def ask(self, kind: ApprovalKind, payload: Dict[str, Any]) -> ApprovalResponse:
        raise NotImplementedError


class AutoApprovalProvider(ApprovalProvider):
    """Approves everything. Follow-up questions get ``default_answer`` as feedback."""

    def __init__(self, default_answer: str = "Proceed with your best judgement.") -> None:
        self.default_answer = default_answer
        self.requests: List[tuple] = []

    async def ask(self, kind: ApprovalKind, payload: Dict[str, Any]) -> ApprovalResponse:
        self.requests.append((kind, payload))
        if kind in (ApprovalKind.FOLLOWUP, ApprovalKind.MISTAKE_LIMIT):
            return ApprovalResponse(approved=True, feedback=self.default_answer)
        return ApprovalResponse(approved=True)


class ApprovalGate:
    """Wraps a provider with the configured timeout and the task's cancellation token.

    A timeout is a rejection carrying explanatory feedback, never an error.
    """

    def __init__(self, provider: ApprovalProvider, timeout_seconds: Optional[float] = None) -> None:
        self.provider = provider
        self.timeout_seconds = timeout_seconds

    async def ask(
        self,
        kind: ApprovalKind,
        payload: Dict[str, Any],
        timeout: Optional[float] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ApprovalResponse:
        limit = timeout if timeout is not None else self.timeout_seconds
        request = self.provider.ask(kind, payload)
        if limit is not None:
            request = asyncio.wait_for(request, timeout=limit)

        try:
            if cancel_token is not None:
                response = await cancel_token.race(request)
            else:
                response = await request
        except asyncio.TimeoutError:
            LOGGER.warning(f"Approval request ({kind.value}) timed out after {limit}s")
            return ApprovalResponse(
                approved=False,
                feedback=f"No response within {limit:g} seconds; the request was treated as rejected.",
                timed_out=True,
            )

        LOGGER.info(f"Approval ({kind.value}): approved={response.approved} feedback={bool(response.feedback)}")
        return response

    async def ask_question(
        self,
        question: str,
        options: Sequence[str] = (),
        task_id: str = "",
        cancel_token: Optional[CancellationToken] = None,
    ) -> str:
        """Ask a free-text question; a rejection or timeout yields an empty answer."""
        response = await self.ask(
            ApprovalKind.FOLLOWUP,
            {"task_id": task_id, "question": question, "options": list(options)},
            cancel_token=cancel_token,
        )
        return (response.feedback or "").strip()


__all__ = [
    "ApprovalGate",
    "ApprovalKind",
    "ApprovalProvider",
    "ApprovalResponse",
    "AutoApprovalProvider",
]
