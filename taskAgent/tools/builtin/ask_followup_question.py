"""ask_followup_question tool - the model asks the user for missing information."""

from __future__ import annotations

from typing import Annotated, List, Optional

from langchain_core.tools import InjectedToolArg, tool

from taskAgent.tools.context import TaskContext


@tool
async def ask_followup_question(
    question: Annotated[str, "Clear, specific question for the user"],
    task: Annotated[TaskContext, InjectedToolArg],
    options: Annotated[Optional[List[str]], "Suggested answers the user can pick from"] = None,
) -> str:
    """Ask the user a question when information needed to continue is missing.

    Use sparingly: prefer reading the workspace over asking. The user's answer
    is returned as text.

    Examples:
        ask_followup_question("Which database should the migration target?", options=["postgres", "sqlite"])
    """
    answer = await task.ask(question, options or [])
    if not answer:
        return "(The user did not provide an answer)"
    return f"<answer>\n{answer}\n</answer>"


__all__ = ["ask_followup_question"]
