"""Command line entry point: run or resume one task in the terminal."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import threading
from typing import Any, Dict, List, Optional

from taskAgent.config import get_settings
from taskAgent.hitl import ApprovalKind, ApprovalProvider, ApprovalResponse, AutoApprovalProvider
from taskAgent.runtime import EventType, RuntimeServices, TaskEvent, TaskState, build_runtime
from taskAgent.utils import setup_logging, with_error_boundary

LOGGER = logging.getLogger(__name__)


async def read_line(text: str) -> str:
    """Read one stdin line without holding up loop shutdown.

    The read runs on a daemon thread, so an abort while the user has not
    answered does not wait for Enter before the process can exit.
    """
    loop = asyncio.get_running_loop()
    answer: asyncio.Future = loop.create_future()

    def deliver(value: str) -> None:
        if not answer.done():
            answer.set_result(value)

    def read() -> None:
        try:
            value = input(text).strip()
        except EOFError:
            value = ""
        try:
            loop.call_soon_threadsafe(deliver, value)
        except RuntimeError:
            LOGGER.debug("Console answer arrived after the event loop closed")

    threading.Thread(target=read, name="console-input", daemon=True).start()
    return await answer


class ConsoleApprovalProvider(ApprovalProvider):
    """Asks approval questions on stdin.

    Any answer other than y/yes/n/no is passed back as feedback
    instead of a plain approval.
    """

    def __init__(self, events: Optional["ConsolePrinter"] = None) -> None:
        self.events = events

    async def prompt(self, text: str) -> str:
        if self.events is not None:
            self.events.flush_line()
        return await read_line(text)

    async def ask(self, kind: ApprovalKind, payload: Dict[str, Any]) -> ApprovalResponse:
        if kind == ApprovalKind.FOLLOWUP:
            print(f"\n❓ {payload.get('question', '')}")
            for i, option in enumerate(payload.get("options") or [], 1):
                print(f"   {i}. {option}")
            answer = await self.prompt("You> ")
            options = payload.get("options") or []
            if answer.isdigit() and 1 <= int(answer) <= len(options):
                answer = options[int(answer) - 1]
            return ApprovalResponse(approved=bool(answer), feedback=answer or None)

        if kind == ApprovalKind.TOOL:
            print(f"\n🛡️  {payload.get('tool')} wants to run: {payload.get('arguments')}")
            if payload.get("reason"):
                print(f"   Reason: {payload['reason']}")
            question = "Approve? [y/n or feedback] "
        elif kind == ApprovalKind.COMPLETION:
            print(f"\n✅ Task {payload.get('task_id')} result:\n{payload.get('result', '')}")
            question = "Accept? [y/n or feedback] "
        elif kind == ApprovalKind.MISTAKE_LIMIT:
            print(f"\n⚠️  {payload.get('message')} ({payload.get('count')} failing turns)")
            question = "Continue? [y/n or guidance] "
        else:
            print(f"\n❌ {payload.get('error', 'Request failed')}")
            question = "Retry? [y/n] "

        answer = await self.prompt(question)
        lowered = answer.lower()
        if lowered in ("", "y", "yes"):
            return ApprovalResponse(approved=True)
        if lowered in ("n", "no"):
            return ApprovalResponse(approved=False)
        return ApprovalResponse(approved=True, feedback=answer)


class ConsolePrinter:
    """Renders task events on stdout."""

    def __init__(self, verbose: bool = False) -> None:
        self.verbose = verbose
        self._mid_line = False

    def flush_line(self) -> None:
        if self._mid_line:
            print()
            self._mid_line = False

    def handle(self, event: TaskEvent) -> None:
        payload = event.payload
        prefix = f"[{event.task_id[:6]}]"
        if event.type == EventType.TEXT_DELTA:
            print(payload.get("text", ""), end="", flush=True)
            self._mid_line = True
            return

        if event.type == EventType.TOOL_DELTA and not self.verbose:
            return

        self.flush_line()
        if event.type == EventType.STATE_CHANGED:
            print(f"{prefix} {payload.get('from_state')} → {payload.get('to_state')}")
        elif event.type == EventType.TOOL_STARTED:
            print(f"{prefix} 🔧 {payload.get('tool')}")
        elif event.type == EventType.TOOL_FINISHED:
            marker = "✗" if payload.get("is_error") else "✓"
            print(f"{prefix} {marker} {payload.get('tool')} ({payload.get('status')})")
        elif event.type == EventType.NOTICE:
            print(f"{prefix} {payload.get('message')}")
        elif event.type == EventType.CONTEXT_REDUCED:
            print(
                f"{prefix} context reduced ({', '.join(payload.get('strategies', []))}): "
                f"~{payload.get('before_tokens'):,} → ~{payload.get('after_tokens'):,} tokens"
            )
        elif event.type == EventType.CHILD_SPAWNED:
            print(f"{prefix} ↳ child task {payload.get('child_task_id')} ({payload.get('mode')})")
        elif event.type == EventType.CHILD_FINISHED:
            print(f"{prefix} ↲ child task {payload.get('child_task_id')} {payload.get('state')}")
        elif event.type == EventType.ERROR:
            print(f"{prefix} ❌ {payload.get('message')}")
        elif self.verbose:
            print(f"{prefix} {event.type.value}: {payload}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="task-agent", description="Run an agent task against the workspace.")
    parser.add_argument("task", nargs="?", help="Task description")
    parser.add_argument("--mode", help="Mode slug (default: DEFAULT_MODE)")
    parser.add_argument("--protocol", choices=["native", "xml"], help="Tool call protocol")
    parser.add_argument("--provider", help="Backend provider (default: BACKEND_PROVIDER)")
    parser.add_argument("--workspace", help="Workspace directory (default: AGENT_WORKSPACE_PATH)")
    parser.add_argument("--resume", metavar="TASK_ID", help="Resume a saved task")
    parser.add_argument("--list", action="store_true", help="List saved tasks and exit")
    parser.add_argument("--auto-approve", action="store_true", help="Approve every request without asking")
    parser.add_argument("-v", "--verbose", action="store_true", help="Print every event")
    return parser


def list_tasks(services: RuntimeServices) -> List[str]:
    lines = []
    for summary in services.store.list_tasks():
        parent = f" (child of {summary.parent_task_id})" if summary.parent_task_id else ""
        lines.append(f"{summary.task_id}  {summary.state:<16} {summary.mode:<10} {summary.message_count:>4} msgs{parent}")
    return lines


async def pump_events(services: RuntimeServices, printer: ConsolePrinter) -> None:
    async for event in services.events.consume():
        printer.handle(event)


@with_error_boundary("cli")
async def run(args: argparse.Namespace) -> int:
    settings = get_settings()
    printer = ConsolePrinter(verbose=args.verbose)
    provider = AutoApprovalProvider() if args.auto_approve else ConsoleApprovalProvider(printer)
    services = build_runtime(settings, approval_provider=provider, workspace=args.workspace)

    if args.list:
        for line in list_tasks(services) or ["No saved tasks."]:
            print(line)
        return 0

    if not args.resume and not args.task:
        print("Error: give a task description or --resume TASK_ID")
        return 2
    try:
        if args.resume:
            orchestrator = services.tasks.resume(args.resume)
        else:
            orchestrator = services.tasks.create_task(
                args.task, mode=args.mode, protocol=args.protocol, provider=args.provider
            )
    except KeyError as e:
        print(f"Error: {e.args[0] if e.args else e}")
        return 2

    print(f"Task {orchestrator.task.task_id} ({orchestrator.task.mode}, {orchestrator.task.protocol.value})")

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, orchestrator.abort, "interrupted")
    except NotImplementedError:
        LOGGER.debug("Signal handlers are not supported on this platform")

    pump = asyncio.create_task(pump_events(services, printer))
    try:
        result = await orchestrator.run()
    finally:
        services.events.close()
        await pump
        printer.flush_line()

    print(f"\nTask {result.task_id} ended in state: {result.state.value}")
    if result.result:
        print(f"\nResult:\n{result.result}")
    if result.error:
        print(f"\nLast error: {result.error}")
    if result.state in (TaskState.PAUSED, TaskState.ERROR_SUSPENDED, TaskState.ABORTED, TaskState.ABANDONED):
        if result.state in (TaskState.PAUSED, TaskState.ERROR_SUSPENDED):
            print(f"Resume with: task-agent --resume {result.task_id}")
        return 1
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    setup_logging(
        level=getattr(logging, settings.observability.log_level.upper(), logging.INFO),
        log_dir=settings.observability.log_dir,
    )
    return asyncio.run(run(args))


__all__ = ["ConsoleApprovalProvider", "ConsolePrinter", "build_parser", "main"]
