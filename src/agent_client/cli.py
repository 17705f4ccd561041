"""Interactive terminal host: one chat view driving one agent session."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os
import sys
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, TextIO

from pydantic import ValidationError

from .core import AgentClientError, HandshakeError, SessionBusyError, SessionStateError, StalePermissionError
from .events import (
    ErrorOccurred,
    PermissionAutoApproved,
    PermissionRequested,
    PlanUpdated,
    StreamEvent,
    TextDelta,
    ThoughtDelta,
    ToolCallEnded,
    ToolCallStarted,
    ToolCallUpdated,
    TurnEnded,
)
from .log import build_log_config, configure_logging
from .registry import HostCommand, SessionRegistry
from .session import SessionState, TurnStream
from .settings import PluginSettings, agent_config_from_settings
from .stdio import read_lines, stdin_reader

logger = logging.getLogger(__name__)

VIEW_ID = "terminal"

SLASH_COMMANDS = {
    "/cancel": HostCommand.CANCEL,
    "/approve": HostCommand.APPROVE_PERMISSION,
    "/reject": HostCommand.REJECT_PERMISSION,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="agent_client",
        description="Chat with an ACP agent from the terminal. "
        "Type a prompt per line; /cancel, /approve, /reject and /quit are commands.",
    )
    parser.add_argument("--cwd", default=os.getcwd(), help="Working directory for the agent session")
    parser.add_argument("--auto-allow", action="store_true", help="Approve permission requests automatically")
    parser.add_argument("--debug", action="store_true", help="Log wire traffic at debug level")
    parser.add_argument("--settings", help="JSON settings file as persisted by the host")
    parser.add_argument("command", nargs=argparse.REMAINDER, help="Agent command and its arguments, after --")
    return parser


def load_settings(path: Optional[str]) -> PluginSettings:
    if not path:
        return PluginSettings()
    with open(path, encoding="utf-8") as fh:
        raw: Dict[str, Any] = json.load(fh)
    return PluginSettings.from_raw(raw)


def format_event(event: StreamEvent) -> Optional[str]:
    """Render one event for the terminal; ``None`` for text deltas, which stream inline."""
    if isinstance(event, ThoughtDelta):
        return f"[thinking] {event.content}"
    if isinstance(event, ToolCallStarted):
        return f"[tool {event.tool_call_id}] {event.label} ({event.kind or 'other'})"
    if isinstance(event, ToolCallUpdated):
        return f"[tool {event.tool_call_id}] {event.status or 'updated'}"
    if isinstance(event, ToolCallEnded):
        return f"[tool {event.tool_call_id}] {event.status}"
    if isinstance(event, PlanUpdated):
        return "[plan]\n" + "\n".join(f"  - {entry}" for entry in event.entries)
    if isinstance(event, PermissionRequested):
        choices = ", ".join(f"{c.label} ({c.kind})" for c in event.request.options)
        title = event.request.title or event.request.tool_call_id
        return f"[permission] {title}: {choices}. Answer with /approve or /reject"
    if isinstance(event, PermissionAutoApproved):
        return f"[permission] auto-approved {event.request.title or event.request.tool_call_id} ({event.option_id})"
    if isinstance(event, TurnEnded):
        return f"[turn ended: {event.reason.value}]"
    if isinstance(event, ErrorOccurred):
        return f"[error] {event.detail}"
    return None


async def print_turn(stream: TurnStream, out: TextIO) -> None:
    mid_line = False
    async for event in stream:
        if isinstance(event, TextDelta):
            out.write(event.content)
            mid_line = not event.content.endswith("\n")
            out.flush()
            continue
        text = format_event(event)
        if text is None:
            continue
        if mid_line:
            out.write("\n")
            mid_line = False
        out.write(text + "\n")
        out.flush()


async def repl(registry: SessionRegistry, lines: AsyncIterator[str], out: TextIO = sys.stdout) -> int:
    printer: Optional[asyncio.Task[None]] = None
    async for line in lines:
        text = line.strip()
        if not text:
            continue
        if text == "/quit":
            if printer is not None:
                printer.cancel()
                printer = None
            break
        try:
            if text in SLASH_COMMANDS:
                handled = await registry.dispatch(VIEW_ID, SLASH_COMMANDS[text])
                if handled is False:
                    out.write("[no permission request is waiting]\n")
                continue
            stream = await registry.dispatch(VIEW_ID, HostCommand.NEW_TURN, prompt=text)
        except SessionBusyError:
            out.write("[busy: wait for the turn to end or /cancel it]\n")
            continue
        except (SessionStateError, StalePermissionError) as err:
            out.write(f"[{err}]\n")
            session = registry.get(VIEW_ID)
            if session is None or session.state is SessionState.ERRORED:
                break
            continue
        printer = asyncio.create_task(print_turn(stream, out))

    if printer is not None:
        await printer
    session = registry.get(VIEW_ID)
    return 1 if session is None or session.state is SessionState.ERRORED else 0


async def main(argv: Sequence[str]) -> int:
    parser = build_parser()
    args = parser.parse_args(argv[1:])

    try:
        settings = load_settings(args.settings)
    except (OSError, ValueError) as err:
        parser.error(f"cannot read settings: {err}")
    if args.auto_allow:
        settings = settings.model_copy(update={"auto_allow_permissions": True})
    configure_logging(build_log_config(debug=args.debug or settings.debug_mode))

    command: List[str] = list(args.command)
    if command and command[0] == "--":
        command = command[1:]
    if command:
        agent = settings.claude.model_copy(update={"command": command[0], "args": command[1:]})
        settings = settings.model_copy(update={"claude": agent})
    try:
        config = agent_config_from_settings(settings, os.path.abspath(args.cwd))
    except ValidationError:
        parser.error("no agent command given (pass it after -- or set it in the settings file)")

    registry = SessionRegistry(settings.session_options())
    try:
        await registry.open(VIEW_ID, config)
    except HandshakeError as err:
        print(f"error: {err}", file=sys.stderr)
        return 1
    try:
        reader = await stdin_reader()
        return await repl(registry, read_lines(reader))
    except AgentClientError as err:
        logger.error("session failed: %s", err)
        return 1
    finally:
        await registry.close_all()


def run() -> None:
    try:
        raise SystemExit(asyncio.run(main(sys.argv)))
    except KeyboardInterrupt:
        raise SystemExit(130)
