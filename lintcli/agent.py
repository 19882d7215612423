import argparse
import asyncio
import contextlib
import json
import logging
import os
import sys
import time
from dataclasses import dataclass
from importlib import metadata
from pathlib import Path

from dotenv import load_dotenv

from . import fmt
from .config import load_config, resolve_settings, state_dir
from .errors import AgentError
from .gateway import GatewayReply, ToolCall, complete, resolve_tool_calls
from .session import Session
from .tools import (
    MUTATING_TOOLS,
    TOOL_NAMES,
    dispatch,
    format_tool_result,
    kill_running_commands,
    tool_message_content,
)

MAX_ARG_LOG = 1000
HISTORY_FILENAME = "repl_history"

_CONFIRM_ACTIONS = {
    "write_file": "write",
    "replace_in_file": "edit",
    "run_command": "run",
}

_encoder = None

logger = logging.getLogger(__name__)


def estimate_tokens(messages: list) -> int:
    """Count tokens across all messages using tiktoken."""
    global _encoder
    if _encoder is None:
        import tiktoken

        _encoder = tiktoken.get_encoding("cl100k_base")

    total = 0
    for m in messages:
        # Saved history may hold non-string values; count their text form.
        parts = [m.get("content") or ""]
        for tc in m.get("tool_calls") or []:
            fn = tc.get("function") if isinstance(tc, dict) else None
            if isinstance(fn, dict):
                parts += [fn.get("name") or "", fn.get("arguments") or ""]
        text = "".join(p if isinstance(p, str) else json.dumps(p) for p in parts)
        total += len(_encoder.encode(text))
    # ~4 tokens of per-message overhead (role, separators)
    total += 4 * len(messages)
    return total


# ---------------------------------------------------------------------------
# Tool calls
# ---------------------------------------------------------------------------


def _tool_message(call: ToolCall, content: str) -> dict:
    return {"role": "tool", "tool_call_id": call.id, "content": content}


def _confirm_target(call: ToolCall) -> str:
    if call.name == "run_command":
        args = call.parameters.get("args")
        parts = [str(call.parameters.get("command", ""))]
        if isinstance(args, list):
            parts += [str(a) for a in args]
        return " ".join(parts)
    return str(call.parameters.get("path", ""))


async def run_tool(name: str, args: dict, root: str):
    """Run a tool off the event loop.

    Cancelling the caller (Ctrl-C cancels the main task) kills any command
    the tool started, so the worker thread returns promptly.
    """
    try:
        return await asyncio.to_thread(dispatch, name, args, root)
    except asyncio.CancelledError:
        if kill_running_commands():
            logger.debug("killed running command after cancellation")
        raise


async def handle_tool_call(call: ToolCall, session: Session) -> dict:
    """Authorize, confirm and execute one tool call; return the tool message.

    Unknown tools, declined confirmations and exceptions all turn into
    tool messages so the conversation stays well-formed.
    """
    name = call.name
    if name not in TOOL_NAMES:
        content = f'ERROR: Unknown tool "{name}"'
        if session.verbose:
            fmt.tool_error(name or "?", content)
        return _tool_message(call, content)

    if session.verbose:
        pretty = json.dumps(call.parameters, indent=2)
        if len(pretty) > MAX_ARG_LOG:
            pretty = pretty[:MAX_ARG_LOG] + "\n... (truncated)"
        fmt.tool_call(name, pretty)

    if name in MUTATING_TOOLS:
        fmt.confirm_request(_CONFIRM_ACTIONS[name], _confirm_target(call))
        if not await session.confirm("Proceed? (y/n): "):
            fmt.cancelled(name)
            return _tool_message(call, f"CANCELLED: {name} aborted by user")

    t0 = time.monotonic()
    try:
        result = await run_tool(name, call.parameters, str(session.root))
    except Exception as e:
        logger.debug("tool %s raised", name, exc_info=True)
        result = f"ERROR: {e}"
    elapsed = time.monotonic() - t0

    content = tool_message_content(result)
    if session.verbose:
        if content.startswith("ERROR:"):
            fmt.tool_error(name, content)
        else:
            fmt.tool_result(name, elapsed, format_tool_result(result))
    return _tool_message(call, content)


# ---------------------------------------------------------------------------
# Orchestration loop
# ---------------------------------------------------------------------------


async def _call_model(session: Session) -> GatewayReply:
    settings = session.settings
    spinner = fmt.llm_spinner() if session.verbose else contextlib.nullcontext()
    with spinner:
        return await complete(
            session.messages,
            settings.model,
            settings.api_url or None,
            settings.api_key,
        )


async def run_turn(session: Session, text: str) -> str | None:
    """Run one user input through model and tool round-trips.

    Mutates `session.messages` in place. Returns the final assistant text,
    or None when the model never finalised within max_turns. History is
    trimmed and persisted either way.
    """
    session.messages.append({"role": "user", "content": text})
    max_turns = session.settings.max_turns
    answer = None
    rounds = 0

    while rounds < max_turns:
        rounds += 1
        reply = await _call_model(session)
        calls = resolve_tool_calls(reply)

        if not calls:
            answer = reply.content or ""
            if answer:
                session.messages.append({"role": "assistant", "content": answer})
            if session.verbose:
                fmt.completion(rounds, "ok")
            break

        session.messages.append(GatewayReply(tool_calls=calls).to_message())
        # One at a time: confirmation prompts must not interleave.
        for call in calls:
            session.messages.append(await handle_tool_call(call, session))
    else:
        fmt.warning(f"max turns ({max_turns}) reached without a final answer")
        if session.verbose:
            fmt.completion(rounds, "max_turns")

    session.commit()
    return answer


# ---------------------------------------------------------------------------
# Input parsing
# ---------------------------------------------------------------------------


@dataclass
class Command:
    """One parsed line of operator input."""

    kind: str  # "empty" | "command" | "chat"
    name: str = ""
    args: str = ""
    text: str = ""


def parse_command(line: str) -> Command:
    trimmed = line.strip()
    if not trimmed:
        return Command("empty")
    if trimmed in ("exit", "quit"):
        return Command("command", name="exit")
    if trimmed == "ls":
        return Command("command", name="ls")
    if trimmed[0] in "/:":
        parts = trimmed[1:].split(None, 1)
        name = parts[0].lower() if parts else ""
        args = parts[1].strip() if len(parts) > 1 else ""
        return Command("command", name=name, args=args)
    return Command("chat", text=trimmed)


# ---------------------------------------------------------------------------
# REPL command helpers
# ---------------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help                         Show this help message\n"
        "  /exit, /quit                  Exit the CLI\n"
        "  /ls [path]                    List files\n"
        "  /pwd                          Show the current directory\n"
        "  /model [name]                 Show or set the model\n"
        "  /api [url]                    Show or set the API base or full chat URL\n"
        "  /system [text|reset]          Show or set the system prompt override\n"
        "  /memory [on|off|clear|path]   Manage conversation memory\n"
        "  /set k=v [...]                Set model=, api=, memory=on|off at once\n"
        "  /search <pattern> [path]      Search text in files\n"
        "  /run <command>                Run a shell command (asks first)\n"
        "  /clear                        Clear the screen"
    )


def _repl_model(session: Session, arg: str) -> None:
    if not arg:
        print(f"Model: {session.settings.model}")
        return
    session.settings.model = arg
    session.update_config(model=arg)
    fmt.info(f"Model set to: {arg}")


def _repl_api(session: Session, arg: str) -> None:
    if not arg:
        print(f"API: {session.settings.api_url or 'default'}")
        return
    session.settings.api_url = arg
    session.update_config(api_url=arg)
    fmt.info(f"API set to: {arg}")


def _repl_system(session: Session, arg: str) -> None:
    if not arg:
        print(f"System prompt: {session.settings.system_prompt}")
        return
    if arg == "reset":
        session.reset_system_prompt()
        fmt.info("System prompt reset.")
        return
    session.settings.system_prompt = arg
    session.update_config(system_prompt=arg)
    session.reset_conversation()
    fmt.info("System prompt updated.")


async def _repl_memory(session: Session, arg: str) -> None:
    action = arg.lower()
    if not action or action == "path":
        print(f"Memory: {'on' if session.settings.memory_enabled else 'off'}")
        print(f"Path: {session.store.path}")
        fmt.context_stats("Live conversation", estimate_tokens(session.messages))
        return
    if action in ("on", "off"):
        session.settings.memory_enabled = action == "on"
        session.update_config(memory_enabled=session.settings.memory_enabled)
        fmt.info(f"Memory {'enabled' if action == 'on' else 'disabled'}.")
        return
    if action == "clear":
        if not await session.confirm("Clear memory? (y/n): "):
            fmt.info("Cancelled.")
            return
        session.store.clear()
        session.reset_conversation()
        fmt.info("Memory cleared.")
        return
    fmt.warning("usage: /memory [on|off|clear|path]")


def _repl_set(session: Session, arg: str) -> None:
    if not arg:
        fmt.info("Usage: /set model=... api=... memory=on|off")
        return
    changes: dict = {}
    for part in arg.split():
        raw_key, _, value = part.partition("=")
        key = raw_key.lower()
        value = value.strip()
        if not key or not value:
            continue
        if key == "model":
            session.settings.model = value
            changes["model"] = value
        elif key == "api":
            session.settings.api_url = value
            changes["api_url"] = value
        elif key == "memory" and value in ("on", "off"):
            session.settings.memory_enabled = value == "on"
            changes["memory_enabled"] = session.settings.memory_enabled
    if not changes:
        fmt.warning("no valid settings provided. Use model=, api=, memory=on|off.")
        return
    session.update_config(**changes)
    fmt.info("Settings updated.")


async def _repl_tool(session: Session, name: str, args: dict) -> None:
    """Run a tool for a slash command and print its result."""
    try:
        result = await run_tool(name, args, str(session.root))
    except Exception as e:
        logger.debug("command tool %s raised", name, exc_info=True)
        result = f"ERROR: {e}"
    print(format_tool_result(result))


async def _repl_search(session: Session, arg: str) -> None:
    parts = arg.split()
    if not parts:
        fmt.info("Usage: /search <pattern> [path]")
        return
    pattern, rest = parts[0], parts[1:]
    await _repl_tool(
        session, "search_text", {"pattern": pattern, "path": " ".join(rest) or "."}
    )


async def _repl_run(session: Session, arg: str) -> None:
    if not arg:
        fmt.info("Usage: /run <command>")
        return
    fmt.confirm_request("run", arg)
    if not await session.confirm("Proceed? (y/n): "):
        fmt.info("Cancelled.")
        return
    await _repl_tool(session, "run_command", {"command": arg})


async def handle_command(session: Session, cmd: Command) -> bool:
    """Run one slash command. Returns False when the REPL should exit."""
    name, arg = cmd.name, cmd.args

    if name in ("exit", "quit"):
        return False
    elif name == "help":
        _repl_help()
    elif name == "clear":
        fmt.clear_screen()
    elif name == "pwd":
        await _repl_tool(session, "current_dir", {})
    elif name == "ls":
        await _repl_tool(session, "list_files", {"path": arg or "."})
    elif name == "model":
        _repl_model(session, arg)
    elif name == "api":
        _repl_api(session, arg)
    elif name == "system":
        _repl_system(session, arg)
    elif name == "memory":
        await _repl_memory(session, arg)
    elif name == "set":
        _repl_set(session, arg)
    elif name == "search":
        await _repl_search(session, arg)
    elif name == "run":
        await _repl_run(session, arg)
    else:
        fmt.warning("unknown command. Type /help for commands.")
    return True


# ---------------------------------------------------------------------------
# REPL
# ---------------------------------------------------------------------------


def make_confirm(prompt_session):
    """Build the y/n confirmation hook on top of a prompt_toolkit session."""

    async def confirm(question: str) -> bool:
        try:
            answer = await prompt_session.prompt_async(question)
        except EOFError:
            return False
        return answer.strip().lower() in ("y", "yes")

    return confirm


async def repl_loop(session: Session, prompt_session) -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit.formatted_text import FormattedText

    while True:
        prompt_text = FormattedText(
            [("bold fg:ansigreen", f"lint-cli ({session.settings.model}) > ")]
        )
        try:
            line = await prompt_session.prompt_async(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        cmd = parse_command(line)
        if cmd.kind == "empty":
            continue
        if cmd.kind == "command":
            if not await handle_command(session, cmd):
                break
            continue

        answer = await run_turn(session, cmd.text)
        if answer:
            print(answer.strip())
            print()


# ---------------------------------------------------------------------------
# CLI entry point
# ---------------------------------------------------------------------------


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="lint-cli",
        description="An interactive terminal assistant with sandboxed file and command tools.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "-m",
        "--model",
        default=None,
        help="Model name (default: $OLLAMA_MODEL, config, or qwen3:8b).",
    )
    parser.add_argument(
        "--api",
        "--base-url",
        dest="api",
        default=None,
        help="API base or full chat URL (default: http://localhost:11434/ollama/api/chat).",
    )

    memory_group = parser.add_mutually_exclusive_group()
    memory_group.add_argument(
        "--memory",
        dest="memory",
        action="store_const",
        const=True,
        default=None,
        help="Load and save conversation history in .lint-cli/memory.json.",
    )
    memory_group.add_argument(
        "--no-memory",
        dest="memory",
        action="store_const",
        const=False,
        help="Start with an empty conversation and don't save it.",
    )

    parser.add_argument(
        "--max-turns",
        type=int,
        default=None,
        help="Maximum model round-trips per question (default: 100).",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Suppress tool-call diagnostics; only print answers and prompts.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        help="Disable ANSI color even when stderr is a TTY.",
    )

    parser.add_argument(
        "--debug",
        action="store_true",
        help="Log gateway and tool internals to stderr.",
    )
    return parser


def main():
    load_dotenv()
    parser = build_parser()
    args = parser.parse_args()

    if args.version:
        try:
            version = metadata.version("lint-cli")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.max_turns is not None and args.max_turns < 1:
        parser.error("--max-turns must be at least 1")

    fmt.init(color=args.color, no_color=args.no_color)
    if args.debug:
        logging.basicConfig(
            level=logging.DEBUG,
            stream=sys.stderr,
            format="%(asctime)s %(name)s %(levelname)s: %(message)s",
        )

    try:
        asyncio.run(_run_main(args))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        kill_running_commands()
        print("\nExiting.", file=sys.stderr)


async def _run_main(args):
    from prompt_toolkit import PromptSession
    from prompt_toolkit.history import FileHistory

    root = Path(os.getcwd())
    config = load_config(state_dir(root))
    settings = resolve_settings(args, config)

    # Confirmation answers stay out of the input history.
    session = Session.start(
        root,
        settings,
        config,
        make_confirm(PromptSession()),
        verbose=not args.quiet,
    )
    prompt_session = PromptSession(
        history=FileHistory(str(session.state_dir / HISTORY_FILENAME)),
        enable_history_search=True,
    )

    fmt.repl_banner(settings.model, settings.api_url or "default")
    await repl_loop(session, prompt_session)


if __name__ == "__main__":
    main()
