"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.text import Text

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Model round-trips -------------------------------------------------------


def llm_spinner(label: str = "thinking"):
    """Return a Rich Status context manager that spins on stderr."""
    return _console.status(f"  {escape(label)}...", spinner="dots")


def completion(rounds: int, outcome: str) -> None:
    if outcome == "ok":
        _console.print(
            Text(f"  \u2713 Turn finished: {rounds} model calls", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Turn stopped: {rounds} model calls, {outcome}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(name: str, args_json: str) -> None:
    header = Text()
    header.append("  \u25b6 ", style="bold magenta")
    header.append(name, style="bold magenta")
    _console.print(header)
    if args_json:
        for line in args_json.splitlines():
            _console.print(Text(f"    {line}", style="dim"))


def tool_result(name: str, elapsed: float, output: str) -> None:
    header = Text()
    header.append(f"  \u2713 [tool:{name}]", style="green")
    header.append(f"  {elapsed:.1f}s", style="green")
    _console.print(header)
    for line in output.splitlines():
        _console.print(Text(f"    {line}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  \u2717 [tool:{name}]", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


def confirm_request(action: str, target: str) -> None:
    """Explain a pending mutating tool call before asking for confirmation."""
    line = Text()
    line.append(f"\nThe assistant wants to {action}:\n", style="bold yellow")
    line.append(f"  {target}\n", style="yellow")
    _console.print(line)


def cancelled(name: str) -> None:
    _console.print(Text(f"  \u2717 {name} cancelled", style="yellow"))


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def context_stats(label: str, tokens: int) -> None:
    _console.print(Text(f"  {label}: ~{tokens} tokens", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  \u26a0 Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def clear_screen() -> None:
    _console.clear()


def repl_banner(model: str, api_label: str) -> None:
    _console.print(Text("lint-cli", style="bold"))
    _console.print(Text(f"Model: {model}", style="dim"))
    _console.print(Text(f"API: {api_label}", style="dim"))
    _console.print(Text("Type /help for commands, /exit or Ctrl-D to quit.\n", style="dim"))
