"""Tool definitions and implementations for the assistant's local operations."""

import json
import logging
import os
import re
import shutil
import signal
import subprocess
import sys
import threading
from pathlib import Path

from .sandbox import is_within, safe_resolve

logger = logging.getLogger(__name__)

TOOLS = [
    {
        "type": "function",
        "function": {
            "name": "read_file",
            "description": (
                "Read a text file from the project. Returns the whole file when it is "
                "small enough; use start_line/end_line (1-based, inclusive) to read "
                "a slice of a large file."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "File path, relative to the project root.",
                    },
                    "start_line": {
                        "type": "integer",
                        "description": "First line to return (1-based).",
                    },
                    "end_line": {
                        "type": "integer",
                        "description": (
                            "Last line to return (inclusive). "
                            "Defaults to start_line + 200."
                        ),
                    },
                },
                "required": ["path"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "write_file",
            "description": (
                "Create or overwrite a file with the given content. "
                "Parent directories are created as needed."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "File path, relative to the project root.",
                    },
                    "content": {
                        "type": "string",
                        "description": "Full content to write.",
                    },
                },
                "required": ["path", "content"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "list_files",
            "description": (
                "List a directory. Directories are suffixed with /. With recursive=true, "
                "walks up to max_depth levels and returns paths relative to the directory."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "Directory to list. Defaults to the project root.",
                        "default": ".",
                    },
                    "recursive": {
                        "type": "boolean",
                        "description": "Walk subdirectories.",
                        "default": False,
                    },
                    "max_depth": {
                        "type": "integer",
                        "description": "Maximum depth for recursive listings. Defaults to 2.",
                        "default": 2,
                    },
                },
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "search_text",
            "description": (
                "Search file contents. Returns one line per match formatted as "
                "path:line: text."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "pattern": {
                        "type": "string",
                        "description": "Text (or regular expression when regex=true) to find.",
                    },
                    "path": {
                        "type": "string",
                        "description": "Directory or file to search. Defaults to the project root.",
                        "default": ".",
                    },
                    "regex": {
                        "type": "boolean",
                        "description": "Treat pattern as a regular expression.",
                        "default": False,
                    },
                    "case_sensitive": {
                        "type": "boolean",
                        "description": "Match case exactly.",
                        "default": False,
                    },
                    "max_results": {
                        "type": "integer",
                        "description": "Maximum number of matching lines. Defaults to 50.",
                        "default": 50,
                    },
                },
                "required": ["pattern"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "replace_in_file",
            "description": (
                "Replace text in an existing file. Prefer this over write_file for small edits."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "path": {
                        "type": "string",
                        "description": "File path, relative to the project root.",
                    },
                    "search": {
                        "type": "string",
                        "description": "Text (or regular expression when regex=true) to replace.",
                    },
                    "replace": {
                        "type": "string",
                        "description": (
                            "Replacement text, inserted literally. With regex=true, "
                            "\\g<1> or \\g<name> inserts a captured group."
                        ),
                        "default": "",
                    },
                    "all": {
                        "type": "boolean",
                        "description": "Replace every occurrence instead of only the first.",
                        "default": True,
                    },
                    "regex": {
                        "type": "boolean",
                        "description": "Treat search as a regular expression.",
                        "default": False,
                    },
                },
                "required": ["path", "search"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "run_command",
            "description": (
                "Run a command in the project directory and return its combined output. "
                "Without args, command is run through the shell; with args, the program "
                "is executed directly."
            ),
            "parameters": {
                "type": "object",
                "properties": {
                    "command": {
                        "type": "string",
                        "description": 'Shell command line, or the program name when args is given (e.g. "npm").',
                    },
                    "args": {
                        "type": "array",
                        "items": {"type": "string"},
                        "description": 'Program arguments, one per element (e.g. ["test", "--", "-u"]).',
                    },
                    "cwd": {
                        "type": "string",
                        "description": "Working directory, relative to the project root.",
                        "default": ".",
                    },
                },
                "required": ["command"],
            },
        },
    },
    {
        "type": "function",
        "function": {
            "name": "current_dir",
            "description": "Return the current working directory.",
            "parameters": {"type": "object", "properties": {}},
        },
    },
]

TOOL_NAMES = frozenset(t["function"]["name"] for t in TOOLS)
MUTATING_TOOLS = frozenset({"write_file", "replace_in_file", "run_command"})

MAX_READ_BYTES = 512 * 1024  # 512 KB
DEFAULT_RANGE_LINES = 200
BINARY_CHECK_BYTES = 4 * 1024
IGNORED_DIRS = frozenset(
    {".git", "node_modules", ".lint-cli", "dist", "build", "__pycache__", ".venv"}
)
SEARCH_TIMEOUT = 60
COMMAND_TIMEOUT = 120
_KILL_WAIT_TIMEOUT = 5

# Commands started by run_command that have not exited yet.
_running: set = set()
_running_lock = threading.Lock()


class UnknownToolError(KeyError):
    """Raised by dispatch() for a tool name outside the registry."""


# ---------------------------------------------------------------------------
# current_dir / read_file / write_file
# ---------------------------------------------------------------------------


def _current_dir() -> str:
    return os.getcwd()


def _read_range(resolved: Path, start_line: int | None, end_line: int | None) -> str:
    """Stream the inclusive 1-based [start, end] line range of a file."""
    start = max(1, start_line or 1)
    end = end_line if end_line and end_line >= start else start + DEFAULT_RANGE_LINES

    selected: list[str] = []
    with resolved.open(encoding="utf-8", errors="replace") as f:
        for line_no, line in enumerate(f, start=1):
            if line_no < start:
                continue
            if line_no > end:
                break
            selected.append(line.rstrip("\r\n"))
    return "\n".join(selected)


def _read_file(
    path: str,
    root: str,
    start_line: int | None = None,
    end_line: int | None = None,
) -> str:
    """Read a whole file, or a line range of it."""
    resolved = safe_resolve(root, path)
    if isinstance(resolved, str):
        return resolved

    if not resolved.exists():
        return f"ERROR: File not found: {path}"
    if not resolved.is_file():
        return f"ERROR: Path is not a file: {path}"

    size = resolved.stat().st_size
    wants_range = start_line is not None or end_line is not None
    if size > MAX_READ_BYTES and not wants_range:
        return (
            f"ERROR: File is too large to read at once ({size} bytes). "
            "Use start_line/end_line."
        )

    try:
        if wants_range:
            return _read_range(resolved, start_line, end_line)
        return resolved.read_text(encoding="utf-8", errors="replace")
    except OSError as exc:
        return f"ERROR: Cannot read file {path}: {exc}"


def _write_file(path: str, content: str, root: str) -> str:
    """Create or overwrite a file with content."""
    resolved = safe_resolve(root, path)
    if isinstance(resolved, str):
        return resolved

    try:
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_text(content, encoding="utf-8")
    except OSError as exc:
        return f"ERROR: Cannot write file {path}: {exc}"
    return f"OK: File written -> {path}"


# ---------------------------------------------------------------------------
# list_files
# ---------------------------------------------------------------------------


def _walk_dir(base: Path, current: Path, depth: int, max_depth: int, out: list[str]):
    """Pre-order walk collecting paths relative to base, dirs suffixed with /."""
    if depth > max_depth:
        return
    for entry in sorted(os.scandir(current), key=lambda e: e.name):
        entry_path = Path(entry.path)
        is_dir = entry.is_dir()
        rel = entry_path.relative_to(base).as_posix() + ("/" if is_dir else "")
        out.append(rel)
        # Symlinked directories are listed but never descended into.
        if is_dir and not entry.is_symlink():
            _walk_dir(base, entry_path, depth + 1, max_depth, out)


def _list_files(
    root: str,
    path: str = ".",
    recursive: bool = False,
    max_depth: int = 2,
) -> list[str] | str:
    """List a directory, optionally recursing up to max_depth levels."""
    resolved = safe_resolve(root, path)
    if isinstance(resolved, str):
        return resolved

    if not resolved.exists():
        return f"ERROR: Directory not found: {path}"
    if not resolved.is_dir():
        return f"ERROR: Path is not a directory: {path}"

    depth = max(0, max_depth)
    try:
        if not recursive or depth == 0:
            return sorted(
                entry.name + ("/" if entry.is_dir() else "")
                for entry in os.scandir(resolved)
            )
        out: list[str] = []
        _walk_dir(resolved, resolved, 1, depth, out)
    except PermissionError as exc:
        return f"ERROR: {exc}"
    return sorted(out)


# ---------------------------------------------------------------------------
# search_text
# ---------------------------------------------------------------------------

_RG_LINE_RE = re.compile(r"^(.*?):(\d+):(.*)$")


def _search_with_ripgrep(
    rg_path: str,
    pattern: str,
    target: Path,
    regex: bool,
    case_sensitive: bool,
    max_results: int,
) -> list[str] | str:
    """Run ripgrep from inside the search root so reported paths are relative."""
    cmd = [
        rg_path,
        "--line-number",
        "--no-heading",
        "--with-filename",
        "--color",
        "never",
        "--sort",
        "path",
        "--max-count",
        str(max_results),
    ]
    if not case_sensitive:
        cmd.append("-i")
    if not regex:
        cmd.append("-F")
    for name in sorted(IGNORED_DIRS):
        cmd += ["--glob", f"!{name}"]
    cmd += ["-e", pattern]

    if target.is_file():
        cwd, cmd = target.parent, cmd + [target.name]
    else:
        cwd = target

    try:
        proc = subprocess.run(
            cmd,
            cwd=cwd,
            capture_output=True,
            stdin=subprocess.DEVNULL,
            timeout=SEARCH_TIMEOUT,
        )
    except subprocess.TimeoutExpired:
        return f"ERROR: search timed out after {SEARCH_TIMEOUT}s"

    stdout = proc.stdout.decode("utf-8", errors="replace")
    if proc.returncode == 1:
        return []
    if proc.returncode != 0 and not stdout.strip():
        stderr = proc.stderr.decode("utf-8", errors="replace").strip()
        return f"ERROR: {stderr or f'rg exited with code {proc.returncode}'}"

    results: list[str] = []
    for raw in stdout.splitlines():
        m = _RG_LINE_RE.match(raw)
        if not m:
            continue
        rel, line_no, text = m.groups()
        if rel.startswith("./"):
            rel = rel[2:]
        results.append(f"{rel}:{line_no}: {text}")
        if len(results) >= max_results:
            break
    return results


def _is_searchable(filepath: Path) -> bool:
    """Regular text file under the size ceiling (no NUL byte in the first 4 KB)."""
    try:
        if not filepath.is_file() or filepath.stat().st_size > MAX_READ_BYTES:
            return False
        with open(filepath, "rb") as f:
            chunk = f.read(BINARY_CHECK_BYTES)
    except OSError:
        return False
    return b"\x00" not in chunk


def _search_with_walk(
    pattern: str,
    target: Path,
    root: str,
    regex: bool,
    case_sensitive: bool,
    max_results: int,
) -> list[str] | str:
    """Pure-Python fallback used when ripgrep is not installed."""
    if regex:
        try:
            compiled = re.compile(pattern, 0 if case_sensitive else re.IGNORECASE)
        except re.error as exc:
            return f"ERROR: Invalid regex: {exc}"

        def matches(line: str) -> bool:
            return compiled.search(line) is not None

    elif case_sensitive:

        def matches(line: str) -> bool:
            return pattern in line

    else:
        needle = pattern.lower()

        def matches(line: str) -> bool:
            return needle in line.lower()

    if target.is_file():
        base = target.parent
        candidates = [target]
    else:
        base = target
        candidates = _iter_search_files(target)

    results: list[str] = []
    for filepath in candidates:
        if not is_within(root, filepath) or not _is_searchable(filepath):
            continue
        try:
            text = filepath.read_text(encoding="utf-8", errors="replace")
        except OSError:
            continue
        rel = filepath.relative_to(base).as_posix()
        for line_no, line in enumerate(text.splitlines(), start=1):
            if matches(line):
                results.append(f"{rel}:{line_no}: {line}")
                if len(results) >= max_results:
                    return results
    return results


def _iter_search_files(base: Path):
    for dirpath, dirs, files in os.walk(base):
        dirs[:] = sorted(d for d in dirs if d not in IGNORED_DIRS)
        for filename in sorted(files):
            if filename in IGNORED_DIRS:
                continue
            yield Path(dirpath) / filename


def _search_text(
    pattern: str,
    root: str,
    path: str = ".",
    regex: bool = False,
    case_sensitive: bool = False,
    max_results: int = 50,
) -> list[str] | str:
    """Search file contents with ripgrep, or the built-in walker when rg is missing."""
    if not pattern:
        return "ERROR: pattern is required"
    resolved = safe_resolve(root, path)
    if isinstance(resolved, str):
        return resolved
    if not resolved.exists():
        return f"ERROR: Path not found: {path}"

    max_results = max(1, max_results or 50)
    rg_path = shutil.which("rg")
    if rg_path is not None:
        try:
            return _search_with_ripgrep(
                rg_path, pattern, resolved, regex, case_sensitive, max_results
            )
        except FileNotFoundError:
            logger.debug("rg vanished from PATH, using built-in search")
    else:
        logger.debug("rg not found on PATH, using built-in search")
    return _search_with_walk(
        pattern, resolved, root, regex, case_sensitive, max_results
    )


# ---------------------------------------------------------------------------
# replace_in_file
# ---------------------------------------------------------------------------

_GROUP_REF_RE = re.compile(r"\\g<(\w+)>")


def _expand_groups(match: re.Match, template: str) -> str:
    """Substitute \\g<n> / \\g<name> references; every other character is literal."""

    def group(ref: re.Match) -> str:
        key = ref.group(1)
        return match.group(int(key) if key.isdigit() else key) or ""

    return _GROUP_REF_RE.sub(group, template)


def _replace_in_file(
    path: str,
    search: str,
    root: str,
    replace: str = "",
    replace_all: bool = True,
    regex: bool = False,
) -> str:
    """Substitute text in a file, writing it back only if something changed."""
    if not search:
        return "ERROR: search is required"
    resolved = safe_resolve(root, path)
    if isinstance(resolved, str):
        return resolved

    if not resolved.exists():
        return f"ERROR: File not found: {path}"
    if not resolved.is_file():
        return f"ERROR: Path is not a file: {path}"

    try:
        content = resolved.read_text(encoding="utf-8")
    except (UnicodeDecodeError, OSError) as exc:
        return f"ERROR: Cannot read file {path}: {exc}"

    if regex:
        try:
            compiled = re.compile(search)
        except re.error as exc:
            return f"ERROR: Invalid regex: {exc}"
        try:
            updated = compiled.sub(
                lambda m: _expand_groups(m, replace),
                content,
                count=0 if replace_all else 1,
            )
        except (IndexError, re.error) as exc:
            return f"ERROR: Invalid replacement: {exc}"
    elif replace_all:
        updated = content.replace(search, replace)
    else:
        updated = content.replace(search, replace, 1)

    if updated == content:
        return "OK: No changes made"

    try:
        resolved.write_text(updated, encoding="utf-8")
    except OSError as exc:
        return f"ERROR: Cannot write file {path}: {exc}"
    return f"OK: Replaced in {path}"


# ---------------------------------------------------------------------------
# run_command
# ---------------------------------------------------------------------------


def _signal_process_tree(proc: subprocess.Popen) -> None:
    """Send SIGKILL to a process and its descendants without waiting."""
    if sys.platform != "win32":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except OSError:
            pass  # already exited
    else:
        try:
            subprocess.run(
                ["taskkill", "/T", "/F", "/PID", str(proc.pid)],
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
                timeout=5,
            )
        except (OSError, subprocess.TimeoutExpired):
            pass  # best-effort
    try:
        proc.kill()
    except OSError:
        pass


def _kill_process_tree(proc: subprocess.Popen) -> None:
    """Kill a process and its descendants, then wait for exit."""
    _signal_process_tree(proc)
    try:
        proc.wait(timeout=_KILL_WAIT_TIMEOUT)
    except subprocess.TimeoutExpired:
        pass


def kill_running_commands() -> int:
    """Kill every run_command child still running; return how many were signalled.

    Safe to call from any thread. The worker thread blocked in communicate()
    reaps the process itself.
    """
    with _running_lock:
        procs = list(_running)
    for proc in procs:
        logger.debug("killing command pid=%d", proc.pid)
        _signal_process_tree(proc)
    return len(procs)


def _run_command(
    command: str,
    root: str,
    args: list[str] | None = None,
    cwd: str = ".",
    timeout: int = COMMAND_TIMEOUT,
) -> str:
    """Run a program directly (with args) or a command line through the shell."""
    if not command:
        return "ERROR: command is required"
    resolved = safe_resolve(root, cwd or ".")
    if isinstance(resolved, str):
        return resolved
    if not resolved.is_dir():
        return f"ERROR: Directory not found: {cwd}"

    if args:
        argv: list[str] | str = [command, *args]
        shell = False
        display = " ".join([command, *args])
    else:
        argv = command
        shell = True
        display = command

    popen_kwargs: dict = dict(
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        stdin=subprocess.DEVNULL,
        cwd=resolved,
        shell=shell,
    )
    if sys.platform != "win32":
        popen_kwargs["start_new_session"] = True

    try:
        proc = subprocess.Popen(argv, **popen_kwargs)
    except FileNotFoundError:
        return f"ERROR: Command not found: {command}"
    except PermissionError:
        return f"ERROR: Permission denied executing: {command}"
    except OSError as exc:
        return f"ERROR: Failed to start command: {exc}"

    with _running_lock:
        _running.add(proc)
    try:
        stdout, stderr = proc.communicate(timeout=timeout)
    except subprocess.TimeoutExpired:
        _kill_process_tree(proc)
        proc.communicate()
        return f"ERROR: Command timed out after {timeout}s: {display}"
    finally:
        with _running_lock:
            _running.discard(proc)

    output = "\n".join(
        part
        for part in (
            stdout.decode("utf-8", errors="replace"),
            stderr.decode("utf-8", errors="replace"),
        )
        if part
    )
    if proc.returncode != 0:
        result = f"ERROR: Command failed (exit {proc.returncode}): {display}"
        return f"{result}\n{output}" if output else result
    return output or "(no output)"


# ---------------------------------------------------------------------------
# Argument validation and dispatch
# ---------------------------------------------------------------------------

_SCHEMAS = {t["function"]["name"]: t["function"]["parameters"] for t in TOOLS}
_INVALID = object()
_TRUE_WORDS = {"true", "yes", "1"}
_FALSE_WORDS = {"false", "no", "0"}


def _coerce(value, kind: str | None):
    """Convert a model-supplied value to the schema type, or return _INVALID."""
    if kind == "string":
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return _INVALID
    if kind == "integer":
        if isinstance(value, bool):
            return _INVALID
        if isinstance(value, int):
            return value
        if isinstance(value, float) and value.is_integer():
            return int(value)
        if isinstance(value, str):
            try:
                return int(value.strip())
            except ValueError:
                return _INVALID
        return _INVALID
    if kind == "boolean":
        if isinstance(value, bool):
            return value
        if isinstance(value, str):
            word = value.strip().lower()
            if word in _TRUE_WORDS:
                return True
            if word in _FALSE_WORDS:
                return False
        if value in (0, 1):
            return bool(value)
        return _INVALID
    if kind == "array":
        if isinstance(value, str):
            # Some models send the array JSON-encoded.
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                return _INVALID
        if not isinstance(value, list):
            return _INVALID
        return [str(item) for item in value]
    return value


def validate_args(name: str, args) -> dict | str:
    """Check and coerce arguments against the tool's parameter schema.

    Returns the cleaned argument dict, or an ERROR string. Unknown
    parameters are dropped; null values count as absent.
    """
    schema = _SCHEMAS[name]
    if args is None:
        args = {}
    if not isinstance(args, dict):
        return f"ERROR: arguments for {name} must be an object"

    properties = schema.get("properties", {})
    cleaned = {}
    for key, value in args.items():
        prop = properties.get(key)
        if prop is None:
            logger.debug("dropping unknown parameter %r for %s", key, name)
            continue
        if value is None:
            continue
        converted = _coerce(value, prop.get("type"))
        if converted is _INVALID:
            return f"ERROR: {key} must be of type {prop.get('type')}"
        cleaned[key] = converted

    for key in schema.get("required", []):
        if key not in cleaned:
            return f"ERROR: {key} is required"
    return cleaned


def dispatch(name: str, args, root: str):
    """Route a tool call to the appropriate implementation.

    Args:
        name: The tool name to invoke.
        args: Arguments supplied by the model (validated against the schema).
        root: Project root every path is confined to.

    Returns:
        The tool result: a string, a list of strings, or a mapping.

    Raises:
        UnknownToolError: If the tool name is not registered.
    """
    if name not in TOOL_NAMES:
        raise UnknownToolError(name)

    args = validate_args(name, args)
    if isinstance(args, str):
        return args

    if name == "current_dir":
        return _current_dir()
    elif name == "read_file":
        return _read_file(
            path=args["path"],
            root=root,
            start_line=args.get("start_line"),
            end_line=args.get("end_line"),
        )
    elif name == "write_file":
        return _write_file(path=args["path"], content=args["content"], root=root)
    elif name == "list_files":
        return _list_files(
            root=root,
            path=args.get("path", "."),
            recursive=args.get("recursive", False),
            max_depth=args.get("max_depth", 2),
        )
    elif name == "search_text":
        return _search_text(
            pattern=args["pattern"],
            root=root,
            path=args.get("path", "."),
            regex=args.get("regex", False),
            case_sensitive=args.get("case_sensitive", False),
            max_results=args.get("max_results", 50),
        )
    elif name == "replace_in_file":
        return _replace_in_file(
            path=args["path"],
            search=args["search"],
            root=root,
            replace=args.get("replace", ""),
            replace_all=args.get("all", True),
            regex=args.get("regex", False),
        )
    else:  # run_command
        return _run_command(
            command=args["command"],
            root=root,
            args=args.get("args"),
            cwd=args.get("cwd", "."),
        )


def format_tool_result(result) -> str:
    """Render a tool result for the terminal."""
    if isinstance(result, list):
        return "\n".join(str(item) for item in result)
    if isinstance(result, dict):
        return json.dumps(result, indent=2)
    return str(result)


def tool_message_content(result) -> str:
    """Render a tool result as tool-message content for the model."""
    if isinstance(result, str):
        return result
    return json.dumps(result, indent=2)
