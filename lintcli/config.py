"""Configuration file loading and settings resolution for lint-cli.

Reads JSON config from <project>/.lint-cli/config.json. Precedence for each
setting: CLI flag > environment variable > config file > built-in default.
"""

import json
import os
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from . import fmt

STATE_DIRNAME = ".lint-cli"
CONFIG_FILENAME = "config.json"
DEFAULT_MODEL = "qwen3:8b"
DEFAULT_MAX_TURNS = 100
DEFAULT_SYSTEM_PROMPT_FILE = Path(__file__).parent / "system_prompt.txt"


# --- Schema ---

CONFIG_KEYS: dict[str, type] = {
    "model": str,
    "api_url": str,
    "memory_enabled": bool,
    "system_prompt": str,
    "max_turns": int,
}


@dataclass
class Settings:
    """Resolved runtime settings for one session."""

    model: str
    api_url: str
    memory_enabled: bool
    system_prompt: str
    api_key: str | None = None
    max_turns: int = DEFAULT_MAX_TURNS


# --- Internal helpers ---


def state_dir(base_dir: str | Path) -> Path:
    """Return the project-local state directory (not created here)."""
    return Path(base_dir).resolve() / STATE_DIRNAME


def _validate_config(config: dict, source: str) -> dict:
    """Return the known, well-typed keys of a parsed config dict.

    Unknown keys and values of the wrong type are warned about and dropped.
    """
    valid = {}
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            fmt.warning(f"{source}: unknown config key {key!r}")
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject it for non-bool fields.
        if isinstance(value, bool) and expected is not bool:
            got = "bool"
        elif not isinstance(value, expected):
            got = type(value).__name__
        else:
            got = None
        if got is not None:
            fmt.warning(
                f"{source}: {key!r} expected {expected.__name__}, got {got}; ignored"
            )
            continue
        if key == "max_turns" and value < 1:
            fmt.warning(f"{source}: 'max_turns' must be at least 1; ignored")
            continue
        valid[key] = value
    return valid


def default_system_prompt() -> str:
    """Packaged system prompt with the current date and time appended."""
    text = DEFAULT_SYSTEM_PROMPT_FILE.read_text(encoding="utf-8").strip()
    now = datetime.now().astimezone()
    return f"{text}\n\nCurrent date and time: {now.strftime('%Y-%m-%d %H:%M %Z')}"


# --- Public API ---


def load_config(directory: str | Path) -> dict:
    """Load and validate config.json from the state directory.

    Returns only the known keys that were actually set and valid. A missing
    file gives an empty dict; an unreadable or malformed one warns and
    gives an empty dict too.
    """
    path = Path(directory) / CONFIG_FILENAME
    if not path.is_file():
        return {}
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        fmt.warning(f"{path}: invalid JSON ({e}); using defaults")
        return {}
    except OSError as e:
        fmt.warning(f"{path}: cannot read file ({e}); using defaults")
        return {}

    if not isinstance(data, dict):
        fmt.warning(f"{path}: expected a JSON object at top level; using defaults")
        return {}

    return _validate_config(data, str(path))


def save_config(directory: str | Path, config: dict) -> None:
    """Write the whole config file, creating the state directory if needed."""
    path = Path(directory) / CONFIG_FILENAME
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(config, indent=2) + "\n", encoding="utf-8")


def resolve_settings(args, config: dict, environ=None) -> Settings:
    """Merge CLI arguments, environment and config file into Settings."""
    env = os.environ if environ is None else environ

    model = (
        getattr(args, "model", None)
        or env.get("OLLAMA_MODEL")
        or config.get("model")
        or DEFAULT_MODEL
    )
    api_url = (
        getattr(args, "api", None)
        or env.get("OLLAMA_API")
        or env.get("OPENWEBUI_API")
        or config.get("api_url")
        or ""
    )
    memory = getattr(args, "memory", None)
    if memory is None:
        memory = config.get("memory_enabled") is not False

    return Settings(
        model=model,
        api_url=api_url,
        memory_enabled=memory,
        system_prompt=config.get("system_prompt") or default_system_prompt(),
        api_key=env.get("OLLAMA_API_KEY") or None,
        max_turns=getattr(args, "max_turns", None)
        or config.get("max_turns")
        or DEFAULT_MAX_TURNS,
    )
