"""Durable conversation history under the project state directory."""

import json
import os
import tempfile
from pathlib import Path

MAX_HISTORY = 80
MEMORY_FILENAME = "memory.json"


def _role(msg) -> str | None:
    return msg.get("role") if isinstance(msg, dict) else None


def trim_history(messages: list, limit: int = MAX_HISTORY) -> list:
    """Keep the system message first plus the most recent `limit` other messages.

    When the cut lands inside a tool-call group, the leading orphan tool
    results are dropped as well so the history stays well-formed. A list
    that already fits is returned unchanged.
    """
    system = next((m for m in messages if _role(m) == "system"), None)
    rest = [m for m in messages if _role(m) != "system"]
    if len(rest) > limit:
        rest = rest[-limit:]
        while rest and _role(rest[0]) == "tool":
            rest.pop(0)
    return [system, *rest] if system is not None else rest


class ConversationStore:
    """Reads and writes the persisted (non-system) conversation.

    The file holds ``{"messages": [...]}``. Writes replace the whole file
    atomically; a missing or unreadable file loads as an empty history.
    """

    def __init__(self, state_dir: str | Path):
        self.state_dir = Path(state_dir)

    @property
    def path(self) -> Path:
        return self.state_dir / MEMORY_FILENAME

    def load(self) -> list[dict]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError):
            return []
        messages = data.get("messages") if isinstance(data, dict) else None
        if not isinstance(messages, list):
            return []
        return [
            m
            for m in messages
            if isinstance(m, dict) and m.get("role") in ("user", "assistant", "tool")
        ]

    def save(self, messages: list) -> None:
        """Persist every non-system message."""
        payload = {"messages": [m for m in messages if _role(m) != "system"]}
        self.state_dir.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            dir=self.state_dir, prefix=".memory-", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(payload, f, indent=2, ensure_ascii=False)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
