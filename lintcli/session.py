"""Session context threaded through the loop and the REPL commands."""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable

from . import fmt
from .config import Settings, default_system_prompt, save_config, state_dir
from .errors import AgentError
from .memory import ConversationStore, trim_history

ConfirmFn = Callable[[str], Awaitable[bool]]


@dataclass
class Session:
    """Everything one interactive session owns.

    `messages` is the live conversation (system message first). Only the
    loop and the REPL commands mutate it; `store` is the only reader and
    writer of the persisted copy.
    """

    root: Path
    settings: Settings
    config: dict
    store: ConversationStore
    confirm: ConfirmFn
    messages: list = field(default_factory=list)
    verbose: bool = True

    @classmethod
    def start(
        cls,
        root: str | Path,
        settings: Settings,
        config: dict,
        confirm: ConfirmFn,
        *,
        verbose: bool = True,
    ) -> "Session":
        """Create the state directory and load the saved conversation."""
        directory = state_dir(root)
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise AgentError(f"cannot create state directory {directory}: {e}")

        session = cls(
            root=Path(root).resolve(),
            settings=settings,
            config=config,
            store=ConversationStore(directory),
            confirm=confirm,
            verbose=verbose,
        )
        saved = session.store.load() if settings.memory_enabled else []
        session.messages[:] = [session.system_message(), *saved]
        return session

    @property
    def state_dir(self) -> Path:
        return self.store.state_dir

    def system_message(self) -> dict:
        return {"role": "system", "content": self.settings.system_prompt}

    def reset_conversation(self) -> None:
        """Drop the live history, keeping only a fresh system message."""
        self.messages[:] = [self.system_message()]

    def commit(self) -> None:
        """Trim the live history and persist it when memory is enabled."""
        self.messages[:] = trim_history(self.messages)
        if not self.settings.memory_enabled:
            return
        try:
            self.store.save(self.messages)
        except OSError as e:
            fmt.warning(f"failed to save conversation: {e}")

    def update_config(self, **changes) -> None:
        """Apply changes to the persisted config; a None value removes the key."""
        for key, value in changes.items():
            if value is None:
                self.config.pop(key, None)
            else:
                self.config[key] = value
        try:
            save_config(self.state_dir, self.config)
        except OSError as e:
            fmt.warning(f"failed to save config: {e}")

    def reset_system_prompt(self) -> None:
        self.settings.system_prompt = default_system_prompt()
        self.update_config(system_prompt=None)
        self.reset_conversation()
