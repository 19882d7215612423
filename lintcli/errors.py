"""Exception types shared across lint-cli."""


class AgentError(Exception):
    """Raised by the agent or setup helpers for reportable runtime failures."""
