"""Path containment for every file and process tool."""

import os
from pathlib import Path


class SandboxError(ValueError):
    """Raised when a path resolves outside the project root."""


def _is_contained(resolved: Path, root: Path) -> bool:
    """Case-insensitive prefix check so case-insensitive filesystems can't bypass it."""
    root_key = str(root).lower()
    path_key = str(resolved).lower()
    if path_key == root_key:
        return True
    prefix = root_key if root_key.endswith(os.sep) else root_key + os.sep
    return path_key.startswith(prefix)


def resolve(root: str | Path, candidate: str | Path) -> Path:
    """Resolve candidate against root and verify it stays inside root.

    Relative candidates are joined onto root; absolute ones are taken as-is.
    Both sides are fully resolved (".." collapsed, symlinks followed) before
    the containment check.

    Raises:
        SandboxError: If the resolved path escapes root.
    """
    base = Path(root).resolve()
    resolved = (base / candidate).resolve()
    if not _is_contained(resolved, base):
        raise SandboxError(f"Path outside project: {candidate}")
    return resolved


def safe_resolve(root: str | Path, candidate: str | Path) -> Path | str:
    """Like resolve(), but returns an ERROR string instead of raising."""
    try:
        return resolve(root, candidate)
    except SandboxError as exc:
        return f"ERROR: {exc}"


def is_within(root: str | Path, path: Path) -> bool:
    """Check that an already-discovered path still resolves inside root."""
    try:
        resolved = path.resolve()
    except (OSError, ValueError):
        return False
    return _is_contained(resolved, Path(root).resolve())
