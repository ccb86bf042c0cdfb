"""Locate the monorepo root."""

from pathlib import Path

WORKSPACE_MARKERS = ("nx.json", "workspace.json")


def is_nx_workspace(path: Path) -> bool:
    """Check if the directory holds a workspace configuration file."""
    return any((path / marker).is_file() for marker in WORKSPACE_MARKERS)


def find_workspace_root(start: Path) -> Path | None:
    """Walk up from start to the nearest workspace root.

    Returns:
        The first directory (start included) containing nx.json or
        workspace.json, or None if no ancestor is a workspace.

    """
    start = start.resolve()
    for candidate in (start, *start.parents):
        if is_nx_workspace(candidate):
            return candidate
    return None
