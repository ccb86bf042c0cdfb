"""Configuration for a workspace session."""

import json
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, PositiveFloat


class WorkspaceSettings(BaseModel):
    """Settings for one workspace."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    workspace_root: Path
    base_branch: str = "main"
    head_ref: str = "HEAD"
    nx_command: tuple[str, ...] = Field(default=("npx", "nx"), min_length=1)
    test_target: str = "test"
    output_style: str = "stream"
    # Where the test command writes its JSON report; relative to workspace_root.
    output_directory: Path | None = None
    cache_ttl: PositiveFloat = 300
    command_timeout: PositiveFloat | None = 120
    test_timeout: PositiveFloat | None = 1800
    parser: str = "jest"


def load_settings(raw_json: str, workspace_root: Path) -> WorkspaceSettings:
    """Build settings from a JSON object string.

    Args:
        raw_json: JSON object with setting overrides (may be empty)
        workspace_root: Workspace root used unless the JSON overrides it

    Returns:
        Validated settings

    Raises:
        ValueError: If the JSON is not an object
        pydantic.ValidationError: If a setting is invalid or unknown

    """
    overrides: Any = json.loads(raw_json) if raw_json.strip() else {}
    if not isinstance(overrides, dict):
        raise ValueError("Configuration must be a JSON object")

    return WorkspaceSettings(**{"workspace_root": workspace_root, **overrides})
