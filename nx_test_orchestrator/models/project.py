"""Models for monorepo projects reported by the build-graph CLI."""

from collections.abc import Mapping
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

type ProjectKind = Literal["application", "library"]


class Project(BaseModel):
    """One buildable/testable unit of the workspace.

    Instances are immutable snapshots; the cache replaces the whole list on
    refresh instead of patching entries.
    """

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., description="Unique project name")
    kind: ProjectKind = Field(..., description="Application or library")
    root: str = Field(default="", description="Project root relative to workspace")
    source_root: str | None = Field(default=None, description="Source root")
    targets: Mapping[str, Mapping[str, Any]] = Field(
        default_factory=dict, description="Target name to executor configuration"
    )
