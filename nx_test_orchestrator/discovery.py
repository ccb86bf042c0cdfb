"""Project discovery through the build-graph CLI."""

import asyncio
import json
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any

from nx_test_orchestrator.classification import (
    ExecutorKindClassifier,
    ProjectKindClassifier,
)
from nx_test_orchestrator.errors import CommandError, DiscoveryError
from nx_test_orchestrator.models.project import Project
from nx_test_orchestrator.nx_cli import NxCli

log = logging.getLogger(__name__)


def parse_project_names(raw: str) -> Sequence[str]:
    """Parse the JSON array printed by ``nx show projects --json``.

    Raises:
        ValueError: If the output is not a JSON array of strings

    """
    names = json.loads(raw)
    if not isinstance(names, list) or not all(isinstance(n, str) for n in names):
        raise ValueError("Expected a JSON array of project names")
    return names


def parse_project(
    name: str, config: Mapping[str, Any], classifier: ProjectKindClassifier
) -> Project:
    """Build a Project from one project's JSON configuration.

    Raises:
        ValueError: If the configuration is not a JSON object or has invalid
            fields

    """
    if not isinstance(config, Mapping):
        raise ValueError(f"Configuration for {name} is not a JSON object")

    targets = config.get("targets") or {}
    if not isinstance(targets, Mapping):
        raise ValueError(f"Targets of {name} are not a JSON object")

    return Project(
        name=name,
        kind=classifier.classify(config),
        root=config.get("root") or "",
        source_root=config.get("sourceRoot"),
        targets=targets,
    )


@dataclass(frozen=True, kw_only=True)
class ProjectDiscoveryService:
    """Translates the nx project registry into Project records."""

    cli: NxCli
    classifier: ProjectKindClassifier = field(default_factory=ExecutorKindClassifier)

    async def discover(self) -> Sequence[Project]:
        """List every project of the workspace.

        Configuration fetches run concurrently; a project whose configuration
        cannot be fetched or parsed is left out. The order of the returned
        list is unspecified.

        Raises:
            DiscoveryError: If the project names cannot be listed

        """
        try:
            names = parse_project_names(await self.cli.show_projects())
        except CommandError as e:
            raise DiscoveryError(f"Failed to list projects: {e}") from e
        except ValueError as e:
            raise DiscoveryError(f"Failed to parse project list: {e}") from e

        log.debug("Fetching configuration for %d project(s)", len(names))
        projects = await asyncio.gather(*(self._load_project(n) for n in names))

        return [project for project in projects if project is not None]

    async def _load_project(self, name: str) -> Project | None:
        try:
            raw = await self.cli.show_project(name)
            return parse_project(name, json.loads(raw), self.classifier)
        except (CommandError, ValueError) as e:
            log.debug("Skipping project %s: %s", name, e)
            return None
