"""Classification of projects into applications and libraries."""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Protocol

from nx_test_orchestrator.models.project import ProjectKind


class ProjectKindClassifier(Protocol):
    """Decides the kind of a project from its raw configuration."""

    def classify(self, config: Mapping[str, Any]) -> ProjectKind:
        """Return the kind of the project described by config."""
        ...


@dataclass(frozen=True, kw_only=True)
class ExecutorKindClassifier:
    """Infers the kind from the executors used by the project's targets.

    An explicit ``projectType`` always wins. Otherwise a dev-server style
    executor (or a ``serve`` target) marks an application and a packaging
    executor marks a library. Anything else is a library.
    """

    application_markers: Sequence[str] = ("dev-server", "dev_server", "browser")
    library_markers: Sequence[str] = ("package", "packagr", "rollup")
    application_targets: Sequence[str] = ("serve",)

    def classify(self, config: Mapping[str, Any]) -> ProjectKind:
        project_type = config.get("projectType")
        if project_type in ("application", "library"):
            return project_type  # type: ignore[no-any-return]

        targets = config.get("targets") or {}
        if not isinstance(targets, Mapping):
            targets = {}
        executors = [
            str(target.get("executor", "")).lower()
            for target in targets.values()
            if isinstance(target, Mapping)
        ]

        if any(marker in e for e in executors for marker in self.library_markers):
            return "library"
        if any(marker in e for e in executors for marker in self.application_markers):
            return "application"
        if any(name in targets for name in self.application_targets):
            return "application"
        return "library"
