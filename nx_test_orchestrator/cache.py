"""Project cache serving discovery and affected data with bounded staleness."""

import asyncio
import logging
import time
from collections.abc import AsyncGenerator, Callable, Coroutine, Mapping, Sequence
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from nx_test_orchestrator.affected import AffectedCalculator
from nx_test_orchestrator.config import WorkspaceSettings
from nx_test_orchestrator.discovery import ProjectDiscoveryService
from nx_test_orchestrator.models.project import Project
from nx_test_orchestrator.nx_cli import NxCli
from nx_test_orchestrator.workspace import is_nx_workspace

log = logging.getLogger(__name__)

DEFAULT_TTL = 300.0


@dataclass(frozen=True, kw_only=True)
class AffectedEntry:
    """Affected project names computed for one base ref."""

    names: Sequence[str]
    updated_at: float


@dataclass(frozen=True, kw_only=True)
class CacheStatus:
    """Point-in-time view of the cache for diagnostics."""

    is_valid: bool
    project_count: int
    projects_updated_at: float | None
    affected_counts: Mapping[str, int]
    is_initializing: bool


class ProjectCache:
    """Caches the project list and affected sets of one workspace.

    Data is valid for ``ttl`` seconds. Reads never raise: when discovery
    fails they fall back to the previous snapshot or to an empty list.
    Concurrent loads are collapsed into a single discovery call.

    An empty affected set is never served from the cache, so a transient
    failure is not remembered as "nothing affected".
    """

    def __init__(
        self,
        *,
        discovery: ProjectDiscoveryService,
        affected: AffectedCalculator,
        ttl: float = DEFAULT_TTL,
        base_branch: str = "main",
        head_ref: str = "HEAD",
        workspace_root: Path | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._discovery = discovery
        self._affected_calculator = affected
        self._ttl = ttl
        self._base_branch = base_branch
        self._head_ref = head_ref
        self._workspace_root = workspace_root
        self._clock = clock

        self._projects: Sequence[Project] | None = None
        self._projects_by_name: Mapping[str, Project] = {}
        self._projects_updated_at = 0.0
        self._affected: dict[str, AffectedEntry] = {}
        self._affected_updated_at = 0.0

        self._initialized = False
        self._pending: asyncio.Task[Sequence[Project]] | None = None
        self._pending_affected: dict[str, asyncio.Task[Sequence[str]]] = {}
        self._background: set[asyncio.Task[Any]] = set()
        # Bumped by invalidate() so in-flight loads cannot install stale data.
        self._generation = 0
        self._load_sequence = 0
        self._installed_sequence = 0

    @classmethod
    @asynccontextmanager
    async def from_settings(
        cls, settings: WorkspaceSettings
    ) -> AsyncGenerator["ProjectCache", None]:
        """Create a cache with managed background task lifecycle."""
        cli = NxCli(settings=settings)
        cache = cls(
            discovery=ProjectDiscoveryService(cli=cli),
            affected=AffectedCalculator(cli=cli),
            ttl=settings.cache_ttl,
            base_branch=settings.base_branch,
            head_ref=settings.head_ref,
            workspace_root=settings.workspace_root,
        )
        try:
            yield cache
        finally:
            await cache.aclose()

    async def initialize(self) -> Sequence[Project]:
        """Load projects once and warm the affected set in the background.

        Every caller arriving while the load is in flight awaits the same
        load and receives the same list. Once a load has succeeded, later
        calls return the current snapshot without new I/O until the cache is
        invalidated; after a failed load the next call tries again.
        """
        if self._pending is not None and not self._pending.done():
            return await asyncio.shield(self._pending)

        if self._initialized:
            return self._projects or []

        log.info("Initializing project cache...")
        self._pending = asyncio.create_task(self._load_projects(warm_affected=True))
        return await asyncio.shield(self._pending)

    async def get_projects(self) -> Sequence[Project]:
        """Return the projects, loading them when missing or stale."""
        if (projects := self._valid_projects()) is not None:
            log.debug("Using cached projects")
            return projects

        if self._pending is not None and not self._pending.done():
            await asyncio.shield(self._pending)
            if (projects := self._valid_projects()) is not None:
                return projects

        log.info("Project cache expired or empty, refreshing...")
        return await self.refresh()

    async def get_project(self, name: str) -> Project | None:
        """Return one project by name."""
        await self.get_projects()
        return self._projects_by_name.get(name)

    async def refresh(self) -> Sequence[Project]:
        """Re-run discovery and replace the snapshot.

        Returns:
            The fresh projects, or the previous snapshot (empty if none) when
            discovery fails

        """
        self._pending = asyncio.create_task(self._load_projects(warm_affected=False))
        return await asyncio.shield(self._pending)

    async def get_affected(self, base_ref: str | None = None) -> Sequence[str]:
        """Return project names affected relative to base_ref.

        Args:
            base_ref: Comparison point; defaults to the configured base branch

        """
        ref = base_ref or self._base_branch
        entry = self._affected.get(ref)
        if entry and entry.names and self._clock() - entry.updated_at < self._ttl:
            log.debug("Using cached affected projects (base=%s)", ref)
            return entry.names

        return await self._refresh_affected(ref)

    async def refresh_all(self, base_ref: str | None = None) -> None:
        """Force a refresh of the projects and of the affected set."""
        log.info("Force refreshing project cache...")
        await self.refresh()
        await self._refresh_affected(base_ref or self._base_branch)

    def invalidate(self) -> None:
        """Drop all cached data; the next read goes to the CLI."""
        log.info("Clearing project cache")
        self._generation += 1
        self._projects = None
        self._projects_by_name = {}
        self._affected.clear()
        self._initialized = False
        self._pending = None
        self._pending_affected.clear()

    def is_projects_cached(self) -> bool:
        """Check if a valid project snapshot is available."""
        return self._valid_projects() is not None

    def status(self) -> CacheStatus:
        """Describe the cache state."""
        return CacheStatus(
            is_valid=self.is_projects_cached(),
            project_count=len(self._projects or ()),
            projects_updated_at=(
                self._projects_updated_at if self._projects is not None else None
            ),
            affected_counts={
                ref: len(entry.names) for ref, entry in self._affected.items()
            },
            is_initializing=self._pending is not None and not self._pending.done(),
        )

    async def aclose(self) -> None:
        """Cancel background work started by the cache."""
        tasks = [*self._background, *self._pending_affected.values()]
        if self._pending is not None:
            tasks.append(self._pending)

        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    def _valid_projects(self) -> Sequence[Project] | None:
        if self._projects is None:
            return None
        if self._clock() - self._projects_updated_at >= self._ttl:
            return None
        return self._projects

    async def _load_projects(self, *, warm_affected: bool) -> Sequence[Project]:
        generation = self._generation
        self._load_sequence += 1
        sequence = self._load_sequence

        if self._workspace_root is not None and not is_nx_workspace(
            self._workspace_root
        ):
            log.info("Not an NX workspace, skipping project discovery")
            return self._projects or []

        started = self._clock()
        try:
            discovered = await self._discovery.discover()
        except Exception:
            log.warning(
                "Project discovery failed, serving %d cached project(s)",
                len(self._projects or ()),
                exc_info=True,
            )
            return self._projects or []

        projects = tuple(discovered)
        if generation != self._generation or sequence < self._installed_sequence:
            log.info("Discarding superseded discovery result")
            return projects

        self._install_projects(projects, sequence)
        log.info(
            "Project cache updated with %d project(s) in %.0f ms",
            len(projects),
            (self._clock() - started) * 1000,
        )

        if warm_affected:
            self._initialized = True
            self._spawn_background(self._refresh_affected(self._base_branch))
        return projects

    def _install_projects(self, projects: Sequence[Project], sequence: int) -> None:
        self._projects = projects
        self._projects_by_name = {project.name: project for project in projects}
        self._projects_updated_at = max(self._clock(), self._projects_updated_at)
        self._installed_sequence = sequence

    async def _refresh_affected(self, ref: str) -> Sequence[str]:
        pending = self._pending_affected.get(ref)
        if pending is None or pending.done():
            pending = asyncio.create_task(self._load_affected(ref))
            self._pending_affected[ref] = pending
        return await asyncio.shield(pending)

    async def _load_affected(self, ref: str) -> Sequence[str]:
        generation = self._generation
        try:
            names = tuple(await self._affected_calculator.affected(ref, self._head_ref))
        except Exception:
            log.warning("Affected computation failed (base=%s)", ref, exc_info=True)
            names = ()

        if generation == self._generation:
            self._affected_updated_at = max(self._clock(), self._affected_updated_at)
            self._affected[ref] = AffectedEntry(
                names=names, updated_at=self._affected_updated_at
            )
        log.info("Affected projects updated (base=%s): %d project(s)", ref, len(names))
        return names

    def _spawn_background(self, coro: Coroutine[Any, Any, Any]) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task[Any]) -> None:
        self._background.discard(task)
        if task.cancelled():
            return
        if (error := task.exception()) is not None:
            log.error("Background affected refresh failed", exc_info=error)
