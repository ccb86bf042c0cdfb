"""Tests for the project cache."""

import asyncio
import logging
from collections.abc import AsyncGenerator, Sequence
from pathlib import Path
from unittest.mock import Mock, call

import pytest

from nx_test_orchestrator.affected import AffectedCalculator
from nx_test_orchestrator.cache import ProjectCache
from nx_test_orchestrator.discovery import ProjectDiscoveryService
from nx_test_orchestrator.errors import DiscoveryError
from nx_test_orchestrator.models.project import Project
from nx_test_orchestrator.testing.factories import ProjectFactory

TTL = 300.0


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def settle() -> None:
    """Let background tasks run."""
    for _ in range(10):
        await asyncio.sleep(0)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def projects() -> Sequence[Project]:
    return ProjectFactory.batch(3)


@pytest.fixture
def discovery_mock(projects: Sequence[Project]) -> Mock:
    """Create mock discovery service returning projects."""
    discovery = Mock(spec=ProjectDiscoveryService)
    discovery.discover.return_value = projects
    return discovery


@pytest.fixture
def affected_mock() -> Mock:
    """Create mock affected calculator returning nothing."""
    affected = Mock(spec=AffectedCalculator)
    affected.affected.return_value = []
    return affected


@pytest.fixture
async def cache(
    discovery_mock: Mock, affected_mock: Mock, clock: FakeClock
) -> AsyncGenerator[ProjectCache, None]:
    """Create cache with mock collaborators."""
    cache = ProjectCache(
        discovery=discovery_mock,
        affected=affected_mock,
        ttl=TTL,
        base_branch="main",
        clock=clock,
    )
    yield cache
    await cache.aclose()


class TestGetProjects:
    """Tests for get_projects."""

    async def test_serves_cached_projects_within_ttl(
        self,
        cache: ProjectCache,
        discovery_mock: Mock,
        clock: FakeClock,
        projects: Sequence[Project],
    ) -> None:
        """Calls discovery at most once within the TTL."""
        first = await cache.get_projects()
        clock.advance(TTL - 1)
        second = await cache.get_projects()

        assert list(first) == list(projects)
        assert second is first
        discovery_mock.discover.assert_called_once()

    async def test_refreshes_after_ttl(
        self, cache: ProjectCache, discovery_mock: Mock, clock: FakeClock
    ) -> None:
        """Calls discovery exactly once more after the TTL elapsed."""
        await cache.get_projects()
        clock.advance(TTL)

        await cache.get_projects()
        await cache.get_projects()

        assert discovery_mock.discover.call_count == 2

    async def test_returns_empty_when_discovery_fails(
        self, cache: ProjectCache, discovery_mock: Mock
    ) -> None:
        """Returns an empty list instead of raising."""
        discovery_mock.discover.side_effect = DiscoveryError("nx not installed")

        assert await cache.get_projects() == []

    async def test_returns_stale_projects_when_refresh_fails(
        self,
        cache: ProjectCache,
        discovery_mock: Mock,
        clock: FakeClock,
        projects: Sequence[Project],
    ) -> None:
        """Falls back to the previous snapshot when discovery fails."""
        await cache.get_projects()
        clock.advance(TTL + 1)
        discovery_mock.discover.side_effect = DiscoveryError("daemon crashed")

        assert list(await cache.get_projects()) == list(projects)

    async def test_survives_unexpected_errors(
        self, cache: ProjectCache, discovery_mock: Mock
    ) -> None:
        """Recovers from any failure of the discovery service."""
        discovery_mock.discover.side_effect = RuntimeError("unexpected")

        assert await cache.get_projects() == []

    async def test_waits_for_inflight_initialization(
        self, cache: ProjectCache, discovery_mock: Mock
    ) -> None:
        """Joins a running initialization instead of starting discovery."""
        release = asyncio.Event()
        projects = ProjectFactory.batch(2)

        async def discover() -> Sequence[Project]:
            await release.wait()
            return projects

        discovery_mock.discover.side_effect = discover

        initializing = asyncio.create_task(cache.initialize())
        await settle()
        reading = asyncio.create_task(cache.get_projects())
        await settle()
        release.set()

        assert await reading == await initializing
        discovery_mock.discover.assert_called_once()

    async def test_get_project_by_name(
        self, cache: ProjectCache, projects: Sequence[Project]
    ) -> None:
        """Finds a project of the current snapshot by name."""
        assert await cache.get_project(projects[1].name) == projects[1]
        assert await cache.get_project("does-not-exist") is None


class TestInitialize:
    """Tests for initialize."""

    async def test_concurrent_calls_share_one_discovery(
        self, cache: ProjectCache, discovery_mock: Mock
    ) -> None:
        """N concurrent calls run discovery once and get the same list."""
        release = asyncio.Event()
        projects = ProjectFactory.batch(2)

        async def discover() -> Sequence[Project]:
            await release.wait()
            return projects

        discovery_mock.discover.side_effect = discover

        calls = [asyncio.create_task(cache.initialize()) for _ in range(5)]
        await settle()
        release.set()
        results = await asyncio.gather(*calls)

        discovery_mock.discover.assert_called_once()
        assert all(result is results[0] for result in results)
        assert list(results[0]) == projects

    async def test_is_idempotent(
        self, cache: ProjectCache, discovery_mock: Mock
    ) -> None:
        """Does not run discovery again once initialized."""
        first = await cache.initialize()
        second = await cache.initialize()

        assert second is first
        discovery_mock.discover.assert_called_once()

    async def test_warms_affected_in_background(
        self, cache: ProjectCache, affected_mock: Mock
    ) -> None:
        """Computes the affected set for the base branch after loading."""
        affected_mock.affected.return_value = ["shop"]

        await cache.initialize()
        await settle()

        affected_mock.affected.assert_called_once_with("main", "HEAD")
        assert cache.status().affected_counts == {"main": 1}

    async def test_background_failure_is_not_propagated(
        self,
        cache: ProjectCache,
        affected_mock: Mock,
        projects: Sequence[Project],
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Logs a failing warm-up without affecting initialization."""
        affected_mock.affected.side_effect = RuntimeError("git missing")

        with caplog.at_level(logging.WARNING):
            result = await cache.initialize()
            await settle()

        assert list(result) == list(projects)
        assert "Affected computation failed" in caplog.text

    async def test_does_not_raise_on_discovery_failure(
        self, cache: ProjectCache, discovery_mock: Mock, affected_mock: Mock
    ) -> None:
        """Returns an empty list and skips the warm-up on failure."""
        discovery_mock.discover.side_effect = DiscoveryError("boom")

        assert await cache.initialize() == []
        await settle()

        affected_mock.affected.assert_not_called()

    async def test_retries_after_failed_discovery(
        self,
        cache: ProjectCache,
        discovery_mock: Mock,
        projects: Sequence[Project],
    ) -> None:
        """Runs discovery again when the first initialization failed."""
        discovery_mock.discover.side_effect = [DiscoveryError("nx missing"), projects]

        assert await cache.initialize() == []
        assert list(await cache.initialize()) == list(projects)
        assert discovery_mock.discover.call_count == 2

        await cache.initialize()
        assert discovery_mock.discover.call_count == 2

    async def test_skips_discovery_outside_workspace(
        self, discovery_mock: Mock, affected_mock: Mock, tmp_path: Path
    ) -> None:
        """Does not run discovery when the root is not an nx workspace."""
        cache = ProjectCache(
            discovery=discovery_mock, affected=affected_mock, workspace_root=tmp_path
        )

        assert await cache.initialize() == []
        discovery_mock.discover.assert_not_called()


class TestRefresh:
    """Tests for refresh."""

    async def test_always_runs_discovery(
        self, cache: ProjectCache, discovery_mock: Mock
    ) -> None:
        """Runs discovery even when the snapshot is valid."""
        await cache.get_projects()
        updated = ProjectFactory.batch(1)
        discovery_mock.discover.return_value = updated

        assert list(await cache.refresh()) == updated
        assert list(await cache.get_projects()) == updated
        assert discovery_mock.discover.call_count == 2

    async def test_failure_keeps_previous_snapshot(
        self,
        cache: ProjectCache,
        discovery_mock: Mock,
        projects: Sequence[Project],
    ) -> None:
        """Returns and keeps the previous snapshot when discovery fails."""
        await cache.get_projects()
        discovery_mock.discover.side_effect = DiscoveryError("boom")

        assert list(await cache.refresh()) == list(projects)
        assert cache.is_projects_cached()

    async def test_refresh_all_updates_affected(
        self, cache: ProjectCache, discovery_mock: Mock, affected_mock: Mock
    ) -> None:
        """Refreshes projects and affected set together."""
        affected_mock.affected.return_value = ["ui"]

        await cache.refresh_all("develop")

        discovery_mock.discover.assert_called_once()
        affected_mock.affected.assert_called_once_with("develop", "HEAD")
        assert await cache.get_affected("develop") == ("ui",)


class TestGetAffected:
    """Tests for get_affected."""

    async def test_serves_non_empty_set_within_ttl(
        self, cache: ProjectCache, affected_mock: Mock, clock: FakeClock
    ) -> None:
        """Caches a non-empty affected set for the TTL."""
        affected_mock.affected.return_value = ["shop", "ui"]

        first = await cache.get_affected()
        clock.advance(TTL - 1)
        second = await cache.get_affected()

        assert first == second == ("shop", "ui")
        affected_mock.affected.assert_called_once_with("main", "HEAD")

    async def test_recomputes_after_ttl(
        self, cache: ProjectCache, affected_mock: Mock, clock: FakeClock
    ) -> None:
        """Recomputes the set once the TTL elapsed."""
        affected_mock.affected.return_value = ["shop"]

        await cache.get_affected()
        clock.advance(TTL)
        await cache.get_affected()

        assert affected_mock.affected.call_count == 2

    async def test_never_serves_empty_set_from_cache(
        self, cache: ProjectCache, affected_mock: Mock
    ) -> None:
        """Calls nx again whenever the previous result was empty."""
        assert await cache.get_affected() == ()
        assert await cache.get_affected() == ()

        assert affected_mock.affected.call_count == 2

    async def test_caches_per_base_ref(
        self, cache: ProjectCache, affected_mock: Mock
    ) -> None:
        """Keeps separate entries for different base refs."""
        affected_mock.affected.side_effect = lambda ref, head: {
            "main": ["shop"],
            "release": ["ui", "data"],
        }[ref]

        assert await cache.get_affected("main") == ("shop",)
        assert await cache.get_affected("release") == ("ui", "data")
        assert await cache.get_affected("main") == ("shop",)

        assert affected_mock.affected.call_args_list == [
            call("main", "HEAD"),
            call("release", "HEAD"),
        ]

    async def test_recovers_from_unexpected_errors(
        self, cache: ProjectCache, affected_mock: Mock
    ) -> None:
        """Treats a failing calculation as an empty set."""
        affected_mock.affected.side_effect = RuntimeError("unexpected")

        assert await cache.get_affected() == ()


class TestInvalidate:
    """Tests for invalidate."""

    async def test_forces_fresh_io(
        self, cache: ProjectCache, discovery_mock: Mock, affected_mock: Mock
    ) -> None:
        """Clears projects and affected sets."""
        affected_mock.affected.return_value = ["shop"]
        await cache.get_projects()
        await cache.get_affected()

        cache.invalidate()

        assert not cache.is_projects_cached()
        await cache.get_projects()
        await cache.get_affected()
        assert discovery_mock.discover.call_count == 2
        assert affected_mock.affected.call_count == 2

    async def test_allows_initialize_again(
        self, cache: ProjectCache, discovery_mock: Mock
    ) -> None:
        """Runs discovery again on the next initialize."""
        await cache.initialize()
        cache.invalidate()
        await cache.initialize()

        assert discovery_mock.discover.call_count == 2

    async def test_discards_inflight_discovery(
        self, cache: ProjectCache, discovery_mock: Mock
    ) -> None:
        """Does not install a snapshot loaded before the invalidation."""
        release = asyncio.Event()

        async def discover() -> Sequence[Project]:
            await release.wait()
            return ProjectFactory.batch(1)

        discovery_mock.discover.side_effect = discover

        loading = asyncio.create_task(cache.refresh())
        await settle()
        cache.invalidate()
        release.set()
        await loading

        assert not cache.is_projects_cached()


class TestStatus:
    """Tests for status."""

    async def test_reports_empty_cache(self, cache: ProjectCache) -> None:
        """Describes a cache that was never loaded."""
        status = cache.status()

        assert not status.is_valid
        assert status.project_count == 0
        assert status.projects_updated_at is None
        assert status.affected_counts == {}
        assert not status.is_initializing

    async def test_reports_loaded_cache(
        self, cache: ProjectCache, clock: FakeClock, projects: Sequence[Project]
    ) -> None:
        """Describes a loaded cache."""
        await cache.get_projects()

        status = cache.status()

        assert status.is_valid
        assert status.project_count == len(projects)
        assert status.projects_updated_at == clock.now

    async def test_update_time_never_decreases(
        self, cache: ProjectCache, clock: FakeClock
    ) -> None:
        """Keeps the update timestamp monotonic across refreshes."""
        await cache.get_projects()
        first = cache.status().projects_updated_at
        clock.advance(10)
        await cache.refresh()

        second = cache.status().projects_updated_at
        assert first is not None and second is not None
        assert second >= first
