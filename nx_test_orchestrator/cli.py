"""CLI entry point for the nx test orchestrator."""

import argparse
import asyncio
import json
import logging
import sys
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from nx_test_orchestrator.cache import ProjectCache
from nx_test_orchestrator.config import WorkspaceSettings, load_settings
from nx_test_orchestrator.errors import ExecutionSpawnError
from nx_test_orchestrator.execution import StreamName, TestExecutionOrchestrator
from nx_test_orchestrator.models.result import ExecutionResult, ExecutionState
from nx_test_orchestrator.workspace import find_workspace_root

STATUS_SYMBOLS = {
    "passed": "✓",
    "failed": "✗",
    "skipped": "○",
}

EXIT_SPAWN_FAILURE = 2
REPORT_FILENAME = "test-results.json"


def log_results_summary(log: logging.Logger, result: ExecutionResult) -> None:
    """Log a formatted summary of a test run."""
    log.info("=" * 80)
    log.info("Test Results Summary:")
    log.info("=" * 80)

    for test_result in result.results:
        symbol = STATUS_SYMBOLS.get(test_result.status, "?")
        log.info(
            "%s %s: %s (%dms)",
            symbol,
            test_result.file,
            test_result.name,
            test_result.duration_ms,
        )
        if test_result.error:
            log.info("  Error: %s", test_result.error)

    summary = result.summary
    log.info(
        "State: %s, exit code: %s, passed: %d, failed: %d, skipped: %d",
        result.state,
        result.exit_code,
        summary.passed,
        summary.failed,
        summary.skipped,
    )
    if summary.compilation_error:
        log.info("  Test suite failed to run:\n%s", summary.compilation_error)
    if result.is_infrastructure_failure:
        log.info("  Command failed without failing tests: %s", result.reason)


def format_output(result: ExecutionResult) -> dict[str, Any]:
    """Format an execution result for JSON output."""
    return {
        "state": str(result.state),
        "exit_code": result.exit_code,
        "reason": result.reason,
        "duration": result.duration,
        "total": result.summary.total,
        "passed": result.summary.passed,
        "failed": result.summary.failed,
        "skipped": result.summary.skipped,
        "compilation_error": result.summary.compilation_error,
        "results": [
            {
                "name": r.name,
                "status": r.status,
                "duration_ms": r.duration_ms,
                "file": r.file,
                "error": r.error,
                "stack": r.stack,
            }
            for r in result.results
        ],
    }


def write_report(directory: Path, report: dict[str, Any]) -> Path:
    """Write the JSON report of a run into directory."""
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / REPORT_FILENAME
    path.write_text(json.dumps(report, indent=2))
    return path


def write_chunk(chunk: str, stream: StreamName) -> None:
    """Echo streamed test output to stderr."""
    sys.stderr.write(chunk)
    sys.stderr.flush()


async def list_projects(settings: WorkspaceSettings) -> int:
    """Print the workspace projects as JSON."""
    async with ProjectCache.from_settings(settings) as cache:
        projects = await cache.get_projects()

    print(
        json.dumps(
            [project.model_dump(mode="json") for project in projects], indent=2
        )
    )
    return 0


async def list_affected(settings: WorkspaceSettings, base_ref: str | None) -> int:
    """Print the affected project names as JSON."""
    async with ProjectCache.from_settings(settings) as cache:
        names = await cache.get_affected(base_ref)

    print(json.dumps(list(names)))
    return 0


async def run_tests(
    settings: WorkspaceSettings,
    projects: Sequence[str],
    affected: bool,
    base_ref: str | None,
) -> int:
    """Run tests and return exit code."""
    log = logging.getLogger("nx_test_orchestrator")
    orchestrator = TestExecutionOrchestrator.from_settings(settings)

    try:
        if affected:
            result = await orchestrator.run_affected_tests(base_ref, sink=write_chunk)
        elif len(projects) == 1:
            result = await orchestrator.run_project_tests(projects[0], sink=write_chunk)
        else:
            result = await orchestrator.run_many_tests(projects, sink=write_chunk)
    except ExecutionSpawnError as e:
        log.error("Could not run tests: %s", e)
        return EXIT_SPAWN_FAILURE

    log_results_summary(log, result)
    report = format_output(result)
    print(json.dumps(report, indent=2))

    if settings.output_directory is not None:
        directory = settings.workspace_root / settings.output_directory
        path = write_report(directory, report)
        log.info("Report written to %s", path)

    has_failures = result.state != ExecutionState.COMPLETED or any(
        r.status == "failed" for r in result.results
    )
    return 1 if has_failures else 0


def build_parser() -> argparse.ArgumentParser:
    """Build the argument parser."""
    parser = argparse.ArgumentParser(
        description="Discover nx projects and run their tests"
    )
    parser.add_argument(
        "--workspace",
        type=Path,
        default=None,
        help="Workspace root (default: nearest ancestor with nx.json)",
    )
    parser.add_argument(
        "--config",
        default="{}",
        help="JSON object with settings overrides",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Enable debug logging",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)
    subparsers.add_parser("projects", help="List workspace projects")

    affected = subparsers.add_parser("affected", help="List affected projects")
    affected.add_argument("--base", default=None, help="Base git reference")

    test = subparsers.add_parser("test", help="Run tests")
    test.add_argument("projects", nargs="*", help="Projects to test")
    test.add_argument(
        "--affected",
        action="store_true",
        help="Test every project affected relative to --base",
    )
    test.add_argument("--base", default=None, help="Base git reference")

    return parser


def main() -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args()

    if args.command == "test" and not args.affected and not args.projects:
        parser.error("test requires project names or --affected")

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )

    workspace = args.workspace or find_workspace_root(Path.cwd()) or Path.cwd()
    settings = load_settings(args.config, workspace)

    if args.command == "projects":
        coro = list_projects(settings)
    elif args.command == "affected":
        coro = list_affected(settings, args.base)
    else:
        coro = run_tests(settings, args.projects, args.affected, args.base)

    sys.exit(asyncio.run(coro))


if __name__ == "__main__":  # pragma: no cover
    main()
