"""Adapter for the nx build-graph command line."""

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

from nx_test_orchestrator.config import WorkspaceSettings
from nx_test_orchestrator.errors import (
    CommandFailedError,
    CommandSpawnError,
    CommandTimeoutError,
)

log = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class CommandOutput:
    """Captured output of a finished command."""

    exit_code: int
    stdout: str
    stderr: str


@dataclass(frozen=True, kw_only=True)
class NxCli:
    """Builds and runs nx invocations for one workspace.

    Holds no state besides the settings; every call spawns a new process.
    """

    settings: WorkspaceSettings

    def command(self, *args: str) -> Sequence[str]:
        """Full argv for an nx invocation."""
        return (*self.settings.nx_command, *args)

    async def run(self, *args: str) -> CommandOutput:
        """Run an nx command to completion and capture its output.

        Raises:
            CommandSpawnError: If the executable cannot be started
            CommandTimeoutError: If the command exceeds the configured timeout
            CommandFailedError: If the command exits with a non-zero code

        """
        command = self.command(*args)
        timeout = self.settings.command_timeout
        log.debug("Running: %s", " ".join(command))

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=self.settings.workspace_root,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CommandSpawnError(
                f"Failed to execute {command[0]}: {e}", command
            ) from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=timeout
            )
        except asyncio.CancelledError:
            await _kill(process)
            raise
        except TimeoutError:
            await _kill(process)
            raise CommandTimeoutError(
                f"Command timed out after {timeout} seconds: {' '.join(command)}",
                command,
            ) from None

        output = CommandOutput(
            exit_code=process.returncode or 0,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )

        if output.exit_code != 0:
            raise CommandFailedError(
                f"nx command failed with code {output.exit_code}: "
                f"{output.stderr.strip() or 'Unknown error'}",
                command,
                exit_code=output.exit_code,
                stderr=output.stderr,
            )

        return output

    async def show_projects(self) -> str:
        """List project names as a JSON array."""
        return (await self.run("show", "projects", "--json")).stdout

    async def show_project(self, name: str) -> str:
        """Fetch one project's configuration as JSON."""
        return (await self.run("show", "project", name, "--json")).stdout

    async def show_affected(self, base_ref: str, head_ref: str) -> str:
        """List affected project names, one per line."""
        output = await self.run(
            "show", "projects", "--affected", f"--base={base_ref}", f"--head={head_ref}"
        )
        return output.stdout

    async def affected_apps(self, base_ref: str, head_ref: str) -> str:
        """List affected applications with the legacy ``affected:apps`` command."""
        output = await self.run(
            "affected:apps", f"--base={base_ref}", f"--head={head_ref}"
        )
        return output.stdout

    def project_test_command(self, project: str) -> Sequence[str]:
        """Argv running the test target of one project."""
        return self.command(self.settings.test_target, project)

    def many_test_command(self, projects: Sequence[str]) -> Sequence[str]:
        """Argv running the test target of several projects."""
        return self.command(
            "run-many",
            f"--target={self.settings.test_target}",
            f"--projects={','.join(projects)}",
            f"--output-style={self.settings.output_style}",
        )

    def affected_test_command(self, base_ref: str, head_ref: str) -> Sequence[str]:
        """Argv running the test target of every affected project."""
        return self.command(
            "affected",
            f"--target={self.settings.test_target}",
            f"--base={base_ref}",
            f"--head={head_ref}",
            f"--output-style={self.settings.output_style}",
        )


async def _kill(process: asyncio.subprocess.Process) -> None:
    try:
        process.kill()
    except ProcessLookupError:
        pass
    await process.wait()
