"""Execution of test commands as external processes."""

import asyncio
import codecs
import logging
import os
import signal
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Literal

from nx_test_orchestrator.config import WorkspaceSettings
from nx_test_orchestrator.errors import ExecutionSpawnError, ExecutionTimeoutError
from nx_test_orchestrator.models.result import ExecutionResult, ExecutionState
from nx_test_orchestrator.nx_cli import NxCli
from nx_test_orchestrator.parsers.base import OutputParser
from nx_test_orchestrator.parsers.loading import load_output_parser

log = logging.getLogger(__name__)

type StreamName = Literal["stdout", "stderr"]
type OutputSink = Callable[[str, StreamName], None]

CHUNK_SIZE = 4096
CANCELLED_REASON = "cancelled"
KILL_SIGNAL = getattr(signal, "SIGKILL", signal.SIGTERM)
# nx runs the test runner in child processes; signal the whole group.
NEW_SESSION = hasattr(os, "killpg")


@dataclass(kw_only=True)
class ExecutionHandle:
    """Live state of one running command, discarded once its result exists."""

    process: asyncio.subprocess.Process
    stdout_reader: asyncio.StreamReader
    stderr_reader: asyncio.StreamReader
    started_at: float
    stdout: list[str] = field(default_factory=list)
    stderr: list[str] = field(default_factory=list)


class TestRun:
    """One test command from spawn to parsed result.

    Output chunks are accumulated for parsing and, independently, queued for
    the optional sink. The sink is drained by its own task, so a slow or
    failing sink never delays parsing.
    """

    __test__ = False

    def __init__(
        self,
        *,
        command: Sequence[str],
        cwd: Path,
        parser: OutputParser,
        sink: OutputSink | None = None,
        timeout: float | None = None,
        kill_grace: float = 5.0,
        sink_drain_timeout: float = 5.0,
    ) -> None:
        self.command = tuple(command)
        self.cwd = cwd
        self.parser = parser
        self.sink = sink
        self.timeout = timeout
        self.kill_grace = kill_grace
        self.sink_drain_timeout = sink_drain_timeout
        self.state = ExecutionState.IDLE
        self._handle: ExecutionHandle | None = None
        self._task: asyncio.Task[ExecutionResult] | None = None
        self._kill_timer: asyncio.TimerHandle | None = None
        self._cancel_requested = False

    @property
    def pid(self) -> int | None:
        return self._handle.process.pid if self._handle else None

    async def start(self) -> None:
        """Spawn the process and begin collecting its output.

        Raises:
            ExecutionSpawnError: If the process cannot be started

        """
        if self.state != ExecutionState.IDLE:
            raise RuntimeError(f"Test run already {self.state}")

        self.state = ExecutionState.STARTING
        log.info("Running: %s", " ".join(self.command))

        try:
            process = await asyncio.create_subprocess_exec(
                *self.command,
                cwd=self.cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=NEW_SESSION,
            )
        except OSError as e:
            self.state = ExecutionState.ERRORED
            raise ExecutionSpawnError(
                f"Failed to start test command {self.command[0]}: {e}"
            ) from e

        if process.stdout is None or process.stderr is None:
            self.state = ExecutionState.ERRORED
            raise RuntimeError("Test command started without output pipes")

        self._handle = ExecutionHandle(
            process=process,
            stdout_reader=process.stdout,
            stderr_reader=process.stderr,
            started_at=time.monotonic(),
        )
        self.state = ExecutionState.RUNNING
        self._task = asyncio.create_task(self._run(self._handle))

        if self._cancel_requested:
            self._terminate(self._handle.process)

    async def wait(self) -> ExecutionResult:
        """Wait for the command to finish and return its parsed result.

        Raises:
            ExecutionTimeoutError: If the command exceeded its timeout

        """
        if self._task is None:
            raise RuntimeError("Test run was not started")
        return await self._task

    def cancel(self) -> None:
        """Request cancellation; the process is terminated, then killed."""
        if self.state.is_terminal or self._cancel_requested:
            return

        self._cancel_requested = True
        if self._handle is not None:
            self._terminate(self._handle.process)
        elif self.state == ExecutionState.IDLE:
            self.state = ExecutionState.CANCELLED

    def _terminate(self, process: asyncio.subprocess.Process) -> None:
        log.info("Cancelling test command (pid=%s)", process.pid)
        _signal_group(process, signal.SIGTERM)
        self._kill_timer = asyncio.get_running_loop().call_later(
            self.kill_grace, _kill_if_running, process
        )

    async def _stop(self, process: asyncio.subprocess.Process) -> None:
        log.info("Test run interrupted, stopping test command (pid=%s)", process.pid)
        _signal_group(process, signal.SIGTERM)
        try:
            await asyncio.wait_for(process.wait(), timeout=self.kill_grace)
        except TimeoutError:
            _signal_group(process, KILL_SIGNAL)
            await process.wait()

    async def _run(self, handle: ExecutionHandle) -> ExecutionResult:
        queue: asyncio.Queue[tuple[StreamName, str] | None] = asyncio.Queue()
        sink_task = asyncio.create_task(self._drain(queue)) if self.sink else None
        sink_queue = queue if sink_task else None

        process = handle.process

        try:
            await asyncio.wait_for(
                asyncio.gather(
                    _pump(handle.stdout_reader, handle.stdout, "stdout", sink_queue),
                    _pump(handle.stderr_reader, handle.stderr, "stderr", sink_queue),
                    process.wait(),
                ),
                timeout=self.timeout,
            )
        except TimeoutError:
            _signal_group(process, KILL_SIGNAL)
            await process.wait()
            self.state = ExecutionState.ERRORED
            await self._close_sink(queue, sink_task)
            raise ExecutionTimeoutError(
                f"Test command timed out after {self.timeout} seconds"
            ) from None
        except asyncio.CancelledError:
            self._cancel_requested = True
            await self._stop(process)
            self.state = ExecutionState.CANCELLED
            await self._close_sink(queue, sink_task)
            raise
        finally:
            if self._kill_timer is not None:
                self._kill_timer.cancel()

        result = self._build_result(handle, process.returncode)
        self.state = result.state
        log.info(
            "Test command finished: state=%s exit_code=%s tests=%d duration=%.1fs",
            result.state,
            result.exit_code,
            len(result.results),
            result.duration,
        )

        await self._close_sink(queue, sink_task)
        return result

    def _build_result(
        self, handle: ExecutionHandle, exit_code: int | None
    ) -> ExecutionResult:
        stdout = "".join(handle.stdout)
        stderr = "".join(handle.stderr)
        results = self.parser.parse(stdout, stderr)

        reason: str | None = None
        if self._cancel_requested:
            state = ExecutionState.CANCELLED
            reason = CANCELLED_REASON
        elif exit_code == 0:
            state = ExecutionState.COMPLETED
        else:
            state = ExecutionState.FAILED
            reason = f"Test command exited with code {exit_code}"

        return ExecutionResult(
            state=state,
            command=self.command,
            exit_code=exit_code,
            results=results,
            summary=self.parser.summarize(stdout, stderr, results),
            stdout=stdout,
            stderr=stderr,
            duration=time.monotonic() - handle.started_at,
            reason=reason,
        )

    async def _drain(self, queue: asyncio.Queue[tuple[StreamName, str] | None]) -> None:
        sink = self.sink
        while (item := await queue.get()) is not None:
            if sink is None:
                continue
            stream, chunk = item
            try:
                sink(chunk, stream)
            except Exception:
                log.warning(
                    "Output sink failed, dropping further output", exc_info=True
                )
                sink = None

    async def _close_sink(
        self,
        queue: asyncio.Queue[tuple[StreamName, str] | None],
        sink_task: asyncio.Task[None] | None,
    ) -> None:
        if sink_task is None:
            return

        queue.put_nowait(None)
        try:
            await asyncio.wait_for(sink_task, timeout=self.sink_drain_timeout)
        except TimeoutError:
            log.warning(
                "Output sink did not drain within %.1fs", self.sink_drain_timeout
            )


async def _pump(
    stream: asyncio.StreamReader,
    buffer: list[str],
    name: StreamName,
    queue: asyncio.Queue[tuple[StreamName, str] | None] | None,
) -> None:
    # Chunks may split multi-byte characters such as the status glyphs.
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    while chunk := await stream.read(CHUNK_SIZE):
        if text := decoder.decode(chunk):
            buffer.append(text)
            if queue is not None:
                queue.put_nowait((name, text))

    if tail := decoder.decode(b"", final=True):
        buffer.append(tail)
        if queue is not None:
            queue.put_nowait((name, tail))


def _signal_group(process: asyncio.subprocess.Process, sig: int) -> None:
    try:
        if NEW_SESSION:
            os.killpg(process.pid, sig)
        else:
            process.send_signal(sig)
    except ProcessLookupError:
        pass


def _kill_if_running(process: asyncio.subprocess.Process) -> None:
    if process.returncode is None:
        log.info("Force killing test command (pid=%s)", process.pid)
        _signal_group(process, KILL_SIGNAL)


@dataclass(frozen=True, kw_only=True)
class TestExecutionOrchestrator:
    """Runs nx test commands and parses their output."""

    __test__ = False

    cli: NxCli
    parser: OutputParser
    kill_grace: float = 5.0

    @classmethod
    def from_settings(cls, settings: WorkspaceSettings) -> "TestExecutionOrchestrator":
        """Create an orchestrator using the parser named in the settings."""
        return cls(
            cli=NxCli(settings=settings), parser=load_output_parser(settings.parser)
        )

    async def start(
        self, command: Sequence[str], sink: OutputSink | None = None
    ) -> TestRun:
        """Spawn a test command and return its handle.

        Raises:
            ExecutionSpawnError: If the process cannot be started

        """
        run = TestRun(
            command=command,
            cwd=self.cli.settings.workspace_root,
            parser=self.parser,
            sink=sink,
            timeout=self.cli.settings.test_timeout,
            kill_grace=self.kill_grace,
        )
        await run.start()
        return run

    async def run(
        self, command: Sequence[str], sink: OutputSink | None = None
    ) -> ExecutionResult:
        """Run a test command to completion."""
        test_run = await self.start(command, sink)
        return await test_run.wait()

    async def run_project_tests(
        self, project: str, sink: OutputSink | None = None
    ) -> ExecutionResult:
        """Run the tests of one project."""
        return await self.run(self.cli.project_test_command(project), sink)

    async def run_many_tests(
        self, projects: Sequence[str], sink: OutputSink | None = None
    ) -> ExecutionResult:
        """Run the tests of several projects in one command."""
        return await self.run(self.cli.many_test_command(projects), sink)

    async def run_affected_tests(
        self, base_ref: str | None = None, sink: OutputSink | None = None
    ) -> ExecutionResult:
        """Run the tests of every project affected relative to base_ref."""
        settings = self.cli.settings
        command = self.cli.affected_test_command(
            base_ref or settings.base_branch, settings.head_ref
        )
        return await self.run(command, sink)
