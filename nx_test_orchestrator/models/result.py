"""Models for test execution results."""

from collections.abc import Sequence
from dataclasses import dataclass
from enum import StrEnum
from typing import Literal

type TestStatus = Literal["passed", "failed", "skipped"]


@dataclass(frozen=True, kw_only=True)
class TestResult:
    """Result of a single test case parsed from runner output."""

    __test__ = False

    name: str
    status: TestStatus
    duration_ms: int
    file: str
    error: str | None = None
    stack: str | None = None


@dataclass(frozen=True, kw_only=True)
class RunSummary:
    """Totals reported by the runner, or derived from parsed results."""

    passed: int = 0
    failed: int = 0
    skipped: int = 0
    duration: float | None = None
    # Lines reporting a test suite that could not be compiled or loaded.
    compilation_error: str | None = None

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.skipped

    @classmethod
    def from_results(cls, results: Sequence[TestResult]) -> "RunSummary":
        """Count parsed results by status."""
        return cls(
            passed=sum(1 for r in results if r.status == "passed"),
            failed=sum(1 for r in results if r.status == "failed"),
            skipped=sum(1 for r in results if r.status == "skipped"),
        )


class ExecutionState(StrEnum):
    """Lifecycle of one orchestrated test command."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ERRORED = "errored"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES


_TERMINAL_STATES = frozenset(
    [
        ExecutionState.COMPLETED,
        ExecutionState.FAILED,
        ExecutionState.ERRORED,
        ExecutionState.CANCELLED,
    ]
)


@dataclass(frozen=True, kw_only=True)
class ExecutionResult:
    """Outcome of one test command.

    Carries the raw exit code next to the parsed results so callers can tell a
    crashed setup step (non-zero exit, no failing test) from real failures.
    """

    state: ExecutionState
    command: Sequence[str]
    exit_code: int | None
    results: Sequence[TestResult]
    summary: RunSummary
    stdout: str
    stderr: str
    duration: float
    reason: str | None = None

    @property
    def failed_tests(self) -> Sequence[TestResult]:
        return [r for r in self.results if r.status == "failed"]

    @property
    def is_infrastructure_failure(self) -> bool:
        """Non-zero exit without any failing test or broken suite in the output."""
        return (
            self.state == ExecutionState.FAILED
            and not self.failed_tests
            and self.summary.compilation_error is None
        )
