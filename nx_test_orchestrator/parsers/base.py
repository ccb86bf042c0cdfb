"""Abstract base class for test runner output parsers."""

from abc import ABC, abstractmethod
from collections.abc import Sequence
from dataclasses import dataclass

from nx_test_orchestrator.models.result import RunSummary, TestResult


@dataclass(frozen=True, kw_only=True)
class OutputParser(ABC):
    """Turns captured console text of one run into structured results.

    Implementations must be pure: the same output always yields the same
    results, and nothing is kept between calls. Each supported runner console
    format is its own implementation.
    """

    @abstractmethod
    def parse(self, output: str, error_output: str = "") -> Sequence[TestResult]:
        """Parse test results from a run's output.

        Args:
            output: Captured standard output
            error_output: Captured standard error

        Returns:
            Results in order of first appearance; empty if the format is not
            recognised

        """

    def summarize(
        self,
        output: str,
        error_output: str,
        results: Sequence[TestResult],
    ) -> RunSummary:
        """Totals for a run; defaults to counting the parsed results."""
        return RunSummary.from_results(results)
