"""Jest console output parser."""

import re
from collections.abc import Mapping, Sequence
from dataclasses import dataclass, replace

from nx_test_orchestrator.models.result import RunSummary, TestResult, TestStatus
from nx_test_orchestrator.parsers.base import OutputParser

ANSI_PATTERN = re.compile(r"\x1b\[[0-9;]*[A-Za-z]")

GLYPH_TO_STATUS: Mapping[str, TestStatus] = {
    "✓": "passed",
    "✔": "passed",
    "√": "passed",
    "✗": "failed",
    "✕": "failed",
    "✖": "failed",
    "×": "failed",
    "○": "skipped",
    "✎": "skipped",
}

TEST_PATTERN = re.compile(
    rf"^\s*([{''.join(GLYPH_TO_STATUS)}])\s+(.+?)\s+\((\d+)\s*ms\)\s*$"
)
# Spec file headers, optionally preceded by PASS/FAIL and followed by a timing.
FILE_PATTERN = re.compile(
    r"^\s*(?:(?:PASS|FAIL)\s+)?([^\s()]+\.spec\.[jt]sx?)(?:\s+\(.*\))?\s*$"
)
SUMMARY_PATTERN = re.compile(r"Tests:\s+(.+)")
TIME_PATTERN = re.compile(r"Time:\s+([\d.]+)\s*s")
ERROR_MARKERS = ("Error:", "Expected:")
STACK_MARKER = "at "
COMPILATION_MARKERS = (
    "Test suite failed to run",
    "error TS",
    "Cannot find module",
    "Module not found",
    "SyntaxError",
    "Unexpected token",
    "Your test suite must contain at least one test",
)
FAILURE_WINDOW = 10
UNKNOWN_FILE = "unknown"


def clean_output(text: str) -> str:
    """Remove ANSI escape sequences and carriage returns."""
    return ANSI_PATTERN.sub("", text).replace("\r", "")


@dataclass(frozen=True, kw_only=True)
class JestOutputParser(OutputParser):
    """Parses ``✓ name (12 ms)`` style lines grouped under spec file headers.

    Failure details come from the error stream (or the output when the error
    stream is empty): the first ``Error:``/``Expected:`` line and the ``at``
    stack frames found just below the line naming the failed test.
    """

    def parse(self, output: str, error_output: str = "") -> Sequence[TestResult]:
        output = clean_output(output)
        error_output = clean_output(error_output)

        results: list[TestResult] = []
        current_file = ""

        for line in [*output.split("\n"), *error_output.split("\n")]:
            if file_match := FILE_PATTERN.match(line):
                current_file = file_match.group(1)
                continue

            if test_match := TEST_PATTERN.match(line):
                glyph, name, duration = test_match.groups()
                results.append(
                    TestResult(
                        name=name.strip(),
                        status=GLYPH_TO_STATUS[glyph],
                        duration_ms=int(duration),
                        file=current_file or UNKNOWN_FILE,
                    )
                )

        diagnostics = (error_output or output).split("\n")
        return [
            self._with_failure_details(result, diagnostics)
            if result.status == "failed"
            else result
            for result in results
        ]

    def summarize(
        self,
        output: str,
        error_output: str,
        results: Sequence[TestResult],
    ) -> RunSummary:
        text = clean_output(f"{output}\n{error_output}")

        duration = None
        if time_match := TIME_PATTERN.search(text):
            duration = float(time_match.group(1))

        compilation_error = _compilation_error(text)

        summary_match = SUMMARY_PATTERN.search(text)
        if summary_match is None:
            return replace(
                RunSummary.from_results(results),
                duration=duration,
                compilation_error=compilation_error,
            )

        counts = summary_match.group(1)
        return RunSummary(
            passed=_count(counts, "passed"),
            failed=_count(counts, "failed"),
            skipped=_count(counts, "skipped"),
            duration=duration,
            compilation_error=compilation_error,
        )

    def _with_failure_details(
        self, result: TestResult, lines: Sequence[str]
    ) -> TestResult:
        for index, line in enumerate(lines):
            # Skip the status line itself when both streams are interleaved.
            if result.name not in line or TEST_PATTERN.match(line):
                continue

            window = [
                candidate.strip()
                for candidate in lines[index + 1 : index + FAILURE_WINDOW]
            ]
            error = next(
                (c for c in window if any(m in c for m in ERROR_MARKERS)), None
            )
            stack = "".join(f"{c}\n" for c in window if c.startswith(STACK_MARKER))
            return replace(result, error=error, stack=stack or None)

        return result


def _count(summary: str, label: str) -> int:
    match = re.search(rf"(\d+)\s+{label}", summary)
    return int(match.group(1)) if match else 0


def _compilation_error(text: str) -> str | None:
    lines = [
        line.strip()
        for line in text.split("\n")
        if any(marker in line for marker in COMPILATION_MARKERS)
    ]
    return "\n".join(lines) or None
