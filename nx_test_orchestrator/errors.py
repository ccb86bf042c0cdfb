"""Exceptions raised by the orchestrator core."""

from collections.abc import Sequence


class OrchestratorError(Exception):
    """Base class for all orchestrator errors."""


class CommandError(OrchestratorError):
    """An external build-graph CLI call did not produce usable output."""

    def __init__(self, message: str, command: Sequence[str]) -> None:
        super().__init__(message)
        self.command = tuple(command)


class CommandSpawnError(CommandError):
    """Raised when an external command cannot be started."""


class CommandTimeoutError(CommandSpawnError):
    """Raised when an external command exceeds its timeout and is killed."""


class CommandFailedError(CommandError):
    """Raised when an external command exits with a non-zero code."""

    def __init__(
        self, message: str, command: Sequence[str], exit_code: int, stderr: str
    ) -> None:
        super().__init__(message, command)
        self.exit_code = exit_code
        self.stderr = stderr


class DiscoveryError(OrchestratorError):
    """Raised when the project registry cannot be listed."""


class ExecutionSpawnError(OrchestratorError):
    """Raised when a test command cannot be started at all."""


class ExecutionTimeoutError(ExecutionSpawnError):
    """Raised when a test command exceeds its timeout and is killed."""


class ParserNotFoundError(OrchestratorError):
    """Raised when no output parser is registered under a key."""
