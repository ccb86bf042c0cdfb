"""Loading of output parsers from entry points."""

from importlib.metadata import entry_points

from nx_test_orchestrator.errors import ParserNotFoundError
from nx_test_orchestrator.parsers.base import OutputParser

ENTRY_POINT_GROUP = "nx_test_orchestrator.parsers"


def load_output_parser(key: str) -> OutputParser:
    """Load an output parser by key.

    Args:
        key: The parser key as registered in pyproject.toml (e.g., "jest")

    Returns:
        A new parser instance

    Raises:
        ParserNotFoundError: If no parser with the given key is found

    """
    entries = entry_points(group=ENTRY_POINT_GROUP)

    for entry in entries:
        if entry.name == key:
            parser_cls: type[OutputParser] = entry.load()
            return parser_cls()

    available = [e.name for e in entries]
    raise ParserNotFoundError(
        f"Output parser '{key}' not found. Available parsers: {available}"
    )
