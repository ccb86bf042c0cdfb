"""Parser for Jest console output as printed through nx."""

from nx_test_orchestrator.parsers.jest.parser import JestOutputParser

__all__ = ["JestOutputParser"]
