"""Parsers for Go compiler, test and gofmt output."""

from godev_sandbox.diagnostics.parser import (
    TestSummary,
    extract_coverage,
    parse_formatted_files,
    parse_go_errors,
    summarize_tests,
)

__all__ = [
    "TestSummary",
    "extract_coverage",
    "parse_formatted_files",
    "parse_go_errors",
    "summarize_tests",
]
