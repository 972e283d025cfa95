"""Structured views over Go toolchain output.

Nothing here alters the raw text; results are attached next to it.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Final

from godev_sandbox.domain.models import Diagnostic, DiagnosticType

_LOCATED_RE: Final = re.compile(
    r"^(?P<file>[^\s:][^:]*?):(?P<line>\d+)(?::(?P<column>\d+))?:\s*(?P<message>.*)$"
)
_TEST_RESULT_RE: Final = re.compile(r"^\s*--- (?P<status>PASS|FAIL|SKIP):")

_UNDEFINED_MARKERS: Final[tuple[str, ...]] = ("undefined:", "undeclared name:")
_SYNTAX_MARKER: Final[str] = "syntax error:"

UNDEFINED_SUGGESTIONS: Final[tuple[str, ...]] = (
    "Check if you have imported the necessary package",
    "Verify that the variable or function name is spelled correctly",
)
SYNTAX_SUGGESTIONS: Final[tuple[str, ...]] = (
    "Check for missing braces, parentheses, or semicolons",
    "Verify that syntax is correct according to Go language specification",
)


@dataclass(frozen=True, slots=True)
class TestSummary:
    __test__ = False

    passed: int = 0
    failed: int = 0
    skipped: int = 0

    @property
    def total(self) -> int:
        return self.passed + self.failed + self.skipped

    def to_dict(self) -> dict[str, int]:
        return {
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "total": self.total,
        }


def parse_go_errors(stderr: str) -> tuple[Diagnostic, ...]:
    """Turn compiler/vet output into diagnostics, one per non-empty line.

    ``file:line[:col]: message`` lines become ``compilation`` diagnostics with a
    location; everything else is kept as an ``unknown`` diagnostic.
    """

    diagnostics: list[Diagnostic] = []
    for raw_line in stderr.splitlines():
        line = raw_line.strip()
        if not line:
            continue
        match = _LOCATED_RE.match(line)
        if match is None:
            diagnostics.append(Diagnostic(type=DiagnosticType.UNKNOWN, message=line))
            continue
        message = match.group("message").strip()
        column = match.group("column")
        diagnostics.append(
            Diagnostic(
                type=DiagnosticType.COMPILATION,
                message=message,
                file=match.group("file"),
                line=int(match.group("line")),
                column=int(column) if column is not None else None,
                suggestions=suggestions_for(message),
            )
        )
    return tuple(diagnostics)


def suggestions_for(message: str) -> tuple[str, ...]:
    if any(marker in message for marker in _UNDEFINED_MARKERS):
        return UNDEFINED_SUGGESTIONS
    if _SYNTAX_MARKER in message:
        return SYNTAX_SUGGESTIONS
    return ()


def extract_coverage(stdout: str) -> str | None:
    """First ``coverage:`` line from ``go test -cover`` output."""

    for line in stdout.splitlines():
        if "coverage:" in line:
            return line.strip()
    return None


def parse_formatted_files(stdout: str) -> tuple[str, ...]:
    """Paths ``gofmt -l`` reported as reformatted."""

    return tuple(
        line.strip() for line in stdout.splitlines() if line.strip().endswith(".go")
    )


def summarize_tests(stdout: str) -> TestSummary:
    counts = {"PASS": 0, "FAIL": 0, "SKIP": 0}
    for line in stdout.splitlines():
        match = _TEST_RESULT_RE.match(line)
        if match is not None:
            counts[match.group("status")] += 1
    return TestSummary(passed=counts["PASS"], failed=counts["FAIL"], skipped=counts["SKIP"])


__all__ = [
    "SYNTAX_SUGGESTIONS",
    "UNDEFINED_SUGGESTIONS",
    "TestSummary",
    "extract_coverage",
    "parse_formatted_files",
    "parse_go_errors",
    "suggestions_for",
    "summarize_tests",
]
