"""Output rendering for the godev CLI.

File: src/godev_sandbox/ui/render.py

Purpose
- Render ``ExecutionResult`` values and config dumps for a terminal.
- Respect the NO_COLOR environment variable and the --no-color CLI flag.

Functional requirements
- Toolchain output is printed verbatim; it is never interpreted as markup.
- Output stays deterministic when stdout is not a terminal.
"""

from __future__ import annotations

import os
import sys
from typing import TYPE_CHECKING

from rich.console import Console
from rich.table import Table
from rich.text import Text

if TYPE_CHECKING:
    from collections.abc import Sequence

    from godev_sandbox.domain.models import ExecutionResult


def _color_allowed(no_color_flag: bool) -> bool:
    """Check whether color output should be attempted."""

    if no_color_flag:
        return False
    if os.environ.get("NO_COLOR", ""):
        return False
    return hasattr(sys.stdout, "isatty") and sys.stdout.isatty()


class CLIRenderer:
    """Thin CLI output renderer on top of a ``rich`` console."""

    def __init__(self, *, no_color: bool = False, verbose: bool = False) -> None:
        self.verbose = verbose
        self._color = _color_allowed(no_color)
        self._console = Console(
            no_color=not self._color,
            highlight=False,
            soft_wrap=True,
            emoji=False,
            markup=False,
        )

    def heading(self, text: str) -> None:
        """Print a heading line."""

        self._console.print(Text(text, style="bold"))

    def kv(self, key: str, value: object) -> None:
        """Print a key: value pair."""

        self._console.print(Text(f"{key}: {value}"))

    def text(self, line: str) -> None:
        """Print a plain text line."""

        self._console.print(Text(line))

    def section(self, title: str) -> None:
        """Print a section header with a preceding blank line."""

        self._console.print()
        self._console.print(Text(title, style="bold"))

    def warning(self, text: str) -> None:
        """Print a warning message."""

        self._console.print(Text(f"  Warning: {text}", style="yellow"))

    def items(self, entries: Sequence[str], *, prefix: str = "- ") -> None:
        """Print a bulleted list."""

        for entry in entries:
            self._console.print(Text(f"  {prefix}{entry}"))

    def raw(self, output: str) -> None:
        """Print captured process output exactly as produced."""

        self._console.print(Text(output.rstrip("\n")))

    def table(
        self,
        headers: Sequence[str],
        rows: Sequence[Sequence[str]],
        *,
        title: str | None = None,
    ) -> None:
        """Print a table; nothing is printed for an empty row set."""

        if not rows:
            return
        if title:
            self.section(title)
        table = Table(box=None, show_edge=False, pad_edge=False, header_style="bold")
        for header in headers:
            table.add_column(header, overflow="fold")
        for row in rows:
            table.add_row(*(Text(str(cell)) for cell in row))
        self._console.print(table)

    def result(self, result: ExecutionResult) -> None:
        """Render one execution result: status, output, diagnostics and artifacts."""

        status = "OK" if result.success else "FAILED"
        operation = result.operation.value if result.operation is not None else "request"
        where = ", ".join(
            item.value for item in (result.strategy, result.origin) if item is not None
        )
        line = Text()
        line.append(status, style="bold green" if result.success else "bold red")
        line.append(f"  {operation}")
        if where:
            line.append(f" ({where})")
        line.append(f" in {result.duration_seconds:.2f}s")
        if result.error_kind is not None:
            line.append(f" [{result.error_kind.value}]", style="red")
        self._console.print(line)
        if result.message:
            self.text(result.message)

        if result.stdout:
            self.section("stdout:" + (" (truncated)" if result.stdout_truncated else ""))
            self.raw(result.stdout)
        if result.stderr:
            self.section("stderr:" + (" (truncated)" if result.stderr_truncated else ""))
            self.raw(result.stderr)

        self.table(
            ("file", "line", "col", "message"),
            [
                (
                    item.file or "-",
                    str(item.line) if item.line is not None else "-",
                    str(item.column) if item.column is not None else "-",
                    item.message,
                )
                for item in result.diagnostics
                if item.file is not None
            ],
            title="Diagnostics:",
        )
        suggestions = sorted({hint for item in result.diagnostics for hint in item.suggestions})
        if suggestions:
            self.section("Suggestions:")
            self.items(suggestions)

        artifacts = {
            key: value
            for key, value in result.artifacts.items()
            if self.verbose or key not in {"limits_enforced", "formatted_code"}
        }
        if artifacts:
            self.section("Artifacts:")
            for key in sorted(artifacts):
                value = artifacts[key]
                if isinstance(value, str) and "\n" in value:
                    self.text(f"  {key}:")
                    self.raw(value)
                else:
                    self.kv(f"  {key}", value)


def create_renderer(*, no_color: bool = False, verbose: bool = False) -> CLIRenderer:
    """Create a CLI renderer with the given settings."""

    return CLIRenderer(no_color=no_color, verbose=verbose)


__all__ = ["CLIRenderer", "create_renderer"]
