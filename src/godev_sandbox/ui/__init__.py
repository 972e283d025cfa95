"""UI package exports for the CLI and its plain-text renderer."""

from godev_sandbox.ui.cli import CLIError, build_parser, exit_code_for, run_cli, split_run_args
from godev_sandbox.ui.render import CLIRenderer, create_renderer

__all__ = [
    "CLIError",
    "CLIRenderer",
    "build_parser",
    "create_renderer",
    "exit_code_for",
    "run_cli",
    "split_run_args",
]
