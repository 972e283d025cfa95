"""
godev-sandbox: planning package

File: src/godev_sandbox/planning/__init__.py

Purpose
- Strategy resolution and toolchain argv construction. No process execution and
  no workspace writes happen here.
"""

from godev_sandbox.planning.resolver import (
    ProjectProbe,
    effective_limits,
    resolve_plan,
    validate_request_paths,
)
from godev_sandbox.planning.toolchain import Toolchain, build_command

__all__ = [
    "ProjectProbe",
    "Toolchain",
    "build_command",
    "effective_limits",
    "resolve_plan",
    "validate_request_paths",
]
