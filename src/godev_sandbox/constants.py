"""Stable constants shared across the sandbox layers."""

from __future__ import annotations

from typing import Final

# Schema version for persisted config.
CONFIG_SCHEMA_VERSION: Final[int] = 1

# Go workspace conventions.
DEFAULT_MAIN_FILE: Final[str] = "main.go"
GO_MOD_FILENAME: Final[str] = "go.mod"
GO_WORK_FILENAME: Final[str] = "go.work"
SYNTHESIZED_MODULE_NAME: Final[str] = "sandbox"
SYNTHESIZED_GO_DIRECTIVE: Final[str] = "1.21"

# Ephemeral workspace naming.
DEFAULT_WORKSPACE_PREFIX: Final[str] = "godev-"
BUILD_OUTPUT_NAME: Final[str] = "output"

# Version-control metadata never carried into a copied project.
VCS_METADATA_DIRS: Final[frozenset[str]] = frozenset({".git", ".hg", ".svn", ".bzr"})

# Default resource ceilings (overridable by config).
DEFAULT_CPU_SECONDS: Final[int] = 60
DEFAULT_MEMORY_MB: Final[int] = 2048
DEFAULT_TIMEOUT_SECONDS: Final[float] = 30.0
DEFAULT_MAX_OUTPUT_KB: Final[int] = 1024
DEFAULT_MAX_CONCURRENT: Final[int] = 4
DEFAULT_KILL_GRACE_SECONDS: Final[float] = 2.0

__all__ = [
    "BUILD_OUTPUT_NAME",
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CPU_SECONDS",
    "DEFAULT_KILL_GRACE_SECONDS",
    "DEFAULT_MAIN_FILE",
    "DEFAULT_MAX_CONCURRENT",
    "DEFAULT_MAX_OUTPUT_KB",
    "DEFAULT_MEMORY_MB",
    "DEFAULT_TIMEOUT_SECONDS",
    "DEFAULT_WORKSPACE_PREFIX",
    "GO_MOD_FILENAME",
    "GO_WORK_FILENAME",
    "SYNTHESIZED_GO_DIRECTIVE",
    "SYNTHESIZED_MODULE_NAME",
    "VCS_METADATA_DIRS",
]
