"""Workspace materialization and scoped cleanup."""

from godev_sandbox.workspace.cleanup import CleanupScope
from godev_sandbox.workspace.workspace_manager import (
    WorkspaceManager,
    synthesized_module_descriptor,
)

__all__ = ["CleanupScope", "WorkspaceManager", "synthesized_module_descriptor"]
