"""
godev-sandbox: run Go toolchain operations against code snippets and projects.

File: src/godev_sandbox/__init__.py

Purpose
- Package root. Defines package-level metadata and import boundaries.

Functional requirements
- Must not have side effects at import time (no config loading, no logging init).
- Heavy submodules are imported by callers, not here.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
