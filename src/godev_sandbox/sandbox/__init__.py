"""
godev-sandbox: sandbox package

File: src/godev_sandbox/sandbox/__init__.py

Purpose
- Bounded execution of toolchain processes: wall-clock timeout, process-tree
  termination, capped output, rlimit ceilings and a scrubbed environment.

Functional requirements
- No child process outlives the execution that started it.
- Commands are argv tuples; nothing runs through a shell.
"""

from godev_sandbox.sandbox.executor import SandboxExecutor
from godev_sandbox.sandbox.limits import ChildLimits, plan_child_limits
from godev_sandbox.sandbox.network_policy import (
    DEFAULT_ENV_ALLOWLIST,
    NetworkDecision,
    NetworkPolicy,
    NetworkPolicyMode,
    ProxyRule,
)

__all__ = [
    "DEFAULT_ENV_ALLOWLIST",
    "ChildLimits",
    "NetworkDecision",
    "NetworkPolicy",
    "NetworkPolicyMode",
    "ProxyRule",
    "SandboxExecutor",
    "plan_child_limits",
]
