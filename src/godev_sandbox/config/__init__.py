"""
godev-sandbox config package public API.

File: src/godev_sandbox/config/__init__.py

Purpose
- Export config loading/validation entrypoints and public error types.

Functional requirements
- Support loading from ``godev.toml`` + ``GODEV_`` env overrides.
- Fail fast with clear structured validation/load errors.
"""

from godev_sandbox.config.loader import (
    DEFAULT_CONFIG_FILE,
    ENV_PREFIX,
    PROFILE_ENV,
    ConfigLoadError,
    EnvBinding,
    dump_effective_config,
    effective_config,
    env_bindings,
    load_config,
    normalize_paths,
)
from godev_sandbox.config.schema import (
    BUILTIN_PROFILE_NAMES,
    DEFAULT_CONFIG,
    PATH_FIELDS,
    ConfigSchemaVersion,
    ConfigValidationError,
    ConfigValidationIssue,
    ConfigValidationResult,
    GodevConfig,
    ProfileOverlay,
    SandboxConfig,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    migration_guidance,
    redact_config,
    validate_config,
)

__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigLoadError",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "EnvBinding",
    "GodevConfig",
    "PATH_FIELDS",
    "PROFILE_ENV",
    "ProfileOverlay",
    "SandboxConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "dump_effective_config",
    "effective_config",
    "env_bindings",
    "load_config",
    "merge_config",
    "migration_guidance",
    "normalize_paths",
    "redact_config",
    "validate_config",
]
