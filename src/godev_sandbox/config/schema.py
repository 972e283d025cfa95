"""
godev-sandbox: configuration schema and validation.

File: src/godev_sandbox/config/schema.py

Purpose
- Define the built-in defaults and the per-field rules every config layer must satisfy.

What should be included in this file
- Schema versioning and migration guidance.
- One ``FieldRule`` per leaf field; sections and profile overlays are checked against
  the same table.
- Deterministic deep-merge and redaction helpers.
- Typed ``SandboxConfig`` view consumed by the execution controller.

Functional requirements
- Validate config payloads and return structured errors (field path + message).
- Support profile overlays (``strict``/``permissive`` built in).
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Final, Literal, TypedDict

from godev_sandbox.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_CPU_SECONDS,
    DEFAULT_KILL_GRACE_SECONDS,
    DEFAULT_MAX_CONCURRENT,
    DEFAULT_MAX_OUTPUT_KB,
    DEFAULT_MEMORY_MB,
    DEFAULT_TIMEOUT_SECONDS,
    DEFAULT_WORKSPACE_PREFIX,
)
from godev_sandbox.domain.models import ResourceLimits
from godev_sandbox.planning.toolchain import Toolchain

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("strict", "permissive")
NETWORK_POLICY_MODES: Final[tuple[str, ...]] = ("deny", "allowlist", "logged_permissive")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")
REDACTED_VALUE: Final[str] = "<redacted>"

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_PREFIX_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_CAMEL_CASE_BOUNDARY = re.compile(r"([a-z0-9])([A-Z])")
_NON_ALNUM = re.compile(r"[^a-z0-9]+")
# Matched against the snake_case form of a key.
_SENSITIVE_KEY = re.compile(
    r"api_?key|access_token|private_key|passw(or)?d|secret|credential"
    r"|(^|_)(token|auth)(_|$)"
)

# Config paths that should be normalized relative to config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("sandbox", "temp_root"),
    ("observability", "log_dir"),
)


class MetaConfig(TypedDict):
    schema_version: int


class ToolchainConfig(TypedDict):
    go_binary: str
    gofmt_binary: str


class LimitsConfig(TypedDict):
    cpu_seconds: int
    memory_mb: int
    timeout_seconds: float
    max_output_kb: int


class SandboxSection(TypedDict):
    max_concurrent: int
    network_policy: Literal["deny", "allowlist", "logged_permissive"]
    module_proxies: list[str]
    use_network_namespace: bool
    temp_root: str
    workspace_prefix: str
    kill_grace_seconds: float


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_dir: str
    log_to_stdout: bool
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    toolchain: dict[str, object]
    limits: dict[str, object]
    sandbox: dict[str, object]
    observability: dict[str, object]


class GodevConfig(TypedDict):
    meta: MetaConfig
    toolchain: ToolchainConfig
    limits: LimitsConfig
    sandbox: SandboxSection
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


DEFAULT_CONFIG: Final[GodevConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "toolchain": {
        "go_binary": "go",
        "gofmt_binary": "gofmt",
    },
    "limits": {
        "cpu_seconds": DEFAULT_CPU_SECONDS,
        "memory_mb": DEFAULT_MEMORY_MB,
        "timeout_seconds": DEFAULT_TIMEOUT_SECONDS,
        "max_output_kb": DEFAULT_MAX_OUTPUT_KB,
    },
    "sandbox": {
        "max_concurrent": DEFAULT_MAX_CONCURRENT,
        "network_policy": "deny",
        "module_proxies": ["https://proxy.golang.org"],
        "use_network_namespace": True,
        "temp_root": "",
        "workspace_prefix": DEFAULT_WORKSPACE_PREFIX,
        "kill_grace_seconds": DEFAULT_KILL_GRACE_SECONDS,
    },
    "observability": {
        "log_level": "INFO",
        "log_dir": "logs",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
    "profiles": {
        "strict": {
            "sandbox": {"network_policy": "deny", "max_concurrent": 1},
            "limits": {"timeout_seconds": 10.0, "memory_mb": 1024},
        },
        "permissive": {
            "sandbox": {"network_policy": "logged_permissive"},
        },
    },
}


FieldKind = Literal["text", "path", "int", "number", "flag", "choice", "text_list"]


@dataclass(frozen=True, slots=True)
class FieldRule:
    """
    Check and normalize one leaf value.

    ``check`` returns the normalized value or raises ``ValueError`` whose message is
    reported against the field's dotted path.
    """

    kind: FieldKind
    minimum: float | None = None
    positive: bool = False
    choices: tuple[str, ...] = ()
    fold_case: bool = False
    allow_empty: bool = False
    pattern: re.Pattern[str] | None = None
    pattern_hint: str = ""

    def check(self, value: object) -> object:
        return _CHECKERS[self.kind](self, value)

    def _bounded(self, value: float) -> None:
        if self.positive and value <= 0:
            raise ValueError("must be > 0")
        if self.minimum is not None and value < self.minimum:
            raise ValueError(f"must be >= {self.minimum}")


def _check_text(rule: FieldRule, value: object) -> str:
    if not isinstance(value, str):
        raise ValueError(f"expected string, got {type(value).__name__}")
    text = value.strip()
    if not text:
        raise ValueError("must not be empty")
    if rule.pattern is not None and not rule.pattern.fullmatch(text):
        raise ValueError(rule.pattern_hint)
    return text


def _check_path(rule: FieldRule, value: object) -> str:
    if rule.allow_empty and isinstance(value, str) and not value.strip():
        return ""
    text = _check_text(rule, value)
    if "\x00" in text:
        raise ValueError("must not contain NUL bytes")
    return text


def _check_int(rule: FieldRule, value: object) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValueError(f"expected integer, got {type(value).__name__}")
    rule._bounded(value)
    return value


def _check_number(rule: FieldRule, value: object) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValueError(f"expected number, got {type(value).__name__}")
    number = float(value)
    if not math.isfinite(number):
        raise ValueError("must be finite")
    rule._bounded(number)
    return number


def _check_flag(rule: FieldRule, value: object) -> bool:
    if not isinstance(value, bool):
        raise ValueError(f"expected boolean, got {type(value).__name__}")
    return value


def _check_choice(rule: FieldRule, value: object) -> str:
    text = _check_text(rule, value)
    if rule.fold_case:
        text = text.upper()
    if text not in rule.choices:
        raise ValueError(
            f"invalid value {text!r}; expected one of: {', '.join(sorted(rule.choices))}"
        )
    return text


def _check_text_list(rule: FieldRule, value: object) -> list[str]:
    if isinstance(value, str) or not isinstance(value, (list, tuple)):
        raise ValueError(f"expected list of strings, got {type(value).__name__}")
    items: list[str] = []
    for index, item in enumerate(value):
        try:
            items.append(_check_text(rule, item))
        except ValueError as exc:
            raise ValueError(f"item {index}: {exc}") from None
    return items


_CHECKERS: Final[dict[str, Callable[[FieldRule, object], Any]]] = {
    "text": _check_text,
    "path": _check_path,
    "int": _check_int,
    "number": _check_number,
    "flag": _check_flag,
    "choice": _check_choice,
    "text_list": _check_text_list,
}

SECTION_RULES: Final[Mapping[str, Mapping[str, FieldRule]]] = {
    "meta": {"schema_version": FieldRule("int", minimum=1)},
    "toolchain": {
        "go_binary": FieldRule("path"),
        "gofmt_binary": FieldRule("path"),
    },
    "limits": {
        "cpu_seconds": FieldRule("int", minimum=0),
        "memory_mb": FieldRule("int", minimum=0),
        "timeout_seconds": FieldRule("number", positive=True),
        "max_output_kb": FieldRule("int", minimum=1),
    },
    "sandbox": {
        "max_concurrent": FieldRule("int", minimum=1),
        "network_policy": FieldRule("choice", choices=NETWORK_POLICY_MODES),
        "module_proxies": FieldRule("text_list"),
        "use_network_namespace": FieldRule("flag"),
        # Empty means the platform temporary directory.
        "temp_root": FieldRule("path", allow_empty=True),
        "workspace_prefix": FieldRule(
            "text",
            pattern=_PREFIX_PATTERN,
            pattern_hint="must start with a letter or digit and use only [A-Za-z0-9._-]",
        ),
        "kill_grace_seconds": FieldRule("number", minimum=0.0),
    },
    "observability": {
        "log_level": FieldRule("choice", choices=LOG_LEVELS, fold_case=True),
        "log_dir": FieldRule("path"),
        "log_to_stdout": FieldRule("flag"),
        "redact_secrets": FieldRule("flag"),
    },
}
_OVERLAY_SECTIONS: Final[tuple[str, ...]] = tuple(
    section for section in SECTION_RULES if section != "meta"
)


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        lines = [f"- {item.path}: {item.message}" for item in self.issues]
        super().__init__("invalid config:\n" + ("\n".join(lines) or "unknown validation failure"))

    @classmethod
    def single(cls, path: str, message: str) -> ConfigValidationError:
        return cls((ConfigValidationIssue(path, message),))


@dataclass(frozen=True, slots=True)
class SandboxConfig:
    """Typed, validated view of an effective config mapping."""

    limits: ResourceLimits
    toolchain: Toolchain = field(default_factory=Toolchain)
    max_concurrent: int = DEFAULT_MAX_CONCURRENT
    network_policy: str = "deny"
    module_proxies: tuple[str, ...] = ("https://proxy.golang.org",)
    use_network_namespace: bool = True
    temp_root: Path | None = None
    workspace_prefix: str = DEFAULT_WORKSPACE_PREFIX
    kill_grace_seconds: float = DEFAULT_KILL_GRACE_SECONDS
    log_level: str = "INFO"
    log_dir: Path = Path("logs")
    log_to_stdout: bool = False
    redact_secrets: bool = True

    @classmethod
    def from_mapping(cls, config: Mapping[str, object]) -> SandboxConfig:
        """Validate ``config`` and lift it into typed values."""

        validated = assert_valid_config(config)
        limits = validated["limits"]
        sandbox = validated["sandbox"]
        observability = validated["observability"]
        return cls(
            limits=ResourceLimits(
                cpu_seconds=limits["cpu_seconds"],
                memory_mb=limits["memory_mb"],
                timeout_seconds=limits["timeout_seconds"],
                max_output_bytes=limits["max_output_kb"] * 1024,
            ),
            toolchain=Toolchain(**validated["toolchain"]),
            max_concurrent=sandbox["max_concurrent"],
            network_policy=sandbox["network_policy"],
            module_proxies=tuple(sandbox["module_proxies"]),
            use_network_namespace=sandbox["use_network_namespace"],
            temp_root=Path(sandbox["temp_root"]) if sandbox["temp_root"] else None,
            workspace_prefix=sandbox["workspace_prefix"],
            kill_grace_seconds=sandbox["kill_grace_seconds"],
            log_level=observability["log_level"],
            log_dir=Path(observability["log_dir"]),
            log_to_stdout=observability["log_to_stdout"],
            redact_secrets=observability["redact_secrets"],
        )

    @classmethod
    def defaults(cls) -> SandboxConfig:
        return cls.from_mapping(default_config())


def default_config() -> GodevConfig:
    """Return a deep copy of deterministic built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Return deterministic migration guidance for schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade godev.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade the godev-sandbox runtime"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deep-merge ``overlay`` onto a copy of ``base``; nested mappings merge key by key."""

    merged: dict[str, Any] = _clone(base)
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(value, Mapping) and isinstance(current, dict):
            merged[key] = merge_config(current, value)
        else:
            merged[key] = _clone(value)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    selected = (profile or "").strip()
    if not selected:
        return _clone(config)

    profiles = config.get("profiles")
    if not isinstance(profiles, Mapping):
        raise ConfigValidationError.single("profiles", "profiles section is required")
    overlay = profiles.get(selected)
    if overlay is None:
        raise ConfigValidationError.single("profiles", f"profile {selected!r} is not defined")
    if not isinstance(overlay, Mapping):
        raise ConfigValidationError.single(
            f"profiles.{selected}", "profile overlay must be an object"
        )
    return assert_valid_config(merge_config(config, overlay), active_profile=selected)


def validate_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> ConfigValidationResult:
    """Validate config and return structured issues with deterministic paths."""

    issues: list[ConfigValidationIssue] = []
    root = _as_mapping(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=tuple(issues))

    normalized = _validate_root(root, issues)
    selected = active_profile.strip() if isinstance(active_profile, str) else ""
    if selected and selected not in normalized.get("profiles", {}):
        issues.append(ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"))
    return ConfigValidationResult(config=None if issues else normalized, issues=tuple(issues))


def assert_valid_config(
    config: Mapping[str, object] | object,
    *,
    active_profile: str | None = None,
) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config, active_profile=active_profile)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a copy with secret-looking keys masked, keys sorted; ``config`` is untouched."""

    if not isinstance(config, Mapping):
        return {}
    return _redact(config)


def _validate_root(
    payload: Mapping[str, object], issues: list[ConfigValidationIssue]
) -> dict[str, Any]:
    _screen_keys(payload, (*SECTION_RULES, "profiles"), "", issues)
    out: dict[str, Any] = {}
    for section, rules in SECTION_RULES.items():
        if section not in payload:
            issues.append(ConfigValidationIssue(section, "missing required field"))
            continue
        fields = _as_mapping(payload[section], section, issues)
        if fields is not None:
            out[section] = _validate_section(fields, rules, section, issues, partial=False)

    version = out.get("meta", {}).get("schema_version")
    if version is not None and version != ConfigSchemaVersion:
        issues.append(ConfigValidationIssue("meta.schema_version", migration_guidance(version)))

    if "profiles" in payload:
        profiles = _as_mapping(payload["profiles"], "profiles", issues)
        if profiles is not None:
            out["profiles"] = _validate_profiles(profiles, issues)
    return out


def _validate_section(
    payload: Mapping[str, object],
    rules: Mapping[str, FieldRule],
    path: str,
    issues: list[ConfigValidationIssue],
    *,
    partial: bool,
) -> dict[str, Any]:
    _screen_keys(payload, rules, path, issues)
    out: dict[str, Any] = {}
    for key, rule in rules.items():
        dotted = f"{path}.{key}"
        if key not in payload:
            if not partial:
                issues.append(ConfigValidationIssue(dotted, "missing required field"))
            continue
        try:
            out[key] = rule.check(payload[key])
        except ValueError as exc:
            issues.append(ConfigValidationIssue(dotted, str(exc)))
    return out


def _validate_profiles(
    payload: Mapping[str, object], issues: list[ConfigValidationIssue]
) -> dict[str, Any]:
    # Overlays are partial: every field is optional but must still pass its rule.
    out: dict[str, Any] = {}
    for name in sorted(payload):
        path = f"profiles.{name}"
        if not _PROFILE_NAME_PATTERN.fullmatch(name):
            issues.append(ConfigValidationIssue(path, "profile names must match [a-z][a-z0-9_-]*"))
            continue
        overlay = _as_mapping(payload[name], path, issues)
        if overlay is None:
            continue
        _screen_keys(overlay, _OVERLAY_SECTIONS, path, issues)
        parsed: dict[str, Any] = {}
        for section in _OVERLAY_SECTIONS:
            if section not in overlay:
                continue
            fields = _as_mapping(overlay[section], f"{path}.{section}", issues)
            if fields is not None:
                parsed[section] = _validate_section(
                    fields, SECTION_RULES[section], f"{path}.{section}", issues, partial=True
                )
        out[name] = parsed
    return out


def _as_mapping(
    value: object, path: str, issues: list[ConfigValidationIssue]
) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.append(ConfigValidationIssue(path, f"expected object, got {type(value).__name__}"))
        return None
    bad_keys = [key for key in value if not isinstance(key, str)]
    for key in bad_keys:
        issues.append(
            ConfigValidationIssue(path, f"object key must be string, got {type(key).__name__}")
        )
    return {key: item for key, item in value.items() if isinstance(key, str)}


def _screen_keys(
    payload: Mapping[str, object],
    allowed: Iterable[str],
    path: str,
    issues: list[ConfigValidationIssue],
) -> None:
    known = set(allowed)
    for key in sorted(set(payload) - known):
        dotted = f"{path}.{key}" if path else key
        if _looks_sensitive_key(key):
            message = "embedded secret values are forbidden in config files"
            issues.append(ConfigValidationIssue(dotted, message))
        else:
            issues.append(ConfigValidationIssue(dotted, "unknown field"))


def _looks_sensitive_key(key: str) -> bool:
    snake = _NON_ALNUM.sub("_", _CAMEL_CASE_BOUNDARY.sub(r"\1_\2", key.strip()).lower())
    return _SENSITIVE_KEY.search(snake.strip("_")) is not None


def _clone(value: Any) -> Any:
    if isinstance(value, Mapping):
        return {key: _clone(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_clone(item) for item in value]
    if isinstance(value, tuple):
        return tuple(_clone(item) for item in value)
    return copy.deepcopy(value)


def _redact(value: object) -> Any:
    if isinstance(value, Mapping):
        # Switches such as ``redact_secrets`` carry no secret themselves.
        return {
            key: REDACTED_VALUE
            if _looks_sensitive_key(key) and not isinstance(item, bool)
            else _redact(item)
            for key, item in sorted(value.items())
        }
    if isinstance(value, (list, tuple)):
        return [_redact(item) for item in value]
    return value


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "DEFAULT_CONFIG",
    "FieldRule",
    "GodevConfig",
    "LOG_LEVELS",
    "NETWORK_POLICY_MODES",
    "PATH_FIELDS",
    "ProfileOverlay",
    "REDACTED_VALUE",
    "SECTION_RULES",
    "SandboxConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
