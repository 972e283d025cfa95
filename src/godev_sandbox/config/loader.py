"""
godev-sandbox: layered runtime config loader.

File: src/godev_sandbox/config/loader.py

Purpose
- Build the effective sandbox config from five layers, lowest first: built-in defaults,
  ``godev.toml``, the selected profile, ``GODEV_*`` environment variables, CLI overrides.

Behaviour
- Every environment variable maps to exactly one schema field; the table is derived from
  the built-in defaults so a new field gets its variable without extra wiring.
- Relative ``temp_root``/``log_dir`` values resolve against the config file's directory.
- The dumped config masks secret-looking keys and credentials embedded in proxy URLs.
"""

from __future__ import annotations

import json
import os
import tomllib
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Final
from urllib.parse import urlsplit, urlunsplit

from godev_sandbox.config.schema import (
    DEFAULT_CONFIG,
    PATH_FIELDS,
    REDACTED_VALUE,
    apply_profile_overlay,
    assert_valid_config,
    default_config,
    merge_config,
    redact_config,
)

DEFAULT_CONFIG_FILE: Final[str] = "godev.toml"
ENV_PREFIX: Final[str] = "GODEV_"
PROFILE_ENV: Final[str] = f"{ENV_PREFIX}PROFILE"

_TRUTHY: Final[frozenset[str]] = frozenset({"1", "true", "t", "yes", "y", "on"})
_FALSY: Final[frozenset[str]] = frozenset({"0", "false", "f", "no", "n", "off"})
_UNBOUND_SECTIONS: Final[frozenset[str]] = frozenset({"meta", "profiles"})


class ConfigLoadError(ValueError):
    """Raised when config cannot be loaded or overrides cannot be coerced."""


@dataclass(frozen=True, slots=True)
class EnvBinding:
    """One ``GODEV_<SECTION>_<FIELD>`` variable and the field it overrides."""

    name: str
    section: str
    key: str
    kind: type

    @property
    def dotted(self) -> str:
        return f"{self.section}.{self.key}"

    def coerce(self, raw: str) -> object:
        value = raw.strip()
        coercer = _COERCERS.get(self.kind, _as_text)
        try:
            return coercer(value)
        except ValueError as exc:
            raise ConfigLoadError(f"{self.name} -> {self.dotted} {exc}") from exc


def _as_text(value: str) -> str:
    return value


def _as_integer(value: str) -> int:
    try:
        return int(value)
    except ValueError:
        raise ValueError("must be an integer") from None


def _as_number(value: str) -> float:
    try:
        return float(value)
    except ValueError:
        raise ValueError("must be a number") from None


def _as_flag(value: str) -> bool:
    lowered = value.lower()
    if lowered in _TRUTHY:
        return True
    if lowered in _FALSY:
        return False
    raise ValueError("must be a boolean (true/false/1/0/yes/no/on/off)")


def _as_list(value: str) -> list[str]:
    # Comma-separated, the same convention GOPROXY uses.
    return [item.strip() for item in value.split(",") if item.strip()]


_COERCERS: Final[dict[type, Callable[[str], object]]] = {
    str: _as_text,
    int: _as_integer,
    float: _as_number,
    bool: _as_flag,
    list: _as_list,
}


def env_bindings() -> tuple[EnvBinding, ...]:
    """Return every supported environment variable, sorted by name."""

    bindings: list[EnvBinding] = []
    for section, fields in DEFAULT_CONFIG.items():
        if section in _UNBOUND_SECTIONS or not isinstance(fields, Mapping):
            continue
        for key, default in fields.items():
            name = f"{ENV_PREFIX}{section.upper()}_{key.upper()}"
            bindings.append(EnvBinding(name=name, section=section, key=key, kind=type(default)))
    return tuple(sorted(bindings, key=lambda binding: binding.name))


def load_config(
    config_path: str | Path | None = None,
    *,
    profile: str | None = None,
    cli_overrides: Mapping[str, object] | None = None,
    environ: Mapping[str, str] | None = None,
) -> dict[str, Any]:
    """Load the effective config: CLI > env > profile > file > defaults."""

    explicit = config_path is not None
    path = (
        Path(config_path).expanduser().resolve()
        if config_path is not None
        else (Path.cwd() / DEFAULT_CONFIG_FILE).resolve()
    )
    env = os.environ if environ is None else environ
    overrides = dict(cli_overrides or {})
    selected = _select_profile(profile, overrides, env)

    config = assert_valid_config(merge_config(default_config(), _read_toml(path, explicit)))
    if selected is not None:
        config = apply_profile_overlay(config, selected)
    config = merge_config(config, _env_layer(env))
    config = merge_config(config, _cli_layer(overrides))
    config = assert_valid_config(config, active_profile=selected)
    return assert_valid_config(
        normalize_paths(config, base_dir=path.parent), active_profile=selected
    )


def normalize_paths(config: Mapping[str, object], *, base_dir: Path) -> dict[str, Any]:
    """Resolve the configured path fields against ``base_dir``; empty values stay empty."""

    normalized = merge_config({}, config)
    for section, key in PATH_FIELDS:
        fields = normalized.get(section)
        if not isinstance(fields, dict):
            continue
        raw = fields.get(key)
        if isinstance(raw, str) and raw.strip():
            fields[key] = _resolve_path(raw, base_dir)
    return normalized


def effective_config(config: Mapping[str, object]) -> dict[str, Any]:
    """Return the config with secrets masked, safe for logs and ``godev config``."""

    redacted = redact_config(config)
    sandbox = redacted.get("sandbox")
    if isinstance(sandbox, dict) and isinstance(sandbox.get("module_proxies"), list):
        sandbox["module_proxies"] = [
            _mask_userinfo(item) if isinstance(item, str) else item
            for item in sandbox["module_proxies"]
        ]
    return redacted


def dump_effective_config(config: Mapping[str, object]) -> str:
    """Return a deterministic JSON dump of :func:`effective_config`."""

    return json.dumps(
        effective_config(config), sort_keys=True, separators=(",", ":"), ensure_ascii=False
    )


def _read_toml(path: Path, required: bool) -> dict[str, Any]:
    if not path.exists():
        if required:
            raise ConfigLoadError(f"config file not found: {path}")
        return {}
    try:
        with path.open("rb") as handle:
            return tomllib.load(handle)
    except tomllib.TOMLDecodeError as exc:
        raise ConfigLoadError(f"invalid TOML in {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigLoadError(f"unable to read config file {path}: {exc}") from exc


def _select_profile(
    explicit: str | None, overrides: Mapping[str, object], env: Mapping[str, str]
) -> str | None:
    candidate: object = explicit
    if candidate is None:
        candidate = overrides.get("profile")
    if candidate is None:
        candidate = env.get(PROFILE_ENV)
    if candidate is None:
        return None
    if not isinstance(candidate, str):
        raise ConfigLoadError("cli override 'profile' must be a string")
    return candidate.strip() or None


def _env_layer(env: Mapping[str, str]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for binding in env_bindings():
        raw = env.get(binding.name)
        if raw is not None:
            layer.setdefault(binding.section, {})[binding.key] = binding.coerce(raw)
    return layer


def _cli_layer(overrides: Mapping[str, object]) -> dict[str, Any]:
    layer: dict[str, Any] = {}
    for dotted, value in _flatten(overrides):
        if dotted == ("profile",) or value is None:
            continue
        cursor = layer
        for part in dotted[:-1]:
            child = cursor.get(part)
            if not isinstance(child, dict):
                child = cursor[part] = {}
            cursor = child
        cursor[dotted[-1]] = value
    return layer


def _flatten(
    payload: Mapping[str, object], prefix: tuple[str, ...] = ()
) -> Iterator[tuple[tuple[str, ...], object]]:
    for key in sorted(payload):
        parts = tuple(part for part in key.split(".") if part)
        if not parts:
            raise ConfigLoadError(f"invalid CLI override key {key!r}")
        value = payload[key]
        if isinstance(value, Mapping):
            yield from _flatten(value, (*prefix, *parts))
        else:
            yield (*prefix, *parts), value


def _resolve_path(raw: str, base_dir: Path) -> str:
    candidate = Path(os.path.expandvars(raw)).expanduser()
    if not candidate.is_absolute():
        candidate = base_dir / candidate
    return Path(os.path.normpath(candidate)).as_posix()


def _mask_userinfo(url: str) -> str:
    parts = urlsplit(url)
    if "@" not in parts.netloc:
        return url
    host = parts.netloc.rpartition("@")[2]
    netloc = f"{REDACTED_VALUE}@{host}"
    return urlunsplit((parts.scheme, netloc, parts.path, parts.query, parts.fragment))


__all__ = [
    "ConfigLoadError",
    "DEFAULT_CONFIG_FILE",
    "ENV_PREFIX",
    "EnvBinding",
    "PROFILE_ENV",
    "dump_effective_config",
    "effective_config",
    "env_bindings",
    "load_config",
    "normalize_paths",
]
