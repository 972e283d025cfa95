"""Network egress policy and environment scrubbing for sandboxed toolchain processes."""

from __future__ import annotations

import functools
import ipaddress
import os
import shutil
import subprocess
from collections.abc import Mapping
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING
from urllib.parse import urlsplit

import structlog

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable, Sequence

# Host variables a Go toolchain needs to find itself, its caches and a locale.
DEFAULT_ENV_ALLOWLIST: tuple[str, ...] = (
    "PATH",
    "HOME",
    "GOROOT",
    "GOPATH",
    "GOCACHE",
    "GOMODCACHE",
    "XDG_CACHE_HOME",
    "TMPDIR",
    "LANG",
    "LC_ALL",
    "LC_CTYPE",
)

# Fixed toolchain settings applied in every mode.
TOOLCHAIN_ENV: Mapping[str, str] = {
    "GOTOOLCHAIN": "local",
    "GO111MODULE": "on",
}

_HOST_PROXY_KEYS: tuple[str, ...] = ("GOPROXY", "GOSUMDB", "GONOSUMDB", "GOPRIVATE")
_UNSHARE_PREFIX: tuple[str, ...] = ("--net", "--map-root-user")
_PROBE_TIMEOUT_SECONDS = 5.0

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network
IPAddress = ipaddress.IPv4Address | ipaddress.IPv6Address


class NetworkPolicyMode(StrEnum):
    """How much of the network a toolchain process may reach."""

    DENY = "deny"
    ALLOWLIST = "allowlist"
    LOGGED_PERMISSIVE = "logged_permissive"

    @classmethod
    def parse(cls, value: NetworkPolicyMode | str) -> NetworkPolicyMode:
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            raise ValueError("mode must be a string or NetworkPolicyMode")
        try:
            return cls(value.strip().lower())
        except ValueError:
            known = ", ".join(member.value for member in cls)
            raise ValueError(
                f"unsupported network policy mode {value!r}; expected one of: {known}"
            ) from None


@dataclass(frozen=True, slots=True)
class NetworkDecision:
    """Policy decision for one module-proxy target."""

    mode: NetworkPolicyMode
    target: str
    host: str
    allowed: bool
    reason: str
    matched_rule: str | None = None


@dataclass(frozen=True, slots=True)
class ProxyRule:
    """
    One allowlist entry.

    A proxy URL or bare host matches that host exactly and becomes a ``GOPROXY``
    element. ``*.suffix`` wildcards and CIDR blocks only widen what ``evaluate`` allows.
    """

    entry: str
    pattern: str
    network: IPNetwork | None = None

    @classmethod
    def parse(cls, raw: str) -> ProxyRule:
        if not isinstance(raw, str) or not raw.strip():
            raise ValueError("allowlist entries must be non-empty strings")
        text = raw.strip().rstrip("/")
        if any(separator in text for separator in ",| "):
            raise ValueError(f"allowlist entry must be a single proxy URL or host: {raw!r}")
        if "://" in text:
            return cls(entry=text, pattern=urlsplit(text).hostname or text.lower())
        pattern = text.lower()
        if pattern.startswith("*.") and len(pattern) == 2:
            raise ValueError("allowlist wildcard rule must include a suffix")
        try:
            network: IPNetwork | None = ipaddress.ip_network(pattern, strict=False)
        except ValueError:
            network = None
        return cls(entry=f"https://{text}", pattern=pattern, network=network)

    @property
    def proxy_url(self) -> str | None:
        if self.network is not None or self.pattern.startswith("*."):
            return None
        return self.entry

    def matches(self, host: str, address: IPAddress | None) -> bool:
        if self.network is not None:
            return address is not None and address in self.network
        if self.pattern.startswith("*."):
            suffix = self.pattern[2:]
            return host == suffix or host.endswith(f".{suffix}")
        return host == self.pattern


class NetworkPolicy:
    """
    Decide what network access a toolchain process gets and shape its environment.

    ``deny`` turns the module proxy and checksum database off and, where the host
    allows unprivileged network namespaces, runs the process in an empty one.
    ``allowlist`` points ``GOPROXY`` at the allowed proxies only.
    ``logged_permissive`` passes the host's proxy settings through and logs them.
    """

    def __init__(
        self,
        *,
        mode: NetworkPolicyMode | str = NetworkPolicyMode.DENY,
        allowlist: Iterable[str] = (),
        use_namespace: bool = True,
        inherit_env_keys: Sequence[str] = DEFAULT_ENV_ALLOWLIST,
        host_env: Mapping[str, str] | None = None,
        namespace_probe: Callable[[], bool] | None = None,
        logger: structlog.stdlib.BoundLogger | None = None,
    ) -> None:
        self._mode = NetworkPolicyMode.parse(mode)
        self._rules = tuple(ProxyRule.parse(entry) for entry in allowlist)
        self._use_namespace = bool(use_namespace)
        self._inherit_env_keys = tuple(inherit_env_keys)
        self._host_env = host_env
        self._namespace_probe = namespace_probe or probe_network_namespace
        self._logger = logger if logger is not None else structlog.get_logger(__name__)

    @property
    def mode(self) -> NetworkPolicyMode:
        return self._mode

    @property
    def allowlist(self) -> tuple[str, ...]:
        return tuple(rule.entry for rule in self._rules)

    def evaluate(self, target: str) -> NetworkDecision:
        """Decide whether a module-proxy URL or host may be contacted."""

        host = _target_host(target)
        rule = None if self._mode is NetworkPolicyMode.DENY else self._first_match(host)
        if self._mode is NetworkPolicyMode.DENY:
            allowed, reason = False, "denied: policy mode is deny"
        elif self._mode is NetworkPolicyMode.ALLOWLIST:
            allowed = rule is not None
            reason = "allowed by allowlist entry" if allowed else "denied: host is not allowlisted"
        else:
            allowed, reason = True, "allowed: logged_permissive mode"
        self._logger.debug("network_decision", host=host, allowed=allowed, reason=reason)
        return NetworkDecision(
            mode=self._mode,
            target=target,
            host=host,
            allowed=allowed,
            reason=reason,
            matched_rule=None if rule is None else rule.pattern,
        )

    def build_environment(self, extra: Mapping[str, str] | None = None) -> dict[str, str]:
        """Return the complete child environment: allowlisted host keys plus policy settings."""

        host_env = self._host_env if self._host_env is not None else os.environ
        env = {key: host_env[key] for key in self._inherit_env_keys if host_env.get(key)}
        env.update(TOOLCHAIN_ENV)

        if self._mode is NetworkPolicyMode.LOGGED_PERMISSIVE:
            env.update({key: host_env[key] for key in _HOST_PROXY_KEYS if host_env.get(key)})
            self._logger.info("network_policy_permissive", goproxy=env.get("GOPROXY", "default"))
        else:
            proxies = [url for rule in self._rules if (url := rule.proxy_url) is not None]
            allow = self._mode is NetworkPolicyMode.ALLOWLIST and proxies
            env["GOPROXY"] = ",".join(proxies) if allow else "off"
            env["GOSUMDB"] = "off"

        if extra:
            env.update(extra)
        return env

    def wrap_command(self, command: Sequence[str]) -> tuple[str, ...]:
        """Prefix ``command`` with a network-namespace launcher when policy and host allow."""

        argv = tuple(command)
        unshare = shutil.which("unshare")
        if unshare is None or not self.isolates_network():
            return argv
        return (unshare, *_UNSHARE_PREFIX, *argv)

    def isolates_network(self) -> bool:
        """Whether commands run in their own empty network namespace."""

        return (
            self._mode is NetworkPolicyMode.DENY
            and self._use_namespace
            and shutil.which("unshare") is not None
            and self._namespace_probe()
        )

    def _first_match(self, host: str) -> ProxyRule | None:
        try:
            address: IPAddress | None = ipaddress.ip_address(host)
        except ValueError:
            address = None
        return next((rule for rule in self._rules if rule.matches(host, address)), None)


@functools.lru_cache(maxsize=1)
def probe_network_namespace() -> bool:
    """Check once whether this host lets an unprivileged process create a network namespace."""

    unshare = shutil.which("unshare")
    if unshare is None:
        return False
    try:
        completed = subprocess.run(
            [unshare, *_UNSHARE_PREFIX, shutil.which("true") or "/bin/true"],
            check=False,
            capture_output=True,
            timeout=_PROBE_TIMEOUT_SECONDS,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return completed.returncode == 0


def _target_host(target: str) -> str:
    text = target.strip()
    host = urlsplit(text if "://" in text else f"//{text}").hostname
    if not host:
        raise ValueError(f"unable to parse host from target: {target!r}")
    return host.lower()


__all__ = [
    "DEFAULT_ENV_ALLOWLIST",
    "TOOLCHAIN_ENV",
    "NetworkDecision",
    "NetworkPolicy",
    "NetworkPolicyMode",
    "ProxyRule",
    "probe_network_namespace",
]
