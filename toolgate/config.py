from __future__ import annotations

import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .policy import CommandPolicy
from .profiles import AdapterProfile
from .roots import AllowedRootSet

ENV_PREFIX = "TOOLGATE"

_ADAPTER_ENV_RE = re.compile(rf"^{ENV_PREFIX}_(?P<adapter>[A-Z0-9_]+)_(?P<setting>ALLOWED_ROOTS|ALLOWED_COMMANDS)$")


def adapter_key(name: str) -> str:
    return name.strip().lower().replace("-", "_")


def parse_list(raw: Optional[str]) -> Optional[List[str]]:
    """Comma-separated env value -> list. Unset or blank means "not configured"."""
    if raw is None or not raw.strip():
        return None
    return [s.strip() for s in raw.split(",") if s.strip()]


def _as_list(value: Any, where: str) -> Optional[List[str]]:
    if value is None:
        return None
    if isinstance(value, str):
        return parse_list(value)
    if not isinstance(value, list):
        raise ValueError(f"{where} must be a list or comma-separated string")
    return [str(v) for v in value]


def _as_bool(raw: str) -> bool:
    return raw.strip().lower() in {"1", "true", "yes", "on"}


@dataclass(frozen=True)
class SandboxConfig:
    """Process-wide sandbox configuration.

    Two layers with the same shape: ``env`` (parsed from TOOLGATE_* variables)
    and ``raw`` (the YAML file). For each setting the environment wins over the
    file, and within a layer the global value wins over the per-adapter one,
    so a global root list cannot be widened by an adapter entry.
    """

    raw: Dict[str, Any] = field(default_factory=dict)
    env: Dict[str, Any] = field(default_factory=dict)

    def _setting(self, adapter: Optional[str], key: str) -> Any:
        for layer in (self.env, self.raw):
            if layer.get(key) is not None:
                return layer[key]
            if adapter is None:
                continue
            adapters = layer.get("adapters") or {}
            per = adapters.get(adapter) or adapters.get(adapter_key(adapter)) or {}
            if per.get(key) is not None:
                return per[key]
        return None

    def roots_for(self, adapter: Optional[str] = None) -> AllowedRootSet:
        roots = _as_list(self._setting(adapter, "allowed_roots"), "allowed_roots")
        return AllowedRootSet.from_paths(roots)

    def commands_for(self, profile: AdapterProfile) -> CommandPolicy:
        policy = CommandPolicy.of(profile.name, profile.commands)
        names = _as_list(self._setting(profile.name, "allowed_commands"), "allowed_commands")
        if names is not None:
            policy = policy.narrow(names)
        return policy

    def timeout_for(self, profile: AdapterProfile) -> int:
        v = self._setting(profile.name, "timeout_ms")
        return int(v) if v is not None else profile.timeout_ms

    @property
    def strip_ansi(self) -> bool:
        v = self._setting(None, "strip_ansi")
        return True if v is None else bool(v)

    @property
    def sanitize_all_paths(self) -> bool:
        return bool(self._setting(None, "sanitize_all_paths"))

    @property
    def audit_log(self) -> Optional[str]:
        v = self._setting(None, "audit_log")
        return str(v) if v else None


def load_config_file(path: str) -> Dict[str, Any]:
    p = Path(path).expanduser()
    if not p.exists():
        raise FileNotFoundError(path)

    if p.suffix.lower() not in {".yaml", ".yml"}:
        raise ValueError("toolgate config must be YAML")

    try:
        import yaml  # type: ignore
    except Exception as e:
        raise RuntimeError("PyYAML is required to read the toolgate config") from e

    raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
    if not isinstance(raw, dict):
        raise ValueError("toolgate config must contain a mapping/object")
    return raw


def env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    out: Dict[str, Any] = {}
    for setting in ("ALLOWED_ROOTS", "ALLOWED_COMMANDS"):
        values = parse_list(environ.get(f"{ENV_PREFIX}_{setting}"))
        if values is not None:
            out[setting.lower()] = values

    for key, value in environ.items():
        m = _ADAPTER_ENV_RE.match(key)
        if not m:
            continue
        values = parse_list(value)
        if values is None:
            continue
        per = out.setdefault("adapters", {}).setdefault(adapter_key(m.group("adapter")), {})
        per[m.group("setting").lower()] = values

    timeout = environ.get(f"{ENV_PREFIX}_TIMEOUT_MS")
    if timeout and timeout.strip():
        out["timeout_ms"] = int(timeout)
    sanitize = environ.get(f"{ENV_PREFIX}_SANITIZE_ALL_PATHS")
    if sanitize is not None:
        out["sanitize_all_paths"] = _as_bool(sanitize)
    audit = environ.get(f"{ENV_PREFIX}_AUDIT_LOG")
    if audit:
        out["audit_log"] = audit
    return out


def load_config(path: Optional[str] = None, environ: Optional[Mapping[str, str]] = None) -> SandboxConfig:
    """Read configuration once; checks never consult the environment again."""

    if environ is None:
        environ = os.environ
    path = path or environ.get(f"{ENV_PREFIX}_CONFIG")
    raw = load_config_file(path) if path else {}
    return SandboxConfig(raw=raw, env=env_overrides(environ))
