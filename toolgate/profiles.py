from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, FrozenSet

import yaml

DEFAULT_TIMEOUT_MS = 60_000

_MANIFEST = Path(__file__).resolve().parent / "manifests" / "adapters.yaml"


@dataclass(frozen=True)
class AdapterProfile:
    name: str
    commands: FrozenSet[str]
    timeout_ms: int = DEFAULT_TIMEOUT_MS


def parse_profiles(data: Dict[str, Any]) -> Dict[str, AdapterProfile]:
    if not isinstance(data, dict):
        raise ValueError("Adapter manifest must be a mapping/dict")
    default_timeout = int(((data.get("defaults") or {}).get("timeout_ms")) or DEFAULT_TIMEOUT_MS)

    out: Dict[str, AdapterProfile] = {}
    for name, entry in (data.get("adapters") or {}).items():
        entry = entry or {}
        commands = entry.get("commands") or []
        if not isinstance(commands, list) or not all(isinstance(c, str) for c in commands):
            raise ValueError(f"adapters.{name}.commands must be a list of strings")
        out[str(name)] = AdapterProfile(
            name=str(name),
            commands=frozenset(commands),
            timeout_ms=int(entry.get("timeout_ms") or default_timeout),
        )
    return out


@lru_cache(maxsize=None)
def load_profiles(path: str = str(_MANIFEST)) -> Dict[str, AdapterProfile]:
    """Load adapter allow-lists from the YAML manifest shipped with the package."""
    raw = yaml.safe_load(Path(path).read_text(encoding="utf-8")) or {}
    return parse_profiles(raw)


def get_profile(name: str) -> AdapterProfile:
    profiles = load_profiles()
    if name not in profiles:
        raise KeyError(f"Unknown adapter: {name} (known: {', '.join(sorted(profiles))})")
    return profiles[name]
