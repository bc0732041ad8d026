"""toolgate: argument and process sandboxing for tool adapters.

Adapters that shell out to developer CLIs (git, rg, kubectl, ...) on behalf
of an untrusted caller go through one gate:
- Caller values are rejected when they look like flags (leading "-")
- Values are bounded by per-category length ceilings
- Each adapter may only spawn the bare program names it is allow-listed for
- Paths and working directories are confined to configured roots
- Children are spawned without a shell and killed (process group) on timeout

Missing binaries are reported with platform install instructions.
"""

from __future__ import annotations

__all__ = []
