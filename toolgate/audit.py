from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class AuditLogger:
    """Append-only JSONL record of sandbox decisions."""

    path: Path
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @classmethod
    def at(cls, path: str) -> "AuditLogger":
        return cls(path=Path(path).expanduser())

    def log(self, event: Dict[str, Any]) -> None:
        event = dict(event)
        event.setdefault("ts", time.time())
        line = json.dumps(event, sort_keys=True, default=str) + "\n"
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as f:
                f.write(line)


def audit_event(
    *,
    action: str,
    ok: bool,
    adapter: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
    error: Optional[str] = None,
) -> Dict[str, Any]:
    """One audit record. ``action`` is run, reject, timeout, cancelled or spawn_error."""
    e: Dict[str, Any] = {"action": action, "ok": ok}
    if adapter is not None:
        e["adapter"] = adapter
    if details:
        e["details"] = details
    if error:
        e["error"] = error
    return e
