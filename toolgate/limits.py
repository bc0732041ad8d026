from __future__ import annotations

from enum import Enum


class LengthClass(Enum):
    """Compiled-in input ceilings, assigned per field by the calling adapter."""

    STRING_MAX = 65_536
    SHORT_STRING_MAX = 255
    PATH_MAX = 4_096
    ARRAY_MAX = 1_000
    MESSAGE_MAX = 72_000

    @property
    def limit(self) -> int:
        return int(self.value)


INPUT_LIMITS = {c.name: c.limit for c in LengthClass}

# Per-stream ceiling on captured child output, in bytes.
OUTPUT_MAX_BYTES = 10 * 1024 * 1024
