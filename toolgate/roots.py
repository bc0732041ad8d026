from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional, Tuple, Union

from .errors import Failure, RootRejected, echo

logger = logging.getLogger(__name__)

_TOKEN = object()


class NormalizedPath(str):
    """Absolute path with symlinks and ``..`` collapsed. Built by RootPolicy only."""

    def __new__(cls, value: str, _token: object = None) -> "NormalizedPath":
        if _token is not _TOKEN:
            raise TypeError("NormalizedPath can only be created by RootPolicy")
        return super().__new__(cls, value)

    @property
    def path(self) -> Path:
        return Path(str(self))


def normalize_path(p: str) -> str:
    return os.path.realpath(p)


def _is_within(candidate: str, root: str) -> bool:
    c = os.path.normcase(candidate)
    r = os.path.normcase(root)
    if c == r:
        return True
    prefix = r if r.endswith(os.sep) else r + os.sep
    return c.startswith(prefix)


@dataclass(frozen=True)
class AllowedRootSet:
    """Configured root directories; an empty set means unrestricted."""

    roots: Tuple[str, ...] = ()

    @classmethod
    def from_paths(cls, paths: Optional[Iterable[str]]) -> "AllowedRootSet":
        out: list[str] = []
        for p in paths or ():
            p = str(p).strip()
            if not p:
                continue
            n = normalize_path(p)
            if n not in out:
                out.append(n)
        return cls(roots=tuple(out))

    @classmethod
    def parse(cls, raw: Optional[str]) -> "AllowedRootSet":
        """Parse a comma-separated list, e.g. from an environment variable."""
        if raw is None or not raw.strip():
            return cls()
        return cls.from_paths(raw.split(","))

    @property
    def unrestricted(self) -> bool:
        return not self.roots

    def contains(self, normalized: str) -> bool:
        return self.unrestricted or any(_is_within(normalized, r) for r in self.roots)


@dataclass(frozen=True)
class RootPolicy:
    roots: AllowedRootSet = AllowedRootSet()

    def validate_root(self, candidate: str, field: str = "path") -> NormalizedPath:
        if not isinstance(candidate, str):
            raise TypeError(f"{field} must be a str, got {type(candidate).__name__}")
        if "\x00" in candidate:
            raise RootRejected(f'Invalid {field}: "{echo(candidate)}" contains NUL', field=field, path=candidate)
        try:
            resolved = normalize_path(candidate)
        except (OSError, ValueError) as e:
            raise RootRejected(f'Invalid {field}: "{echo(candidate)}" ({e})', field=field, path=candidate) from e

        if not self.roots.contains(resolved):
            logger.warning("rejected %s %r (resolves to %s)", field, candidate, resolved)
            raise RootRejected(
                f'Path "{echo(candidate)}" for {field} is outside allowed roots. '
                f"Allowed roots: {', '.join(self.roots.roots)}",
                field=field,
                path=candidate,
            )
        return NormalizedPath(resolved, _TOKEN)

    def check(self, candidate: str, field: str = "path") -> Union[NormalizedPath, Failure]:
        try:
            return self.validate_root(candidate, field)
        except RootRejected as e:
            return e.failure()

    def is_allowed(self, candidate: str) -> bool:
        try:
            self.validate_root(candidate)
        except RootRejected:
            return False
        return True
