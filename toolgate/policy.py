from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, replace
from typing import FrozenSet, Iterable, Optional

from .errors import CommandRejected, Failure, echo

logger = logging.getLogger(__name__)

_EXEC_SUFFIX = re.compile(r"\.(exe|cmd|bat|sh)$", re.IGNORECASE)
_WINDOWS = os.name == "nt"


def _separators() -> set[str]:
    seps = {"/", "\\", os.sep}
    if os.altsep:
        seps.add(os.altsep)
    return seps


def bare_name(program: str) -> str:
    """Strip one Windows/shell launcher suffix: ``npm.cmd`` -> ``npm``."""
    return _EXEC_SUFFIX.sub("", program)


@dataclass(frozen=True)
class CommandPolicy:
    """Allow-list of executables one adapter may invoke.

    - Programs are matched by exact bare name; anything containing a
      directory separator is rejected even when its basename is listed.
    - ``launcher_suffixes`` (on by default only on Windows) accepts one
      ``.exe``/``.cmd``/``.bat``/``.sh`` suffix and resolves it to the listed
      name, which is then what gets spawned.
    - One evaluator, many instances: adapters differ only in ``allowed``.
    """

    name: str
    allowed: FrozenSet[str]
    launcher_suffixes: bool = _WINDOWS

    @classmethod
    def of(cls, name: str, allowed: Iterable[str]) -> "CommandPolicy":
        return cls(name=name, allowed=frozenset(allowed))

    def narrow(self, names: Iterable[str]) -> "CommandPolicy":
        return replace(self, allowed=self.allowed & frozenset(names))

    def resolve_command(self, program: str) -> str:
        """Validate ``program`` and return the allow-listed name to spawn."""
        if not isinstance(program, str) or not program.strip():
            raise CommandRejected("Command must be a non-empty program name.", program=str(program))
        if "\x00" in program:
            raise CommandRejected("Command must not contain NUL.", program=program)

        if any(sep in program for sep in _separators()):
            logger.warning("[%s] rejected path-qualified command %r", self.name, program)
            raise CommandRejected(
                f'Command "{echo(program)}" is not allowed: path-qualified commands are rejected. '
                "Use a bare command name that resolves via PATH.",
                program=program,
            )

        name = bare_name(program) if self.launcher_suffixes else program
        if name not in self.allowed:
            logger.warning("[%s] rejected command %r", self.name, program)
            allowed = ", ".join(sorted(self.allowed)) or "(none)"
            raise CommandRejected(
                f'Command "{echo(program)}" is not allowed for {self.name}. Allowed: {allowed}',
                program=program,
            )
        return name

    def validate_command(self, program: str) -> None:
        self.resolve_command(program)

    def check(self, program: str) -> Optional[Failure]:
        try:
            self.validate_command(program)
        except CommandRejected as e:
            return e.failure()
        return None

    def is_allowed(self, program: str) -> bool:
        try:
            self.validate_command(program)
        except CommandRejected:
            return False
        return True
