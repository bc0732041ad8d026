from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

# Offending values are echoed back in messages; keep them readable.
_MAX_ECHO = 200


class FailureKind(str, Enum):
    NOT_FOUND = "NotFound"
    PERMISSION_DENIED = "PermissionDenied"
    TIMEOUT = "Timeout"
    CANCELLED = "Cancelled"
    INJECTION_REJECTED = "InjectionRejected"
    SIZE_EXCEEDED = "SizeExceeded"
    COMMAND_REJECTED = "CommandRejected"
    ROOT_REJECTED = "RootRejected"
    SPAWN_FAILED = "SpawnFailed"


@dataclass(frozen=True)
class Failure:
    """Discriminated failure record handed back to adapters."""

    kind: FailureKind
    message: str
    field: Optional[str] = None

    def to_dict(self) -> dict:
        d = {"kind": self.kind.value, "message": self.message}
        if self.field is not None:
            d["field"] = self.field
        return d


def echo(value: object) -> str:
    s = str(value)
    if len(s) > _MAX_ECHO:
        return s[:_MAX_ECHO] + "..."
    return s


class SandboxError(Exception):
    kind: FailureKind = FailureKind.SPAWN_FAILED

    def __init__(self, message: str, *, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        self.field = field

    def failure(self) -> Failure:
        return Failure(kind=self.kind, message=self.message, field=self.field)


class InjectionRejected(SandboxError, ValueError):
    kind = FailureKind.INJECTION_REJECTED

    def __init__(self, message: str, *, field: str, value: str) -> None:
        super().__init__(message, field=field)
        self.value = value


class SizeExceeded(SandboxError, ValueError):
    kind = FailureKind.SIZE_EXCEEDED

    def __init__(self, message: str, *, field: str, length: int, limit: int) -> None:
        super().__init__(message, field=field)
        self.length = length
        self.limit = limit


class CommandRejected(SandboxError):
    kind = FailureKind.COMMAND_REJECTED

    def __init__(self, message: str, *, program: str) -> None:
        super().__init__(message, field="program")
        self.program = program


class RootRejected(SandboxError):
    kind = FailureKind.ROOT_REJECTED

    def __init__(self, message: str, *, field: str, path: str) -> None:
        super().__init__(message, field=field)
        self.path = path


class NotFound(SandboxError):
    """The program (or its working directory) could not be found at spawn."""

    kind = FailureKind.NOT_FOUND

    def __init__(self, message: str, *, tool: Optional[str] = None, field: Optional[str] = None) -> None:
        super().__init__(message, field=field)
        self.tool = tool


class PermissionDenied(SandboxError):
    kind = FailureKind.PERMISSION_DENIED


class SpawnFailed(SandboxError):
    kind = FailureKind.SPAWN_FAILED


class Timeout(SandboxError):
    kind = FailureKind.TIMEOUT

    def __init__(
        self,
        message: str,
        *,
        pid: int,
        timeout_ms: int,
        stdout: str = "",
        stderr: str = "",
    ) -> None:
        super().__init__(message)
        self.pid = pid
        self.timeout_ms = timeout_ms
        self.stdout = stdout
        self.stderr = stderr


class Cancelled(SandboxError):
    kind = FailureKind.CANCELLED

    def __init__(self, message: str, *, pid: int, stdout: str = "", stderr: str = "") -> None:
        super().__init__(message)
        self.pid = pid
        self.stdout = stdout
        self.stderr = stderr
