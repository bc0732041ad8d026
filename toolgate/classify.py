from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional

from .catalog import INSTALL_MARKER
from .errors import Failure, FailureKind


class ErrorCategory(str, Enum):
    COMMAND_NOT_FOUND = "command-not-found"
    PERMISSION_DENIED = "permission-denied"
    TIMEOUT = "timeout"
    INVALID_INPUT = "invalid-input"
    NOT_FOUND = "not-found"
    NETWORK_ERROR = "network-error"
    AUTHENTICATION_ERROR = "authentication-error"
    CONFLICT = "conflict"
    CONFIGURATION_ERROR = "configuration-error"
    ALREADY_EXISTS = "already-exists"
    COMMAND_FAILED = "command-failed"


@dataclass(frozen=True)
class ToolError:
    category: ErrorCategory
    message: str
    command: Optional[str] = None
    exit_code: Optional[int] = None
    suggestion: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"isError": True, "category": self.category.value, "message": self.message}
        if self.command is not None:
            d["command"] = self.command
        if self.exit_code is not None:
            d["exitCode"] = self.exit_code
        if self.suggestion is not None:
            d["suggestion"] = self.suggestion
        return d

    def format(self) -> str:
        lines = [f"Error [{self.category.value}]: {self.message}"]
        if self.command:
            lines.append(f"Command: {self.command}")
        if self.exit_code is not None:
            lines.append(f"Exit code: {self.exit_code}")
        if self.suggestion:
            lines.append(f"Suggestion: {self.suggestion}")
        return "\n".join(lines)


def _any(*needles: str) -> Callable[[str], bool]:
    return lambda lower: any(n in lower for n in needles)


is_command_not_found = _any(
    "command not found",
    "not recognized",
    "enoent",
    "no such file or directory",
)
is_permission_denied = _any(
    "permission denied",
    "eacces",
    "eperm",
    "access denied",
    "operation not permitted",
)
is_timeout = _any("timed out", "timeout")
is_network_error = _any(
    "connection refused",
    "econnrefused",
    "etimedout",
    "econnreset",
    "enetunreach",
    "could not resolve host",
    "network is unreachable",
    "dns resolution failed",
)
is_already_exists = _any("already exists", "already exist")
is_configuration_error = _any(
    "missing config",
    "configuration error",
    "config file not found",
    "invalid configuration",
    "no configuration",
    ".eslintrc",
    "tsconfig",
    "could not read config",
)
is_conflict = _any("conflict", "lock file", "locked")

_AUTH_STATUS = re.compile(r" 40[13][ :]")
_NOT_FOUND_STATUS = re.compile(r" 404[ :]")


def is_auth_error(lower: str) -> bool:
    return bool(_AUTH_STATUS.search(lower)) or any(
        n in lower
        for n in (
            "authentication",
            "authenticated",
            "credential",
            "unauthorized",
            "permission denied (publickey",
            "login required",
        )
    )


def is_not_found(lower: str) -> bool:
    return bool(_NOT_FOUND_STATUS.search(lower)) or any(
        n in lower for n in ("not found", "does not exist", "no such", "unknown revision", "pathspec")
    )


# Order matters: more specific patterns first (publickey auth before
# permission-denied, conflict before not-found).
_RULES = [
    (is_command_not_found, ErrorCategory.COMMAND_NOT_FOUND),
    (is_auth_error, ErrorCategory.AUTHENTICATION_ERROR),
    (is_permission_denied, ErrorCategory.PERMISSION_DENIED),
    (is_network_error, ErrorCategory.NETWORK_ERROR),
    (is_already_exists, ErrorCategory.ALREADY_EXISTS),
    (is_configuration_error, ErrorCategory.CONFIGURATION_ERROR),
    (is_conflict, ErrorCategory.CONFLICT),
    (is_not_found, ErrorCategory.NOT_FOUND),
]

_SUGGESTIONS: Dict[ErrorCategory, str] = {
    ErrorCategory.COMMAND_NOT_FOUND: 'Ensure "{cmd}" is installed and available in your PATH.',
    ErrorCategory.PERMISSION_DENIED: "Check file/directory permissions or run with elevated privileges.",
    ErrorCategory.TIMEOUT: "The command took too long. Retry with a longer timeout or a smaller scope.",
    ErrorCategory.INVALID_INPUT: "Check the input parameters and try again.",
    ErrorCategory.NOT_FOUND: "Verify the resource (file, branch, ref, etc.) exists.",
    ErrorCategory.NETWORK_ERROR: "Check your network connection and try again.",
    ErrorCategory.AUTHENTICATION_ERROR: "Verify your credentials or tokens are valid and not expired.",
    ErrorCategory.CONFLICT: "Resolve the conflict or release the lock and retry.",
    ErrorCategory.CONFIGURATION_ERROR: "Check that all required config files exist and are valid.",
    ErrorCategory.ALREADY_EXISTS: "The resource already exists. Use a different name or remove it first.",
    ErrorCategory.COMMAND_FAILED: 'Inspect the error message from "{cmd}" for more details.',
}


def suggest(category: ErrorCategory, command: str) -> str:
    return _SUGGESTIONS[category].format(cmd=command)


def classify_text(text: str, exit_code: int) -> ErrorCategory:
    # 124 is what timeout(1) exits with.
    lower = text.lower()
    if exit_code == 124 or is_timeout(lower):
        return ErrorCategory.TIMEOUT
    for matches, category in _RULES:
        if matches(lower):
            return category
    return ErrorCategory.COMMAND_FAILED


def classify_error(outcome: Any, command: str) -> ToolError:
    """Turn a failed RunOutcome (non-zero exit) into a categorized ToolError."""

    text = outcome.stderr or outcome.stdout
    category = classify_text(text, outcome.exit_code)
    return ToolError(
        category=category,
        message=text.strip() or f"{command} failed with exit code {outcome.exit_code}",
        command=command,
        exit_code=outcome.exit_code,
        suggestion=suggest(category, command),
    )


_FAILURE_CATEGORIES = {
    FailureKind.NOT_FOUND: ErrorCategory.COMMAND_NOT_FOUND,
    FailureKind.PERMISSION_DENIED: ErrorCategory.PERMISSION_DENIED,
    FailureKind.TIMEOUT: ErrorCategory.TIMEOUT,
    FailureKind.CANCELLED: ErrorCategory.COMMAND_FAILED,
    FailureKind.SPAWN_FAILED: ErrorCategory.COMMAND_FAILED,
    FailureKind.INJECTION_REJECTED: ErrorCategory.INVALID_INPUT,
    FailureKind.SIZE_EXCEEDED: ErrorCategory.INVALID_INPUT,
    FailureKind.COMMAND_REJECTED: ErrorCategory.INVALID_INPUT,
    FailureKind.ROOT_REJECTED: ErrorCategory.INVALID_INPUT,
}


def error_from_failure(failure: Failure, command: Optional[str] = None) -> ToolError:
    category = _FAILURE_CATEGORIES[failure.kind]
    if category is ErrorCategory.COMMAND_NOT_FOUND and INSTALL_MARKER in failure.message:
        suggestion = None
    else:
        suggestion = suggest(category, command or "the command")
    return ToolError(category=category, message=failure.message, command=command, suggestion=suggestion)
