from __future__ import annotations

import re

_ANSI_RE = re.compile(
    r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)"  # OSC ... BEL / ST
    r"|\x1b\[[0-?]*[ -/]*[@-~]"  # CSI
    r"|\x1b[@-Z\\-_]"  # two-byte escapes
)

# Only match at the start of a path token, not inside e.g. /srv/root/.
_PATH_START = r"(?<![\w.~/\\-])"

_HOME_PATTERNS = [
    (re.compile(_PATH_START + r"/home/[^/\s]+/"), "~/"),
    (re.compile(_PATH_START + r"/Users/[^/\s]+/"), "~/"),
    (re.compile(_PATH_START + r"/root/"), "~/"),
    (re.compile(_PATH_START + r"[A-Za-z]:\\Users\\[^\\\s]+\\"), "~\\\\"),
]

_SYSTEM_PATH_RE = re.compile(
    _PATH_START + r"/(?:etc|var|opt|usr|tmp|srv|private|mnt)(?:/[^\s/:'\"]+)*/([^\s/:'\"]+)"
)


def strip_ansi(text: str) -> str:
    return _ANSI_RE.sub("", text)


def sanitize_error_output(text: str, *, all_paths: bool = False) -> str:
    """Hide home-directory prefixes (and, in broad mode, system paths) in tool errors."""

    for pattern, repl in _HOME_PATTERNS:
        text = pattern.sub(repl, text)
    if all_paths:
        text = _SYSTEM_PATH_RE.sub(r"<redacted-path>/\1", text)
    return text
