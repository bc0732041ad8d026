from __future__ import annotations

import logging
import os
import sys
from pathlib import Path
from typing import Optional

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
DATE_FORMAT = "%Y-%m-%dT%H:%M:%S%z"


def configure_logging(
    log_path: Optional[str] = None,
    level: int = logging.INFO,
    also_console: bool = True,
) -> Optional[str]:
    """Configure the ``toolgate`` logger tree.

    Notes:
    - Console output goes to stderr; stdout belongs to the wrapped tool.
    - If ``log_path`` is not writable we fall back to ``./toolgate.log``.
    - Calling this twice is a no-op apart from the level.

    Returns the file path actually used, or None when logging to console only.
    """

    logger = logging.getLogger("toolgate")
    logger.setLevel(level)

    if getattr(logger, "_toolgate_configured", False):
        return getattr(logger, "_toolgate_log_path", None)

    fmt = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers: list[logging.Handler] = []
    chosen_path: Optional[str] = None

    if log_path:
        try:
            Path(os.path.dirname(log_path) or ".").mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_path))
            chosen_path = log_path
        except OSError:
            fallback = str(Path.cwd() / "toolgate.log")
            handlers.append(logging.FileHandler(fallback))
            chosen_path = fallback

    if also_console:
        handlers.append(logging.StreamHandler(sys.stderr))

    for h in handlers:
        h.setFormatter(fmt)
        logger.addHandler(h)

    setattr(logger, "_toolgate_configured", True)
    setattr(logger, "_toolgate_log_path", chosen_path)

    if log_path:
        logger.info("Logging initialized (requested=%s, actual=%s)", log_path, chosen_path)
    return chosen_path
