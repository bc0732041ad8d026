"""Shared fixtures.

Process tests spawn the running interpreter by bare name: its directory is
put first on PATH and its basename is the only allow-listed program.
"""

from __future__ import annotations

import os
import sys

import pytest

from toolgate.policy import CommandPolicy, bare_name
from toolgate.roots import AllowedRootSet, RootPolicy
from toolgate.sandbox import ProcessSandbox
from toolgate.validation import literal

PY = os.path.basename(sys.executable)


@pytest.fixture
def python_on_path(monkeypatch):
    monkeypatch.setenv("PATH", os.path.dirname(sys.executable) + os.pathsep + os.environ.get("PATH", ""))
    return PY


@pytest.fixture
def sandbox(python_on_path, tmp_path):
    return ProcessSandbox(
        CommandPolicy.of("test", {bare_name(PY)}),
        RootPolicy(AllowedRootSet.from_paths([str(tmp_path)])),
        default_timeout_ms=20_000,
    )


@pytest.fixture
def py_spec(sandbox):
    """Build a CommandSpec running ``python -c <code>``."""

    def build(code, **kwargs):
        return sandbox.command_spec(PY, (literal("-c"), literal(code)), **kwargs)

    return build
