from __future__ import annotations

import json
import os
import sys
import threading
import time

import pytest

from toolgate.audit import AuditLogger
from toolgate.catalog import enrich_not_found
from toolgate.errors import (
    Cancelled,
    CommandRejected,
    Failure,
    FailureKind,
    InjectionRejected,
    NotFound,
    PermissionDenied,
    RootRejected,
    SizeExceeded,
    Timeout,
)
from toolgate.policy import CommandPolicy, bare_name
from toolgate.sandbox import CommandSpec, ProcessSandbox, RunOutcome
from toolgate.validation import literal, validate

PY = os.path.basename(sys.executable)

posix_only = pytest.mark.skipif(os.name != "posix", reason="POSIX process groups")


def _gone(pid, wait_s=5.0):
    """True once ``pid`` has exited (a zombie awaiting its new parent counts)."""
    deadline = time.monotonic() + wait_s
    while time.monotonic() < deadline:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return True
        try:
            with open(f"/proc/{pid}/stat", encoding="utf-8") as f:
                if f.read().rsplit(")", 1)[1].split()[0] == "Z":
                    return True
        except OSError:
            pass
        time.sleep(0.05)
    return False


# ============================================================
# CommandSpec
# ============================================================


def test_command_spec_requires_validated_parts():
    with pytest.raises(TypeError):
        CommandSpec(program="rg", args=("pattern",))  # type: ignore[arg-type]
    with pytest.raises(TypeError):
        CommandSpec(program="rg", args="pattern")  # type: ignore[arg-type]
    with pytest.raises(TypeError):
        CommandSpec(program="rg", env={"A": "b"})  # type: ignore[dict-item]
    with pytest.raises(TypeError):
        CommandSpec(program="rg", cwd="/tmp")  # type: ignore[arg-type]
    with pytest.raises(ValueError):
        CommandSpec(program="rg", timeout_ms=0)


def test_command_spec_is_frozen():
    spec = CommandSpec(program="rg", args=[validate("x", "pattern")])
    assert spec.args == ("x",)
    assert spec.argv == ["rg", "x"]
    with pytest.raises(TypeError):
        spec.env["A"] = "b"  # type: ignore[index]


def test_command_spec_timeout_default_and_zero(sandbox):
    assert sandbox.command_spec(PY).timeout_ms == 20_000
    assert sandbox.command_spec(PY, timeout_ms=5).timeout_ms == 5
    with pytest.raises(ValueError):
        sandbox.command_spec(PY, timeout_ms=0)


# ============================================================
# Scenarios
# ============================================================


def test_successful_run(sandbox, py_spec):
    out = sandbox.execute(py_spec("import sys; sys.stdout.write('hello')"))
    assert isinstance(out, RunOutcome)
    assert out.exit_code == 0
    assert out.ok
    assert out.stdout == "hello"
    assert out.stderr == ""
    assert out.argv[0] == PY
    assert out.duration_ms >= 0


def test_allow_listed_program_exit_zero(sandbox, py_spec):
    out = sandbox.run(py_spec("print('ok')"))
    assert isinstance(out, RunOutcome)
    assert (out.exit_code, out.stdout, out.stderr) == (0, "ok\n", "")


def test_non_zero_exit_is_data(sandbox, py_spec):
    out = sandbox.run(py_spec("import sys; sys.stderr.write('bad input'); sys.exit(3)"))
    assert isinstance(out, RunOutcome)
    assert out.exit_code == 3
    assert out.stderr == "bad input"


def test_stdin_is_written_and_closed(sandbox, py_spec):
    out = sandbox.execute(py_spec("import sys; sys.stdout.write(sys.stdin.read().upper())", stdin="abc\n"))
    assert out.stdout == "ABC\n"


def test_no_stdin_means_eof(sandbox, py_spec):
    out = sandbox.execute(py_spec("import sys; sys.stdout.write(repr(sys.stdin.read()))", timeout_ms=10_000))
    assert out.stdout == "''"


def test_large_output_does_not_deadlock(sandbox, py_spec):
    code = "import sys; sys.stdout.write('o' * 2_000_000); sys.stderr.write('e' * 2_000_000)"
    out = sandbox.execute(py_spec(code))
    assert len(out.stdout) == 2_000_000
    assert len(out.stderr) == 2_000_000


def test_arguments_reach_child_verbatim(sandbox, py_spec):
    args = sandbox.arguments(["a b", "*.{ts,tsx}", "$(whoami)", "; rm -rf /"], "args")
    spec = sandbox.command_spec(
        PY,
        (literal("-c"), literal("import sys, json; print(json.dumps(sys.argv[1:]))"), *args),
    )
    out = sandbox.execute(spec)
    assert json.loads(out.stdout) == ["a b", "*.{ts,tsx}", "$(whoami)", "; rm -rf /"]


def test_invalid_utf8_is_replaced(sandbox, py_spec):
    out = sandbox.execute(py_spec("import sys; sys.stdout.buffer.write(b'ok\\xff')"))
    assert out.stdout == "ok\ufffd"


def test_line_endings_pass_through(sandbox, py_spec):
    out = sandbox.execute(py_spec("import sys; sys.stdout.buffer.write(b'a\\r\\nb\\rc\\n')"))
    assert out.stdout == "a\r\nb\rc\n"


def test_output_at_cap_is_kept(python_on_path):
    sandbox = ProcessSandbox(CommandPolicy.of("test", [bare_name(PY)]), output_max_bytes=1000)
    out = sandbox.execute(sandbox.command_spec(PY, (literal("-c"), literal("import sys; sys.stdout.write('x' * 1000)"))))
    assert len(out.stdout) == 1000


def test_stderr_over_cap_fails(python_on_path, tmp_path):
    log = tmp_path / "audit.jsonl"
    sandbox = ProcessSandbox(
        CommandPolicy.of("test", [bare_name(PY)]),
        output_max_bytes=1000,
        audit=AuditLogger.at(str(log)),
    )
    code = "import sys; sys.stderr.write('e' * 1001)"
    out = sandbox.run(sandbox.command_spec(PY, (literal("-c"), literal(code))))
    assert isinstance(out, Failure)
    assert out.kind is FailureKind.SIZE_EXCEEDED
    assert out.field == "stderr"

    event = json.loads(log.read_text(encoding="utf-8").splitlines()[-1])
    assert event["action"] == "output_limit"
    assert event["ok"] is False


@posix_only
def test_output_over_cap_kills_child(python_on_path, tmp_path):
    pidfile = tmp_path / "pid"
    code = (
        "import os, sys, time\n"
        f"with open({str(pidfile)!r}, 'w') as f: f.write(str(os.getpid()))\n"
        "sys.stdout.write('x' * 100_000)\n"
        "sys.stdout.flush()\n"
        "time.sleep(30)\n"
    )
    sandbox = ProcessSandbox(CommandPolicy.of("test", [bare_name(PY)]), output_max_bytes=1000)
    start = time.monotonic()
    with pytest.raises(SizeExceeded) as exc:
        sandbox.execute(sandbox.command_spec(PY, (literal("-c"), literal(code)), timeout_ms=30_000))
    assert time.monotonic() - start < 15
    assert exc.value.field == "stdout"
    assert exc.value.limit == 1000
    assert exc.value.length > 1000
    assert "stdout of" in exc.value.message
    assert "exceeds OUTPUT_MAX" in exc.value.message
    assert _gone(int(pidfile.read_text(encoding="utf-8")))



@posix_only
def test_timeout_kills_child(sandbox, py_spec):
    spec = py_spec("import sys, time; print('started', flush=True); time.sleep(30)", timeout_ms=3000)
    start = time.monotonic()
    with pytest.raises(Timeout) as exc:
        sandbox.execute(spec)
    assert time.monotonic() - start < 15
    assert exc.value.kind is FailureKind.TIMEOUT
    assert exc.value.timeout_ms == 3000
    assert "timed out after 3000ms" in exc.value.message
    assert exc.value.stdout == "started\n"
    assert _gone(exc.value.pid)


@posix_only
def test_timeout_kills_grandchildren(sandbox, py_spec):
    code = (
        "import subprocess, sys, time\n"
        "p = subprocess.Popen([sys.executable, '-c', 'import time; time.sleep(60)'])\n"
        "print(p.pid, flush=True)\n"
        "time.sleep(60)\n"
    )
    with pytest.raises(Timeout) as exc:
        sandbox.execute(py_spec(code, timeout_ms=4000))
    grandchild = int(exc.value.stdout.split()[0])
    assert _gone(exc.value.pid)
    assert _gone(grandchild)


def test_run_returns_timeout_failure(sandbox, py_spec):
    out = sandbox.run(py_spec("import time; time.sleep(30)", timeout_ms=300))
    assert isinstance(out, Failure)
    assert out.kind is FailureKind.TIMEOUT


def test_cancel(sandbox, py_spec):
    cancel = threading.Event()
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    start = time.monotonic()
    try:
        with pytest.raises(Cancelled) as exc:
            sandbox.execute(py_spec("import time; time.sleep(30)", timeout_ms=30_000), cancel=cancel)
    finally:
        timer.cancel()
    assert time.monotonic() - start < 15
    assert exc.value.kind is FailureKind.CANCELLED


def test_cancel_does_not_fire_when_unset(sandbox, py_spec):
    out = sandbox.execute(py_spec("import time; time.sleep(0.3); print('done')"), cancel=threading.Event())
    assert out.stdout.strip() == "done"


def test_missing_binary_gets_install_hint(tmp_path, monkeypatch):
    monkeypatch.setenv("PATH", str(tmp_path))
    sandbox = ProcessSandbox(CommandPolicy.of("search", ["rg"]))
    with pytest.raises(NotFound) as exc:
        sandbox.execute(sandbox.command_spec("rg", [sandbox.argument("TODO", "pattern")]))
    message = exc.value.message
    assert exc.value.tool == "rg"
    assert "brew install ripgrep" in message
    assert "sudo apt install ripgrep" in message
    assert "choco install ripgrep" in message
    assert "Ensure it is installed" not in message


def test_missing_binary_without_hint(tmp_path, monkeypatch):
    monkeypatch.setenv("PATH", str(tmp_path))
    sandbox = ProcessSandbox(CommandPolicy.of("x", ["no-such-tool-zz"]))
    out = sandbox.run(sandbox.command_spec("no-such-tool-zz"))
    assert isinstance(out, Failure)
    assert out.kind is FailureKind.NOT_FOUND
    assert out.message == 'Command not found: "no-such-tool-zz". Ensure it is installed and available in your PATH.'


@posix_only
def test_missing_cwd_is_not_found_without_hint(sandbox, py_spec, tmp_path):
    with pytest.raises(NotFound) as exc:
        sandbox.execute(py_spec("print(1)", cwd=str(tmp_path / "missing")))
    assert exc.value.field == "cwd"
    assert "Working directory not found" in exc.value.message
    assert "Install it with" not in exc.value.message


@posix_only
def test_permission_denied_text_unchanged(tmp_path, monkeypatch):
    tool = tmp_path / "mytool"
    tool.write_text("#!/bin/sh\necho hi\n", encoding="utf-8")
    tool.chmod(0o644)
    monkeypatch.setenv("PATH", str(tmp_path))
    sandbox = ProcessSandbox(CommandPolicy.of("x", ["mytool"]))
    with pytest.raises(PermissionDenied) as exc:
        sandbox.execute(sandbox.command_spec("mytool"))
    message = exc.value.message
    assert message.startswith('Permission denied executing "mytool": ')
    assert isinstance(exc.value.__cause__, PermissionError)
    assert str(exc.value.__cause__) in message
    assert enrich_not_found(message) == message


# ============================================================
# Rejections
# ============================================================


def test_unlisted_program_rejected_before_spawn(sandbox, tmp_path):
    audit = AuditLogger.at(str(tmp_path / "audit.jsonl"))
    sandbox.audit = audit
    with pytest.raises(CommandRejected):
        sandbox.command_spec("bash")

    spec = CommandSpec(program="bash", args=(literal("-c"), literal("echo pwned")))
    out = sandbox.run(spec)
    assert isinstance(out, Failure)
    assert out.kind is FailureKind.COMMAND_REJECTED
    assert out.field == "program"

    event = json.loads((tmp_path / "audit.jsonl").read_text(encoding="utf-8").splitlines()[-1])
    assert event["action"] == "reject"
    assert event["ok"] is False


@posix_only
def test_suffixed_sibling_of_allowed_program_not_run(tmp_path, monkeypatch):
    marker = tmp_path / "ran"
    script = tmp_path / "git.sh"
    script.write_text(f"#!/bin/sh\ntouch '{marker}'\n", encoding="utf-8")
    script.chmod(0o755)
    monkeypatch.setenv("PATH", str(tmp_path))
    sandbox = ProcessSandbox(CommandPolicy.of("git", ["git"]))

    with pytest.raises(CommandRejected):
        sandbox.command_spec("git.sh")
    out = sandbox.run(CommandSpec(program="git.sh"))
    assert isinstance(out, Failure)
    assert out.kind is FailureKind.COMMAND_REJECTED
    assert not marker.exists()


def test_path_qualified_program_rejected(sandbox):
    out = sandbox.run(CommandSpec(program=sys.executable))
    assert isinstance(out, Failure)
    assert out.kind is FailureKind.COMMAND_REJECTED


def test_cwd_outside_roots(sandbox, py_spec, tmp_path):
    with pytest.raises(RootRejected):
        py_spec("print(1)", cwd=str(tmp_path / ".."))


def test_cwd_inside_roots(sandbox, py_spec, tmp_path):
    work = tmp_path / "work"
    work.mkdir()
    out = sandbox.execute(py_spec("import os; print(os.getcwd())", cwd=str(work)))
    assert os.path.realpath(out.stdout.strip()) == os.path.realpath(work)


def test_path_argument_checks_roots(sandbox, tmp_path):
    assert sandbox.path_argument(str(tmp_path / "a.txt"), "file") == str(tmp_path / "a.txt")
    with pytest.raises(RootRejected):
        sandbox.path_argument("/etc/passwd", "file")
    with pytest.raises(InjectionRejected):
        sandbox.path_argument("--output=/etc/passwd", "file")


def test_env_overrides(sandbox, py_spec):
    env = {literal("TOOLGATE_TEST_VALUE"): sandbox.argument("hello", "value")}
    out = sandbox.execute(py_spec("import os; print(os.environ['TOOLGATE_TEST_VALUE'])", env=env))
    assert out.stdout.strip() == "hello"


@pytest.mark.parametrize("key", ["PATH", "LD_PRELOAD", "path", "A=B", "1X"])
def test_env_cannot_redirect_lookup(sandbox, py_spec, key):
    env = {literal(key): literal("/tmp/evil")}
    with pytest.raises(InjectionRejected) as exc:
        sandbox.execute(py_spec("print(1)", env=env))
    assert exc.value.field == "env"


# ============================================================
# Output hygiene and audit
# ============================================================


def test_output_cleaned(sandbox, py_spec):
    code = (
        "import sys\n"
        "sys.stdout.write('\\x1b[31mred\\x1b[0m /home/alice/x')\n"
        "sys.stderr.write('\\x1b[1merror\\x1b[0m in /home/alice/project/a.py')\n"
    )
    out = sandbox.execute(py_spec(code))
    assert out.stdout == "red /home/alice/x"
    assert out.stderr == "error in ~/project/a.py"


def test_output_cleaning_can_be_disabled(python_on_path, tmp_path):
    sandbox = ProcessSandbox(
        CommandPolicy.of("test", [bare_name(PY)]),
        strip_ansi=False,
        sanitize_stderr=False,
    )
    spec = sandbox.command_spec(
        PY,
        (literal("-c"), literal("import sys; sys.stderr.write('\\x1b[1m/home/alice/x')")),
    )
    assert sandbox.execute(spec).stderr == "\x1b[1m/home/alice/x"


def test_audit_records_runs(sandbox, py_spec, tmp_path):
    log = tmp_path / "audit" / "events.jsonl"
    sandbox.audit = AuditLogger.at(str(log))
    sandbox.execute(py_spec("raise SystemExit(4)"))
    sandbox.run(py_spec("import time; time.sleep(5)", timeout_ms=200))

    events = [json.loads(line) for line in log.read_text(encoding="utf-8").splitlines()]
    assert [e["action"] for e in events] == ["run", "timeout"]
    assert events[0]["ok"] is False
    assert events[0]["details"]["exit_code"] == 4
    assert events[0]["adapter"] == "test"
    assert "timed out" in events[1]["error"]


def test_concurrent_runs_are_independent(sandbox, py_spec):
    results = {}

    def worker(i):
        results[i] = sandbox.execute(py_spec(f"print({i})")).stdout.strip()

    threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results == {i: str(i) for i in range(4)}
