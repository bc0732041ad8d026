from __future__ import annotations

import logging
import os
import re
import shlex
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from .audit import AuditLogger, audit_event
from .catalog import enrich_not_found, not_found_message
from .config import SandboxConfig
from .errors import (
    Cancelled,
    Failure,
    InjectionRejected,
    NotFound,
    PermissionDenied,
    SandboxError,
    SizeExceeded,
    SpawnFailed,
    Timeout,
    echo,
)
from .limits import OUTPUT_MAX_BYTES, LengthClass
from .output import sanitize_error_output, strip_ansi
from .policy import CommandPolicy, bare_name
from .profiles import DEFAULT_TIMEOUT_MS, get_profile
from .roots import NormalizedPath, RootPolicy
from .validation import DEFAULT_VALIDATOR, ArgumentValidator, ValidatedArgument

logger = logging.getLogger(__name__)

# How often a running child is checked for cancellation and output overflow.
POLL_INTERVAL_S = 0.05

# Upper bound on draining/reaping a child after it was killed.
REAP_TIMEOUT_S = 5.0

_CHUNK_SIZE = 65_536

_POSIX = os.name == "posix"

_ENV_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

# Overriding these would redirect which binary (or library) a bare name loads.
_PROTECTED_ENV = frozenset(
    {
        "PATH",
        "PATHEXT",
        "LD_PRELOAD",
        "LD_LIBRARY_PATH",
        "LD_AUDIT",
        "DYLD_INSERT_LIBRARIES",
        "DYLD_LIBRARY_PATH",
        "DYLD_FRAMEWORK_PATH",
    }
)


def _fmt_argv(argv: Sequence[str]) -> str:
    return " ".join(shlex.quote(a) for a in argv)


def _require_validated(value: object, what: str) -> None:
    if not isinstance(value, ValidatedArgument):
        raise TypeError(f"CommandSpec {what} must be a ValidatedArgument, got {type(value).__name__}")


@dataclass(frozen=True)
class CommandSpec:
    """A command built exclusively from validated parts."""

    program: str
    args: Tuple[ValidatedArgument, ...] = ()
    cwd: Optional[NormalizedPath] = None
    env: Mapping[ValidatedArgument, ValidatedArgument] = field(default_factory=dict)
    stdin: Optional[str] = None
    timeout_ms: int = DEFAULT_TIMEOUT_MS

    def __post_init__(self) -> None:
        if not isinstance(self.program, str):
            raise TypeError("CommandSpec program must be a str")
        if isinstance(self.args, str):
            raise TypeError("CommandSpec args must be a sequence, not a str")
        args = tuple(self.args)
        for a in args:
            _require_validated(a, "args")
        env = dict(self.env)
        for k, v in env.items():
            _require_validated(k, "env keys")
            _require_validated(v, "env values")
        if self.cwd is not None and not isinstance(self.cwd, NormalizedPath):
            raise TypeError("CommandSpec cwd must be a NormalizedPath")
        if self.stdin is not None and not isinstance(self.stdin, str):
            raise TypeError("CommandSpec stdin must be a str")
        if isinstance(self.timeout_ms, bool) or not isinstance(self.timeout_ms, int) or self.timeout_ms <= 0:
            raise ValueError(f"CommandSpec timeout_ms must be a positive int, got {self.timeout_ms!r}")
        object.__setattr__(self, "args", args)
        object.__setattr__(self, "env", MappingProxyType(env))

    @property
    def argv(self) -> List[str]:
        return [self.program, *(str(a) for a in self.args)]


@dataclass(frozen=True)
class RunOutcome:
    """A process that started and exited. Any exit code, zero or not."""

    exit_code: int
    stdout: str
    stderr: str
    argv: Tuple[str, ...] = ()
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


def _check_env(env: Mapping[str, str]) -> None:
    for key in env:
        if not _ENV_NAME_RE.match(key) or key.upper() in _PROTECTED_ENV:
            raise InjectionRejected(
                f'Invalid env: "{echo(key)}" is not allowed as an environment override.',
                field="env",
                value=str(key),
            )


class _PipeReader(threading.Thread):
    """Drain one child pipe into memory, keeping at most ``limit`` bytes."""

    def __init__(self, pipe, name: str, limit: int, overflow: threading.Event) -> None:
        super().__init__(name=f"toolgate-{name}", daemon=True)
        self.pipe = pipe
        self.stream = name
        self.limit = limit
        self.overflow = overflow
        self.total = 0
        self._buf = bytearray()

    def run(self) -> None:
        try:
            while True:
                chunk = self.pipe.read1(_CHUNK_SIZE)
                if not chunk:
                    break
                self.total += len(chunk)
                room = self.limit - len(self._buf)
                if room > 0:
                    self._buf += chunk[:room]
                if self.total > self.limit:
                    self.overflow.set()
        except (OSError, ValueError) as e:
            logger.debug("%s reader stopped: %s", self.stream, e)
        finally:
            self.pipe.close()

    @property
    def exceeded(self) -> bool:
        return self.total > self.limit

    def text(self) -> str:
        return bytes(self._buf).decode("utf-8", "replace")


def _feed_stdin(pipe, data: bytes) -> None:
    # A child that exits without reading all input closes its end first.
    try:
        pipe.write(data)
    except BrokenPipeError:
        logger.debug("child closed stdin early")
    try:
        pipe.close()
    except BrokenPipeError:
        logger.debug("child closed stdin early")


class ProcessSandbox:
    """Validate and run one adapter's commands.

    Composes the argument validator, the adapter's CommandPolicy and a
    RootPolicy. Children are spawned from an argument vector (never a shell),
    drained while waiting, and killed with their whole process group when the
    deadline passes or the caller cancels.
    """

    def __init__(
        self,
        commands: CommandPolicy,
        roots: Optional[RootPolicy] = None,
        *,
        validator: Optional[ArgumentValidator] = None,
        default_timeout_ms: int = DEFAULT_TIMEOUT_MS,
        audit: Optional[AuditLogger] = None,
        strip_ansi: bool = True,
        sanitize_stderr: bool = True,
        sanitize_all_paths: bool = False,
        output_max_bytes: int = OUTPUT_MAX_BYTES,
    ) -> None:
        self.commands = commands
        self.roots = roots or RootPolicy()
        self.validator = validator or DEFAULT_VALIDATOR
        self.default_timeout_ms = default_timeout_ms
        self.audit = audit
        self.strip_ansi = strip_ansi
        self.sanitize_stderr = sanitize_stderr
        self.sanitize_all_paths = sanitize_all_paths
        self.output_max_bytes = output_max_bytes

    @classmethod
    def for_adapter(
        cls,
        name: str,
        config: Optional[SandboxConfig] = None,
        *,
        audit: Optional[AuditLogger] = None,
    ) -> "ProcessSandbox":
        config = config or SandboxConfig()
        profile = get_profile(name)
        if audit is None and config.audit_log:
            audit = AuditLogger.at(config.audit_log)
        return cls(
            config.commands_for(profile),
            RootPolicy(config.roots_for(name)),
            default_timeout_ms=config.timeout_for(profile),
            audit=audit,
            strip_ansi=config.strip_ansi,
            sanitize_all_paths=config.sanitize_all_paths,
        )

    @property
    def name(self) -> str:
        return self.commands.name

    # -- building a CommandSpec -------------------------------------------

    def argument(
        self,
        value: str,
        field: str,
        length_class: LengthClass = LengthClass.STRING_MAX,
    ) -> ValidatedArgument:
        return self.validator.validate(value, field, length_class)

    def arguments(
        self,
        values: Sequence[str],
        field: str,
        length_class: LengthClass = LengthClass.STRING_MAX,
    ) -> Tuple[ValidatedArgument, ...]:
        return self.validator.validate_array(values, field, length_class)

    def path_argument(self, value: str, field: str = "path") -> ValidatedArgument:
        """A path passed to the tool as an argument: injection, length and root checks."""
        arg = self.validator.validate(value, field, LengthClass.PATH_MAX)
        self.roots.validate_root(value, field)
        return arg

    def working_dir(self, value: str, field: str = "cwd") -> NormalizedPath:
        self.validator.validate_length(value, field, LengthClass.PATH_MAX)
        return self.roots.validate_root(value, field)

    def command_spec(
        self,
        program: str,
        args: Iterable[ValidatedArgument] = (),
        *,
        cwd: Union[str, NormalizedPath, None] = None,
        env: Optional[Mapping[ValidatedArgument, ValidatedArgument]] = None,
        stdin: Optional[str] = None,
        timeout_ms: Optional[int] = None,
    ) -> CommandSpec:
        self.commands.validate_command(program)
        if cwd is not None and not isinstance(cwd, NormalizedPath):
            cwd = self.working_dir(cwd)
        return CommandSpec(
            program=program,
            args=tuple(args),
            cwd=cwd,
            env=env or {},
            stdin=stdin,
            timeout_ms=self.default_timeout_ms if timeout_ms is None else timeout_ms,
        )

    # -- running ------------------------------------------------------------

    def run(self, spec: CommandSpec, cancel: Optional[threading.Event] = None) -> Union[RunOutcome, Failure]:
        """Like execute(), but sandbox failures come back as a Failure record."""
        try:
            return self.execute(spec, cancel)
        except SandboxError as e:
            return e.failure()

    def execute(self, spec: CommandSpec, cancel: Optional[threading.Event] = None) -> RunOutcome:
        if not isinstance(spec, CommandSpec):
            raise TypeError(f"execute() needs a CommandSpec, got {type(spec).__name__}")

        try:
            program = self.commands.resolve_command(spec.program)
            if spec.cwd is not None:
                self.roots.validate_root(spec.cwd, field="cwd")
            _check_env(spec.env)
        except SandboxError as e:
            self._record_failure("reject", spec, e)
            raise

        argv = [program, *(str(a) for a in spec.args)]
        logger.info("CMD %s", _fmt_argv(argv))
        start = time.monotonic()

        try:
            proc = self._spawn(spec, argv)
        except SandboxError as e:
            self._record_failure("spawn_error", spec, e)
            raise

        try:
            stdout, stderr = self._wait(proc, spec, start, cancel)
        except (Timeout, Cancelled) as e:
            self._record_failure(e.kind.value.lower(), spec, e)
            raise
        except SizeExceeded as e:
            self._record_failure("output_limit", spec, e)
            raise

        duration_ms = int((time.monotonic() - start) * 1000)
        stdout, stderr = self._clean(stdout, stderr)

        if stdout:
            logger.debug("STDOUT %s", stdout.strip())
        if stderr:
            logger.debug("STDERR %s", stderr.strip())
        logger.info("EXIT %s (%d ms) %s", proc.returncode, duration_ms, spec.program)

        if self.audit is not None:
            self.audit.log(
                audit_event(
                    action="run",
                    ok=proc.returncode == 0,
                    adapter=self.name,
                    details={
                        "argv": argv,
                        "exit_code": proc.returncode,
                        "duration_ms": duration_ms,
                    },
                )
            )

        return RunOutcome(
            exit_code=proc.returncode,
            stdout=stdout,
            stderr=stderr,
            argv=tuple(argv),
            duration_ms=duration_ms,
        )

    def _spawn(self, spec: CommandSpec, argv: List[str]) -> subprocess.Popen:
        cwd = str(spec.cwd) if spec.cwd is not None else None
        group_kwargs: dict = {}
        if _POSIX:
            group_kwargs["start_new_session"] = True
        else:
            group_kwargs["creationflags"] = subprocess.CREATE_NEW_PROCESS_GROUP

        # Binary pipes: _PipeReader decodes, with no newline translation.
        try:
            return subprocess.Popen(
                argv,
                stdin=subprocess.PIPE if spec.stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=cwd,
                env=dict(os.environ, **{str(k): str(v) for k, v in spec.env.items()}),
                shell=False,
                **group_kwargs,
            )
        except FileNotFoundError as e:
            if cwd is not None and e.filename == cwd:
                raise NotFound(f'Working directory not found: "{cwd}"', field="cwd") from e
            message = enrich_not_found(not_found_message(spec.program))
            raise NotFound(message, tool=bare_name(spec.program)) from e
        except PermissionError as e:
            raise PermissionDenied(f'Permission denied executing "{spec.program}": {e}') from e
        except (OSError, ValueError) as e:
            raise SpawnFailed(f'Could not start "{spec.program}": {e}') from e

    def _wait(
        self,
        proc: subprocess.Popen,
        spec: CommandSpec,
        start: float,
        cancel: Optional[threading.Event],
    ) -> Tuple[str, str]:
        """Drain both pipes until the child exits and they reach EOF.

        Kills the process group on cancel, on timeout, or as soon as either
        stream passes ``output_max_bytes``.
        """
        deadline = start + spec.timeout_ms / 1000.0
        overflow = threading.Event()
        readers = [
            _PipeReader(proc.stdout, "stdout", self.output_max_bytes, overflow),
            _PipeReader(proc.stderr, "stderr", self.output_max_bytes, overflow),
        ]
        for reader in readers:
            reader.start()
        if spec.stdin is not None:
            threading.Thread(
                target=_feed_stdin,
                args=(proc.stdin, spec.stdin.encode("utf-8")),
                name="toolgate-stdin",
                daemon=True,
            ).start()

        try:
            while True:
                if overflow.is_set():
                    self._terminate(proc, readers)
                    raise self._output_exceeded(proc, spec, readers)

                if cancel is not None and cancel.is_set():
                    out, err = self._clean(*self._terminate(proc, readers))
                    logger.warning("Cancelled %s (pid %s)", spec.program, proc.pid)
                    raise Cancelled(
                        f'Command "{spec.program}" was cancelled and killed.',
                        pid=proc.pid,
                        stdout=out,
                        stderr=err,
                    )

                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    out, err = self._clean(*self._terminate(proc, readers))
                    logger.warning("Timed out after %sms: %s (pid %s)", spec.timeout_ms, spec.program, proc.pid)
                    raise Timeout(
                        f'Command "{spec.program}" timed out after {spec.timeout_ms}ms and was killed.',
                        pid=proc.pid,
                        timeout_ms=spec.timeout_ms,
                        stdout=out,
                        stderr=err,
                    )

                slice_s = min(remaining, POLL_INTERVAL_S)
                if proc.poll() is None:
                    try:
                        proc.wait(timeout=slice_s)
                    except subprocess.TimeoutExpired:
                        continue
                # Exited; a grandchild may still hold the pipes open.
                alive = [r for r in readers if r.is_alive()]
                if not alive:
                    break
                alive[0].join(timeout=slice_s)
        except BaseException:
            if proc.poll() is None:
                self._terminate(proc, readers)
            raise

        if overflow.is_set():
            self._terminate(proc, readers)
            raise self._output_exceeded(proc, spec, readers)
        return readers[0].text(), readers[1].text()

    def _output_exceeded(
        self, proc: subprocess.Popen, spec: CommandSpec, readers: Sequence[_PipeReader]
    ) -> SizeExceeded:
        reader = next(r for r in readers if r.exceeded)
        logger.warning(
            "%s of %s exceeded %d bytes; killed (pid %s)", reader.stream, spec.program, reader.limit, proc.pid
        )
        return SizeExceeded(
            f'{reader.stream} of "{spec.program}" exceeds OUTPUT_MAX: '
            f"{reader.total} bytes > {reader.limit}; the process was killed.",
            field=reader.stream,
            length=reader.total,
            limit=reader.limit,
        )

    def _terminate(self, proc: subprocess.Popen, readers: Sequence[_PipeReader]) -> Tuple[str, str]:
        """Kill the child and its process group, reap it, and return what was read."""

        if _POSIX:
            try:
                os.killpg(proc.pid, signal.SIGKILL)
            except ProcessLookupError:
                # Whole group already exited.
                pass
            except PermissionError:
                proc.kill()
        elif proc.poll() is None:
            proc.kill()

        try:
            proc.wait(timeout=REAP_TIMEOUT_S)
        except subprocess.TimeoutExpired:
            logger.warning("pid %s: not reaped %ss after kill", proc.pid, REAP_TIMEOUT_S)

        for reader in readers:
            reader.join(timeout=REAP_TIMEOUT_S)
            if reader.is_alive():
                # Something outside the group still holds the pipe open.
                logger.warning("pid %s: %s still open after kill", proc.pid, reader.stream)
        return readers[0].text(), readers[1].text()

    def _clean(self, stdout: str, stderr: str) -> Tuple[str, str]:
        if self.strip_ansi:
            stdout = strip_ansi(stdout)
            stderr = strip_ansi(stderr)
        if self.sanitize_stderr:
            stderr = sanitize_error_output(stderr, all_paths=self.sanitize_all_paths)
        return stdout, stderr

    def _record_failure(self, action: str, spec: CommandSpec, e: SandboxError) -> None:
        if self.audit is None:
            return
        self.audit.log(
            audit_event(
                action=action,
                ok=False,
                adapter=self.name,
                details={"argv": spec.argv, "kind": e.kind.value, "field": e.field},
                error=e.message,
            )
        )
