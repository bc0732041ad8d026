from __future__ import annotations

import argparse
import json
import logging
import sys

from .audit import AuditLogger
from .catalog import format_install_hint, get_install_hint, not_found_message
from .classify import classify_error, error_from_failure
from .config import SandboxConfig, load_config
from .errors import SandboxError
from .limits import LengthClass
from .logging_utils import configure_logging
from .profiles import load_profiles
from .sandbox import ProcessSandbox
from .validation import literal

# Exit status for a rejected or failed request (matches argparse usage errors).
EXIT_REJECTED = 2


def _config_from_args(args: argparse.Namespace) -> SandboxConfig:
    return load_config(args.config)


def _sandbox_from_args(args: argparse.Namespace) -> ProcessSandbox:
    config = _config_from_args(args)
    audit = AuditLogger.at(args.audit_log) if args.audit_log else None
    return ProcessSandbox.for_adapter(args.adapter, config, audit=audit)


def _fail(e: SandboxError) -> int:
    sys.stderr.write(e.message)
    if not e.message.endswith("\n"):
        sys.stderr.write("\n")
    return EXIT_REJECTED


def cmd_check_arg(args: argparse.Namespace) -> int:
    sandbox = _sandbox_from_args(args)
    try:
        sandbox.argument(args.value, args.field, LengthClass[args.length_class])
    except SandboxError as e:
        return _fail(e)
    print("ok")
    return 0


def cmd_check_path(args: argparse.Namespace) -> int:
    sandbox = _sandbox_from_args(args)
    try:
        resolved = sandbox.working_dir(args.path, field=args.field)
    except SandboxError as e:
        return _fail(e)
    print(resolved)
    return 0


def cmd_check_command(args: argparse.Namespace) -> int:
    sandbox = _sandbox_from_args(args)
    try:
        sandbox.commands.validate_command(args.program)
    except SandboxError as e:
        return _fail(e)
    print("ok")
    return 0


def cmd_hint(args: argparse.Namespace) -> int:
    hint = get_install_hint(args.tool)
    if hint is None:
        print(not_found_message(args.tool))
        return 1
    print(format_install_hint(args.tool, hint))
    return 0


def cmd_adapters(args: argparse.Namespace) -> int:
    config = _config_from_args(args)
    for name, profile in sorted(load_profiles().items()):
        allowed = sorted(config.commands_for(profile).allowed)
        roots = config.roots_for(name).roots
        if args.json:
            print(
                json.dumps(
                    {
                        "adapter": name,
                        "commands": allowed,
                        "timeout_ms": config.timeout_for(profile),
                        "allowed_roots": list(roots),
                    }
                )
            )
            continue
        where = ", ".join(roots) if roots else "unrestricted"
        print(f"{name:10} {config.timeout_for(profile):>7}ms  roots: {where}  commands: {' '.join(allowed)}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    argv = list(args.command)
    if argv and argv[0] == "--":
        argv = argv[1:]
    if not argv:
        raise SystemExit("run: provide a command after --")

    sandbox = _sandbox_from_args(args)
    program, raw_args = argv[0], argv[1:]
    try:
        if args.trusted_args:
            sandbox.validator.validate_length(raw_args, "args")
            validated = tuple(literal(a) for a in raw_args)
        else:
            validated = sandbox.arguments(raw_args, "args")
        spec = sandbox.command_spec(
            program,
            validated,
            cwd=args.cwd,
            stdin=sys.stdin.read() if args.stdin else None,
            timeout_ms=args.timeout_ms,
        )
        res = sandbox.execute(spec)
    except SandboxError as e:
        if args.json:
            print(json.dumps(error_from_failure(e.failure(), program).to_dict()))
            return EXIT_REJECTED
        return _fail(e)

    sys.stdout.write(res.stdout)
    sys.stderr.write(res.stderr)
    if args.json and res.exit_code != 0:
        sys.stderr.write(json.dumps(classify_error(res, program).to_dict()) + "\n")
    return int(res.exit_code)


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="toolgate")
    p.add_argument("--config", help="YAML config file (defaults to $TOOLGATE_CONFIG)")
    p.add_argument("--adapter", default="process", help="Adapter profile to check against (default: process)")
    p.add_argument("--log-level", default="WARNING", help="Logging level (default: WARNING)")
    p.add_argument("--log-file", help="Also write logs to this file")
    p.add_argument("--audit-log", help="Append JSONL audit events to this file")

    sub = p.add_subparsers(dest="subcmd", required=True)

    sp = sub.add_parser("check-arg", help="Validate one argument value")
    sp.add_argument("field")
    sp.add_argument("value")
    sp.add_argument(
        "--class",
        dest="length_class",
        default=LengthClass.STRING_MAX.name,
        choices=[c.name for c in LengthClass],
        help="Length class (default: STRING_MAX)",
    )
    sp.set_defaults(func=cmd_check_arg)

    sp = sub.add_parser("check-path", help="Check a path against the adapter's allowed roots")
    sp.add_argument("path")
    sp.add_argument("--field", default="path")
    sp.set_defaults(func=cmd_check_path)

    sp = sub.add_parser("check-command", help="Check a program against the adapter's allow-list")
    sp.add_argument("program")
    sp.set_defaults(func=cmd_check_command)

    sp = sub.add_parser("hint", help="Show install instructions for a tool")
    sp.add_argument("tool")
    sp.set_defaults(func=cmd_hint)

    sp = sub.add_parser("adapters", help="List adapter profiles")
    sp.add_argument("--json", action="store_true", help="One JSON object per line")
    sp.set_defaults(func=cmd_adapters)

    sp = sub.add_parser("run", help="Run a command through the sandbox")
    sp.add_argument("--cwd", help="Working directory (must be under an allowed root)")
    sp.add_argument("--timeout-ms", type=int, help="Override the adapter timeout")
    sp.add_argument("--stdin", action="store_true", help="Forward our stdin to the command")
    sp.add_argument(
        "--trusted-args",
        action="store_true",
        help="Pass arguments as operator-authored literals (flags allowed)",
    )
    sp.add_argument("--json", action="store_true", help="Report failures as JSON tool errors")
    sp.add_argument("command", nargs=argparse.REMAINDER, help="Command; use: toolgate run -- <cmd...>")
    sp.set_defaults(func=cmd_run)

    return p


def main(argv: list[str] | None = None) -> int:
    p = build_parser()
    args = p.parse_args(argv)
    level = getattr(logging, str(args.log_level).upper(), None)
    if not isinstance(level, int):
        p.error(f"unknown --log-level: {args.log_level}")
    configure_logging(args.log_file, level=level)
    try:
        return int(args.func(args))
    except KeyError as e:
        # Unknown adapter name.
        sys.stderr.write(f"{e.args[0] if e.args else e}\n")
        return EXIT_REJECTED
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
