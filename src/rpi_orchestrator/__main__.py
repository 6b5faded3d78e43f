"""CLI entry point for ``rpi`` (or ``python -m rpi_orchestrator``)."""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from pydantic import ValidationError

from rpi_orchestrator.claude_code import ClaudeSessionLauncher, SessionError
from rpi_orchestrator.git_tools import GitError
from rpi_orchestrator.loop import RpiLoop
from rpi_orchestrator.pipeline.orchestrator import (
    EXIT_ERROR,
    EXIT_INTERRUPTED,
    EXIT_OK,
    PhasedOrchestrator,
    PhasedRunError,
)
from rpi_orchestrator.pipeline.phases import PhasedConfig
from rpi_orchestrator.preflight import PreflightReport, build_preflight_report
from rpi_orchestrator.runner_common import resolve_binary
from rpi_orchestrator.status import WATCH_INTERVAL_SECONDS, print_status, watch_status

logger = logging.getLogger(__name__)

ENV_CLAUDE_BIN = "RPI_CLAUDE_BIN"
ENV_MAX_RETRIES = "RPI_MAX_RETRIES"
ENV_NTM_POLL_SECONDS = "RPI_NTM_POLL_SECONDS"


def _load_dotenv() -> None:
    """Load .env from cwd, its parent, or package root so it's found regardless of cwd."""
    _package_root = Path(__file__).resolve().parent.parent.parent
    for dir_ in (Path.cwd(), Path.cwd().parent, _package_root, _package_root.parent):
        env_file = dir_ / ".env"
        if env_file.is_file():
            load_dotenv(env_file)
            return
    load_dotenv()


def _build_parser() -> argparse.ArgumentParser:
    """Build and return the command-line parser for all supported modes."""
    p = argparse.ArgumentParser(
        prog="rpi",
        description="Drive research -> plan -> implement -> validate cycles through agent sessions.",
    )
    p.add_argument("-v", "--verbose", action="store_true", help="Enable debug logging")
    sub = p.add_subparsers(dest="command")

    # phased sub-command
    phased_p = sub.add_parser(
        "phased",
        help="Run the six RPI phases, each in a fresh agent session.",
    )
    phased_p.add_argument("goal", nargs="?", default="", help="What the run should achieve")
    phased_p.add_argument(
        "--from",
        dest="from_phase",
        default="research",
        help="Start phase: research, plan, pre-mortem, crank, vibe, post-mortem (default research)",
    )
    phased_p.add_argument("--test-first", action="store_true", help="Pass --test-first to /crank")
    phased_p.add_argument("--fast-path", action="store_true", help="Force --quick for gate phases")
    phased_p.add_argument(
        "--interactive",
        action="store_true",
        help="Let research and plan ask for approval (omit --auto)",
    )
    phased_p.add_argument(
        "--max-retries",
        type=int,
        default=None,
        help=f"Gate attempts before giving up (default 3, or ${ENV_MAX_RETRIES})",
    )
    phased_p.add_argument(
        "--no-worktree",
        action="store_true",
        help="Run in the current directory instead of an isolated worktree",
    )
    phased_p.add_argument(
        "--live-status",
        action="store_true",
        help="Stream session events and keep .agents/rpi/live-status.md current",
    )
    phased_p.add_argument(
        "--dry-run",
        action="store_true",
        help="Print the prompts that would be sent without spawning sessions",
    )

    # status sub-command
    status_p = sub.add_parser("status", help="Show active and logged RPI runs.")
    status_p.add_argument(
        "-o",
        "--output",
        choices=("table", "json"),
        default="table",
        help="Output format (default table)",
    )
    status_p.add_argument(
        "--watch",
        action="store_true",
        help=f"Redraw every {WATCH_INTERVAL_SECONDS:g}s until Ctrl-C",
    )

    # loop sub-command
    loop_p = sub.add_parser("loop", help="Run /rpi cycles from the next-work queue.")
    loop_p.add_argument("goal", nargs="?", default="", help="Run one cycle for this goal instead")
    loop_p.add_argument(
        "--max-cycles",
        type=int,
        default=0,
        help="Stop after this many cycles (default 0 = until the queue is empty)",
    )
    loop_p.add_argument("--dry-run", action="store_true", help="Show the first cycle only")
    loop_p.add_argument(
        "--repo-filter",
        default="",
        help="Only take queue items targeting this repo",
    )

    # doctor sub-command
    doctor_p = sub.add_parser("doctor", help="Check that required tools are installed.")
    doctor_p.add_argument("--no-worktree", action="store_true", help="Do not require git")
    doctor_p.add_argument("--json", action="store_true", help="Print the report as JSON")

    return p


def _env_int(name: str) -> int | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (not an integer)", name, raw)
        return None


def _env_float(name: str) -> float | None:
    raw = os.environ.get(name, "").strip()
    if not raw:
        return None
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r (not a number)", name, raw)
        return None


def _claude_binary() -> str:
    return resolve_binary(os.environ.get(ENV_CLAUDE_BIN, "")) or "claude"


def _phased_config(args: argparse.Namespace) -> PhasedConfig:
    """Merge CLI flags over environment overrides into a validated config."""
    values: dict[str, object] = {
        "from_phase": args.from_phase,
        "test_first": args.test_first,
        "fast_path": args.fast_path,
        "interactive": args.interactive,
        "no_worktree": args.no_worktree,
        "live_status": args.live_status,
        "dry_run": args.dry_run,
        "claude_binary": _claude_binary(),
    }
    max_retries = args.max_retries if args.max_retries is not None else _env_int(ENV_MAX_RETRIES)
    if max_retries is not None:
        values["max_retries"] = max_retries
    poll = _env_float(ENV_NTM_POLL_SECONDS)
    if poll is not None:
        values["ntm_poll_seconds"] = poll
    return PhasedConfig.model_validate(values)


def _run_phased(args: argparse.Namespace) -> int:
    try:
        config = _phased_config(args)
    except ValidationError as exc:
        print(f"Error: invalid options: {exc}", file=sys.stderr)
        return EXIT_ERROR

    orchestrator = PhasedOrchestrator(Path.cwd(), config)
    try:
        return orchestrator.run(args.goal)
    except (PhasedRunError, GitError, SessionError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR


def _run_status(args: argparse.Namespace) -> int:
    if args.watch:
        watch_status(Path.cwd(), output=args.output)
        return EXIT_OK
    try:
        print_status(Path.cwd(), output=args.output)
    except OSError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    return EXIT_OK


def _run_loop(args: argparse.Namespace) -> int:
    launcher = ClaudeSessionLauncher(_claude_binary())
    if not args.dry_run and not launcher.available():
        print(
            f"Error: {launcher.binary} CLI not found on PATH (required for spawning sessions)",
            file=sys.stderr,
        )
        return EXIT_ERROR
    loop = RpiLoop(
        Path.cwd(),
        launcher=launcher,
        max_cycles=args.max_cycles,
        dry_run=args.dry_run,
        repo_filter=args.repo_filter,
    )
    try:
        loop.run(args.goal)
    except SessionError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    return EXIT_OK


def _print_doctor_report(report: PreflightReport) -> None:
    """Print a human-readable diagnostics report."""
    print("\n  rpi - Setup Diagnostics")
    print("  " + "=" * 58)
    for check in report.checks:
        status = {"pass": "PASS", "warn": "WARN", "fail": "FAIL"}.get(check.status, "INFO")
        print(f"\n  [{status}] {check.label}")
        print(f"    {check.detail}")
        if check.hint and check.status != "pass":
            print(f"    Fix: {check.hint}")
    print("\n  " + "-" * 58)
    print(f"  Ready:   {'yes' if report.ready else 'no'}")
    print()


def _run_doctor(args: argparse.Namespace) -> int:
    """Run setup diagnostics and print the report."""
    report = build_preflight_report(
        claude_binary=_claude_binary(),
        use_worktree=not args.no_worktree,
    )
    if args.json:
        print(json.dumps(report.to_dict(), indent=2))
    else:
        _print_doctor_report(report)
    return EXIT_OK if report.ready else EXIT_ERROR


def main(argv: list[str] | None = None) -> int:
    """Parse arguments and dispatch to the appropriate mode."""
    _load_dotenv()
    parser = _build_parser()
    args = parser.parse_args(argv)
    # -- Logging setup (early, for all modes) --------------------------------
    level = logging.DEBUG if getattr(args, "verbose", False) else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s  %(levelname)-8s  %(name)s  %(message)s",
        datefmt="%H:%M:%S",
    )

    try:
        if args.command == "phased":
            return _run_phased(args)
        if args.command == "status":
            return _run_status(args)
        if args.command == "loop":
            return _run_loop(args)
        if args.command == "doctor":
            return _run_doctor(args)
    except KeyboardInterrupt:
        print("\nInterrupted.", file=sys.stderr)
        return EXIT_INTERRUPTED

    parser.print_help()
    print(
        "\nTip: run 'rpi phased \"<goal>\"' to start a run,\n"
        "     'rpi status' to see runs in this repo,\n"
        "     or 'rpi doctor' to validate setup.",
        file=sys.stderr,
    )
    return EXIT_ERROR


if __name__ == "__main__":
    raise SystemExit(main())
