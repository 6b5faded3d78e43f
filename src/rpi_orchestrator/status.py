"""Run registry behind ``rpi status``.

Discovers runs from persisted state in the current directory and in
sibling ``*-rpi-*`` worktrees, checks whether their tmux sessions are still
alive, and merges in history reconstructed from orchestration logs.
"""

from __future__ import annotations

import datetime as dt
import logging
import subprocess
import sys
import time
from collections.abc import Callable
from pathlib import Path
from typing import TextIO

from rpi_orchestrator.claude_code import session_name
from rpi_orchestrator.history_log import discover_log_runs, elapsed_since, format_duration
from rpi_orchestrator.pipeline.phases import TOTAL_PHASES, phase_name
from rpi_orchestrator.schemas import LogRun, PhasedState, RunInfo, StatusReport

logger = logging.getLogger(__name__)

WATCH_INTERVAL_SECONDS = 5.0
CLEAR_SCREEN = "\033[2J\033[H"
GOAL_DISPLAY_MAX = 28
GOAL_TRUNCATE_AT = 25

SessionProbe = Callable[[str], bool]


def tmux_session_alive(name: str) -> bool:
    """True when ``tmux has-session -t <name>`` succeeds."""
    try:
        result = subprocess.run(
            ["tmux", "has-session", "-t", name],
            capture_output=True,
            text=True,
            check=False,
            timeout=10,
        )
    except (OSError, subprocess.SubprocessError):
        return False
    return result.returncode == 0


def run_session_alive(run_id: str, probe: SessionProbe = tmux_session_alive) -> bool:
    if not run_id:
        return False
    return any(probe(session_name(run_id, num)) for num in range(1, TOTAL_PHASES + 1))


def _truncate_goal(goal: str) -> str:
    if len(goal) > GOAL_DISPLAY_MAX:
        return goal[:GOAL_TRUNCATE_AT] + "..."
    return goal


def determine_run_status(
    state: PhasedState,
    log_runs: dict[str, LogRun] | None = None,
    probe: SessionProbe = tmux_session_alive,
) -> str:
    """running (live session), completed (phase 6 reached), else log-derived or unknown."""
    if run_session_alive(state.run_id, probe):
        return "running"
    log_run = (log_runs or {}).get(state.run_id)
    if log_run is not None and log_run.status in ("completed", "failed"):
        return log_run.status
    if state.phase >= TOTAL_PHASES:
        return "completed"
    return "unknown"


def load_run_info(
    directory: str | Path,
    *,
    log_runs: dict[str, LogRun] | None = None,
    probe: SessionProbe = tmux_session_alive,
    now: dt.datetime | None = None,
) -> RunInfo | None:
    """RunInfo for the state in *directory*; None when absent, corrupt, or anonymous."""
    state_file = PhasedState.state_path(directory)
    if not state_file.is_file():
        return None
    state = PhasedState.load(directory)
    if state is None or not state.run_id:
        return None
    return RunInfo(
        run_id=state.run_id,
        goal=state.goal,
        phase=state.phase,
        phase_name=phase_name(state.phase),
        status=determine_run_status(state, log_runs, probe),
        epic_id=state.epic_id,
        elapsed=elapsed_since(state.started_datetime(), now),
        workspace_path=str(directory),
        verdicts=dict(state.verdicts),
    )


def discover_runs(
    cwd: str | Path,
    *,
    log_runs: list[LogRun] | None = None,
    probe: SessionProbe = tmux_session_alive,
    now: dt.datetime | None = None,
) -> list[RunInfo]:
    """Runs with persisted state in *cwd* and its sibling worktrees."""
    cwd = Path(cwd).resolve()
    by_id = {run.run_id: run for run in (log_runs or [])}
    directories = [cwd]
    directories.extend(
        match.parents[2]
        for match in sorted(cwd.parent.glob("*-rpi-*/.agents/rpi/phased-state.json"))
        if match.parents[2].resolve() != cwd
    )

    runs: list[RunInfo] = []
    for directory in directories:
        info = load_run_info(directory, log_runs=by_id, probe=probe, now=now)
        if info is not None:
            runs.append(info)
    return runs


def build_status_report(
    cwd: str | Path,
    *,
    probe: SessionProbe = tmux_session_alive,
    now: dt.datetime | None = None,
) -> StatusReport:
    log_runs = discover_log_runs(cwd)
    runs = discover_runs(cwd, log_runs=log_runs, probe=probe, now=now)
    return StatusReport(runs=runs, log_runs=log_runs, count=len(runs))


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------


def _log_run_status(run: LogRun) -> str:
    status = run.status
    if run.verdicts and status == "completed":
        verdicts = ",".join(f"{k}={v}" for k, v in sorted(run.verdicts.items()))
        status += f" [{verdicts}]"
    return status


def render_status_table(report: StatusReport) -> str:
    if not report.runs and not report.log_runs:
        return "No active RPI runs found.\n"

    lines: list[str] = []
    if report.runs:
        lines.append(f"{'RUN-ID':<14} {'GOAL':<30} {'PHASE':<12} {'STATUS':<10} ELAPSED")
        lines.append("─" * 80)
        for run in report.runs:
            lines.append(
                f"{run.run_id:<14} {_truncate_goal(run.goal):<30} {run.phase_name:<12} "
                f"{run.status:<10} {run.elapsed}"
            )
        lines.append("")
        lines.append(f"{len(report.runs)} active run(s) found.")

    if report.log_runs:
        lines.append("")
        lines.append(
            f"{'RUN-ID':<14} {'GOAL':<30} {'LAST-PHASE':<12} {'STATUS':<10} {'RETRIES':<10} DURATION"
        )
        lines.append("─" * 100)
        for run in report.log_runs:
            duration = format_duration(run.duration_seconds) if run.duration_seconds > 0 else ""
            lines.append(
                f"{run.run_id:<14} {_truncate_goal(run.goal):<30} {run.last_phase:<12} "
                f"{_log_run_status(run):<10} {run.total_retries!s:<10} {duration}"
            )
        lines.append("")
        lines.append(f"{len(report.log_runs)} log run(s) found.")
    return "\n".join(lines) + "\n"


def render_status_json(report: StatusReport) -> str:
    return report.model_dump_json(indent=2) + "\n"


def print_status(
    cwd: str | Path,
    *,
    output: str = "table",
    stream: TextIO | None = None,
    probe: SessionProbe = tmux_session_alive,
) -> StatusReport:
    stream = stream or sys.stdout
    report = build_status_report(cwd, probe=probe)
    if output == "json":
        stream.write(render_status_json(report))
    else:
        stream.write(render_status_table(report))
    stream.flush()
    return report


def watch_status(
    cwd: str | Path,
    *,
    output: str = "table",
    interval: float = WATCH_INTERVAL_SECONDS,
    stream: TextIO | None = None,
    sleep: Callable[[float], None] = time.sleep,
    max_iterations: int | None = None,
    probe: SessionProbe = tmux_session_alive,
) -> None:
    """Redraw the status every *interval* seconds until Ctrl-C."""
    stream = stream or sys.stdout
    iterations = 0
    try:
        while max_iterations is None or iterations < max_iterations:
            if iterations:
                sleep(interval)
            stream.write(CLEAR_SCREEN)
            try:
                print_status(cwd, output=output, stream=stream, probe=probe)
            except OSError as exc:
                print(f"Error: {exc}", file=sys.stderr)
            stream.write(f"\n[watch mode - polling every {interval:g}s, Ctrl-C to exit]")
            stream.flush()
            iterations += 1
    except KeyboardInterrupt:
        stream.write("\nExiting watch mode.\n")
