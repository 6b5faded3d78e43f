"""Append-only orchestration log and run reconstruction.

Each transition is one line in ``.agents/rpi/phased-orchestration.log``::

    [2026-02-14T10:00:00Z] [a1b2c3d4e5f6] research: completed in 2m13s

Older logs omit the bracketed run id; those lines are grouped into
synthetic ``anon-N`` runs, a new one starting at each ``start`` event.
That grouping is a best-effort heuristic: when anonymous and id-tagged
lines interleave, orphan lines attach to the most recent anonymous run.
"""

from __future__ import annotations

import datetime as dt
import json
import logging
import re
from collections.abc import Iterable, Mapping
from pathlib import Path

from rpi_orchestrator.file_io import append_text
from rpi_orchestrator.schemas import LogEntry, LogRun, parse_rfc3339, rfc3339_now

logger = logging.getLogger(__name__)

_LOG_LINE_RE = re.compile(r"^\[([^\]]+)\]\s+(?:\[([^\]]+)\]\s+)?([^:]+):\s+(.*)$")
_GOAL_RE = re.compile(r'goal=("(?:[^"\\]|\\.)*")')
_EPIC_RE = re.compile(r"epic=(\S+)")
_VERDICTS_RE = re.compile(r"verdicts=map\[([^\]]*)\]")
_INLINE_VERDICTS = ("PASS", "WARN", "FAIL")
_INLINE_VERDICT_PHASES = ("pre-mortem", "vibe")


def format_verdict_map(verdicts: Mapping[str, str]) -> str:
    """Render verdicts as ``map[k:v k2:v2]`` with sorted keys."""
    pairs = " ".join(f"{key}:{verdicts[key]}" for key in sorted(verdicts))
    return f"map[{pairs}]"


def format_duration(seconds: float) -> str:
    """Compact duration like ``1h2m3s``, ``4m5s`` or ``7s``."""
    total = max(0, int(seconds))
    hours, rem = divmod(total, 3600)
    minutes, secs = divmod(rem, 60)
    if hours:
        return f"{hours}h{minutes}m{secs}s"
    if minutes:
        return f"{minutes}m{secs}s"
    return f"{secs}s"


class PhaseTransitionLog:
    """Writer for the orchestration log of one run."""

    def __init__(self, path: str | Path, run_id: str = "") -> None:
        self.path = Path(path)
        self.run_id = run_id

    def append(self, phase: str, details: str) -> None:
        """Append one transition line.  Write failures are logged, not raised."""
        if self.run_id:
            line = f"[{rfc3339_now()}] [{self.run_id}] {phase}: {details}\n"
        else:
            line = f"[{rfc3339_now()}] {phase}: {details}\n"
        try:
            append_text(self.path, line)
        except OSError as exc:
            logger.warning("Could not write orchestration log %s: %s", self.path, exc)


# ---------------------------------------------------------------------------
# Reconstruction
# ---------------------------------------------------------------------------


def parse_log_line(line: str) -> LogEntry | None:
    """Parse one log line; ``None`` when it does not match either shape."""
    match = _LOG_LINE_RE.match(line.rstrip("\r\n"))
    if not match:
        return None
    timestamp = parse_rfc3339(match.group(1))
    if timestamp is None:
        return None
    return LogEntry(
        timestamp=timestamp,
        run_id=match.group(2) or "",
        phase=match.group(3).strip(),
        details=match.group(4).strip(),
    )


def _goal_from_details(details: str) -> str:
    match = _GOAL_RE.search(details)
    if not match:
        return details
    quoted = match.group(1)
    try:
        return json.loads(quoted)
    except ValueError:
        # legacy lines wrote the goal unescaped
        return quoted[1:-1]


def _verdicts_from_details(details: str) -> dict[str, str]:
    match = _VERDICTS_RE.search(details)
    if not match:
        return {}
    verdicts: dict[str, str] = {}
    for pair in match.group(1).split():
        key, sep, value = pair.partition(":")
        if sep:
            verdicts[key] = value
    return verdicts


def _inline_verdict(details: str) -> str:
    for verdict in _INLINE_VERDICTS:
        if verdict in details:
            return verdict
    return ""


def _apply_entry(run: LogRun, entry: LogEntry) -> None:
    if run.started_at is None:
        run.started_at = entry.timestamp
    run.entries.append(entry)
    run.last_phase = entry.phase
    details = entry.details

    if entry.phase == "start":
        run.goal = _goal_from_details(details)
        return
    if entry.phase == "complete":
        run.status = "completed"
        run.finished_at = entry.timestamp
        run.duration_seconds = (entry.timestamp - run.started_at).total_seconds()
        epic = _EPIC_RE.search(details)
        run.epic_id = epic.group(1) if epic else ""
        run.verdicts.update(_verdicts_from_details(details))
        return

    if details.startswith("FAILED:"):
        run.status = "failed"
    if details.startswith("RETRY"):
        run.retries[entry.phase] = run.retries.get(entry.phase, 0) + 1
    if details.startswith("completed in "):
        run.finished_at = entry.timestamp
    if any(name in entry.phase for name in _INLINE_VERDICT_PHASES):
        verdict = _inline_verdict(details)
        if verdict:
            run.verdicts[entry.phase] = verdict


def reconstruct_runs(lines: Iterable[str]) -> list[LogRun]:
    """Group log lines into runs, ordered by first appearance.

    Unparseable lines are skipped.
    """
    runs: dict[str, LogRun] = {}
    anonymous = 0
    for line in lines:
        entry = parse_log_line(line)
        if entry is None:
            continue
        run_id = entry.run_id
        if not run_id:
            if entry.phase == "start":
                anonymous += 1
            anonymous = max(anonymous, 1)
            run_id = f"anon-{anonymous}"
        run = runs.get(run_id)
        if run is None:
            run = runs[run_id] = LogRun(run_id=run_id)
        _apply_entry(run, entry)
    return list(runs.values())


def parse_orchestration_log(path: str | Path) -> list[LogRun]:
    """Reconstruct runs from a log file; raises OSError when it cannot be read."""
    with Path(path).open(encoding="utf-8", errors="replace") as handle:
        return reconstruct_runs(handle)


def discover_log_runs(cwd: str | Path) -> list[LogRun]:
    """Reconstruct runs from the log in *cwd* and in sibling ``*-rpi-*`` worktrees."""
    cwd = Path(cwd).resolve()
    own_log = cwd / ".agents" / "rpi" / "phased-orchestration.log"
    logs = [own_log]
    logs.extend(
        match
        for match in sorted(cwd.parent.glob("*-rpi-*/.agents/rpi/phased-orchestration.log"))
        if match.resolve() != own_log
    )

    runs: list[LogRun] = []
    for log_path in logs:
        if not log_path.is_file():
            continue
        try:
            runs.extend(parse_orchestration_log(log_path))
        except OSError as exc:
            logger.debug("Could not read orchestration log %s: %s", log_path, exc)
    return runs


def elapsed_since(started: dt.datetime | None, now: dt.datetime | None = None) -> str:
    """Human elapsed time since *started*, or ``""``."""
    if started is None:
        return ""
    now = now or dt.datetime.now(dt.timezone.utc)
    return format_duration((now - started).total_seconds())
